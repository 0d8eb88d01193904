from __future__ import annotations

import logging
from pathlib import Path
from typing import BinaryIO

from .packets import TftpException
from .util.io import PathLike, to_path

logger = logging.getLogger(__name__)


class PathTraversalError(TftpException):
    pass


class FileStore:
    """Root directory that every request filename is resolved against.

    Files are always opened in binary; netascii requests are served byte for byte.
    """

    __slots__ = ("_root_dir",)

    def __init__(self, root_dir: PathLike) -> None:
        self._root_dir = to_path(root_dir).resolve()
        self._root_dir.mkdir(parents=True, exist_ok=True)
        logger.debug("File root is %s", self._root_dir)

    @property
    def root_dir(self) -> Path:
        return self._root_dir

    def resolve(self, filename: PathLike) -> Path:
        relative = to_path(filename)
        if relative.is_absolute():
            raise PathTraversalError(f"Filepath '{filename}' is absolute")

        full_filepath = (self._root_dir / relative).resolve()
        if self._root_dir not in full_filepath.parents:
            raise PathTraversalError(f"Filepath '{filename}' transcends root")
        return full_filepath

    def open_for_read(self, filename: PathLike) -> BinaryIO:
        return self.resolve(filename).open("rb")

    def create_exclusive(self, filename: PathLike) -> BinaryIO:
        # "x" fails if the file exists, no window between the check and the create
        return self.resolve(filename).open("xb")

    def delete(self, filename: PathLike) -> None:
        path = self.resolve(filename)
        path.unlink(missing_ok=True)
        logger.info("Deleted incomplete file: %s", path)
