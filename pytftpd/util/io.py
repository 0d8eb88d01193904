import os
import pathlib
from typing import Union

PathLike = Union[str, os.PathLike]


def to_path(pathlike: PathLike) -> pathlib.Path:
    return pathlib.Path(pathlike)


def parse_path(s: str) -> pathlib.Path:
    return pathlib.Path(s).expanduser()


def ensure_parent_directory(pathlike: PathLike) -> pathlib.Path:
    path = to_path(pathlike)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path
