from __future__ import annotations

from pathlib import Path

import pytest

from pytftpd.files import FileStore, PathTraversalError


class TestFileStore:
    def test_root_is_created(self, tmp_path: Path) -> None:
        root = tmp_path / "a" / "b"
        FileStore(root)
        assert root.is_dir()

    def test_resolve_nested(self, tmp_path: Path) -> None:
        store = FileStore(tmp_path)
        assert store.resolve("dir/file.txt") == tmp_path.resolve() / "dir" / "file.txt"

    @pytest.mark.parametrize("filename", ("..", "../x", "/abs", "dir/../../x", "."))
    def test_resolve_outside_root__raises(self, tmp_path: Path, filename: str) -> None:
        store = FileStore(tmp_path / "root")
        with pytest.raises(PathTraversalError):
            store.resolve(filename)

    def test_create_exclusive_twice__raises(self, tmp_path: Path) -> None:
        store = FileStore(tmp_path)
        store.create_exclusive("f.bin").close()
        with pytest.raises(FileExistsError):
            store.create_exclusive("f.bin")

    def test_open_for_read_missing__raises(self, tmp_path: Path) -> None:
        store = FileStore(tmp_path)
        with pytest.raises(FileNotFoundError):
            store.open_for_read("missing.bin")

    def test_delete(self, tmp_path: Path) -> None:
        store = FileStore(tmp_path)
        (tmp_path / "f.bin").write_bytes(b"x")
        store.delete("f.bin")
        assert not (tmp_path / "f.bin").exists()
        # already gone is fine
        store.delete("f.bin")
