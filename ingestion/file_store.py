"""
Local file store for uploads and rendered page images.

Paths handed in and out are relative to the store root ("exams/<id>/exam.pdf")
so the database never records machine-specific locations.
"""

import shutil
from pathlib import Path
from typing import Union


class LocalFileStore:
    """Byte-addressable write/read/delete under a root directory"""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, relative_path: str) -> Path:
        """Absolute path for a stored file; refuses paths escaping the root"""
        path = (self.root / relative_path).resolve()
        if path != self.root and self.root not in path.parents:
            raise ValueError(f"Path escapes storage root: {relative_path}")
        return path

    def save(self, relative_path: str, data: bytes) -> str:
        path = self.path_for(relative_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return relative_path

    def read(self, relative_path: str) -> bytes:
        return self.path_for(relative_path).read_bytes()

    def exists(self, relative_path: str) -> bool:
        return self.path_for(relative_path).exists()

    def delete(self, relative_path: str) -> None:
        self.path_for(relative_path).unlink(missing_ok=True)

    def delete_tree(self, relative_path: str) -> None:
        """Remove a directory and everything under it, if present"""
        path = self.path_for(relative_path)
        if path == self.root:
            raise ValueError("Refusing to delete the storage root")
        shutil.rmtree(path, ignore_errors=True)
