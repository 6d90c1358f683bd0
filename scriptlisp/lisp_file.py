"""
Virtual files: where `load` reads local library sources from.

Paths are virtual: `/dir/lib2.l`, `dir/lib2.l` and `./dir/lib2.l` name
the same file relative to the virtual root.
"""
from __future__ import annotations
import os
import posixpath
from abc import ABC, abstractmethod
from typing import Dict, Iterator, Optional


def normalize_path(path: str, base_dir: Optional[str] = None) -> str:
    """Virtual path without leading slash; relative paths resolve against `base_dir`."""
    path = path.replace("\\", "/")
    if not path.startswith("/") and base_dir:
        path = posixpath.join(base_dir, path)
    norm = posixpath.normpath("/" + path.lstrip("/"))
    if norm == "/":
        return ""
    return norm.lstrip("/")


class VirtualFiles(ABC):
    """The file collaborator `load` reads through."""

    @abstractmethod
    def read(self, path: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def write(self, path: str, text: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def exists(self, path: str) -> bool:
        raise NotImplementedError


class MemoryVirtualFiles(VirtualFiles):
    """In-memory files, handy for hosts that seed library scripts and for tests."""

    def __init__(self, files: Optional[Dict[str, str]] = None):
        self._files: Dict[str, str] = {}
        for path, text in (files or {}).items():
            self.write(path, text)

    def read(self, path: str) -> str:
        key = normalize_path(path)
        if key not in self._files:
            raise FileNotFoundError(path)
        return self._files[key]

    def write(self, path: str, text: str) -> None:
        self._files[normalize_path(path)] = text

    def exists(self, path: str) -> bool:
        return normalize_path(path) in self._files

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._files))


class FileSystemVirtualFiles(VirtualFiles):
    """Virtual files backed by a directory on disk; paths cannot escape `root`."""

    def __init__(self, root: Optional[str] = None):
        self.root = os.path.abspath(root or os.getcwd())

    def _resolve(self, path: str) -> str:
        rel = normalize_path(path)
        return os.path.join(self.root, *rel.split("/")) if rel else self.root

    def read(self, path: str) -> str:
        full = self._resolve(path)
        if not os.path.isfile(full):
            raise FileNotFoundError(path)
        with open(full, "r", encoding="utf-8") as f:
            return f.read()

    def write(self, path: str, text: str) -> None:
        full = self._resolve(path)
        os.makedirs(os.path.dirname(full) or ".", exist_ok=True)
        with open(full, "w", encoding="utf-8") as f:
            f.write(text)

    def exists(self, path: str) -> bool:
        return os.path.isfile(self._resolve(path))
