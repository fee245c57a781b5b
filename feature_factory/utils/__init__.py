"""Utility modules for Feature Factory."""

from feature_factory.utils.fs import (
    FileSystemError,
    ensure_dir,
    file_exists,
    list_files,
    read_file,
    remove_file,
    safe_write,
)

__all__ = [
    "FileSystemError",
    "ensure_dir",
    "file_exists",
    "list_files",
    "read_file",
    "remove_file",
    "safe_write",
]
