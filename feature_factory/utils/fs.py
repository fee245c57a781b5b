"""
File system utilities for Feature Factory.

This module provides safe file operations used by session persistence and
the JSONL logger:
- Atomic writes (write to temp file, then rename)
- Directory creation
- File reading with encoding handling
- Glob pattern matching
"""

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path


class FileSystemError(Exception):
    """Raised when a file system operation fails."""
    pass


def ensure_dir(path: str | Path) -> Path:
    """
    Create a directory if it does not exist.

    Creates parent directories as needed (like mkdir -p).

    Args:
        path: Path to the directory to create.

    Returns:
        Path: The path object for the created/existing directory.

    Raises:
        FileSystemError: If directory creation fails.
    """
    path = Path(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
        return path
    except OSError as e:
        raise FileSystemError(f"Failed to create directory {path}: {e}")


def safe_write(path: str | Path, content: str, encoding: str = "utf-8") -> None:
    """
    Write content to a file atomically.

    Uses a temporary file in the same directory and a rename, so a reader
    never observes a half-written session snapshot.

    Args:
        path: Path to the file to write.
        content: Content to write to the file.
        encoding: Character encoding to use. Defaults to utf-8.

    Raises:
        FileSystemError: If write operation fails.
    """
    path = Path(path)
    ensure_dir(path.parent)

    try:
        # Same directory so the rename stays on one filesystem
        fd, temp_path = tempfile.mkstemp(
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding=encoding) as f:
                f.write(content)
            shutil.move(temp_path, path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise
    except OSError as e:
        raise FileSystemError(f"Failed to write file {path}: {e}")


def file_exists(path: str | Path) -> bool:
    """Check that a path exists and is a regular file."""
    return Path(path).is_file()


def read_file(path: str | Path, encoding: str = "utf-8") -> str:
    """
    Read a file's contents with encoding handling.

    Args:
        path: Path to the file to read.
        encoding: Character encoding. Defaults to utf-8.

    Returns:
        str: Contents of the file.

    Raises:
        FileSystemError: If file cannot be read.
    """
    path = Path(path)

    if not path.is_file():
        raise FileSystemError(f"File not found: {path}")

    try:
        return path.read_text(encoding=encoding)
    except UnicodeDecodeError as e:
        raise FileSystemError(f"Failed to decode file {path} with encoding {encoding}: {e}")
    except OSError as e:
        raise FileSystemError(f"Failed to read file {path}: {e}")


def list_files(directory: str | Path, pattern: str = "*") -> list[Path]:
    """
    List files matching a glob pattern in a directory.

    Returns an empty list when the directory does not exist yet, since
    the state directory is created lazily on first save.
    """
    directory = Path(directory)
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.glob(pattern) if p.is_file())


def remove_file(path: str | Path) -> bool:
    """
    Remove a file if it exists.

    Returns:
        bool: True if file was removed, False if it didn't exist.

    Raises:
        FileSystemError: If removal fails.
    """
    path = Path(path)

    if not path.exists():
        return False

    if not path.is_file():
        raise FileSystemError(f"Not a file: {path}")

    try:
        path.unlink()
        return True
    except OSError as e:
        raise FileSystemError(f"Failed to remove file {path}: {e}")
