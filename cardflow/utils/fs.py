"""
File system utilities for cardflow.

This module provides the small set of file operations the pipelines rely on:
- Whole-file atomic writes (write to temp file, then rename)
- Directory creation with an explicit mode
- Text reads with encoding handling
- Recursive removal that tolerates missing paths
- Tail reads for the activity log
"""

from __future__ import annotations

import os
import shutil
import tempfile
from collections import deque
from pathlib import Path
from typing import Optional


class FileSystemError(Exception):
    """Raised when a file system operation fails."""
    pass


def ensure_dir(path: str | Path, mode: Optional[int] = None) -> Path:
    """
    Create a directory if it does not exist.

    Creates parent directories as needed (like mkdir -p). When ``mode`` is
    given it is applied with chmod afterwards, so the umask cannot narrow it.

    Args:
        path: Path to the directory to create.
        mode: Optional permission bits for the final directory.

    Returns:
        Path: The path object for the created/existing directory.

    Raises:
        FileSystemError: If directory creation fails.
    """
    path = Path(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
        if mode is not None:
            path.chmod(mode)
        return path
    except OSError as e:
        raise FileSystemError(f"Failed to create directory {path}: {e}")


def _atomic_replace(path: Path, payload: bytes, mode: Optional[int]) -> None:
    ensure_dir(path.parent)

    # Temp file lives in the target directory so the rename stays on one filesystem
    fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(temp_path, mode)
        os.replace(temp_path, path)
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def safe_write(
    path: str | Path,
    content: str,
    encoding: str = "utf-8",
    mode: Optional[int] = None,
) -> None:
    """
    Write content to a file atomically.

    Readers either see the previous content or the new content, never a
    mixture of both.

    Args:
        path: Path to the file to write.
        content: Content to write to the file.
        encoding: Character encoding to use. Defaults to utf-8.
        mode: Optional permission bits for the written file.

    Raises:
        FileSystemError: If write operation fails.
    """
    path = Path(path)
    try:
        _atomic_replace(path, content.encode(encoding), mode)
    except OSError as e:
        raise FileSystemError(f"Failed to write file {path}: {e}")


def safe_write_bytes(
    path: str | Path,
    content: bytes,
    mode: Optional[int] = None,
) -> None:
    """
    Write binary content to a file atomically.

    Args:
        path: Path to the file to write.
        content: Binary content to write to the file.
        mode: Optional permission bits for the written file.

    Raises:
        FileSystemError: If write operation fails.
    """
    path = Path(path)
    try:
        _atomic_replace(path, content, mode)
    except OSError as e:
        raise FileSystemError(f"Failed to write file {path}: {e}")


def read_file(path: str | Path, encoding: str = "utf-8") -> str:
    """
    Read a file's contents with encoding handling.

    Args:
        path: Path to the file to read.
        encoding: Character encoding. Defaults to utf-8.

    Returns:
        str: Contents of the file.

    Raises:
        FileNotFoundError: If the file does not exist. Callers use this to
            tell "absent" apart from every other read failure.
        FileSystemError: If the file exists but cannot be read or decoded.
    """
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    if not path.is_file():
        raise FileSystemError(f"Not a file: {path}")

    try:
        return path.read_text(encoding=encoding)
    except UnicodeDecodeError as e:
        raise FileSystemError(f"Failed to decode file {path} with encoding {encoding}: {e}")
    except OSError as e:
        raise FileSystemError(f"Failed to read file {path}: {e}")


def remove_tree(path: str | Path) -> bool:
    """
    Remove a file or directory tree if it exists.

    Args:
        path: Path to remove.

    Returns:
        bool: True if something was removed, False if it didn't exist.

    Raises:
        FileSystemError: If removal fails.
    """
    path = Path(path)

    if not path.exists() and not path.is_symlink():
        return False

    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
        return True
    except OSError as e:
        raise FileSystemError(f"Failed to remove {path}: {e}")


def tail_lines(path: str | Path, count: int) -> list[str]:
    """
    Return the last ``count`` non-empty lines of a text file.

    A missing file yields an empty list.
    """
    path = Path(path)
    if not path.is_file():
        return []

    lines: deque[str] = deque(maxlen=count)
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            line = line.rstrip("\n")
            if line:
                lines.append(line)
    return list(lines)
