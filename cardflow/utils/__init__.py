"""Utility helpers for cardflow."""

from cardflow.utils.fs import (
    FileSystemError,
    ensure_dir,
    read_file,
    remove_tree,
    safe_write,
    safe_write_bytes,
    tail_lines,
)
from cardflow.utils.redact import redact_dict, redact_secrets

__all__ = [
    "FileSystemError",
    "ensure_dir",
    "read_file",
    "remove_tree",
    "safe_write",
    "safe_write_bytes",
    "tail_lines",
    "redact_dict",
    "redact_secrets",
]
