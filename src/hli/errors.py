"""Exception taxonomy for scanning and indexing.

Per-file problems (access, parse, extraction) are recovered by the indexer
and counted as skips. Storage problems are fatal for the running scan.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class IndexerError(Exception):
    """Base class for all hli errors."""


class FileAccessError(IndexerError):
    """A path could not be opened or stat'ed (missing, permission denied)."""

    def __init__(self, path: str, reason: str = "") -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"cannot access {path}: {reason}" if reason else f"cannot access {path}")


class UnsupportedFormatError(IndexerError):
    """Extension is not in the supported allowlist."""

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"unsupported audio format: {path}")


class TagParseError(IndexerError):
    """The tag probe could not parse the file."""

    def __init__(self, path: str, reason: str = "") -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"tag probe failed for {path}: {reason}")


class ExtractionErrorKind(Enum):
    UNREADABLE = "unreadable"
    ACCESS_DENIED = "access_denied"


class ExtractionError(IndexerError):
    """Neither probe could produce metadata for a file."""

    def __init__(
        self,
        path: str,
        kind: ExtractionErrorKind = ExtractionErrorKind.UNREADABLE,
        cause: Optional[BaseException] = None,
    ) -> None:
        self.path = path
        self.kind = kind
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{kind.value} {path}{detail}")


class StorageWriteError(IndexerError):
    """A write into the library store failed; the scan cannot continue."""

    def __init__(self, operation: str, path: Optional[str] = None, cause: Optional[BaseException] = None) -> None:
        self.operation = operation
        self.path = path
        self.cause = cause
        where = f" ({path})" if path else ""
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"storage {operation} failed{where}{detail}")


class ScanInProgressError(IndexerError):
    """Another scan is already running."""


__all__ = [
    "IndexerError",
    "FileAccessError",
    "UnsupportedFormatError",
    "TagParseError",
    "ExtractionErrorKind",
    "ExtractionError",
    "StorageWriteError",
    "ScanInProgressError",
]
