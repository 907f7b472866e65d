"""Filesystem walker for audio files (standard library only)."""
from __future__ import annotations

import os
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Iterable, Iterator, List, Optional, Set, Tuple

from loguru import logger

from .formats import SUPPORTED_EXTENSIONS, is_supported_extension


@dataclass(frozen=True)
class AudioFile:
    path: Path
    size: int
    mtime_ns: int

    @property
    def fingerprint(self) -> Tuple[int, int]:
        return (self.size, self.mtime_ns)


@dataclass
class WalkStats:
    dirs_scanned: int = 0
    files_seen: int = 0
    audio_files: int = 0
    skipped_perm: int = 0
    skipped_hidden: int = 0
    symlink_cycles: int = 0


class FileWalker:
    """Enumerate supported audio files under one or more roots.

    Iterating the walker performs a fresh breadth-first traversal every time;
    a traversal cannot be resumed. With ``follow_symlinks`` the walker keeps
    a set of visited ``(st_dev, st_ino)`` pairs so symlink loops terminate.
    """

    def __init__(
        self,
        roots: Iterable[Path],
        extensions: Optional[frozenset[str]] = None,
        *,
        follow_symlinks: bool = True,
        skip_hidden: bool = True,
    ) -> None:
        self.roots: List[Path] = [Path(r).expanduser() for r in roots]
        self.extensions = extensions if extensions is not None else SUPPORTED_EXTENSIONS
        self.follow_symlinks = follow_symlinks
        self.skip_hidden = skip_hidden
        self.stats = WalkStats()

    def __iter__(self) -> Iterator[AudioFile]:
        self.stats = WalkStats()
        seen_files: Set[Path] = set()
        for root in self.roots:
            if not root.exists():
                logger.warning(f"Library root does not exist: {root}")
                continue
            if root.is_file():
                af = self._make_entry(root)
                if af is not None and af.path not in seen_files:
                    seen_files.add(af.path)
                    yield af
                continue
            for af in self._walk_root(root.absolute()):
                # Overlapping roots (or symlinks into another root) report a file once
                if af.path in seen_files:
                    continue
                seen_files.add(af.path)
                yield af

    def _walk_root(self, root: Path) -> Iterator[AudioFile]:
        visited: Set[Tuple[int, int]] = set()
        if self.follow_symlinks:
            try:
                st = os.stat(root, follow_symlinks=True)
                visited.add((st.st_dev, st.st_ino))
            except OSError:
                pass

        queue: Deque[str] = deque([str(root)])
        while queue:
            current = queue.popleft()
            try:
                iterator = os.scandir(current)
            except PermissionError:
                self.stats.skipped_perm += 1
                logger.warning(f"Permission denied: {current}")
                continue
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.debug(f"scandir failed for {current}: {e}")
                continue

            self.stats.dirs_scanned += 1
            with iterator as entries:
                # Sorted for deterministic progress order
                for entry in sorted(entries, key=lambda e: e.name):
                    if self.skip_hidden and entry.name.startswith("."):
                        self.stats.skipped_hidden += 1
                        continue
                    try:
                        if entry.is_dir(follow_symlinks=self.follow_symlinks):
                            if self.follow_symlinks:
                                try:
                                    st = entry.stat(follow_symlinks=True)
                                    key = (st.st_dev, st.st_ino)
                                    if key in visited:
                                        self.stats.symlink_cycles += 1
                                        logger.debug(f"Skipping already visited directory: {entry.path}")
                                        continue
                                    visited.add(key)
                                except OSError:
                                    continue
                            queue.append(entry.path)
                            continue
                        if not entry.is_file(follow_symlinks=self.follow_symlinks):
                            continue
                    except PermissionError:
                        self.stats.skipped_perm += 1
                        continue
                    except OSError:
                        continue

                    self.stats.files_seen += 1
                    if not is_supported_extension(os.path.splitext(entry.name)[1], self.extensions):
                        continue
                    af = self._make_entry(Path(entry.path))
                    if af is not None:
                        yield af

    def _make_entry(self, path: Path) -> Optional[AudioFile]:
        if not is_supported_extension(path.suffix, self.extensions):
            return None
        try:
            st = path.stat()
        except PermissionError:
            self.stats.skipped_perm += 1
            return None
        except OSError:
            return None
        self.stats.audio_files += 1
        return AudioFile(path=path.absolute(), size=st.st_size, mtime_ns=st.st_mtime_ns)


def walk_audio_files(
    roots: Iterable[Path],
    extensions: Optional[frozenset[str]] = None,
    *,
    follow_symlinks: bool = True,
) -> List[AudioFile]:
    """Convenience: materialize one traversal as a list."""
    return list(FileWalker(roots, extensions, follow_symlinks=follow_symlinks))


__all__ = ["AudioFile", "WalkStats", "FileWalker", "walk_audio_files"]
