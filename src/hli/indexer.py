"""Scan orchestration: walk, extract, upsert, aggregate, reconcile.

A scan is a generator of ``ScanProgress`` snapshots driven by the caller's
thread, which is also the only thread writing to the store. Extraction of
metadata and artwork runs on a bounded ``WorkerPool``.

Phases of a completed scan:

1. walk the roots (optionally once up front to learn the total)
2. extract and upsert each file, recomputing touched aggregates in batches
3. delete known tracks that were not observed under an existing root
4. recompute the remaining touched aggregates
5. delete albums, then artists, that no track references
"""
from __future__ import annotations

import json
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union

from loguru import logger

from .artwork import ArtworkProvider, NullArtworkExtractor
from .db import LibraryDB
from .errors import ExtractionError, IndexerError, StorageWriteError, UnsupportedFormatError
from .formats import SUPPORTED_EXTENSIONS
from .logging import bind_run, log_event, truncate
from .metadata import MetadataExtractor, TrackMetadata
from .models import TrackRecord, now_ms
from .progress import ScanProgress, ScanProgressTracker, ScanState
from .scheduler import WorkerPool, default_workers
from .walker import AudioFile, FileWalker


LAST_SCAN_META_KEY = "last_scan"


class ScanMode(Enum):
    FULL = "full"
    QUICK = "quick"


@dataclass
class ScanSummary:
    mode: str
    state: str = ScanState.IDLE.value
    roots: Tuple[str, ...] = ()
    files_scanned: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    deleted: int = 0
    orphan_albums_removed: int = 0
    orphan_artists_removed: int = 0
    elapsed_seconds: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["roots"] = list(self.roots)
        return d


@contextmanager
def _storage(operation: str, path: Optional[str] = None) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as e:
        raise StorageWriteError(operation, path, e) from e


def _is_under(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


class LibraryIndexer:
    """Keeps the library store in sync with the audio files under the roots."""

    def __init__(
        self,
        db: LibraryDB,
        extractor: Optional[MetadataExtractor] = None,
        artwork: Optional[ArtworkProvider] = None,
        tracker: Optional[ScanProgressTracker] = None,
        *,
        library_roots: Iterable[Union[str, Path]] = (),
        extensions: Optional[frozenset[str]] = None,
        follow_symlinks: bool = True,
        skip_hidden: bool = True,
        workers: Optional[int] = None,
        max_pending_factor: int = 4,
        aggregate_batch_size: int = 200,
        count_before_scan: bool = True,
    ) -> None:
        self.db = db
        self.extensions = extensions if extensions is not None else SUPPORTED_EXTENSIONS
        self.extractor = extractor or MetadataExtractor(self.extensions)
        self.artwork: ArtworkProvider = artwork or NullArtworkExtractor()
        self.tracker = tracker or ScanProgressTracker()
        self.library_roots = [Path(r).expanduser() for r in library_roots]
        self.follow_symlinks = follow_symlinks
        self.skip_hidden = skip_hidden
        self.workers = workers or default_workers()
        self.max_pending_factor = max_pending_factor
        self.aggregate_batch_size = aggregate_batch_size
        self.count_before_scan = count_before_scan

        self._stop = threading.Event()
        self._dirty_artists: Set[str] = set()
        self._dirty_albums: Set[str] = set()
        self._dirty_rows = 0
        self.last_summary: Optional[ScanSummary] = None
        self.last_error: Optional[StorageWriteError] = None

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def stop_scan(self) -> None:
        """Ask the running (or starting) scan to stop at the next file boundary."""
        self._stop.set()

    def reset_stop(self) -> None:
        self._stop.clear()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def walker_for(self, roots: Iterable[Path]) -> FileWalker:
        return FileWalker(
            roots,
            self.extensions,
            follow_symlinks=self.follow_symlinks,
            skip_hidden=self.skip_hidden,
        )

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------

    def run_scan(
        self,
        mode: ScanMode = ScanMode.FULL,
        roots: Optional[Iterable[Union[str, Path]]] = None,
    ) -> Iterator[ScanProgress]:
        """Run one scan, yielding a snapshot after each file; the last one is terminal.

        With ``roots`` the scan (and its deletion diff) is limited to those
        folders; otherwise the configured library roots are used and known
        tracks outside every root are dropped when their file is gone.
        """
        scoped = roots is not None
        scan_roots = [Path(r).expanduser().absolute() for r in (roots if scoped else self.library_roots)]
        walker = self.walker_for(scan_roots)

        total = self._count(walker) if self.count_before_scan else 0
        started_snap = self.tracker.start(total)

        self.last_error = None
        run_id = bind_run()
        started = time.monotonic()
        summary = ScanSummary(mode=mode.value, roots=tuple(str(r) for r in scan_roots))
        self._reset_dirty()
        log_event(
            "scan_start",
            msg=f"Starting {mode.value} scan of {len(scan_roots)} root(s)",
            mode=mode.value,
            roots=[str(r) for r in scan_roots],
            run_id=run_id,
        )

        pool = WorkerPool(self.workers)
        try:
            yield started_snap
            with _storage("load"):
                known = self.db.known_fingerprints()
            seen: Set[str] = set()

            for snap in self._process(walker, mode, known, seen, pool, summary):
                yield snap

            if self._stop.is_set():
                self._flush_aggregates()
                summary.state = ScanState.CANCELLED.value
                self._finish_summary(summary, started)
                yield self.tracker.cancel()
                return

            summary.deleted = self._delete_missing(known, seen, scan_roots, scoped)
            self._flush_aggregates()
            summary.orphan_albums_removed, summary.orphan_artists_removed = self.reconcile_orphans()
            summary.state = ScanState.COMPLETED.value
            self._finish_summary(summary, started)
            yield self.tracker.complete()
        except StorageWriteError as e:
            self.last_error = e
            logger.bind(action="scan", status="error").error(f"Scan failed: {e}")
            summary.state = ScanState.FAILED.value
            summary.error = truncate(str(e))
            self._finish_summary(summary, started, persist=False)
            yield self.tracker.fail(summary.error)
        except GeneratorExit:
            # Consumer abandoned the generator mid-scan
            self._stop.set()
            if self.tracker.is_scanning:
                summary.state = ScanState.CANCELLED.value
                self._finish_summary(summary, started, persist=False)
                self.tracker.cancel()
            raise
        finally:
            self._stop.clear()
            pool.shutdown(wait=True)
            logger.debug(f"Walker stats: {walker.stats}")

    def _count(self, walker: FileWalker) -> int:
        n = 0
        for _ in walker:
            if self._stop.is_set():
                break
            n += 1
        return n

    def _process(
        self,
        walker: FileWalker,
        mode: ScanMode,
        known: Dict[str, Tuple[int, int]],
        seen: Set[str],
        pool: WorkerPool,
        summary: ScanSummary,
    ) -> Iterator[ScanProgress]:
        # Only the newest snapshot for skipped-unchanged files is kept
        unchanged_snap: List[ScanProgress] = []

        def candidates() -> Iterator[AudioFile]:
            for af in walker:
                if self._stop.is_set():
                    return
                key = str(af.path)
                seen.add(key)
                if mode is ScanMode.QUICK and known.get(key) == af.fingerprint:
                    summary.unchanged += 1
                    unchanged_snap[:] = [self.tracker.advance(key, file_size=af.size)]
                    continue
                yield af

        results = pool.imap_unordered_bounded(
            self._extract,
            candidates(),
            max_pending=self.workers * self.max_pending_factor,
            stop_event=self._stop,
        )
        for af, meta, err in results:
            if unchanged_snap:
                yield unchanged_snap.pop()
            path = str(af.path)
            if err is not None:
                if isinstance(err, UnsupportedFormatError):
                    continue
                yield self._skip(path, err, summary)
                continue

            inserted = self.store(meta, af)
            if inserted:
                summary.inserted += 1
            else:
                summary.updated += 1
            if self._dirty_rows >= self.aggregate_batch_size:
                self._flush_aggregates()
            yield self.tracker.advance(path, is_hi_res=meta.is_high_res, file_size=af.size)

        if unchanged_snap:
            yield unchanged_snap.pop()
        summary.files_scanned = self.tracker.snapshot().files_scanned

    def _skip(self, path: str, err: BaseException, summary: ScanSummary) -> ScanProgress:
        summary.skipped += 1
        reason = str(err) if isinstance(err, IndexerError) else f"{type(err).__name__}: {err}"
        log_event("extract", msg=f"Skipping {path}: {reason}", level="WARNING", status="skip", file=path)
        return self.tracker.report_error(path, truncate(reason))

    def _extract(self, af: AudioFile) -> TrackMetadata:
        meta = self.extractor.extract(af.path)
        return meta.with_artwork(self._artwork_for(af.path))

    def _artwork_for(self, path: Path) -> Optional[str]:
        try:
            return self.artwork.extract_artwork(path)
        except Exception as e:
            logger.debug(f"Artwork provider failed for {path}: {e}")
            return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def store(self, meta: TrackMetadata, af: AudioFile, ts: Optional[int] = None) -> bool:
        """Upsert one track with its artist and album; return True if it was new."""
        stamp = ts if ts is not None else now_ms()
        rec = TrackRecord.from_metadata(meta, af.mtime_ns, stamp)
        with _storage("upsert", rec.file_path):
            with self.db.transaction():
                previous = self.db.track_owners(rec.file_path)
                self.db.ensure_artist(rec.artist_id, meta.artist, stamp)
                self.db.ensure_album(rec.album_id, meta.album, rec.artist_id, meta.artist, stamp)
                self.db.upsert_track(rec)
        self._touch(rec.artist_id, rec.album_id)
        if previous is not None:
            self._touch(*previous)
        return previous is None

    def _touch(self, artist_id: Optional[str], album_id: Optional[str]) -> None:
        if artist_id:
            self._dirty_artists.add(artist_id)
        if album_id:
            self._dirty_albums.add(album_id)
        self._dirty_rows += 1

    def _reset_dirty(self) -> None:
        self._dirty_artists = set()
        self._dirty_albums = set()
        self._dirty_rows = 0

    def _flush_aggregates(self) -> None:
        if not self._dirty_artists and not self._dirty_albums:
            return
        ts = now_ms()
        with _storage("recompute"):
            with self.db.transaction():
                self.db.recompute_album_stats(sorted(self._dirty_albums), ts)
                self.db.recompute_artist_stats(sorted(self._dirty_artists), ts)
        logger.debug(
            f"Recomputed aggregates for {len(self._dirty_albums)} albums, {len(self._dirty_artists)} artists"
        )
        self._reset_dirty()

    def _delete_paths(self, paths: List[str]) -> int:
        if not paths:
            return 0
        with _storage("delete"):
            with self.db.transaction():
                owners = self.db.delete_tracks_by_paths(paths)
        for artist_id, album_id in owners:
            self._touch(artist_id, album_id)
        return len(owners)

    def _delete_missing(
        self,
        known: Dict[str, Tuple[int, int]],
        seen: Set[str],
        scan_roots: List[Path],
        scoped: bool,
    ) -> int:
        live_roots = [r for r in scan_roots if r.exists()]
        for r in scan_roots:
            if r not in live_roots:
                logger.warning(f"Root unavailable, keeping its tracks: {r}")

        doomed: List[str] = []
        for path in known:
            if path in seen:
                continue
            p = Path(path)
            # Unseen files may sit in a directory the walk could not list
            if p.exists():
                continue
            if any(_is_under(p, r) for r in live_roots):
                doomed.append(path)
            elif not scoped and not any(_is_under(p, r) for r in scan_roots):
                doomed.append(path)

        deleted = self._delete_paths(doomed)
        if deleted:
            logger.info(f"Removed {deleted} tracks whose files are gone")
        return deleted

    def reconcile_orphans(self) -> Tuple[int, int]:
        """Delete albums, then artists, that no track references."""
        with _storage("reconcile"):
            with self.db.transaction():
                albums = self.db.delete_orphan_albums()
                artists = self.db.delete_orphan_artists()
        if albums or artists:
            logger.info(f"Removed {albums} orphaned albums and {artists} orphaned artists")
        return albums, artists

    def _finish_summary(self, summary: ScanSummary, started: float, persist: bool = True) -> None:
        summary.elapsed_seconds = round(time.monotonic() - started, 3)
        summary.files_scanned = max(summary.files_scanned, self.tracker.snapshot().files_scanned)
        self.last_summary = summary
        log_event("scan_end", msg=f"Scan {summary.state}", **summary.to_dict())
        if persist:
            with _storage("meta"):
                with self.db.transaction():
                    self.db.set_meta(LAST_SCAN_META_KEY, json.dumps(summary.to_dict()))

    # ------------------------------------------------------------------
    # Maintenance helpers
    # ------------------------------------------------------------------

    def index_file(self, path: Union[str, Path]) -> Optional[TrackRecord]:
        """Extract and upsert a single file, refreshing its aggregates.

        Raises ``ExtractionError`` / ``UnsupportedFormatError`` for files that
        cannot be indexed and ``StorageWriteError`` on store failures.
        """
        p = Path(path).expanduser().absolute()
        try:
            st = p.stat()
        except OSError as e:
            raise ExtractionError(str(p), cause=e) from e
        af = AudioFile(path=p, size=st.st_size, mtime_ns=st.st_mtime_ns)
        meta = self._extract(af)
        self._reset_dirty()
        self.store(meta, af)
        self._flush_aggregates()
        self.reconcile_orphans()
        with _storage("read", str(p)):
            return self.db.get_track_by_path(str(p))

    def find_modified_paths(self) -> List[str]:
        """Indexed files that still exist but whose size or mtime changed."""
        with _storage("load"):
            known = self.db.known_fingerprints()
        modified: List[str] = []
        for path, fingerprint in known.items():
            try:
                st = Path(path).stat()
            except OSError:
                continue
            if (st.st_size, st.st_mtime_ns) != fingerprint:
                modified.append(path)
        return sorted(modified)

    def remove_deleted_tracks(self) -> int:
        """Drop tracks whose files no longer exist, then fix aggregates and orphans."""
        with _storage("load"):
            known = self.db.known_paths()
        gone = sorted(p for p in known if not Path(p).exists())
        self._reset_dirty()
        deleted = self._delete_paths(gone)
        self._flush_aggregates()
        self.reconcile_orphans()
        if deleted:
            logger.info(f"Removed {deleted} deleted tracks")
        return deleted

    def last_scan_from_store(self) -> Optional[Dict[str, Any]]:
        with _storage("read"):
            raw = self.db.get_meta(LAST_SCAN_META_KEY)
        return json.loads(raw) if raw else None


__all__ = ["ScanMode", "ScanSummary", "LibraryIndexer", "LAST_SCAN_META_KEY"]
