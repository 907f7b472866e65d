"""Scan control surface and read access for playback and browsing.

``LibraryService`` runs at most one scan at a time on a background thread.
Starting a second scan either raises ``ScanInProgressError`` ("reject") or
cancels the running one and waits for it before starting ("replace").
"""
from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from loguru import logger

from .db import LibraryDB
from .errors import ScanInProgressError, StorageWriteError
from .indexer import LibraryIndexer, ScanMode, ScanSummary
from .models import AlbumRecord, ArtistRecord, PlayableItem, TrackRecord, now_ms
from .progress import ProgressStream, ScanProgress, ScanProgressTracker, ScanState


class LibraryService:
    def __init__(
        self,
        db: LibraryDB,
        indexer: LibraryIndexer,
        *,
        conflict_policy: str = "reject",
        progress_buffer: int = 64,
    ) -> None:
        if conflict_policy not in ("reject", "replace"):
            raise ValueError(f"unknown scan conflict policy: {conflict_policy}")
        self.db = db
        self.indexer = indexer
        self.tracker: ScanProgressTracker = indexer.tracker
        self.conflict_policy = conflict_policy
        self.progress_buffer = progress_buffer
        self._start_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._error: Optional[BaseException] = None

    # ------------------------------------------------------------------
    # Scan control
    # ------------------------------------------------------------------

    @property
    def is_scanning(self) -> bool:
        t = self._thread
        return t is not None and t.is_alive()

    @property
    def last_summary(self) -> Optional[ScanSummary]:
        return self.indexer.last_summary

    def start_full_scan(self) -> None:
        self._start(ScanMode.FULL, None)

    def start_quick_scan(self) -> None:
        self._start(ScanMode.QUICK, None)

    def start_folder_scan(self, folder: Union[str, Path], mode: ScanMode = ScanMode.FULL) -> None:
        self._start(mode, [Path(folder)])

    def _start(self, mode: ScanMode, roots: Optional[List[Path]]) -> None:
        with self._start_lock:
            if self.is_scanning:
                if self.conflict_policy == "reject":
                    raise ScanInProgressError("a scan is already in progress")
                logger.info("Cancelling running scan to start a new one")
                self.indexer.stop_scan()
                if self._thread is not None:
                    self._thread.join()

            self._error = None
            # No scan thread is alive, so any pending stop request is stale
            self.indexer.reset_stop()
            # Stream subscribers must not mistake the previous terminal state for this scan's
            self.tracker.reset()
            self._thread = threading.Thread(
                target=self._run, args=(mode, roots), name=f"hli-scan-{mode.value}", daemon=True
            )
            self._thread.start()

    def _run(self, mode: ScanMode, roots: Optional[Iterable[Path]]) -> None:
        try:
            for _ in self.indexer.run_scan(mode, roots):
                pass
        except Exception as e:
            self._error = e
            logger.exception(f"Scan thread crashed: {e}")
            # Progress consumers wait for a terminal snapshot
            if not self.tracker.state.is_terminal:
                if not self.tracker.is_scanning:
                    self.tracker.start(0)
                self.tracker.fail(str(e))
        finally:
            self.db.close()

    def stop_scan(self) -> None:
        """Request cancellation and return immediately."""
        if self.is_scanning:
            self.indexer.stop_scan()

    def wait(self, timeout: Optional[float] = None) -> Optional[ScanSummary]:
        """Block until the current scan ends and return its summary.

        Re-raises the storage error of a failed scan.
        """
        t = self._thread
        if t is not None:
            t.join(timeout)
            if t.is_alive():
                return None
        if self._error is not None:
            raise self._error
        if self.indexer.last_error is not None and self.tracker.state is ScanState.FAILED:
            raise self.indexer.last_error
        return self.indexer.last_summary

    def open_progress_stream(self, maxlen: Optional[int] = None) -> ProgressStream:
        stream = ProgressStream(maxlen or self.progress_buffer)
        self.tracker.subscribe(stream)
        snap = self.tracker.snapshot()
        if snap.is_complete:
            stream.put(snap)
        elif snap.state is ScanState.IDLE and not self.is_scanning:
            stream.close()
        return stream

    def progress(self, maxlen: Optional[int] = None) -> Iterator[ScanProgress]:
        """Iterate progress snapshots of the current scan, ending with its terminal one."""
        stream = self.open_progress_stream(maxlen)
        try:
            yield from stream
        finally:
            self.tracker.unsubscribe(stream)
            stream.close()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def _require_idle(self) -> None:
        if self.is_scanning:
            raise ScanInProgressError("library is being scanned")

    def index_file(self, path: Union[str, Path]) -> Optional[TrackRecord]:
        self._require_idle()
        return self.indexer.index_file(path)

    def find_modified_paths(self) -> List[str]:
        return self.indexer.find_modified_paths()

    def remove_deleted_tracks(self) -> int:
        self._require_idle()
        return self.indexer.remove_deleted_tracks()

    # ------------------------------------------------------------------
    # User state
    # ------------------------------------------------------------------

    def record_play(self, track_id: str) -> bool:
        self._require_idle()
        try:
            with self.db.transaction():
                return self.db.record_play(track_id, now_ms())
        except sqlite3.Error as e:
            raise StorageWriteError("record_play", track_id, e) from e

    def set_favorite(self, track_id: str, is_favorite: bool = True, kind: str = "track") -> bool:
        """Flag a track, album or artist as favorite."""
        self._require_idle()
        table = {"track": "tracks", "album": "albums", "artist": "artists"}.get(kind)
        if table is None:
            raise ValueError(f"unknown kind: {kind}")
        try:
            with self.db.transaction():
                return self.db.set_favorite(table, track_id, is_favorite)
        except sqlite3.Error as e:
            raise StorageWriteError("set_favorite", track_id, e) from e

    def set_eq_preset(self, track_id: str, preset: Optional[str]) -> bool:
        self._require_idle()
        try:
            with self.db.transaction():
                return self.db.set_eq_preset(track_id, preset)
        except sqlite3.Error as e:
            raise StorageWriteError("set_eq_preset", track_id, e) from e

    # ------------------------------------------------------------------
    # Playback access
    # ------------------------------------------------------------------

    def get_track(self, track_id: str) -> Optional[TrackRecord]:
        return self.db.get_track(track_id)

    def get_track_by_path(self, path: Union[str, Path]) -> Optional[TrackRecord]:
        return self.db.get_track_by_path(str(Path(path).expanduser().absolute()))

    def playable_item(self, track_id: str) -> Optional[PlayableItem]:
        track = self.db.get_track(track_id)
        return PlayableItem.from_track(track) if track else None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def all_tracks(self, limit: Optional[int] = None) -> List[TrackRecord]:
        return self.db.all_tracks(limit)

    def hi_res_tracks(self, limit: Optional[int] = None) -> List[TrackRecord]:
        return self.db.hi_res_tracks(limit)

    def tracks_by_album(self, album_id: str) -> List[TrackRecord]:
        return self.db.tracks_by_album(album_id)

    def tracks_by_artist(self, artist_id: str) -> List[TrackRecord]:
        return self.db.tracks_by_artist(artist_id)

    def search(self, query: str, limit: Optional[int] = None) -> List[TrackRecord]:
        return self.db.search_tracks(query, limit)

    def favorite_tracks(self) -> List[TrackRecord]:
        return self.db.favorite_tracks()

    def recently_added(self, limit: int = 20) -> List[TrackRecord]:
        return self.db.recently_added_tracks(limit)

    def albums(self) -> List[AlbumRecord]:
        return self.db.albums()

    def hi_res_albums(self) -> List[AlbumRecord]:
        return self.db.albums(hi_res_only=True)

    def albums_by_artist(self, artist_id: str) -> List[AlbumRecord]:
        return self.db.albums_by_artist(artist_id)

    def get_album(self, album_id: str) -> Optional[AlbumRecord]:
        return self.db.get_album(album_id)

    def artists(self) -> List[ArtistRecord]:
        return self.db.artists()

    def get_artist(self, artist_id: str) -> Optional[ArtistRecord]:
        return self.db.get_artist(artist_id)

    def years(self) -> List[int]:
        return self.db.years()

    def stats(self) -> Dict[str, Any]:
        return self.db.stats()


__all__ = ["LibraryService"]
