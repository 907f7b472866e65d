import sqlite3
import time
from unittest.mock import patch

import pytest

from hli.errors import ScanInProgressError, StorageWriteError
from hli.indexer import LibraryIndexer, ScanMode
from hli.metadata import MetadataExtractor
from hli.progress import ScanProgressTracker, ScanState
from hli.service import LibraryService


class SlowExtractor(MetadataExtractor):
    def __init__(self, delay=0.1):
        super().__init__()
        self.delay = delay

    def extract(self, path):
        time.sleep(self.delay)
        return super().extract(path)


@pytest.fixture
def make_service(db):
    def _make(roots, *, slow=False, policy="reject"):
        indexer = LibraryIndexer(
            db,
            SlowExtractor() if slow else None,
            tracker=ScanProgressTracker(log_interval=0),
            library_roots=roots,
            workers=1 if slow else 2,
        )
        return LibraryService(db, indexer, conflict_policy=policy)

    return _make


def test_full_scan_in_background(library, make_service):
    service = make_service([library])
    service.start_full_scan()
    snaps = list(service.progress())
    summary = service.wait(timeout=30)

    assert snaps[-1].state is ScanState.COMPLETED
    assert summary.state == "completed"
    assert summary.inserted == 10
    assert summary.skipped == 2
    assert not service.is_scanning
    assert service.stats()["tracks"] == 10
    assert service.last_summary is summary


def test_progress_when_idle_ends_immediately(make_service, tmp_path):
    service = make_service([tmp_path])
    assert list(service.progress()) == []


def test_reject_policy(library, make_service):
    service = make_service([library], slow=True)
    service.start_full_scan()
    try:
        with pytest.raises(ScanInProgressError):
            service.start_quick_scan()
        with pytest.raises(ScanInProgressError):
            service.record_play("track_x")
        with pytest.raises(ScanInProgressError):
            service.set_favorite("track_x")
        with pytest.raises(ScanInProgressError):
            service.index_file(library / "Alpha" / "First Light" / "01 - Song 1.wav")
    finally:
        service.stop_scan()
    summary = service.wait(timeout=30)
    assert summary.state == "cancelled"


def test_replace_policy_cancels_running_scan(library, make_service):
    service = make_service([library], slow=True, policy="replace")
    terminal = []
    service.tracker.subscribe(lambda s: s.state.is_terminal and terminal.append(s.state))

    service.start_full_scan()
    service.start_quick_scan()
    summary = service.wait(timeout=30)

    assert terminal == [ScanState.CANCELLED, ScanState.COMPLETED]
    assert summary.mode == ScanMode.QUICK.value
    assert summary.state == "completed"


def test_folder_scan(library, make_service):
    service = make_service([library])
    service.start_folder_scan(library / "Beta")
    summary = service.wait(timeout=30)
    assert summary.files_scanned == 4
    assert [a.name for a in service.artists()] == ["Beta"]


def test_storage_failure_surfaces_from_wait(library, make_service, db):
    service = make_service([library])
    with patch.object(db, "upsert_track", side_effect=sqlite3.OperationalError("database is locked")):
        service.start_full_scan()
        snaps = list(service.progress())
        with pytest.raises(StorageWriteError) as exc:
            service.wait(timeout=30)
    assert snaps[-1].state is ScanState.FAILED
    assert exc.value.operation == "upsert"


def test_playback_and_user_state(library, make_service):
    service = make_service([library])
    service.start_full_scan()
    service.wait(timeout=30)

    path = library / "Alpha" / "First Light" / "03 - Song 3.wav"
    track = service.get_track_by_path(path)
    item = service.playable_item(track.id)
    assert item.file_path == str(path)
    assert item.format == "WAV"
    assert item.sample_rate == 44100
    assert item.bit_depth == 16
    assert not item.is_high_res
    assert service.playable_item("track_missing") is None

    assert service.record_play(track.id)
    assert service.set_favorite(track.id)
    assert service.set_favorite(track.album_id, kind="album")
    assert service.set_eq_preset(track.id, "flat")
    with pytest.raises(ValueError):
        service.set_favorite(track.id, kind="playlist")

    again = service.get_track(track.id)
    assert again.play_count == 1
    assert again.is_favorite
    assert again.eq_preset == "flat"
    assert [t.id for t in service.favorite_tracks()] == [track.id]
    assert service.get_album(track.album_id).is_favorite
    assert service.get_artist(track.artist_id).play_count == 1

    assert len(service.tracks_by_album(track.album_id)) == 6
    assert {t.title for t in service.search("tune")} == {"Tune 1", "Tune 2", "Tune 3", "Tune 4"}
    assert service.years() == [2021, 2019]
    assert service.hi_res_albums() == []


def test_unknown_conflict_policy(db, tmp_path):
    indexer = LibraryIndexer(db, library_roots=[tmp_path])
    with pytest.raises(ValueError):
        LibraryService(db, indexer, conflict_policy="queue")
