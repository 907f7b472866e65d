"""Shared fixtures: real WAV files built with the ``wave`` module, tagged via mutagen."""
import wave
from pathlib import Path
from typing import Optional

import pytest

from hli.db import LibraryDB
from hli.indexer import LibraryIndexer
from hli.progress import ScanProgressTracker


def write_wav(
    path: Path,
    *,
    seconds: float = 0.2,
    rate: int = 44100,
    sample_width: int = 2,
    channels: int = 2,
    title: Optional[str] = None,
    artist: Optional[str] = None,
    album: Optional[str] = None,
    track: Optional[str] = None,
    year: Optional[str] = None,
    genre: Optional[str] = None,
) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    frames = int(rate * seconds)
    with wave.open(str(path), "wb") as w:
        w.setnchannels(channels)
        w.setsampwidth(sample_width)
        w.setframerate(rate)
        w.writeframes(b"\x00" * frames * sample_width * channels)

    frames_to_add = [
        ("TIT2", title),
        ("TPE1", artist),
        ("TALB", album),
        ("TRCK", track),
        ("TDRC", year),
        ("TCON", genre),
    ]
    if any(v is not None for _, v in frames_to_add):
        from mutagen import id3
        from mutagen.wave import WAVE

        audio = WAVE(str(path))
        audio.add_tags()
        for frame_id, value in frames_to_add:
            if value is not None:
                audio.tags.add(getattr(id3, frame_id)(encoding=3, text=[value]))
        audio.save()
    return path


def write_corrupt(path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"this is not audio" * 100)
    return path


@pytest.fixture
def wav(tmp_path):
    """Factory: wav("Artist/Album/01.wav", title=...) -> absolute path."""
    root = tmp_path / "music"

    def _make(rel: str, **kwargs) -> Path:
        return write_wav(root / rel, **kwargs)

    _make.root = root
    return _make


@pytest.fixture
def library(tmp_path):
    """10 tagged WAVs by two artists plus 2 corrupt files."""
    root = tmp_path / "music"
    for i in range(1, 7):
        write_wav(
            root / "Alpha" / "First Light" / f"{i:02d} - Song {i}.wav",
            title=f"Song {i}", artist="Alpha", album="First Light", track=f"{i}/6", year="2021", genre="Jazz",
        )
    for i in range(1, 5):
        write_wav(
            root / "Beta" / "Second Wind" / f"{i:02d} - Tune {i}.wav",
            title=f"Tune {i}", artist="Beta", album="Second Wind", track=str(i), year="2019",
        )
    write_corrupt(root / "Broken" / "bad.flac")
    write_corrupt(root / "Broken" / "bad.wav")
    return root


@pytest.fixture
def db(tmp_path):
    d = LibraryDB(tmp_path / "library.db")
    d.ensure_schema()
    yield d
    d.close()


@pytest.fixture
def make_indexer(db):
    def _make(roots, **kwargs) -> LibraryIndexer:
        kwargs.setdefault("workers", 2)
        tracker = kwargs.pop("tracker", None) or ScanProgressTracker(log_interval=0)
        return LibraryIndexer(db, tracker=tracker, library_roots=roots, **kwargs)

    return _make
