"""Persisted library records and their stable identifiers.

Ids are derived from content keys so that re-scanning the same path, artist
name or album always lands on the same row:

- track:  sha1 of the absolute file path
- artist: sha1 of the normalized artist name
- album:  sha1 of normalized ``title|artist``
"""
from __future__ import annotations

import hashlib
import sqlite3
import time
import unicodedata
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional, Type, TypeVar

from .formats import mime_type_for
from .metadata import TrackMetadata


def normalize_name(name: Optional[str]) -> str:
    """Identity key for names: NFC, trimmed, inner whitespace collapsed, casefolded."""
    if not name:
        return ""
    text = unicodedata.normalize("NFC", str(name))
    return " ".join(text.split()).casefold()


def _digest(key: str) -> str:
    return hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]


def track_id_for(file_path: str) -> str:
    return "track_" + _digest(file_path)


def artist_id_for(artist_name: str) -> str:
    return "artist_" + _digest(normalize_name(artist_name))


def album_id_for(album_title: str, artist_name: str) -> str:
    return "album_" + _digest(f"{normalize_name(album_title)}|{normalize_name(artist_name)}")


def now_ms() -> int:
    return int(time.time() * 1000)


R = TypeVar("R")


def _from_row(cls: Type[R], row: sqlite3.Row) -> R:
    keys = set(row.keys())
    kwargs: Dict[str, Any] = {}
    for f in fields(cls):  # type: ignore[arg-type]
        if f.name in keys:
            kwargs[f.name] = row[f.name]
    return cls(**kwargs)


@dataclass
class TrackRecord:
    id: str
    title: str
    file_path: str
    file_size: int
    format: str
    duration_ms: int = 0
    artist_id: Optional[str] = None
    artist_name: Optional[str] = None
    album_id: Optional[str] = None
    album_name: Optional[str] = None
    file_mtime_ns: int = 0
    mime_type: Optional[str] = None
    bitrate: Optional[int] = None
    sample_rate: Optional[int] = None
    bit_depth: Optional[int] = None
    channels: Optional[int] = None
    track_number: Optional[int] = None
    disc_number: Optional[int] = None
    year: Optional[int] = None
    genre: Optional[str] = None
    artwork_path: Optional[str] = None
    play_count: int = 0
    last_played: Optional[int] = None
    date_added: int = 0
    date_modified: int = 0
    is_favorite: bool = False
    is_high_res: bool = False
    eq_preset: Optional[str] = None
    replay_gain: Optional[float] = None

    @classmethod
    def from_metadata(cls, meta: TrackMetadata, mtime_ns: int, ts: Optional[int] = None) -> "TrackRecord":
        """New record with default user state."""
        stamp = ts if ts is not None else now_ms()
        return cls(
            id=track_id_for(meta.file_path),
            title=meta.title,
            artist_id=artist_id_for(meta.artist),
            artist_name=meta.artist,
            album_id=album_id_for(meta.album, meta.artist),
            album_name=meta.album,
            duration_ms=meta.duration_ms,
            file_path=meta.file_path,
            file_size=meta.file_size,
            file_mtime_ns=mtime_ns,
            format=meta.format,
            mime_type=mime_type_for(meta.format),
            bitrate=meta.bitrate,
            sample_rate=meta.sample_rate,
            bit_depth=meta.bit_depth,
            channels=meta.channels,
            track_number=meta.track_number,
            disc_number=meta.disc_number,
            year=meta.year,
            genre=meta.genre,
            artwork_path=meta.artwork_path,
            date_added=stamp,
            date_modified=stamp,
            is_high_res=meta.is_high_res,
            replay_gain=meta.replay_gain,
        )

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "TrackRecord":
        rec = _from_row(cls, row)
        rec.is_favorite = bool(rec.is_favorite)
        rec.is_high_res = bool(rec.is_high_res)
        return rec


@dataclass
class ArtistRecord:
    id: str
    name: str
    track_count: int = 0
    album_count: int = 0
    total_duration_ms: int = 0
    has_hi_res: bool = False
    play_count: int = 0
    last_played: Optional[int] = None
    date_added: int = 0
    date_modified: int = 0
    is_favorite: bool = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ArtistRecord":
        rec = _from_row(cls, row)
        rec.has_hi_res = bool(rec.has_hi_res)
        rec.is_favorite = bool(rec.is_favorite)
        return rec


@dataclass
class AlbumRecord:
    id: str
    title: str
    artist_id: Optional[str] = None
    artist_name: Optional[str] = None
    year: Optional[int] = None
    genre: Optional[str] = None
    total_tracks: int = 0
    total_duration_ms: int = 0
    average_bitrate: Optional[int] = None
    average_sample_rate: Optional[int] = None
    is_high_res: bool = False
    play_count: int = 0
    last_played: Optional[int] = None
    date_added: int = 0
    date_modified: int = 0
    is_favorite: bool = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AlbumRecord":
        rec = _from_row(cls, row)
        rec.is_high_res = bool(rec.is_high_res)
        rec.is_favorite = bool(rec.is_favorite)
        return rec


@dataclass(frozen=True)
class PlayableItem:
    """What a playback engine needs to open and configure a track."""

    track_id: str
    file_path: str
    format: str
    sample_rate: Optional[int]
    bit_depth: Optional[int]
    channels: Optional[int]
    is_high_res: bool
    replay_gain: Optional[float]

    @classmethod
    def from_track(cls, track: TrackRecord) -> "PlayableItem":
        return cls(
            track_id=track.id,
            file_path=track.file_path,
            format=track.format,
            sample_rate=track.sample_rate,
            bit_depth=track.bit_depth,
            channels=track.channels,
            is_high_res=track.is_high_res,
            replay_gain=track.replay_gain,
        )


__all__ = [
    "normalize_name",
    "track_id_for",
    "artist_id_for",
    "album_id_for",
    "now_ms",
    "TrackRecord",
    "ArtistRecord",
    "AlbumRecord",
    "PlayableItem",
]
