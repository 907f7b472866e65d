"""Metadata extraction using mutagen with a container-level fallback.

Two probes run per file:

- the primary probe opens the file with ``mutagen.File`` and reads tags
  (ID3, Vorbis comments, MP4 atoms, ASF, APEv2) plus stream info;
- the fallback probe only sniffs the container signature and file size. It
  runs when mutagen fails or does not recognise the file.

Results are merged field by field (primary, then fallback, then defaults)
into a ``TrackMetadata``. A file both probes reject raises
``ExtractionError`` and is skipped by the indexer.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

from loguru import logger

from .errors import (
    ExtractionError,
    ExtractionErrorKind,
    FileAccessError,
    TagParseError,
    UnsupportedFormatError,
)
from .formats import (
    SUPPORTED_EXTENSIONS,
    canonical_format,
    classify,
    estimate_bit_depth,
    extension_of,
    is_supported_extension,
)


UNKNOWN_ARTIST = "Unknown Artist"
UNKNOWN_ALBUM = "Unknown Album"
DEFAULT_CHANNELS = 2

# Tag keys tried in order across ID3, MP4, Vorbis/Opus/FLAC, APEv2 and ASF
TITLE_KEYS = ["TIT2", "\xa9nam", "title", "Title"]
ARTIST_KEYS = [
    "TPE1", "\xa9ART", "artist", "Artist", "Author",
    "TPE2", "aART", "albumartist", "Album Artist", "WM/AlbumArtist",
]
ALBUM_KEYS = ["TALB", "\xa9alb", "album", "Album", "WM/AlbumTitle"]
GENRE_KEYS = ["TCON", "\xa9gen", "genre", "Genre", "WM/Genre"]
YEAR_KEYS = ["TDRC", "TYER", "TDOR", "\xa9day", "date", "year", "Year", "WM/Year", "originaldate"]
TRACK_KEYS = ["TRCK", "trkn", "tracknumber", "Track", "WM/TrackNumber"]
DISC_KEYS = ["TPOS", "disk", "discnumber", "Disc", "WM/PartOfSet"]
REPLAY_GAIN_KEYS = [
    "TXXX:REPLAYGAIN_TRACK_GAIN",
    "TXXX:replaygain_track_gain",
    "----:com.apple.iTunes:replaygain_track_gain",
    "----:com.apple.iTunes:REPLAYGAIN_TRACK_GAIN",
    "replaygain_track_gain",
    "REPLAYGAIN_TRACK_GAIN",
]

_YEAR_RE = re.compile(r"\d{4}")
_GAIN_RE = re.compile(r"[-+]?\d+(?:\.\d+)?")
_LEADING_TRACKNO_RE = re.compile(r"^\d+[\s\-\._]*")
_BRACKETS_RE = re.compile(r"\[.*?\]")
_PARENS_RE = re.compile(r"\(.*?\)")
_SPACES_RE = re.compile(r"\s+")

_ASF_GUID = bytes.fromhex("3026b2758e66cf11a6d900aa0062ce6c")


@dataclass
class TrackMetadata:
    """Metadata for one audio file, ready to be upserted."""

    file_path: str
    file_size: int
    title: str
    artist: str
    album: str
    duration_ms: int
    format: str
    bitrate: Optional[int] = None  # kbps
    sample_rate: Optional[int] = None
    bit_depth: Optional[int] = None
    channels: Optional[int] = DEFAULT_CHANNELS
    track_number: Optional[int] = None
    disc_number: Optional[int] = None
    year: Optional[int] = None
    genre: Optional[str] = None
    artwork_path: Optional[str] = None
    replay_gain: Optional[float] = None

    @property
    def is_high_res(self) -> bool:
        return classify(self.format, self.sample_rate, self.bit_depth)

    def with_artwork(self, artwork_path: Optional[str]) -> "TrackMetadata":
        return replace(self, artwork_path=artwork_path)

    def to_dict(self) -> Dict[str, Any]:
        d = dict(self.__dict__)
        d["is_high_res"] = self.is_high_res
        return d


@dataclass
class ProbeResult:
    """Partial metadata from a single probe; absent fields stay None."""

    source: str
    format: Optional[str] = None
    file_size: Optional[int] = None
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    genre: Optional[str] = None
    year: Optional[int] = None
    track_number: Optional[int] = None
    disc_number: Optional[int] = None
    duration_ms: Optional[int] = None
    bitrate: Optional[int] = None
    sample_rate: Optional[int] = None
    bit_depth: Optional[int] = None
    channels: Optional[int] = None
    replay_gain: Optional[float] = None
    extra: Dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Field parsing
# ---------------------------------------------------------------------------

def _parse_leading_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    head = str(value).split("/", 1)[0].strip()
    if not head:
        return None
    try:
        return int(head)
    except ValueError:
        return None


def parse_track_number(value: Optional[str]) -> Optional[int]:
    """'3', '03' and '03/12' -> 3; '' or garbage -> None."""
    return _parse_leading_int(value)


def parse_disc_number(value: Optional[str]) -> Optional[int]:
    """'1' and '1/2' -> 1; '' or garbage -> None."""
    return _parse_leading_int(value)


def parse_year(value: Optional[str]) -> Optional[int]:
    """First 4-digit run: '2023' and '2023-05-01' -> 2023."""
    if not value:
        return None
    m = _YEAR_RE.search(str(value))
    return int(m.group(0)) if m else None


def parse_replay_gain(value: Optional[str]) -> Optional[float]:
    """'-6.52 dB' -> -6.52."""
    if not value:
        return None
    m = _GAIN_RE.search(str(value))
    if not m:
        return None
    try:
        return float(m.group(0))
    except ValueError:
        return None


def title_from_filename(filename: Union[str, Path]) -> str:
    """Derive a display title from a file name when no title tag exists.

    '01 - Song_Title (Remix) [Bonus].flac' -> 'Song Title'
    """
    stem = Path(filename).stem
    cleaned = _LEADING_TRACKNO_RE.sub("", stem)
    cleaned = _BRACKETS_RE.sub("", cleaned)
    cleaned = _PARENS_RE.sub("", cleaned)
    cleaned = cleaned.replace("_", " ")
    cleaned = _SPACES_RE.sub(" ", cleaned).strip()
    return cleaned or stem


# ---------------------------------------------------------------------------
# Primary probe (mutagen)
# ---------------------------------------------------------------------------

def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, list):
        if not value:
            return None
        value = value[0]
    if isinstance(value, tuple):
        # MP4 trkn/disk are (number, total)
        value = value[0] if value else None
        if value is None:
            return None
    if isinstance(value, (bytes, bytearray)):
        value = bytes(value).decode("utf-8", errors="replace")
    text = str(value)
    # ID3 text frames join multiple values with NUL
    text = text.split("\x00", 1)[0].strip()
    return text or None


def get_tag_value(audio: Any, keys: Iterable[str]) -> Optional[str]:
    """Get the first non-empty tag value, trying multiple possible tag names."""
    for key in keys:
        try:
            value = audio.get(key)
        except (KeyError, ValueError, TypeError):
            # Vorbis comments raise ValueError for keys with non-ASCII characters
            continue
        text = _text(value)
        if text:
            return text
    return None


def _positive_int(value: Any) -> Optional[int]:
    try:
        v = int(value)
    except (TypeError, ValueError):
        return None
    return v if v > 0 else None


def probe_tags(path: Path) -> Optional[ProbeResult]:
    """Primary probe. Returns None when mutagen has no parser for the file.

    Raises TagParseError when mutagen recognises the container but fails.
    """
    from mutagen import File as MutagenFile, MutagenError

    try:
        audio = MutagenFile(str(path))
    except (MutagenError, OSError) as e:
        raise TagParseError(str(path), str(e)) from e
    except Exception as e:  # malformed frames surface as struct/index errors
        raise TagParseError(str(path), f"{type(e).__name__}: {e}") from e
    if audio is None:
        return None

    fmt = canonical_format(path.suffix)
    info = getattr(audio, "info", None)
    codec = str(getattr(info, "codec", "") or "").lower()
    if fmt == "AAC" and codec == "alac":
        fmt = "ALAC"

    length = getattr(info, "length", None)
    duration_ms = int(round(length * 1000)) if length and length > 0 else None
    bitrate_bps = _positive_int(getattr(info, "bitrate", None))

    return ProbeResult(
        source="tags",
        format=fmt,
        title=get_tag_value(audio, TITLE_KEYS),
        artist=get_tag_value(audio, ARTIST_KEYS),
        album=get_tag_value(audio, ALBUM_KEYS),
        genre=get_tag_value(audio, GENRE_KEYS),
        year=parse_year(get_tag_value(audio, YEAR_KEYS)),
        track_number=parse_track_number(get_tag_value(audio, TRACK_KEYS)),
        disc_number=parse_disc_number(get_tag_value(audio, DISC_KEYS)),
        replay_gain=parse_replay_gain(get_tag_value(audio, REPLAY_GAIN_KEYS)),
        duration_ms=duration_ms,
        bitrate=(bitrate_bps // 1000) if bitrate_bps else None,
        sample_rate=_positive_int(getattr(info, "sample_rate", None)),
        bit_depth=_positive_int(getattr(info, "bits_per_sample", None)),
        channels=_positive_int(getattr(info, "channels", None)),
        extra={"codec": codec} if codec else {},
    )


# ---------------------------------------------------------------------------
# Fallback probe (container signature)
# ---------------------------------------------------------------------------

def _skip_id3(head: bytes) -> int:
    """Offset of the first byte after a leading ID3v2 tag, 0 if none."""
    if len(head) < 10 or head[:3] != b"ID3":
        return 0
    size = (head[6] & 0x7F) << 21 | (head[7] & 0x7F) << 14 | (head[8] & 0x7F) << 7 | (head[9] & 0x7F)
    footer = 10 if head[5] & 0x10 else 0
    return 10 + size + footer


def _mpeg_sync(b: bytes) -> bool:
    return len(b) >= 2 and b[0] == 0xFF and (b[1] & 0xE0) == 0xE0


def _adts_sync(b: bytes) -> bool:
    return len(b) >= 2 and b[0] == 0xFF and (b[1] & 0xF6) == 0xF0


def signature_matches(ext: str, head: bytes, body: bytes) -> bool:
    """Check the container signature for an extension.

    ``head`` is the start of the file; ``body`` starts after any ID3v2 tag.
    """
    ext = ext.lower()
    if ext == "flac":
        return body[:4] == b"fLaC"
    if ext == "wav":
        return head[:4] in (b"RIFF", b"RF64") and head[8:12] == b"WAVE"
    if ext in ("aiff", "aif"):
        return head[:4] == b"FORM" and head[8:12] in (b"AIFF", b"AIFC")
    if ext == "mp3":
        return head[:3] == b"ID3" or _mpeg_sync(body)
    if ext == "aac":
        return body[:4] == b"ADIF" or _adts_sync(body) or head[4:8] == b"ftyp"
    if ext in ("m4a", "alac"):
        return head[4:8] == b"ftyp"
    if ext in ("ogg", "opus"):
        return head[:4] == b"OggS"
    if ext == "wma":
        return head[:16] == _ASF_GUID
    if ext == "ape":
        return body[:4] == b"MAC "
    if ext == "dsf":
        return head[:4] == b"DSD "
    if ext == "dff":
        return head[:4] == b"FRM8"
    if ext == "dsd":
        return head[:4] in (b"DSD ", b"FRM8")
    return False


def probe_container(path: Path, file_size: int) -> Optional[ProbeResult]:
    """Fallback probe: verify the container signature and report size/format.

    Returns None when the signature does not match (corrupt or mislabelled).
    """
    if file_size <= 0:
        return None
    ext = extension_of(path)
    with path.open("rb") as f:
        head = f.read(64)
        offset = _skip_id3(head)
        if offset:
            f.seek(offset)
            body = f.read(16)
        else:
            body = head
    if not signature_matches(ext, head, body):
        return None
    return ProbeResult(source="container", format=canonical_format(ext), file_size=file_size)


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def _first(*values: Any) -> Any:
    for v in values:
        if v is not None:
            return v
    return None


def merge_probes(
    path: Path,
    file_size: int,
    primary: Optional[ProbeResult],
    fallback: Optional[ProbeResult],
) -> TrackMetadata:
    """Combine probe results: primary value, else fallback value, else default."""
    p = primary or ProbeResult(source="none")
    fb = fallback or ProbeResult(source="none")
    fmt = _first(p.format, fb.format) or canonical_format(path.suffix)
    return TrackMetadata(
        file_path=str(path),
        file_size=_first(p.file_size, fb.file_size, file_size),
        title=_first(p.title, fb.title) or title_from_filename(path.name),
        artist=_first(p.artist, fb.artist) or UNKNOWN_ARTIST,
        album=_first(p.album, fb.album) or UNKNOWN_ALBUM,
        duration_ms=_first(p.duration_ms, fb.duration_ms) or 0,
        format=fmt,
        bitrate=_first(p.bitrate, fb.bitrate),
        sample_rate=_first(p.sample_rate, fb.sample_rate),
        bit_depth=estimate_bit_depth(fmt, _first(p.bit_depth, fb.bit_depth)),
        channels=_first(p.channels, fb.channels) or DEFAULT_CHANNELS,
        track_number=_first(p.track_number, fb.track_number),
        disc_number=_first(p.disc_number, fb.disc_number),
        year=_first(p.year, fb.year),
        genre=_first(p.genre, fb.genre),
        replay_gain=_first(p.replay_gain, fb.replay_gain),
    )


class MetadataExtractor:
    """Produce a classified ``TrackMetadata`` for one file.

    Read-only and stateless apart from the extension allowlist, so a single
    instance is shared by all extraction workers.
    """

    def __init__(self, extensions: Optional[frozenset[str]] = None) -> None:
        self.extensions = extensions if extensions is not None else SUPPORTED_EXTENSIONS

    def is_audio_file(self, path: Union[str, Path]) -> bool:
        return is_supported_extension(Path(path).suffix, self.extensions)

    def extract(self, path: Union[str, Path]) -> TrackMetadata:
        p = Path(path)
        if not self.is_audio_file(p):
            raise UnsupportedFormatError(str(p))

        try:
            st = p.stat()
            with p.open("rb"):
                pass
        except PermissionError as e:
            raise ExtractionError(
                str(p), ExtractionErrorKind.ACCESS_DENIED, FileAccessError(str(p), "permission denied")
            ) from e
        except OSError as e:
            raise ExtractionError(str(p), ExtractionErrorKind.UNREADABLE, FileAccessError(str(p), str(e))) from e

        primary: Optional[ProbeResult] = None
        primary_error: Optional[TagParseError] = None
        try:
            primary = probe_tags(p)
        except TagParseError as e:
            primary_error = e
            logger.debug(f"Tag probe failed, trying container probe: {p} ({e.reason})")

        fallback: Optional[ProbeResult] = None
        if primary is None:
            try:
                fallback = probe_container(p, st.st_size)
            except OSError as e:
                raise ExtractionError(str(p), ExtractionErrorKind.UNREADABLE, e) from e
            if fallback is None:
                raise ExtractionError(str(p), ExtractionErrorKind.UNREADABLE, primary_error)

        return merge_probes(p, st.st_size, primary, fallback)


__all__ = [
    "UNKNOWN_ARTIST",
    "UNKNOWN_ALBUM",
    "TrackMetadata",
    "ProbeResult",
    "parse_track_number",
    "parse_disc_number",
    "parse_year",
    "parse_replay_gain",
    "title_from_filename",
    "get_tag_value",
    "probe_tags",
    "probe_container",
    "signature_matches",
    "merge_probes",
    "MetadataExtractor",
]
