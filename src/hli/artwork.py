"""Artwork extraction and caching.

The indexer only depends on ``extract_artwork(path) -> Optional[str]``.
``CachedArtworkExtractor`` looks for embedded cover art first (FLAC picture
blocks, ID3 APIC frames, MP4 ``covr`` atoms, base64 METADATA_BLOCK_PICTURE
comments, APEv2 cover items), then for image files next to the audio file,
and stores a resized JPEG in a cache directory keyed by path and mtime.
"""
from __future__ import annotations

import base64
import hashlib
from io import BytesIO
from pathlib import Path
from typing import Any, List, Optional, Protocol, Union

from loguru import logger


ARTWORK_FILENAMES = (
    "cover.jpg", "cover.jpeg", "cover.png",
    "folder.jpg", "folder.jpeg", "folder.png",
    "albumart.jpg", "albumart.jpeg", "albumart.png",
    "front.jpg", "front.jpeg", "front.png",
    "artwork.jpg", "artwork.jpeg", "artwork.png",
)
IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png", ".bmp", ".gif")


class ArtworkProvider(Protocol):
    def extract_artwork(self, path: Union[str, Path]) -> Optional[str]:
        ...


class NullArtworkExtractor:
    """Used when artwork extraction is disabled."""

    def extract_artwork(self, path: Union[str, Path]) -> Optional[str]:
        return None


def is_valid_image_data(data: Optional[bytes]) -> bool:
    if not data or len(data) < 8:
        return False
    return (
        data[:3] == b"\xff\xd8\xff"  # JPEG
        or data[:8] == b"\x89PNG\r\n\x1a\n"
        or data[:6] in (b"GIF87a", b"GIF89a")
        or data[:2] == b"BM"
        or (data[:4] == b"RIFF" and data[8:12] == b"WEBP")
    )


def _picture_from_block(raw: bytes) -> Optional[bytes]:
    from mutagen.flac import Picture

    pic = Picture(raw)
    return bytes(pic.data) if getattr(pic, "data", None) else None


def _front_or_only(pictures: List[Any]) -> Optional[bytes]:
    """Front cover (type 3) if present, else the single picture if there is exactly one."""
    for pic in pictures:
        if getattr(pic, "type", None) == 3 and getattr(pic, "data", None):
            return bytes(pic.data)
    if len(pictures) == 1 and getattr(pictures[0], "data", None):
        return bytes(pictures[0].data)
    return None


def embedded_cover(audio: Any) -> Optional[bytes]:
    """Return raw image bytes for the front cover of a mutagen file object."""
    # FLAC PICTURE blocks
    pictures = list(getattr(audio, "pictures", None) or [])
    found = _front_or_only(pictures)
    if found:
        return found

    tags = getattr(audio, "tags", None)
    if not tags:
        return None

    # ID3 (MP3, AIFF, WAV, DSF)
    getall = getattr(tags, "getall", None)
    if callable(getall):
        try:
            found = _front_or_only(list(getall("APIC")))
        except Exception:
            found = None
        if found:
            return found

    # MP4 covr atom
    try:
        covr = tags.get("covr")
    except (KeyError, ValueError, TypeError):
        covr = None
    if covr:
        return bytes(covr[0])

    # Ogg Vorbis/Opus: base64 METADATA_BLOCK_PICTURE comments
    try:
        mbp_values = list(tags.get("metadata_block_picture") or [])
    except (KeyError, ValueError, TypeError):
        mbp_values = []
    for val in mbp_values:
        try:
            data = _picture_from_block(base64.b64decode(val))
        except Exception:
            continue
        if data:
            return data

    # APEv2 binary item: "<filename>\0<image bytes>"
    try:
        ape = tags.get("Cover Art (Front)")
    except (KeyError, ValueError, TypeError):
        ape = None
    value = getattr(ape, "value", None)
    if isinstance(value, (bytes, bytearray)) and b"\x00" in value:
        return bytes(value.split(b"\x00", 1)[1])

    return None


def find_directory_artwork(directory: Path) -> Optional[bytes]:
    """Look for conventional cover files, then any image, in a directory."""
    if not directory.is_dir():
        return None
    for name in ARTWORK_FILENAMES:
        candidate = directory / name
        if candidate.is_file():
            data = candidate.read_bytes()
            if is_valid_image_data(data):
                logger.debug(f"Found directory artwork: {candidate}")
                return data
    for candidate in sorted(directory.iterdir()):
        if candidate.is_file() and candidate.suffix.lower() in IMAGE_SUFFIXES:
            data = candidate.read_bytes()
            if is_valid_image_data(data):
                logger.debug(f"Found directory image file: {candidate}")
                return data
    return None


def resize_to_jpeg(img_data: bytes, max_size: int, quality: int = 85) -> bytes:
    """Scale an image so its larger side is at most max_size; re-encode as JPEG."""
    from PIL import Image

    img = Image.open(BytesIO(img_data))
    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    if img.width > max_size or img.height > max_size:
        img.thumbnail((max_size, max_size))
    out = BytesIO()
    img.save(out, format="JPEG", quality=quality)
    return out.getvalue()


class CachedArtworkExtractor:
    """Extract artwork for an audio file into ``cache_dir`` and return its path."""

    def __init__(self, cache_dir: Path, max_size: int = 512, quality: int = 85) -> None:
        self.cache_dir = Path(cache_dir)
        self.max_size = max_size
        self.quality = quality

    def cache_path_for(self, audio_path: Path) -> Path:
        st = audio_path.stat()
        key = hashlib.sha1(f"{audio_path}|{st.st_mtime_ns}".encode("utf-8")).hexdigest()
        return self.cache_dir / f"{key}.jpg"

    def extract_artwork(self, path: Union[str, Path]) -> Optional[str]:
        audio_path = Path(path)
        try:
            return self._extract(audio_path)
        except Exception as e:
            # Artwork is best-effort: any failure means "no artwork"
            logger.bind(action="artwork", file=str(audio_path), status="warn").warning(
                f"Artwork extraction failed: {e}"
            )
            return None

    def _extract(self, audio_path: Path) -> Optional[str]:
        if not audio_path.is_file():
            return None
        cached = self.cache_path_for(audio_path)
        if cached.exists():
            return str(cached)

        data = self._embedded(audio_path)
        if data is None:
            data = find_directory_artwork(audio_path.parent)
        if data is None:
            return None

        jpeg = resize_to_jpeg(data, self.max_size, self.quality)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        tmp = cached.with_suffix(".tmp")
        tmp.write_bytes(jpeg)
        tmp.replace(cached)
        logger.debug(f"Cached artwork: {cached}")
        return str(cached)

    @staticmethod
    def _embedded(audio_path: Path) -> Optional[bytes]:
        from mutagen import File as MutagenFile

        try:
            audio = MutagenFile(str(audio_path))
        except Exception:
            return None
        if audio is None:
            return None
        data = embedded_cover(audio)
        return data if is_valid_image_data(data) else None


__all__ = [
    "ARTWORK_FILENAMES",
    "ArtworkProvider",
    "NullArtworkExtractor",
    "CachedArtworkExtractor",
    "embedded_cover",
    "find_directory_artwork",
    "is_valid_image_data",
    "resize_to_jpeg",
]
