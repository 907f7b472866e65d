"""Audio format table: supported extensions, canonical format tags and
hi-res classification.

Formats fall into three families, modelled as small frozen dataclasses:

- ``Lossy``: perceptual codecs (MP3, AAC, OGG, OPUS, WMA). Bit depth is
  meaningless and always reported as absent.
- ``LosslessPcm``: PCM containers and lossless codecs (FLAC, ALAC, WAV, AIFF,
  APE). Carries the assumed bit depth used when tags omit it.
- ``Dsd``: 1-bit Direct Stream Digital (DSF/DFF). Always hi-res.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union


SUPPORTED_EXTENSIONS = frozenset({
    "mp3", "flac", "wav", "aac", "ogg", "m4a", "wma",
    "ape", "dsd", "dsf", "dff", "aiff", "alac", "opus",
})

HI_RES_SAMPLE_RATE = 96_000
HI_RES_BIT_DEPTH = 24

# DSD64, DSD128, DSD256, DSD512
DSD_SAMPLE_RATES = (2_822_400, 5_644_800, 11_289_600, 22_579_200)

_CANONICAL = {
    "mp3": "MP3",
    "flac": "FLAC",
    "wav": "WAV",
    "aac": "AAC",
    "m4a": "AAC",
    "ogg": "OGG",
    "wma": "WMA",
    "ape": "APE",
    "dsd": "DSD",
    "dsf": "DSD",
    "dff": "DSD",
    "aif": "AIFF",
    "aiff": "AIFF",
    "alac": "ALAC",
    "opus": "OPUS",
}

_MIME = {
    "MP3": "audio/mpeg",
    "FLAC": "audio/flac",
    "WAV": "audio/wav",
    "AAC": "audio/aac",
    "M4A": "audio/aac",
    "OGG": "audio/ogg",
    "WMA": "audio/x-ms-wma",
    "APE": "audio/x-ape",
    "AIFF": "audio/aiff",
    "ALAC": "audio/alac",
    "DSD": "audio/dsd",
    "DSF": "audio/dsd",
    "DFF": "audio/dsd",
    "OPUS": "audio/opus",
}

DSD_FORMATS = frozenset({"DSD", "DSF", "DFF"})
HI_RES_LOSSLESS_FORMATS = frozenset({"FLAC", "ALAC", "AIFF"})


@dataclass(frozen=True)
class Lossy:
    codec: str


@dataclass(frozen=True)
class LosslessPcm:
    codec: str
    assumed_bit_depth: Optional[int]


@dataclass(frozen=True)
class Dsd:
    codec: str = "DSD"
    bit_depth: int = 1


FormatFamily = Union[Lossy, LosslessPcm, Dsd]


_FAMILIES: dict[str, FormatFamily] = {
    "MP3": Lossy("MP3"),
    "AAC": Lossy("AAC"),
    "OGG": Lossy("OGG"),
    "OPUS": Lossy("OPUS"),
    "WMA": Lossy("WMA"),
    "FLAC": LosslessPcm("FLAC", 24),
    "ALAC": LosslessPcm("ALAC", 24),
    "WAV": LosslessPcm("WAV", 16),
    "AIFF": LosslessPcm("AIFF", 16),
    "APE": LosslessPcm("APE", None),
    "DSD": Dsd("DSD"),
    "DSF": Dsd("DSF"),
    "DFF": Dsd("DFF"),
}


def normalize_extension(ext: str) -> str:
    """'.FLAC' / 'FLAC' / 'flac' -> 'flac'."""
    return ext.strip().lstrip(".").lower()


def extension_of(path: Union[str, Path]) -> str:
    return normalize_extension(Path(path).suffix)


def is_supported_extension(ext: str, allowed: Optional[frozenset[str]] = None) -> bool:
    return normalize_extension(ext) in (allowed if allowed is not None else SUPPORTED_EXTENSIONS)


def is_audio_file(path: Union[str, Path], allowed: Optional[frozenset[str]] = None) -> bool:
    return is_supported_extension(Path(path).suffix, allowed)


def canonical_format(ext: str) -> str:
    """Map an extension to its canonical uppercase format tag."""
    e = normalize_extension(ext)
    return _CANONICAL.get(e, e.upper())


def format_family(fmt: str) -> Optional[FormatFamily]:
    """Return the family variant for a canonical format tag, None if unknown."""
    return _FAMILIES.get(fmt.upper())


def estimate_bit_depth(fmt: str, probed: Optional[int] = None) -> Optional[int]:
    """Resolve a track's bit depth from the probed value and its family.

    Lossy formats never carry a bit depth, even when the container reports
    one (MP4 AAC streams usually claim 16).
    """
    family = format_family(fmt)
    if isinstance(family, Lossy):
        return None
    if probed is not None and probed > 0:
        return probed
    if isinstance(family, Dsd):
        return family.bit_depth
    if isinstance(family, LosslessPcm):
        return family.assumed_bit_depth
    return None


def classify(fmt: Optional[str], sample_rate: Optional[int], bit_depth: Optional[int]) -> bool:
    """Return True when the format/stream parameters qualify as hi-res."""
    f = (fmt or "").upper()
    if f in DSD_FORMATS:
        return True
    if sample_rate is not None and sample_rate >= HI_RES_SAMPLE_RATE:
        return True
    if bit_depth is not None and bit_depth >= HI_RES_BIT_DEPTH:
        return True
    # Lossless containers with 24-bit content at CD sample rates
    if f in HI_RES_LOSSLESS_FORMATS and (bit_depth or 0) >= HI_RES_BIT_DEPTH:
        return True
    return False


def quality_label(fmt: Optional[str], sample_rate: Optional[int], bit_depth: Optional[int]) -> str:
    """Short human label, e.g. 'DSD128', '24/96', '16/44.1', 'MP3'."""
    family = format_family(fmt or "")
    if isinstance(family, Dsd):
        if sample_rate and sample_rate in DSD_SAMPLE_RATES:
            return f"DSD{sample_rate // 44_100}"
        return "DSD"
    if isinstance(family, Lossy) or not sample_rate:
        return (fmt or "").upper()
    khz = sample_rate / 1000
    khz_text = f"{khz:g}"
    return f"{bit_depth}/{khz_text}" if bit_depth else f"{(fmt or '').upper()} {khz_text}kHz"


def mime_type_for(fmt: str) -> str:
    return _MIME.get(fmt.upper(), "audio/*")


__all__ = [
    "SUPPORTED_EXTENSIONS",
    "HI_RES_SAMPLE_RATE",
    "HI_RES_BIT_DEPTH",
    "DSD_SAMPLE_RATES",
    "Lossy",
    "LosslessPcm",
    "Dsd",
    "FormatFamily",
    "normalize_extension",
    "extension_of",
    "is_supported_extension",
    "is_audio_file",
    "canonical_format",
    "format_family",
    "estimate_bit_depth",
    "classify",
    "quality_label",
    "mime_type_for",
]
