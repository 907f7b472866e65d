import os
from pathlib import Path

import pytest

from hli.errors import ExtractionError, ExtractionErrorKind, UnsupportedFormatError
from hli.metadata import (
    UNKNOWN_ALBUM,
    UNKNOWN_ARTIST,
    MetadataExtractor,
    ProbeResult,
    get_tag_value,
    merge_probes,
    parse_disc_number,
    parse_replay_gain,
    parse_track_number,
    parse_year,
    probe_container,
    signature_matches,
    title_from_filename,
)

from conftest import write_corrupt, write_wav


def test_parse_track_number():
    assert parse_track_number("03/12") == 3
    assert parse_track_number("7") == 7
    assert parse_track_number("") is None
    assert parse_track_number(None) is None
    assert parse_track_number("A1") is None


def test_parse_disc_number():
    assert parse_disc_number("1/2") == 1
    assert parse_disc_number("  2 ") == 2
    assert parse_disc_number("/2") is None


def test_parse_year():
    assert parse_year("2023-05-01") == 2023
    assert parse_year("Released 1999") == 1999
    assert parse_year("99") is None
    assert parse_year(None) is None


def test_parse_replay_gain():
    assert parse_replay_gain("-6.52 dB") == pytest.approx(-6.52)
    assert parse_replay_gain("+1.5 dB") == pytest.approx(1.5)
    assert parse_replay_gain("n/a") is None


def test_title_from_filename():
    assert title_from_filename("01 - Song_Title (Remix) [Bonus].flac") == "Song Title"
    assert title_from_filename("Just A Song.mp3") == "Just A Song"
    assert title_from_filename("02_-_Another__One.wav") == "Another One"
    # Nothing left after cleaning: fall back to the raw stem
    assert title_from_filename("01.flac") == "01"
    assert title_from_filename("(Intro).flac") == "(Intro)"


def test_get_tag_value_tries_keys_in_order():
    tags = {"TIT2": ["  "], "title": ["Vorbis Title"], "Title": "APE Title"}
    assert get_tag_value(tags, ["TIT2", "title", "Title"]) == "Vorbis Title"
    assert get_tag_value(tags, ["missing"]) is None


def test_get_tag_value_handles_mp4_tuples_and_bad_keys():
    class Picky(dict):
        def get(self, key, default=None):
            if not key.isascii():
                raise ValueError("non-ascii key")
            return super().get(key, default)

    tags = Picky({"trkn": [(4, 12)]})
    assert get_tag_value(tags, ["\xa9nam", "trkn"]) == "4"


def test_signature_matches():
    assert signature_matches("flac", b"fLaC\x00\x00", b"fLaC\x00\x00")
    assert signature_matches("wav", b"RIFF\x00\x00\x00\x00WAVE", b"")
    assert signature_matches("mp3", b"ID3\x03\x00", b"")
    assert signature_matches("mp3", b"\xff\xfb\x90", b"\xff\xfb\x90")
    assert signature_matches("m4a", b"\x00\x00\x00\x20ftypM4A ", b"")
    assert not signature_matches("flac", b"RIFF", b"RIFF")
    assert not signature_matches("ogg", b"this is not audio", b"this is not audio")


def test_probe_container(tmp_path):
    good = tmp_path / "x.flac"
    good.write_bytes(b"fLaC" + b"\x00" * 60)
    res = probe_container(good, good.stat().st_size)
    assert res is not None
    assert res.format == "FLAC"
    assert res.file_size == 64

    bad = write_corrupt(tmp_path / "y.flac")
    assert probe_container(bad, bad.stat().st_size) is None
    assert probe_container(good, 0) is None


def test_merge_probes_defaults_and_estimates():
    primary = ProbeResult(source="tags", format="FLAC", artist="Someone", sample_rate=44100)
    meta = merge_probes(Path("/music/03 - Foo (Live).flac"), 1234, primary, None)
    assert meta.title == "Foo"
    assert meta.artist == "Someone"
    assert meta.album == UNKNOWN_ALBUM
    assert meta.bit_depth == 24
    assert meta.channels == 2
    assert meta.duration_ms == 0
    assert meta.file_size == 1234
    assert meta.is_high_res


def test_merge_probes_prefers_primary_then_fallback():
    primary = ProbeResult(source="tags", format="MP3", bit_depth=16, title=None)
    fallback = ProbeResult(source="container", format="MP3", file_size=99, title="From Fallback")
    meta = merge_probes(Path("/m/a.mp3"), 5, primary, fallback)
    assert meta.title == "From Fallback"
    assert meta.file_size == 99
    assert meta.bit_depth is None
    assert not meta.is_high_res


def test_extract_tagged_wav(tmp_path):
    path = write_wav(
        tmp_path / "01 - ignored.wav",
        title="Real Title", artist="Artist", album="Album", track="3/9", year="2020-01-02", genre="Jazz",
    )
    meta = MetadataExtractor().extract(path)
    assert meta.title == "Real Title"
    assert meta.artist == "Artist"
    assert meta.album == "Album"
    assert meta.track_number == 3
    assert meta.year == 2020
    assert meta.genre == "Jazz"
    assert meta.format == "WAV"
    assert meta.sample_rate == 44100
    assert meta.bit_depth == 16
    assert meta.channels == 2
    assert abs(meta.duration_ms - 200) <= 5
    assert meta.file_size == path.stat().st_size
    assert not meta.is_high_res


def test_extract_untagged_wav_uses_defaults(tmp_path):
    path = write_wav(tmp_path / "07 - Night_Drive [2019].wav")
    meta = MetadataExtractor().extract(path)
    assert meta.title == "Night Drive"
    assert meta.artist == UNKNOWN_ARTIST
    assert meta.album == UNKNOWN_ALBUM


def test_extract_hi_res_wav(tmp_path):
    path = write_wav(tmp_path / "hr.wav", rate=96000, sample_width=3, seconds=0.05)
    meta = MetadataExtractor().extract(path)
    assert meta.sample_rate == 96000
    assert meta.bit_depth == 24
    assert meta.is_high_res


def test_extract_uses_container_probe_when_tags_fail(tmp_path):
    path = tmp_path / "05 - Salvaged.flac"
    path.write_bytes(b"fLaC" + b"\x00" * 200)
    meta = MetadataExtractor().extract(path)
    assert meta.format == "FLAC"
    assert meta.title == "Salvaged"
    assert meta.artist == UNKNOWN_ARTIST
    assert meta.bit_depth == 24


@pytest.mark.parametrize("name", ["bad.flac", "bad.wav", "bad.mp3"])
def test_extract_corrupt_file_is_unreadable(tmp_path, name):
    path = write_corrupt(tmp_path / name)
    with pytest.raises(ExtractionError) as exc:
        MetadataExtractor().extract(path)
    assert exc.value.kind is ExtractionErrorKind.UNREADABLE


def test_extract_empty_file(tmp_path):
    path = tmp_path / "empty.wav"
    path.write_bytes(b"")
    with pytest.raises(ExtractionError):
        MetadataExtractor().extract(path)


def test_extract_missing_file(tmp_path):
    with pytest.raises(ExtractionError) as exc:
        MetadataExtractor().extract(tmp_path / "gone.flac")
    assert exc.value.kind is ExtractionErrorKind.UNREADABLE


def test_extract_unsupported_extension(tmp_path):
    path = tmp_path / "notes.txt"
    path.write_text("hello")
    with pytest.raises(UnsupportedFormatError):
        MetadataExtractor().extract(path)


def test_extract_respects_allowlist(tmp_path):
    path = write_wav(tmp_path / "a.wav")
    with pytest.raises(UnsupportedFormatError):
        MetadataExtractor(frozenset({"flac"})).extract(path)


@pytest.mark.skipif(not hasattr(os, "geteuid") or os.geteuid() == 0, reason="root ignores file permissions")
def test_extract_permission_denied(tmp_path):
    path = write_wav(tmp_path / "locked.wav")
    path.chmod(0)
    try:
        with pytest.raises(ExtractionError) as exc:
            MetadataExtractor().extract(path)
        assert exc.value.kind is ExtractionErrorKind.ACCESS_DENIED
    finally:
        path.chmod(0o644)
