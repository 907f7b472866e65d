from hli.metadata import TrackMetadata
from hli.models import TrackRecord, album_id_for, artist_id_for, normalize_name, track_id_for


def _meta(path, *, title="T", artist="Artist", album="Album", duration_ms=200000, **kw):
    return TrackMetadata(
        file_path=path,
        file_size=kw.pop("file_size", 1000),
        title=title,
        artist=artist,
        album=album,
        duration_ms=duration_ms,
        format=kw.pop("format", "FLAC"),
        **kw,
    )


def _store(db, meta, ts=1000, mtime_ns=1):
    rec = TrackRecord.from_metadata(meta, mtime_ns, ts)
    with db.transaction():
        db.ensure_artist(rec.artist_id, meta.artist, ts)
        db.ensure_album(rec.album_id, meta.album, rec.artist_id, meta.artist, ts)
        db.upsert_track(rec)
    return rec


def _recompute(db, ts=2000):
    with db.transaction():
        db.recompute_album_stats([a.id for a in db.albums()], ts)
        db.recompute_artist_stats([a.id for a in db.artists()], ts)


def test_schema_is_idempotent(db):
    db.ensure_schema()
    assert db.get_meta("schema_version") == "1"
    assert db.stats()["tracks"] == 0


def test_ids_are_stable_and_normalized():
    assert track_id_for("/m/a.flac") == track_id_for("/m/a.flac")
    assert track_id_for("/m/a.flac").startswith("track_")
    assert artist_id_for("The  Band ") == artist_id_for("the band")
    assert album_id_for("Blue", "Miles") == album_id_for("BLUE", " miles")
    assert album_id_for("Blue", "Miles") != album_id_for("Blue", "Other")
    assert normalize_name("Cafe\u0301") == normalize_name("Caf\u00e9")


def test_album_aggregates_from_tracks(db):
    _store(db, _meta("/m/1.flac", duration_ms=200000, bitrate=900, sample_rate=44100, bit_depth=16, year=2001, genre="Jazz"))
    _store(db, _meta("/m/2.flac", duration_ms=180000, bitrate=1000, sample_rate=44100, bit_depth=16, year=1999, genre="Jazz"))
    _store(db, _meta("/m/3.flac", duration_ms=220000, bitrate=2000, sample_rate=96000, bit_depth=24, genre="Fusion"))
    _recompute(db)

    [album] = db.albums()
    assert album.total_tracks == 3
    assert album.total_duration_ms == 600000
    assert album.average_bitrate == 1300
    assert album.average_sample_rate == 61400
    assert album.is_high_res
    assert album.year == 1999
    assert album.genre == "Jazz"

    [artist] = db.artists()
    assert artist.track_count == 3
    assert artist.album_count == 1
    assert artist.total_duration_ms == 600000
    assert artist.has_hi_res
    assert db.albums(hi_res_only=True) == [album]


def test_upsert_preserves_user_state(db):
    rec = _store(db, _meta("/m/1.flac", title="Old"), ts=1000)
    rec_with_art = TrackRecord.from_metadata(_meta("/m/1.flac", title="Old", artwork_path="/cache/a.jpg"), 1, 1000)
    with db.transaction():
        db.upsert_track(rec_with_art)
        db.record_play(rec.id, 5000)
        db.set_favorite("tracks", rec.id, True)
        db.set_eq_preset(rec.id, "warm")

    _store(db, _meta("/m/1.flac", title="New", duration_ms=123), ts=9000, mtime_ns=7)

    t = db.get_track(rec.id)
    assert t.title == "New"
    assert t.duration_ms == 123
    assert t.file_mtime_ns == 7
    assert t.date_modified == 9000
    assert t.date_added == 1000
    assert t.play_count == 1
    assert t.last_played == 5000
    assert t.is_favorite is True
    assert t.eq_preset == "warm"
    assert t.artwork_path == "/cache/a.jpg"
    assert db.stats()["tracks"] == 1


def test_record_play_updates_artist_and_album(db):
    rec = _store(db, _meta("/m/1.flac"))
    with db.transaction():
        assert db.record_play(rec.id, 42)
        assert not db.record_play("track_missing", 42)
    assert db.get_artist(rec.artist_id).play_count == 1
    assert db.get_album(rec.album_id).last_played == 42


def test_delete_and_orphans(db):
    keep = _store(db, _meta("/m/keep.flac", artist="Keep", album="K"))
    gone = _store(db, _meta("/m/gone.flac", artist="Gone", album="G"))
    with db.transaction():
        owners = db.delete_tracks_by_paths(["/m/gone.flac", "/m/unknown.flac"])
    assert owners == [(gone.artist_id, gone.album_id)]

    with db.transaction():
        assert db.delete_orphan_albums() == 1
        assert db.delete_orphan_artists() == 1
    assert [a.id for a in db.artists()] == [keep.artist_id]
    assert [a.id for a in db.albums()] == [keep.album_id]


def test_fingerprints_and_lookup(db):
    _store(db, _meta("/m/a.flac", file_size=10), mtime_ns=99)
    assert db.known_fingerprints() == {"/m/a.flac": (10, 99)}
    assert db.known_paths() == {"/m/a.flac"}
    assert db.get_track_by_path("/m/a.flac").file_size == 10
    assert db.track_owners("/m/nope.flac") is None


def test_queries(db):
    _store(db, _meta("/m/1.flac", title="Blue in Green", artist="Miles", album="Kind of Blue", track_number=3, year=1959))
    _store(db, _meta("/m/2.flac", title="So What", artist="Miles", album="Kind of Blue", track_number=1, year=1959))
    _store(db, _meta("/m/3.dsf", title="Take Five", artist="Brubeck", album="Time Out", format="DSD", sample_rate=2822400, bit_depth=1))
    _recompute(db)

    assert {t.title for t in db.search_tracks("blue")} == {"So What", "Blue in Green"}
    album_id = album_id_for("Kind of Blue", "Miles")
    assert [t.title for t in db.tracks_by_album(album_id)] == ["So What", "Blue in Green"]
    assert [t.title for t in db.hi_res_tracks()] == ["Take Five"]
    assert len(db.tracks_by_artist(artist_id_for("Miles"))) == 2
    assert [a.title for a in db.albums_by_artist(artist_id_for("Brubeck"))] == ["Time Out"]
    assert db.years() == [1959]
    assert len(db.all_tracks(limit=2)) == 2
    assert len(db.recently_added_tracks(limit=1)) == 1
    s = db.stats()
    assert (s["tracks"], s["albums"], s["artists"], s["hi_res_tracks"]) == (3, 2, 2, 1)
    assert db.get_track(track_id_for("/m/3.dsf")).mime_type == "audio/dsd"
