import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple
from loguru import logger

from .models import AlbumRecord, ArtistRecord, TrackRecord

SCHEMA_VERSION = "1"

TRACK_ORDER = "artist_name COLLATE NOCASE, album_name COLLATE NOCASE, disc_number, track_number, title COLLATE NOCASE"

# Columns rewritten when a known path is re-indexed. User state
# (play_count, last_played, is_favorite, eq_preset, date_added) is left alone.
_TRACK_METADATA_COLUMNS = (
    "title", "artist_id", "artist_name", "album_id", "album_name", "duration_ms",
    "file_size", "file_mtime_ns", "format", "mime_type", "bitrate", "sample_rate",
    "bit_depth", "channels", "track_number", "disc_number", "year", "genre",
    "date_modified", "is_high_res", "replay_gain",
)
_TRACK_INSERT_COLUMNS = (
    "id", "file_path", *_TRACK_METADATA_COLUMNS, "artwork_path",
    "play_count", "last_played", "date_added", "is_favorite", "eq_preset",
)


class LibraryDB:
    """SQLite store for tracks, artists and albums."""

    def __init__(self, path: Path):
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = threading.local()

    @property
    def conn(self) -> sqlite3.Connection:
        if not hasattr(self._conn, "connection"):
            self._conn.connection = sqlite3.connect(self.path, check_same_thread=False, timeout=30.0)
            self._conn.connection.row_factory = sqlite3.Row
            self._conn.connection.execute("PRAGMA foreign_keys = ON;")
            self._conn.connection.execute("PRAGMA journal_mode = WAL;")
            self._conn.connection.execute("PRAGMA synchronous = NORMAL;")
        return self._conn.connection

    def close(self) -> None:
        """Close this thread's connection, if any."""
        connection = getattr(self._conn, "connection", None)
        if connection is not None:
            connection.close()
            del self._conn.connection

    def ensure_schema(self):
        """Create tables and indexes if they do not exist."""
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS artists (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                track_count INTEGER NOT NULL DEFAULT 0,
                album_count INTEGER NOT NULL DEFAULT 0,
                total_duration_ms INTEGER NOT NULL DEFAULT 0,
                has_hi_res INTEGER NOT NULL DEFAULT 0 CHECK (has_hi_res IN (0,1)),
                play_count INTEGER NOT NULL DEFAULT 0,
                last_played INTEGER,
                date_added INTEGER NOT NULL,
                date_modified INTEGER NOT NULL,
                is_favorite INTEGER NOT NULL DEFAULT 0 CHECK (is_favorite IN (0,1))
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS albums (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                artist_id TEXT REFERENCES artists(id) ON DELETE SET NULL,
                artist_name TEXT,
                year INTEGER,
                genre TEXT,
                total_tracks INTEGER NOT NULL DEFAULT 0,
                total_duration_ms INTEGER NOT NULL DEFAULT 0,
                average_bitrate INTEGER,
                average_sample_rate INTEGER,
                is_high_res INTEGER NOT NULL DEFAULT 0 CHECK (is_high_res IN (0,1)),
                play_count INTEGER NOT NULL DEFAULT 0,
                last_played INTEGER,
                date_added INTEGER NOT NULL,
                date_modified INTEGER NOT NULL,
                is_favorite INTEGER NOT NULL DEFAULT 0 CHECK (is_favorite IN (0,1))
            )
        """)
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS tracks (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                artist_id TEXT REFERENCES artists(id) ON DELETE SET NULL,
                artist_name TEXT,
                album_id TEXT REFERENCES albums(id) ON DELETE SET NULL,
                album_name TEXT,
                duration_ms INTEGER NOT NULL DEFAULT 0,
                file_path TEXT NOT NULL UNIQUE,
                file_size INTEGER NOT NULL,
                file_mtime_ns INTEGER NOT NULL DEFAULT 0,
                format TEXT NOT NULL,
                mime_type TEXT,
                bitrate INTEGER,
                sample_rate INTEGER,
                bit_depth INTEGER,
                channels INTEGER,
                track_number INTEGER,
                disc_number INTEGER,
                year INTEGER,
                genre TEXT,
                artwork_path TEXT,
                play_count INTEGER NOT NULL DEFAULT 0,
                last_played INTEGER,
                date_added INTEGER NOT NULL,
                date_modified INTEGER NOT NULL,
                is_favorite INTEGER NOT NULL DEFAULT 0 CHECK (is_favorite IN (0,1)),
                is_high_res INTEGER NOT NULL DEFAULT 0 CHECK (is_high_res IN (0,1)),
                eq_preset TEXT,
                replay_gain REAL
            )
        """)

        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_tracks_artist ON tracks(artist_id);")
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_tracks_album ON tracks(album_id);")
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_tracks_hi_res ON tracks(is_high_res);")
        self.conn.execute("CREATE INDEX IF NOT EXISTS idx_albums_artist ON albums(artist_id);")
        self.conn.execute(
            "INSERT OR IGNORE INTO meta (key, value) VALUES ('schema_version', ?)", (SCHEMA_VERSION,)
        )
        self.conn.commit()

    def begin(self):
        self.conn.execute("BEGIN;")

    def commit(self):
        self.conn.commit()

    def rollback(self):
        self.conn.rollback()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN ... COMMIT, rolling back on any exception."""
        self.begin()
        try:
            yield self.conn
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()

    # ------------------------------------------------------------------
    # Meta
    # ------------------------------------------------------------------

    def get_meta(self, key: str) -> Optional[str]:
        row = self.conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        self.conn.execute(
            "INSERT INTO meta (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )

    # ------------------------------------------------------------------
    # Write path (used by the indexer inside a transaction)
    # ------------------------------------------------------------------

    def ensure_artist(self, artist_id: str, name: str, ts: int) -> None:
        """Create the artist row if absent; aggregates are filled by recompute."""
        self.conn.execute(
            """INSERT OR IGNORE INTO artists (id, name, date_added, date_modified)
               VALUES (?, ?, ?, ?)""",
            (artist_id, name, ts, ts),
        )

    def ensure_album(self, album_id: str, title: str, artist_id: Optional[str], artist_name: Optional[str], ts: int) -> None:
        self.conn.execute(
            """INSERT OR IGNORE INTO albums (id, title, artist_id, artist_name, date_added, date_modified)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (album_id, title, artist_id, artist_name, ts, ts),
        )

    def upsert_track(self, rec: TrackRecord) -> None:
        """Insert a track, or refresh metadata of the existing row for its path.

        An existing artwork path survives when the new extraction found none.
        """
        cols = ", ".join(_TRACK_INSERT_COLUMNS)
        marks = ", ".join("?" for _ in _TRACK_INSERT_COLUMNS)
        updates = ",\n                   ".join(f"{c} = excluded.{c}" for c in _TRACK_METADATA_COLUMNS)
        sql = f"""INSERT INTO tracks ({cols})
               VALUES ({marks})
               ON CONFLICT(file_path) DO UPDATE SET
                   {updates},
                   artwork_path = COALESCE(excluded.artwork_path, tracks.artwork_path)"""
        values = []
        for c in _TRACK_INSERT_COLUMNS:
            v = getattr(rec, c)
            values.append(int(v) if isinstance(v, bool) else v)
        self.conn.execute(sql, values)

    def track_owners(self, file_path: str) -> Optional[Tuple[Optional[str], Optional[str]]]:
        """(artist_id, album_id) currently stored for a path, None if the path is unknown."""
        row = self.conn.execute(
            "SELECT artist_id, album_id FROM tracks WHERE file_path = ?", (file_path,)
        ).fetchone()
        return (row["artist_id"], row["album_id"]) if row else None

    def delete_tracks_by_paths(self, paths: Iterable[str]) -> List[Tuple[Optional[str], Optional[str]]]:
        """Delete tracks by path; return the (artist_id, album_id) owners of deleted rows."""
        owners: List[Tuple[Optional[str], Optional[str]]] = []
        for p in paths:
            row = self.conn.execute(
                "SELECT artist_id, album_id FROM tracks WHERE file_path = ?", (p,)
            ).fetchone()
            if row is None:
                continue
            self.conn.execute("DELETE FROM tracks WHERE file_path = ?", (p,))
            owners.append((row["artist_id"], row["album_id"]))
        return owners

    def recompute_album_stats(self, album_ids: Iterable[str], ts: int) -> None:
        """Derive album aggregates strictly from the tracks that reference each album."""
        self.conn.executemany(
            """UPDATE albums SET
                   total_tracks = (SELECT COUNT(*) FROM tracks WHERE album_id = :id),
                   total_duration_ms = (SELECT COALESCE(SUM(duration_ms), 0) FROM tracks WHERE album_id = :id),
                   average_bitrate = (SELECT CAST(ROUND(AVG(bitrate)) AS INTEGER) FROM tracks
                                      WHERE album_id = :id AND bitrate IS NOT NULL),
                   average_sample_rate = (SELECT CAST(ROUND(AVG(sample_rate)) AS INTEGER) FROM tracks
                                          WHERE album_id = :id AND sample_rate IS NOT NULL),
                   is_high_res = (SELECT COALESCE(MAX(is_high_res), 0) FROM tracks WHERE album_id = :id),
                   year = (SELECT MIN(year) FROM tracks WHERE album_id = :id AND year IS NOT NULL),
                   genre = (SELECT genre FROM tracks WHERE album_id = :id AND genre IS NOT NULL
                            GROUP BY genre ORDER BY COUNT(*) DESC, genre LIMIT 1),
                   date_modified = :ts
               WHERE id = :id""",
            [{"id": a, "ts": ts} for a in album_ids],
        )

    def recompute_artist_stats(self, artist_ids: Iterable[str], ts: int) -> None:
        self.conn.executemany(
            """UPDATE artists SET
                   track_count = (SELECT COUNT(*) FROM tracks WHERE artist_id = :id),
                   album_count = (SELECT COUNT(DISTINCT album_id) FROM tracks
                                  WHERE artist_id = :id AND album_id IS NOT NULL),
                   total_duration_ms = (SELECT COALESCE(SUM(duration_ms), 0) FROM tracks WHERE artist_id = :id),
                   has_hi_res = (SELECT COALESCE(MAX(is_high_res), 0) FROM tracks WHERE artist_id = :id),
                   date_modified = :ts
               WHERE id = :id""",
            [{"id": a, "ts": ts} for a in artist_ids],
        )

    def delete_orphan_albums(self) -> int:
        rows = self.conn.execute(
            """SELECT id, title, artist_name FROM albums
               WHERE NOT EXISTS (SELECT 1 FROM tracks WHERE tracks.album_id = albums.id)"""
        ).fetchall()
        for r in rows:
            logger.debug(f"Removing orphaned album: {r['title']} by {r['artist_name']}")
        self.conn.executemany("DELETE FROM albums WHERE id = ?", [(r["id"],) for r in rows])
        return len(rows)

    def delete_orphan_artists(self) -> int:
        rows = self.conn.execute(
            """SELECT id, name FROM artists
               WHERE NOT EXISTS (SELECT 1 FROM tracks WHERE tracks.artist_id = artists.id)"""
        ).fetchall()
        for r in rows:
            logger.debug(f"Removing orphaned artist: {r['name']}")
        self.conn.executemany("DELETE FROM artists WHERE id = ?", [(r["id"],) for r in rows])
        return len(rows)

    # ------------------------------------------------------------------
    # User state
    # ------------------------------------------------------------------

    def record_play(self, track_id: str, ts: int) -> bool:
        """Bump play counters on a track and its artist/album."""
        row = self.conn.execute("SELECT artist_id, album_id FROM tracks WHERE id = ?", (track_id,)).fetchone()
        if row is None:
            return False
        self.conn.execute(
            "UPDATE tracks SET play_count = play_count + 1, last_played = ? WHERE id = ?", (ts, track_id)
        )
        if row["artist_id"]:
            self.conn.execute(
                "UPDATE artists SET play_count = play_count + 1, last_played = ? WHERE id = ?",
                (ts, row["artist_id"]),
            )
        if row["album_id"]:
            self.conn.execute(
                "UPDATE albums SET play_count = play_count + 1, last_played = ? WHERE id = ?",
                (ts, row["album_id"]),
            )
        return True

    def set_favorite(self, table: str, row_id: str, is_favorite: bool) -> bool:
        if table not in ("tracks", "albums", "artists"):
            raise ValueError(f"unknown table: {table}")
        cur = self.conn.execute(
            f"UPDATE {table} SET is_favorite = ? WHERE id = ?", (1 if is_favorite else 0, row_id)
        )
        return cur.rowcount > 0

    def set_eq_preset(self, track_id: str, preset: Optional[str]) -> bool:
        cur = self.conn.execute("UPDATE tracks SET eq_preset = ? WHERE id = ?", (preset, track_id))
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def known_fingerprints(self) -> Dict[str, Tuple[int, int]]:
        """{file_path: (file_size, file_mtime_ns)} for every indexed track."""
        rows = self.conn.execute("SELECT file_path, file_size, file_mtime_ns FROM tracks").fetchall()
        return {r["file_path"]: (r["file_size"], r["file_mtime_ns"]) for r in rows}

    def known_paths(self) -> Set[str]:
        return {r["file_path"] for r in self.conn.execute("SELECT file_path FROM tracks").fetchall()}

    def get_track(self, track_id: str) -> Optional[TrackRecord]:
        row = self.conn.execute("SELECT * FROM tracks WHERE id = ?", (track_id,)).fetchone()
        return TrackRecord.from_row(row) if row else None

    def get_track_by_path(self, file_path: str) -> Optional[TrackRecord]:
        row = self.conn.execute("SELECT * FROM tracks WHERE file_path = ?", (file_path,)).fetchone()
        return TrackRecord.from_row(row) if row else None

    def _tracks(self, where: str = "", params: tuple = (), order: str = TRACK_ORDER, limit: Optional[int] = None) -> List[TrackRecord]:
        sql = "SELECT * FROM tracks"
        if where:
            sql += f" WHERE {where}"
        sql += f" ORDER BY {order}"
        if limit is not None:
            sql += " LIMIT ?"
            params = (*params, limit)
        return [TrackRecord.from_row(r) for r in self.conn.execute(sql, params).fetchall()]

    def all_tracks(self, limit: Optional[int] = None) -> List[TrackRecord]:
        return self._tracks(limit=limit)

    def hi_res_tracks(self, limit: Optional[int] = None) -> List[TrackRecord]:
        return self._tracks("is_high_res = 1", order=f"sample_rate DESC, {TRACK_ORDER}", limit=limit)

    def tracks_by_album(self, album_id: str) -> List[TrackRecord]:
        return self._tracks(
            "album_id = ?", (album_id,),
            order="COALESCE(disc_number, 1), COALESCE(track_number, 0), title COLLATE NOCASE",
        )

    def tracks_by_artist(self, artist_id: str) -> List[TrackRecord]:
        return self._tracks("artist_id = ?", (artist_id,))

    def favorite_tracks(self) -> List[TrackRecord]:
        return self._tracks("is_favorite = 1")

    def recently_added_tracks(self, limit: int = 20) -> List[TrackRecord]:
        return self._tracks(order="date_added DESC, title COLLATE NOCASE", limit=limit)

    def search_tracks(self, query: str, limit: Optional[int] = None) -> List[TrackRecord]:
        like = f"%{query}%"
        return self._tracks(
            "title LIKE ? OR artist_name LIKE ? OR album_name LIKE ? OR genre LIKE ?",
            (like, like, like, like),
            limit=limit,
        )

    def get_artist(self, artist_id: str) -> Optional[ArtistRecord]:
        row = self.conn.execute("SELECT * FROM artists WHERE id = ?", (artist_id,)).fetchone()
        return ArtistRecord.from_row(row) if row else None

    def artists(self) -> List[ArtistRecord]:
        rows = self.conn.execute("SELECT * FROM artists ORDER BY name COLLATE NOCASE").fetchall()
        return [ArtistRecord.from_row(r) for r in rows]

    def get_album(self, album_id: str) -> Optional[AlbumRecord]:
        row = self.conn.execute("SELECT * FROM albums WHERE id = ?", (album_id,)).fetchone()
        return AlbumRecord.from_row(row) if row else None

    def albums(self, hi_res_only: bool = False) -> List[AlbumRecord]:
        if hi_res_only:
            sql = "SELECT * FROM albums WHERE is_high_res = 1 ORDER BY average_sample_rate DESC, title COLLATE NOCASE"
        else:
            sql = "SELECT * FROM albums ORDER BY title COLLATE NOCASE"
        return [AlbumRecord.from_row(r) for r in self.conn.execute(sql).fetchall()]

    def albums_by_artist(self, artist_id: str) -> List[AlbumRecord]:
        rows = self.conn.execute(
            "SELECT * FROM albums WHERE artist_id = ? ORDER BY year, title COLLATE NOCASE", (artist_id,)
        ).fetchall()
        return [AlbumRecord.from_row(r) for r in rows]

    def years(self) -> List[int]:
        rows = self.conn.execute(
            "SELECT DISTINCT year FROM albums WHERE year IS NOT NULL ORDER BY year DESC"
        ).fetchall()
        return [r["year"] for r in rows]

    def stats(self) -> Dict[str, int]:
        row = self.conn.execute(
            """SELECT COUNT(*) AS tracks,
                      COALESCE(SUM(is_high_res), 0) AS hi_res_tracks,
                      COALESCE(SUM(duration_ms), 0) AS total_duration_ms,
                      COALESCE(SUM(file_size), 0) AS total_size
               FROM tracks"""
        ).fetchone()
        albums = self.conn.execute("SELECT COUNT(*) AS n FROM albums").fetchone()["n"]
        artists = self.conn.execute("SELECT COUNT(*) AS n FROM artists").fetchone()["n"]
        return {
            "tracks": row["tracks"],
            "hi_res_tracks": row["hi_res_tracks"],
            "albums": albums,
            "artists": artists,
            "total_duration_ms": row["total_duration_ms"],
            "total_size": row["total_size"],
        }
