from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .config import IndexerSettings, cli_overrides_from_args
from .context import LibraryContext, build_context
from .errors import IndexerError, StorageWriteError
from .indexer import ScanSummary
from .logging import configure, format_bytes, format_duration_ms, log_event
from .metadata import MetadataExtractor
from .formats import quality_label
from .progress import ScanState


EXIT_OK = 0
EXIT_USAGE = 1
EXIT_WITH_FILE_ERRORS = 2
EXIT_SCAN_FAILED = 3


def _exit_code_for(summary: Optional[ScanSummary]) -> int:
    if summary is None or summary.state != ScanState.COMPLETED.value:
        return EXIT_SCAN_FAILED
    return EXIT_WITH_FILE_ERRORS if summary.skipped else EXIT_OK


def _run_scan(ctx: LibraryContext, start: Any) -> int:
    service = ctx.service
    start()
    try:
        for snap in service.progress():
            if snap.is_complete:
                logger.debug(f"Terminal progress: {snap}")
    except KeyboardInterrupt:
        logger.warning("Interrupted; cancelling scan")
        service.stop_scan()
    try:
        summary = service.wait()
    except StorageWriteError as e:
        logger.error(f"Scan failed: {e}")
        return EXIT_SCAN_FAILED

    if summary is not None:
        logger.info(
            f"{summary.mode} scan {summary.state}: {summary.files_scanned} files, "
            f"{summary.inserted} new, {summary.updated} updated, {summary.unchanged} unchanged, "
            f"{summary.skipped} skipped, {summary.deleted} removed"
        )
    return _exit_code_for(summary)


def cmd_scan(ctx: LibraryContext, quick: bool) -> int:
    roots = ctx.settings.root_paths()
    logger.info(f"{'Quick' if quick else 'Full'} scan of: {', '.join(str(r) for r in roots)}")
    start = ctx.service.start_quick_scan if quick else ctx.service.start_full_scan
    return _run_scan(ctx, start)


def cmd_scan_folder(ctx: LibraryContext, folder: str) -> int:
    path = Path(folder).expanduser()
    if not path.exists():
        logger.error(f"Folder does not exist: {path}")
        return EXIT_USAGE
    return _run_scan(ctx, lambda: ctx.service.start_folder_scan(path))


def cmd_probe(settings: IndexerSettings, file: str) -> int:
    extractor = MetadataExtractor(settings.extension_set)
    try:
        meta = extractor.extract(file)
    except IndexerError as e:
        log_event("probe", msg=str(e), level="ERROR", status="failed", file=file)
        return EXIT_WITH_FILE_ERRORS
    data = meta.to_dict()
    data["quality"] = quality_label(meta.format, meta.sample_rate, meta.bit_depth)
    print(json.dumps(data, indent=2, ensure_ascii=False))
    return EXIT_OK


def cmd_stats(ctx: LibraryContext) -> int:
    s = ctx.service.stats()
    print(f"Tracks:   {s['tracks']} ({s['hi_res_tracks']} hi-res)")
    print(f"Albums:   {s['albums']}")
    print(f"Artists:  {s['artists']}")
    print(f"Duration: {format_duration_ms(s['total_duration_ms'])}")
    print(f"Size:     {format_bytes(s['total_size'])}")
    last = ctx.indexer.last_scan_from_store()
    if last:
        print(f"Last scan: {last['mode']} {last['state']}, {last['files_scanned']} files, {last['skipped']} skipped")
    return EXIT_OK


def cmd_tracks(ctx: LibraryContext, hi_res: bool, search: Optional[str], limit: Optional[int]) -> int:
    if search:
        tracks = ctx.service.search(search, limit)
        if hi_res:
            tracks = [t for t in tracks if t.is_high_res]
    elif hi_res:
        tracks = ctx.service.hi_res_tracks(limit)
    else:
        tracks = ctx.service.all_tracks(limit)
    for t in tracks:
        q = quality_label(t.format, t.sample_rate, t.bit_depth)
        print(f"{t.artist_name} - {t.album_name} - {t.title} [{q}] {format_duration_ms(t.duration_ms)}")
    return EXIT_OK


def cmd_albums(ctx: LibraryContext, hi_res: bool) -> int:
    albums = ctx.service.hi_res_albums() if hi_res else ctx.service.albums()
    for a in albums:
        year = f" ({a.year})" if a.year else ""
        flag = " [hi-res]" if a.is_high_res else ""
        print(f"{a.artist_name} - {a.title}{year}: {a.total_tracks} tracks, {format_duration_ms(a.total_duration_ms)}{flag}")
    return EXIT_OK


def cmd_artists(ctx: LibraryContext) -> int:
    for a in ctx.service.artists():
        flag = " [hi-res]" if a.has_hi_res else ""
        print(f"{a.name}: {a.album_count} albums, {a.track_count} tracks{flag}")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="hli", description="Hi-res audio library indexer")
    # Config/Logging options (defaults resolved via IndexerSettings)
    p.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to TOML config (default: ~/.config/hires-library-indexer/config.toml)",
    )
    p.add_argument(
        "--write-config",
        action="store_true",
        help="Write current effective settings to the config file and exit",
    )
    p.add_argument(
        "--log-level",
        default=None,
        help="Console log level (DEBUG, INFO, WARNING, ERROR)",
    )
    p.add_argument(
        "--log-json",
        dest="log_json",
        default=None,
        help="Path to write JSON lines log (structured events)",
    )
    p.add_argument("--db", dest="db_path", default=None, help="Library DB path (default from settings)")
    sub = p.add_subparsers(dest="cmd")

    p_scan = sub.add_parser("scan", help="Scan the library roots and update the index")
    p_scan.add_argument(
        "--quick",
        action="store_true",
        help="Only re-read files whose size or modification time changed",
    )
    p_scan.add_argument(
        "--root",
        dest="library_roots",
        action="append",
        default=None,
        help="Library root to scan (repeatable; replaces configured roots)",
    )
    p_scan.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Parallel extraction workers (default from settings: CPU cores if unset)",
    )
    p_scan.add_argument(
        "--no-artwork",
        dest="artwork_enable",
        action="store_const",
        const=False,
        default=None,
        help="Do not extract or cache artwork",
    )
    symlink_group = p_scan.add_mutually_exclusive_group()
    symlink_group.add_argument("--follow-symlinks", dest="follow_symlinks", action="store_const", const=True, default=None, help="Descend into symlinked directories")
    symlink_group.add_argument("--no-follow-symlinks", dest="follow_symlinks", action="store_const", const=False, help="Ignore symlinked directories")

    p_folder = sub.add_parser("scan-folder", help="Scan one folder; only its tracks are reconciled")
    p_folder.add_argument("folder", help="Folder to scan")

    p_probe = sub.add_parser("probe", help="Print extracted metadata for one file as JSON")
    p_probe.add_argument("file", help="Audio file")

    sub.add_parser("stats", help="Show library totals and the last scan")

    p_tracks = sub.add_parser("tracks", help="List tracks")
    p_tracks.add_argument("--hi-res", action="store_true", help="Only high-resolution tracks")
    p_tracks.add_argument("--search", default=None, help="Substring of title, artist, album or genre")
    p_tracks.add_argument("--limit", type=int, default=None, help="Max rows")

    p_albums = sub.add_parser("albums", help="List albums")
    p_albums.add_argument("--hi-res", action="store_true", help="Only albums with a high-resolution track")

    sub.add_parser("artists", help="List artists")

    args = p.parse_args(argv)
    # Load settings: defaults + TOML + env + CLI overrides
    overrides = cli_overrides_from_args(args)
    config_path = Path(args.config_path).expanduser() if args.config_path else None
    try:
        cfg = IndexerSettings.load(config_path=config_path, overrides=overrides)
    except ValueError as e:
        # pydantic.ValidationError is a ValueError
        print(f"Invalid settings: {e}", file=sys.stderr)
        return EXIT_USAGE

    if args.write_config:
        written = cfg.write(config_path)
        print(f"Config written to: {written}")
        return EXIT_OK

    if not args.cmd:
        p.print_help()
        return EXIT_USAGE

    configure(cfg.log_level, cfg.log_json)

    if args.cmd == "probe":
        return cmd_probe(cfg, args.file)

    ctx = build_context(cfg)
    try:
        if args.cmd == "scan":
            return cmd_scan(ctx, args.quick)
        if args.cmd == "scan-folder":
            return cmd_scan_folder(ctx, args.folder)
        if args.cmd == "stats":
            return cmd_stats(ctx)
        if args.cmd == "tracks":
            return cmd_tracks(ctx, args.hi_res, args.search, args.limit)
        if args.cmd == "albums":
            return cmd_albums(ctx, args.hi_res)
        if args.cmd == "artists":
            return cmd_artists(ctx)
    finally:
        ctx.close()
    p.error("unknown command")
    return EXIT_USAGE


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
