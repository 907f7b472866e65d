"""Explicit wiring of the indexer components.

``build_context(settings)`` creates every long-lived object exactly once and
hands them out together; nothing in ``hli`` keeps module-level state.
"""
from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from .artwork import ArtworkProvider, CachedArtworkExtractor, NullArtworkExtractor
from .config import IndexerSettings
from .db import LibraryDB
from .indexer import LibraryIndexer
from .metadata import MetadataExtractor
from .progress import ScanProgressTracker
from .service import LibraryService


@dataclass
class LibraryContext:
    """Everything a CLI command or embedding application needs.

    Attributes:
        settings: Effective configuration
        db: Library store (schema ensured)
        tracker: Shared scan progress state machine
        extractor: Metadata extractor configured with the extension allowlist
        artwork: Artwork provider (no-op when artwork is disabled)
        indexer: Scan orchestrator
        service: Scan control surface and queries
    """

    settings: IndexerSettings
    db: LibraryDB
    tracker: ScanProgressTracker
    extractor: MetadataExtractor
    artwork: ArtworkProvider
    indexer: LibraryIndexer
    service: LibraryService

    def close(self) -> None:
        if self.service.is_scanning:
            self.service.stop_scan()
            self.service.wait()
        self.db.close()


def build_context(settings: IndexerSettings) -> LibraryContext:
    db = LibraryDB(settings.resolved_db_path())
    db.ensure_schema()
    logger.debug(f"Library DB: {db.path}")

    tracker = ScanProgressTracker(log_interval=settings.progress_log_interval)
    extractor = MetadataExtractor(settings.extension_set)
    artwork: ArtworkProvider
    if settings.artwork_enable:
        artwork = CachedArtworkExtractor(
            settings.resolved_artwork_dir(),
            max_size=settings.artwork_max_size,
            quality=settings.artwork_quality,
        )
    else:
        artwork = NullArtworkExtractor()

    indexer = LibraryIndexer(
        db,
        extractor,
        artwork,
        tracker,
        library_roots=settings.root_paths(),
        extensions=settings.extension_set,
        follow_symlinks=settings.follow_symlinks,
        skip_hidden=settings.skip_hidden,
        workers=settings.workers,
        max_pending_factor=settings.max_pending_factor,
        aggregate_batch_size=settings.aggregate_batch_size,
        count_before_scan=settings.count_before_scan,
    )
    service = LibraryService(
        db,
        indexer,
        conflict_policy=settings.scan_conflict_policy,
        progress_buffer=settings.progress_buffer,
    )
    return LibraryContext(
        settings=settings,
        db=db,
        tracker=tracker,
        extractor=extractor,
        artwork=artwork,
        indexer=indexer,
        service=service,
    )


__all__ = ["LibraryContext", "build_context"]
