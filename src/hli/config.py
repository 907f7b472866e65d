from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any, Dict, List, Optional, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from tomlkit import dumps as toml_dumps

from .formats import SUPPORTED_EXTENSIONS, normalize_extension


DEFAULT_CONFIG_PATH = Path("~/.config/hires-library-indexer/config.toml").expanduser()
ENV_PREFIX = "HLI_"


class IndexerSettings(BaseSettings):
    """Global settings for the library indexer.

    Priority (lowest -> highest):
    - Class defaults below
    - TOML file at `config_path` (default: ~/.config/hires-library-indexer/config.toml)
    - Environment variables with prefix HLI_
    - CLI overrides passed to `load(overrides=...)`
    """

    # Logging
    log_level: str = Field(default="INFO", description="Console log level")
    log_json: Optional[str] = Field(default=None, description="Path for structured JSON log file")

    # Library roots and discovery
    library_roots: List[str] = Field(default_factory=lambda: ["~/Music"], description="Directories to scan")
    extensions: List[str] = Field(
        default_factory=lambda: sorted(SUPPORTED_EXTENSIONS),
        description="Audio file extensions to index (case-insensitive, no dot)",
    )
    follow_symlinks: bool = Field(default=True, description="Descend into symlinked directories (cycle-safe)")
    skip_hidden: bool = Field(default=True, description="Skip dot-files and dot-directories")

    # Extraction
    workers: Optional[int] = Field(default=None, description="Parallel extraction workers; None=auto (CPU cores)")
    max_pending_factor: int = Field(default=4, description="In-flight extraction window as a multiple of workers")

    # Artwork cache
    artwork_enable: bool = Field(default=True, description="Extract and cache artwork during scans")
    artwork_cache_dir: str = Field(default="~/.cache/hli/artwork", description="Directory for cached artwork JPEGs")
    artwork_max_size: int = Field(default=512, description="Max dimension (width or height) of cached artwork")
    artwork_quality: int = Field(default=85, description="JPEG quality for cached artwork")

    # Library DB
    db_path: str = Field(default="~/.local/share/hli/library.db", description="Path to the library DB file")
    aggregate_batch_size: int = Field(
        default=200, description="Recompute album/artist aggregates after this many touched rows"
    )

    # Scan control
    progress_buffer: int = Field(default=64, description="Progress updates buffered per consumer (oldest dropped)")
    progress_log_interval: float = Field(default=5.0, description="Seconds between periodic progress log lines")
    scan_conflict_policy: Literal["reject", "replace"] = Field(
        default="reject", description="What starting a scan does while another is running"
    )
    count_before_scan: bool = Field(
        default=True, description="Walk the tree once up front so progress has a total"
    )

    # Config source/path (not persisted as part of effective config when writing)
    config_path: Path = Field(default=DEFAULT_CONFIG_PATH, exclude=True)

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="ignore")

    @field_validator("extensions")
    @classmethod
    def _normalize_extensions(cls, v: List[str]) -> List[str]:
        out = sorted({normalize_extension(e) for e in v if e and e.strip(".").strip()})
        if not out:
            raise ValueError("extensions must not be empty")
        return out

    @field_validator("workers")
    @classmethod
    def _positive_workers(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("workers must be >= 1")
        return v

    @field_validator("aggregate_batch_size", "progress_buffer", "max_pending_factor")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @staticmethod
    def default_config_path() -> Path:
        return DEFAULT_CONFIG_PATH

    @property
    def extension_set(self) -> frozenset[str]:
        return frozenset(self.extensions)

    def root_paths(self) -> List[Path]:
        return [Path(r).expanduser() for r in self.library_roots]

    def resolved_db_path(self) -> Path:
        return Path(self.db_path).expanduser()

    def resolved_artwork_dir(self) -> Path:
        return Path(self.artwork_cache_dir).expanduser()

    @classmethod
    def _toml_file_source(cls, config_path: Path) -> Dict[str, Any]:
        """Read settings from a TOML file if it exists; return dict values.

        Unknown keys are ignored by pydantic via extra="ignore".
        """
        if not config_path or not config_path.exists():
            return {}
        with config_path.open("rb") as f:
            data = tomllib.load(f)
        if not isinstance(data, dict):
            return {}
        return data  # type: ignore[return-value]

    @classmethod
    def load(
        cls,
        *,
        config_path: Optional[Path] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> "IndexerSettings":
        """Load settings from defaults + TOML + env + CLI overrides.

        - config_path: path to TOML config; defaults to ~/.config/hires-library-indexer/config.toml
        - overrides: dict of CLI values (None values are ignored)
        """
        cp = config_path or DEFAULT_CONFIG_PATH
        file_values = cls._toml_file_source(cp)
        base = cls(**file_values)  # file + env via pydantic
        if overrides:
            non_none = {k: v for k, v in overrides.items() if v is not None}
        else:
            non_none = {}
        merged = base.model_dump()
        merged.update(non_none)
        settings = cls(**merged)
        settings.config_path = cp
        return settings

    def to_toml(self) -> str:
        """Serialize effective settings (excluding ephemeral fields) to TOML string."""
        data = self.model_dump(exclude={"config_path"})
        # TOML has no null; omit unset optionals
        data = {k: v for k, v in data.items() if v is not None}
        return toml_dumps(data)

    def write(self, path: Optional[Path] = None) -> Path:
        """Write effective config to TOML at `path` (or default path). Creates parent dirs.

        Returns the path written.
        """
        target = path or self.config_path or DEFAULT_CONFIG_PATH
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.to_toml(), encoding="utf-8")
        return target


def cli_overrides_from_args(args: Any) -> Dict[str, Any]:
    """Extract known settings keys from argparse Namespace into an overrides dict.

    Unknown keys are ignored; None values are preserved for filtering by `load()`.
    """
    keys = {
        "log_level",
        "log_json",
        "library_roots",
        "extensions",
        "follow_symlinks",
        "workers",
        "db_path",
        "artwork_enable",
        "scan_conflict_policy",
    }
    result: Dict[str, Any] = {}
    for k in keys:
        if hasattr(args, k):
            result[k] = getattr(args, k)
    return result
