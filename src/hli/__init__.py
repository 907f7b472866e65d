"""HLI (Hi-res Library Indexer)

Core package for scanning a music collection into a SQLite library index:
tag reconciliation, hi-res/DSD classification and album/artist aggregates.
"""

__all__ = [
    "__version__",
]

# Keep in sync with pyproject.toml
__version__ = "0.1.0"
