"""Configuration for the docstore engine."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class DocstoreConfig:
    """Configuration for the Engine and its Repository."""

    default_per_page: int = 10
    busy_timeout_ms: int = 5000
    journal_mode: str = "WAL"
    desc_table: str = "_desc"
