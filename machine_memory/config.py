"""
Engine Configuration

Configuration dataclasses for machine-memory: store and contention retry,
duplicate/conflict thresholds, and suggestion merging. Includes
load_config() for reading a JSON config file with silent fallback to
compiled defaults.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ConfigError(ValueError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        errors.append(f"{name}: expected {typ.__name__}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


@dataclass
class StoreConfig:
    """SQLite store and write-contention configuration."""
    db_path: str = ".agents/memory.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 200
    retry_attempts: int = 6
    retry_base_delay: float = 0.05
    retry_multiplier: float = 2.0
    retry_max_delay: float = 2.0

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "store.busy_timeout_ms",
                     self.busy_timeout_ms, 0, 60000, int)
        _check_range(errors, "store.retry_attempts",
                     self.retry_attempts, 1, 20, int)
        _check_range(errors, "store.retry_base_delay",
                     self.retry_base_delay, 0.0, 10.0, (int, float))
        _check_range(errors, "store.retry_multiplier",
                     self.retry_multiplier, 1.0, 10.0, (int, float))
        _check_range(errors, "store.retry_max_delay",
                     self.retry_max_delay, 0.0, 60.0, (int, float))
        return errors

    def backoff_delay(self, attempt: int) -> float:
        """Wait before retry number *attempt* (0-based), capped at retry_max_delay."""
        return min(
            self.retry_max_delay,
            self.retry_base_delay * (self.retry_multiplier ** attempt),
        )


@dataclass
class DedupConfig:
    """Near-duplicate and conflict detection configuration."""
    near_duplicate_threshold: float = 0.78
    conflict_threshold: float = 0.35
    max_candidates: int = 120
    max_postings_per_token: int = 200
    probe_tokens: int = 12
    conflict_limit: int = 5

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "dedup.near_duplicate_threshold",
                     self.near_duplicate_threshold, 0.0, 1.0, float)
        _check_range(errors, "dedup.conflict_threshold",
                     self.conflict_threshold, 0.0, 1.0, float)
        _check_range(errors, "dedup.max_candidates",
                     self.max_candidates, 1, 100000, int)
        _check_range(errors, "dedup.max_postings_per_token",
                     self.max_postings_per_token, 1, 1000000, int)
        _check_range(errors, "dedup.probe_tokens",
                     self.probe_tokens, 1, 100, int)
        _check_range(errors, "dedup.conflict_limit",
                     self.conflict_limit, 1, 100, int)
        return errors


@dataclass
class SuggestConfig:
    """File-neighborhood suggestion configuration."""
    neighborhood_bonus: float = 12.0
    max_results: int = 20
    index_limit: int = 20
    neighborhood_limit: int = 30
    max_hints: int = 10

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "suggest.neighborhood_bonus",
                     self.neighborhood_bonus, 0.0, 100.0, (int, float))
        _check_range(errors, "suggest.max_results",
                     self.max_results, 1, 1000, int)
        _check_range(errors, "suggest.index_limit",
                     self.index_limit, 1, 1000, int)
        _check_range(errors, "suggest.neighborhood_limit",
                     self.neighborhood_limit, 1, 1000, int)
        _check_range(errors, "suggest.max_hints",
                     self.max_hints, 1, 100, int)
        return errors


@dataclass
class MemoryConfig:
    """Top-level machine-memory configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    suggest: SuggestConfig = field(default_factory=SuggestConfig)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MemoryConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "dedup" in d:
            kwargs["dedup"] = DedupConfig(**d["dedup"])
        if "suggest" in d:
            kwargs["suggest"] = SuggestConfig(**d["suggest"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.dedup.validate())
        errors.extend(self.suggest.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> MemoryConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ConfigError on invalid config values.

    Returns:
        MemoryConfig with values from file or defaults.

    Raises:
        ConfigError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = MemoryConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = MemoryConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = MemoryConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ConfigError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
