"""Loader for studio.json — model ids, thresholds, pricing, storage paths."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

from reelforge.schemas import StudioConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("studio.json")

_cached_config: StudioConfig | None = None
_cached_path: str | None = None


def load_studio_config(path: Path | None = None) -> StudioConfig:
    """Load and validate studio.json, returning a StudioConfig.

    Results are cached — subsequent calls with the same path return
    the cached instance without re-reading the file.

    Environment overrides (read via .env):
        ``REELFORGE_API_KEYS`` — comma-separated keys for the HTTP API.
        ``REELFORGE_DB_PATH`` — SQLite path for the artifact recorder.

    Falls back to built-in defaults if the file is missing or contains
    invalid JSON/schema.
    """
    global _cached_config, _cached_path

    resolved = str(path or DEFAULT_CONFIG_PATH)

    if _cached_config is not None and _cached_path == resolved:
        logger.debug("Returning cached StudioConfig from %s", resolved)
        return _cached_config

    load_dotenv()
    cfg = _read_config(resolved)
    cfg = _apply_env_overrides(cfg)

    _cached_config = cfg
    _cached_path = resolved
    return cfg


def _read_config(resolved: str) -> StudioConfig:
    if not os.path.isfile(resolved):
        logger.warning("Config file not found: %s — using built-in defaults", resolved)
        return StudioConfig()

    try:
        with open(resolved, encoding="utf-8") as f:
            raw = json.load(f)
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning(
            "Failed to read config %s (%s) — using built-in defaults",
            resolved,
            exc,
        )
        return StudioConfig()

    try:
        cfg = StudioConfig.model_validate(raw)
    except Exception as exc:
        logger.warning(
            "Invalid config schema in %s (%s) — using built-in defaults",
            resolved,
            exc,
        )
        return StudioConfig()

    logger.info(
        "Loaded studio config v%s from %s — image=%s, video=%s, threshold=%.1f",
        cfg.version,
        resolved,
        cfg.models.image,
        cfg.models.video,
        cfg.continuity_threshold,
    )
    return cfg


def _apply_env_overrides(cfg: StudioConfig) -> StudioConfig:
    updates: dict[str, object] = {}
    keys = os.environ.get("REELFORGE_API_KEYS")
    if keys:
        updates["api_keys"] = [k.strip() for k in keys.split(",") if k.strip()]
    db_path = os.environ.get("REELFORGE_DB_PATH")
    if db_path:
        updates["db_path"] = db_path
    if updates:
        logger.debug("Applying env overrides: %s", sorted(updates))
        cfg = cfg.model_copy(update=updates)
    return cfg


def clear_cache() -> None:
    """Reset the cached config (useful for testing or hot-reload)."""
    global _cached_config, _cached_path
    _cached_config = None
    _cached_path = None
