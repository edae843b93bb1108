"""
Environment parsing helpers shared by the proxy, the stream client and the server.
"""

from __future__ import annotations

import json
import logging
import os

logger = logging.getLogger(__name__)


def parse_csv_env(var_name: str) -> list[str]:
    raw = os.getenv(var_name, "")
    values = [item.strip() for item in raw.split(",")]
    return [item for item in values if item]


def parse_list_env(var_name: str) -> list[str] | None:
    """Read a list from a JSON array, falling back to a comma-separated string."""
    raw = os.getenv(var_name)
    if not raw:
        return None

    # Prefer JSON array so values may contain commas.
    try:
        parsed = json.loads(raw)
        if isinstance(parsed, list):
            return [str(item) for item in parsed]
    except Exception:
        pass

    return parse_csv_env(var_name)


def env_float(var_name: str, default: float) -> float:
    raw = os.getenv(var_name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s value %r; using %s", var_name, raw, default)
        return default


def env_int(var_name: str, default: int) -> int:
    raw = os.getenv(var_name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s value %r; using %s", var_name, raw, default)
        return default
