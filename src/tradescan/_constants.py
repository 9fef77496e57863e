"""Shared constants."""

from __future__ import annotations

# Horizontal edge length of a chunk, in blocks.
CHUNK_SIZE = 16

DEFAULT_DB_FILE = "tradescan.db"
DEFAULT_PORT = 49876
DEFAULT_MIN_MOD_VERSION = "1.0.0"
DEFAULT_MAX_BODY_BYTES = 256 * 1024

MAINTENANCE_RETRY_AFTER_S = 120

ITEM_LIMIT_DEFAULT = 3
ITEM_LIMIT_MAX = 10
CHUNK_LIMIT_DEFAULT = 500
CHUNK_LIMIT_MAX = 1000
