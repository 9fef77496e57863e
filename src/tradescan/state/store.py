"""SQLite-backed state store.

Three stable tables: ``scans`` (append-only), ``shops`` and ``waystones``
(one row per position and state version, ``is_current = 1`` on the
active version). The nearest-waystone annotation lives on ``shops`` as
a reference to the waystone row plus the squared distance.

All mutation happens inside :meth:`StateStore.transaction`; a single
connection is shared behind a re-entrant lock, so at most one writer
transaction is in flight per process.
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import threading
from collections.abc import Iterable, Iterator, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any

from tradescan.exceptions import ConsistencyViolation, DuplicateScanError, StorageError
from tradescan.models._base import from_epoch_ms, to_epoch_ms
from tradescan.models.position import ChunkKey, Dimension, Position
from tradescan.models.query import ShopFilter, WaystoneFilter
from tradescan.models.scan import Scan
from tradescan.models.shop import ShopAction, ShopObservation, ShopState
from tradescan.models.waystone import WaystoneObservation, WaystoneRef, WaystoneSource, WaystoneState

_logger = logging.getLogger(__name__)

_MEMORY = ":memory:"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS scans (
  id          INTEGER PRIMARY KEY AUTOINCREMENT,
  sender_id   TEXT    NOT NULL,
  dimension   TEXT    NOT NULL,
  chunk_x     INTEGER NOT NULL,
  chunk_z     INTEGER NOT NULL,
  scanned_at  INTEGER NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_scans_natural_key
  ON scans (sender_id, dimension, chunk_x, chunk_z, scanned_at);
CREATE INDEX IF NOT EXISTS idx_scans_chunk_time
  ON scans (dimension, chunk_x, chunk_z, scanned_at);

CREATE TABLE IF NOT EXISTS waystones (
  id                 INTEGER PRIMARY KEY AUTOINCREMENT,
  dimension          TEXT    NOT NULL,
  pos_x              INTEGER NOT NULL,
  pos_y              INTEGER NOT NULL,
  pos_z              INTEGER NOT NULL,
  chunk_x            INTEGER NOT NULL,
  chunk_z            INTEGER NOT NULL,
  name               TEXT    NOT NULL,
  owner              TEXT    NOT NULL,
  source             TEXT    NOT NULL,
  first_seen_at      INTEGER NOT NULL,
  first_seen_scan_id INTEGER NOT NULL REFERENCES scans(id),
  last_seen_at       INTEGER NOT NULL,
  last_seen_scan_id  INTEGER NOT NULL REFERENCES scans(id),
  is_current         INTEGER NOT NULL DEFAULT 1
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_waystones_current_position
  ON waystones (dimension, pos_x, pos_y, pos_z) WHERE is_current = 1;
CREATE INDEX IF NOT EXISTS idx_waystones_chunk_current
  ON waystones (dimension, chunk_x, chunk_z) WHERE is_current = 1;
CREATE INDEX IF NOT EXISTS idx_waystones_position_history
  ON waystones (dimension, pos_x, pos_y, pos_z, first_seen_at);

CREATE TABLE IF NOT EXISTS shops (
  id                           INTEGER PRIMARY KEY AUTOINCREMENT,
  dimension                    TEXT    NOT NULL,
  pos_x                        INTEGER NOT NULL,
  pos_y                        INTEGER NOT NULL,
  pos_z                        INTEGER NOT NULL,
  chunk_x                      INTEGER NOT NULL,
  chunk_z                      INTEGER NOT NULL,
  owner                        TEXT    NOT NULL,
  item                         TEXT    NOT NULL,
  price                        REAL    NOT NULL,
  amount                       INTEGER NOT NULL,
  action                       TEXT    NOT NULL,
  first_seen_at                INTEGER NOT NULL,
  first_seen_scan_id           INTEGER NOT NULL REFERENCES scans(id),
  last_seen_at                 INTEGER NOT NULL,
  last_seen_scan_id            INTEGER NOT NULL REFERENCES scans(id),
  is_current                   INTEGER NOT NULL DEFAULT 1,
  nearest_waystone_id          INTEGER REFERENCES waystones(id),
  nearest_waystone_distance_sq INTEGER
);
CREATE UNIQUE INDEX IF NOT EXISTS uq_shops_current_position
  ON shops (dimension, pos_x, pos_y, pos_z) WHERE is_current = 1;
CREATE INDEX IF NOT EXISTS idx_shops_chunk_current
  ON shops (dimension, chunk_x, chunk_z) WHERE is_current = 1;
CREATE INDEX IF NOT EXISTS idx_shops_item_action_current
  ON shops (LOWER(item), action, price) WHERE is_current = 1;
CREATE INDEX IF NOT EXISTS idx_shops_nearest_current
  ON shops (nearest_waystone_id) WHERE is_current = 1;
CREATE INDEX IF NOT EXISTS idx_shops_position_history
  ON shops (dimension, pos_x, pos_y, pos_z, first_seen_at);
"""

_SHOP_SELECT = """
SELECT s.id, s.dimension, s.pos_x, s.pos_y, s.pos_z, s.chunk_x, s.chunk_z,
       s.owner, s.item, s.price, s.amount, s.action,
       s.first_seen_at, s.first_seen_scan_id, s.last_seen_at, s.last_seen_scan_id,
       s.is_current, s.nearest_waystone_distance_sq,
       w.id AS w_id, w.dimension AS w_dimension, w.pos_x AS w_x, w.pos_y AS w_y, w.pos_z AS w_z,
       w.name AS w_name, w.owner AS w_owner
FROM shops s
LEFT JOIN waystones w ON w.id = s.nearest_waystone_id
"""

_WAYSTONE_SELECT = """
SELECT w.id, w.dimension, w.pos_x, w.pos_y, w.pos_z, w.chunk_x, w.chunk_z,
       w.name, w.owner, w.source,
       w.first_seen_at, w.first_seen_scan_id, w.last_seen_at, w.last_seen_scan_id, w.is_current
FROM waystones w
"""

# last_seen never moves backwards when a stale scan is replayed.
_EXTEND_SQL = """
UPDATE {table}
SET last_seen_scan_id = CASE WHEN :seen_at >= last_seen_at THEN :scan_id ELSE last_seen_scan_id END,
    last_seen_at = MAX(last_seen_at, :seen_at){extra}
WHERE id = :id AND is_current = 1
"""

_WAYSTONE_EXTEND_EXTRA = """,
    source = COALESCE(:source, source),
    chunk_x = COALESCE(:chunk_x, chunk_x),
    chunk_z = COALESCE(:chunk_z, chunk_z)"""


def _position_params(position: Position) -> tuple[str, int, int, int]:
    return (position.dimension.value, position.x, position.y, position.z)


def _position_from_row(row: sqlite3.Row) -> Position:
    return Position(Dimension(row["dimension"]), row["pos_x"], row["pos_y"], row["pos_z"])


def _shop_from_row(row: sqlite3.Row) -> ShopState:
    nearest: WaystoneRef | None = None
    if row["w_id"] is not None:
        nearest = WaystoneRef(
            id=row["w_id"],
            dimension=Dimension(row["w_dimension"]),
            x=row["w_x"],
            y=row["w_y"],
            z=row["w_z"],
            name=row["w_name"],
            owner=row["w_owner"],
            distance_sq=row["nearest_waystone_distance_sq"],
        )
    return ShopState(
        id=row["id"],
        dimension=Dimension(row["dimension"]),
        x=row["pos_x"],
        y=row["pos_y"],
        z=row["pos_z"],
        chunk_x=row["chunk_x"],
        chunk_z=row["chunk_z"],
        owner=row["owner"],
        item=row["item"],
        price=row["price"],
        amount=row["amount"],
        action=ShopAction(row["action"]),
        first_seen_at=from_epoch_ms(row["first_seen_at"]),
        first_seen_scan_id=row["first_seen_scan_id"],
        last_seen_at=from_epoch_ms(row["last_seen_at"]),
        last_seen_scan_id=row["last_seen_scan_id"],
        is_current=bool(row["is_current"]),
        nearest_waystone=nearest,
    )


def _waystone_from_row(row: sqlite3.Row) -> WaystoneState:
    return WaystoneState(
        id=row["id"],
        dimension=Dimension(row["dimension"]),
        x=row["pos_x"],
        y=row["pos_y"],
        z=row["pos_z"],
        chunk_x=row["chunk_x"],
        chunk_z=row["chunk_z"],
        name=row["name"],
        owner=row["owner"],
        source=WaystoneSource(row["source"]),
        first_seen_at=from_epoch_ms(row["first_seen_at"]),
        first_seen_scan_id=row["first_seen_scan_id"],
        last_seen_at=from_epoch_ms(row["last_seen_at"]),
        last_seen_scan_id=row["last_seen_scan_id"],
        is_current=bool(row["is_current"]),
    )


def _page(limit: int | None, offset: int) -> tuple[str, list[Any]]:
    return " LIMIT ? OFFSET ?", [limit if limit is not None else -1, offset]


class StateStore:
    """Transactional SQLite persistence for scans, shops and waystones."""

    def __init__(self, path: str | Path = _MEMORY, *, journal_mode: str = "WAL") -> None:
        self._path = str(path)
        self._journal_mode = journal_mode.upper()
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None
        self._in_transaction = False

    @classmethod
    def open(cls, path: str | Path = _MEMORY, *, journal_mode: str = "WAL") -> StateStore:
        store = cls(path, journal_mode=journal_mode)
        store.connect()
        return store

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        with self._lock:
            if self._conn is not None:
                return
            try:
                if self._path != _MEMORY:
                    Path(self._path).parent.mkdir(parents=True, exist_ok=True)
                conn = sqlite3.connect(self._path, isolation_level=None, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA foreign_keys = ON")
                if self._path != _MEMORY:
                    conn.execute(f"PRAGMA journal_mode = {self._journal_mode}")
                conn.executescript(_SCHEMA)
            except sqlite3.Error as exc:
                raise StorageError(f"Failed to open store at {self._path}: {exc}") from exc
            _logger.debug("Opened state store path=%s journal_mode=%s", self._path, self._journal_mode)
            self._conn = conn

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None
            _logger.debug("Closed state store path=%s", self._path)

    def __enter__(self) -> StateStore:
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self.connect()
        assert self._conn is not None  # noqa: S101
        return self._conn

    # ------------------------------------------------------------------
    # Transaction boundary
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed block as one serializable write transaction.

        Commits on success; rolls back on any exception and re-raises it.
        """
        with self._lock:
            if self._in_transaction:
                raise StorageError("Nested transactions are not supported")
            conn = self._connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise StorageError(f"Failed to begin transaction: {exc}") from exc
            self._in_transaction = True
            try:
                yield
            except BaseException:
                self._rollback(conn)
                raise
            else:
                try:
                    conn.execute("COMMIT")
                except sqlite3.Error as exc:
                    self._rollback(conn)
                    raise StorageError(f"Failed to commit transaction: {exc}") from exc
            finally:
                self._in_transaction = False

    def _rollback(self, conn: sqlite3.Connection) -> None:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error:
            _logger.warning("Rollback failed", exc_info=True)

    def _execute(self, sql: str, params: Sequence[Any] | dict[str, Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            try:
                return self._connection().execute(sql, params)
            except sqlite3.Error as exc:
                raise StorageError(f"Statement failed: {exc}") from exc

    def _fetchall(self, sql: str, params: Sequence[Any] | dict[str, Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._connection().execute(sql, params).fetchall()
            except sqlite3.Error as exc:
                raise StorageError(f"Query failed: {exc}") from exc

    def _fetchone(self, sql: str, params: Sequence[Any] | dict[str, Any] = ()) -> sqlite3.Row | None:
        rows = self._fetchall(sql, params)
        return rows[0] if rows else None

    def _insert_state(self, sql: str, params: Sequence[Any], *, entity: str, position: Position) -> int:
        with self._lock:
            try:
                cursor = self._connection().execute(sql, params)
            except sqlite3.IntegrityError as exc:
                raise ConsistencyViolation(
                    f"Cannot insert {entity} at {position}: another active version exists",
                    entity=entity,
                    position=position,
                ) from exc
            except sqlite3.Error as exc:
                raise StorageError(f"Insert into {entity} failed: {exc}") from exc
        row_id = cursor.lastrowid
        assert row_id is not None  # noqa: S101
        return row_id

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    def insert_scan(self, scan: Scan) -> int:
        """Record a scan; raises :class:`DuplicateScanError` on natural-key collision."""
        params = (
            scan.sender_id,
            scan.dimension.value,
            scan.chunk_x,
            scan.chunk_z,
            to_epoch_ms(scan.scanned_at),
        )
        with self._lock:
            try:
                cursor = self._connection().execute(
                    "INSERT INTO scans (sender_id, dimension, chunk_x, chunk_z, scanned_at) VALUES (?, ?, ?, ?, ?)",
                    params,
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateScanError(sender_id=scan.sender_id) from exc
            except sqlite3.Error as exc:
                raise StorageError(f"Insert into scans failed: {exc}") from exc
        scan_id = cursor.lastrowid
        assert scan_id is not None  # noqa: S101
        return scan_id

    def get_scan(self, scan_id: int) -> Scan | None:
        row = self._fetchone(
            "SELECT id, sender_id, dimension, chunk_x, chunk_z, scanned_at FROM scans WHERE id = ?",
            (scan_id,),
        )
        if row is None:
            return None
        return Scan(
            id=row["id"],
            sender_id=row["sender_id"],
            dimension=row["dimension"],
            chunk_x=row["chunk_x"],
            chunk_z=row["chunk_z"],
            scanned_at=from_epoch_ms(row["scanned_at"]),
        )

    def scan_chunk_stats(self, dimension: Dimension | None = None) -> list[sqlite3.Row]:
        return self._fetchall(
            """
            SELECT dimension, chunk_x, chunk_z, COUNT(*) AS total_scans, MAX(scanned_at) AS latest_scanned_at
            FROM scans
            WHERE (:dimension IS NULL OR dimension = :dimension)
            GROUP BY dimension, chunk_x, chunk_z
            """,
            {"dimension": dimension.value if dimension is not None else None},
        )

    def active_counts_by_chunk(self, table: str, dimension: Dimension | None = None) -> list[sqlite3.Row]:
        if table not in ("shops", "waystones"):
            raise ValueError(f"unknown state table: {table}")
        return self._fetchall(
            f"""
            SELECT dimension, chunk_x, chunk_z, COUNT(*) AS active
            FROM {table}
            WHERE is_current = 1 AND (:dimension IS NULL OR dimension = :dimension)
            GROUP BY dimension, chunk_x, chunk_z
            """,
            {"dimension": dimension.value if dimension is not None else None},
        )

    def ever_observed_by_chunk(self, table: str, dimension: Dimension | None = None) -> list[sqlite3.Row]:
        """Distinct objects ever recorded per chunk, across all state versions.

        Shops are distinct per ``(owner, item, position)``, waystones per position.
        """
        if table == "shops":
            identity = "owner || char(31) || item || char(31) || pos_x || ',' || pos_y || ',' || pos_z"
        elif table == "waystones":
            identity = "pos_x || ',' || pos_y || ',' || pos_z"
        else:
            raise ValueError(f"unknown state table: {table}")
        return self._fetchall(
            f"""
            SELECT dimension, chunk_x, chunk_z, COUNT(DISTINCT {identity}) AS ever_observed
            FROM {table}
            WHERE (:dimension IS NULL OR dimension = :dimension)
            GROUP BY dimension, chunk_x, chunk_z
            """,
            {"dimension": dimension.value if dimension is not None else None},
        )

    def last_observed_by_chunk(self, table: str, dimension: Dimension | None = None) -> list[sqlite3.Row]:
        """Objects per chunk last seen by the newest scan of that chunk."""
        if table not in ("shops", "waystones"):
            raise ValueError(f"unknown state table: {table}")
        return self._fetchall(
            f"""
            WITH latest AS (
              SELECT id, dimension, chunk_x, chunk_z
              FROM (
                SELECT id, dimension, chunk_x, chunk_z,
                       ROW_NUMBER() OVER (
                         PARTITION BY dimension, chunk_x, chunk_z
                         ORDER BY scanned_at DESC, id DESC
                       ) AS scan_rank
                FROM scans
                WHERE (:dimension IS NULL OR dimension = :dimension)
              )
              WHERE scan_rank = 1
            )
            SELECT l.dimension, l.chunk_x, l.chunk_z, COUNT(t.id) AS last_observed
            FROM latest l
            JOIN {table} t
              ON t.last_seen_scan_id = l.id
             AND t.dimension = l.dimension AND t.chunk_x = l.chunk_x AND t.chunk_z = l.chunk_z
            GROUP BY l.dimension, l.chunk_x, l.chunk_z
            """,
            {"dimension": dimension.value if dimension is not None else None},
        )

    # ------------------------------------------------------------------
    # Shops
    # ------------------------------------------------------------------

    def active_shops_in_chunk(self, chunk: ChunkKey) -> list[ShopState]:
        rows = self._fetchall(
            _SHOP_SELECT + " WHERE s.is_current = 1 AND s.dimension = ? AND s.chunk_x = ? AND s.chunk_z = ? ORDER BY s.id",
            (chunk.dimension.value, chunk.chunk_x, chunk.chunk_z),
        )
        return [_shop_from_row(row) for row in rows]

    def active_shop_at(self, position: Position) -> ShopState | None:
        rows = self._fetchall(
            _SHOP_SELECT
            + " WHERE s.is_current = 1 AND s.dimension = ? AND s.pos_x = ? AND s.pos_y = ? AND s.pos_z = ?",
            _position_params(position),
        )
        if len(rows) > 1:
            raise ConsistencyViolation(f"more than one active shop at {position}", entity="shop", position=position)
        return _shop_from_row(rows[0]) if rows else None

    def insert_shop(self, observation: ShopObservation, scan: Scan, chunk: ChunkKey) -> int:
        assert scan.id is not None  # noqa: S101
        seen_at = to_epoch_ms(scan.scanned_at)
        return self._insert_state(
            """
            INSERT INTO shops (
              dimension, pos_x, pos_y, pos_z, chunk_x, chunk_z, owner, item, price, amount, action,
              first_seen_at, first_seen_scan_id, last_seen_at, last_seen_scan_id, is_current
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
            """,
            (
                *_position_params(observation.position),
                chunk.chunk_x,
                chunk.chunk_z,
                observation.owner,
                observation.item,
                observation.price,
                observation.amount,
                observation.action.value if observation.action is not None else None,
                seen_at,
                scan.id,
                seen_at,
                scan.id,
            ),
            entity="shop",
            position=observation.position,
        )

    def extend_shop(self, state_id: int, scan: Scan) -> None:
        self._execute(
            _EXTEND_SQL.format(table="shops", extra=""),
            {"seen_at": to_epoch_ms(scan.scanned_at), "scan_id": scan.id, "id": state_id},
        )

    def retire_shop(self, state_id: int) -> None:
        self._execute("UPDATE shops SET is_current = 0 WHERE id = ?", (state_id,))

    def shop_history(self, position: Position) -> list[ShopState]:
        rows = self._fetchall(
            _SHOP_SELECT
            + " WHERE s.dimension = ? AND s.pos_x = ? AND s.pos_y = ? AND s.pos_z = ? ORDER BY s.first_seen_at, s.id",
            _position_params(position),
        )
        return [_shop_from_row(row) for row in rows]

    def query_active_shops(self, shop_filter: ShopFilter) -> list[ShopState]:
        clauses = ["s.is_current = 1"]
        params: list[Any] = []
        if shop_filter.dimension is not None:
            clauses.append("s.dimension = ?")
            params.append(shop_filter.dimension.value)
        if shop_filter.item:
            clauses.append("LOWER(s.item) = LOWER(?)")
            params.append(shop_filter.item)
        if shop_filter.owner:
            clauses.append("s.owner = ?")
            params.append(shop_filter.owner)
        if shop_filter.action is not None:
            clauses.append("s.action = ?")
            params.append(shop_filter.action.value)
        if shop_filter.chunk_x is not None:
            clauses.append("s.chunk_x = ?")
            params.append(shop_filter.chunk_x)
        if shop_filter.chunk_z is not None:
            clauses.append("s.chunk_z = ?")
            params.append(shop_filter.chunk_z)
        page_sql, page_params = _page(shop_filter.limit, shop_filter.offset)
        rows = self._fetchall(
            _SHOP_SELECT
            + " WHERE "
            + " AND ".join(clauses)
            + " ORDER BY s.dimension, s.pos_x, s.pos_y, s.pos_z"
            + page_sql,
            [*params, *page_params],
        )
        return [_shop_from_row(row) for row in rows]

    def top_shops(
        self,
        *,
        item: str,
        action: ShopAction,
        dimension: Dimension | None,
        limit: int,
        descending: bool,
    ) -> list[ShopState]:
        """Best offers for an item: one row per (owner, price), freshest first."""
        order = "DESC" if descending else "ASC"
        rows = self._fetchall(
            f"""
            WITH ranked AS (
              SELECT id,
                     ROW_NUMBER() OVER (
                       PARTITION BY owner, price
                       ORDER BY last_seen_at DESC, pos_x, pos_y, pos_z
                     ) AS owner_price_rank
              FROM shops
              WHERE is_current = 1
                AND LOWER(item) = LOWER(:item)
                AND action = :action
                AND (:dimension IS NULL OR dimension = :dimension)
            )
            {_SHOP_SELECT}
            JOIN ranked r ON r.id = s.id
            WHERE r.owner_price_rank = 1
            ORDER BY s.price {order}, s.last_seen_at DESC, s.id
            LIMIT :limit
            """,
            {
                "item": item,
                "action": action.value,
                "dimension": dimension.value if dimension is not None else None,
                "limit": limit,
            },
        )
        return [_shop_from_row(row) for row in rows]

    def list_items(self) -> list[str]:
        rows = self._fetchall(
            """
            SELECT item FROM shops
            WHERE is_current = 1 AND item != ''
            GROUP BY LOWER(item)
            ORDER BY LOWER(item) ASC
            """
        )
        return [row["item"] for row in rows]

    def latest_observed(self, *, item: str | None = None, dimension: Dimension | None = None) -> datetime | None:
        row = self._fetchone(
            """
            SELECT MAX(last_seen_at) AS latest_observed
            FROM shops
            WHERE is_current = 1
              AND (:item IS NULL OR LOWER(item) = LOWER(:item))
              AND (:dimension IS NULL OR dimension = :dimension)
            """,
            {"item": item, "dimension": dimension.value if dimension is not None else None},
        )
        if row is None or row["latest_observed"] is None:
            return None
        return from_epoch_ms(row["latest_observed"])

    # ------------------------------------------------------------------
    # Nearest-waystone annotation
    # ------------------------------------------------------------------

    def active_shop_positions(self, dimensions: Iterable[Dimension] | None = None) -> list[Position]:
        if dimensions is None:
            rows = self._fetchall("SELECT dimension, pos_x, pos_y, pos_z FROM shops WHERE is_current = 1")
        else:
            values = sorted({dimension.value for dimension in dimensions})
            if not values:
                return []
            placeholders = ", ".join("?" for _ in values)
            rows = self._fetchall(
                f"SELECT dimension, pos_x, pos_y, pos_z FROM shops WHERE is_current = 1 AND dimension IN ({placeholders})",
                values,
            )
        return [_position_from_row(row) for row in rows]

    def shop_positions_referencing(self, waystone_ids: Iterable[int]) -> list[Position]:
        ids = sorted(set(waystone_ids))
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        rows = self._fetchall(
            f"""
            SELECT dimension, pos_x, pos_y, pos_z FROM shops
            WHERE is_current = 1 AND nearest_waystone_id IN ({placeholders})
            """,
            ids,
        )
        return [_position_from_row(row) for row in rows]

    def shop_positions_with_stale_nearest(self) -> list[Position]:
        """Active shops with no annotation or one pointing at a retired waystone."""
        rows = self._fetchall(
            """
            SELECT s.dimension, s.pos_x, s.pos_y, s.pos_z
            FROM shops s
            LEFT JOIN waystones w ON w.id = s.nearest_waystone_id
            WHERE s.is_current = 1 AND (w.id IS NULL OR w.is_current = 0)
            """
        )
        return [_position_from_row(row) for row in rows]

    def set_nearest(self, position: Position, waystone_id: int | None, distance_sq: int | None) -> int:
        cursor = self._execute(
            """
            UPDATE shops
            SET nearest_waystone_id = ?, nearest_waystone_distance_sq = ?
            WHERE is_current = 1 AND dimension = ? AND pos_x = ? AND pos_y = ? AND pos_z = ?
            """,
            (waystone_id, distance_sq, *_position_params(position)),
        )
        return cursor.rowcount

    # ------------------------------------------------------------------
    # Waystones
    # ------------------------------------------------------------------

    def active_waystones_in_chunk(self, chunk: ChunkKey) -> list[WaystoneState]:
        rows = self._fetchall(
            _WAYSTONE_SELECT
            + " WHERE w.is_current = 1 AND w.dimension = ? AND w.chunk_x = ? AND w.chunk_z = ? ORDER BY w.id",
            (chunk.dimension.value, chunk.chunk_x, chunk.chunk_z),
        )
        return [_waystone_from_row(row) for row in rows]

    def active_waystone_at(self, position: Position) -> WaystoneState | None:
        rows = self._fetchall(
            _WAYSTONE_SELECT
            + " WHERE w.is_current = 1 AND w.dimension = ? AND w.pos_x = ? AND w.pos_y = ? AND w.pos_z = ?",
            _position_params(position),
        )
        if len(rows) > 1:
            raise ConsistencyViolation(
                f"more than one active waystone at {position}",
                entity="waystone",
                position=position,
            )
        return _waystone_from_row(rows[0]) if rows else None

    def nameable_waystones(self, dimension: Dimension) -> list[WaystoneState]:
        rows = self._fetchall(
            _WAYSTONE_SELECT
            + """
            WHERE w.is_current = 1 AND w.dimension = ? AND w.name != '' AND w.owner != ''
            ORDER BY w.pos_x, w.pos_y, w.pos_z, w.id
            """,
            (dimension.value,),
        )
        return [_waystone_from_row(row) for row in rows]

    def insert_waystone(self, observation: WaystoneObservation, scan: Scan, chunk: ChunkKey) -> int:
        assert scan.id is not None  # noqa: S101
        seen_at = to_epoch_ms(scan.scanned_at)
        return self._insert_state(
            """
            INSERT INTO waystones (
              dimension, pos_x, pos_y, pos_z, chunk_x, chunk_z, name, owner, source,
              first_seen_at, first_seen_scan_id, last_seen_at, last_seen_scan_id, is_current
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
            """,
            (
                *_position_params(observation.position),
                chunk.chunk_x,
                chunk.chunk_z,
                observation.name,
                observation.owner,
                str(observation.source),
                seen_at,
                scan.id,
                seen_at,
                scan.id,
            ),
            entity="waystone",
            position=observation.position,
        )

    def extend_waystone(
        self,
        state_id: int,
        scan: Scan,
        *,
        source: WaystoneSource | None = None,
        chunk: ChunkKey | None = None,
    ) -> None:
        """Confirm a waystone in place.

        ``source`` promotes its provenance; ``chunk`` refiles it under another chunk.
        """
        self._execute(
            _EXTEND_SQL.format(table="waystones", extra=_WAYSTONE_EXTEND_EXTRA),
            {
                "seen_at": to_epoch_ms(scan.scanned_at),
                "scan_id": scan.id,
                "id": state_id,
                "source": source.value if source is not None else None,
                "chunk_x": chunk.chunk_x if chunk is not None else None,
                "chunk_z": chunk.chunk_z if chunk is not None else None,
            },
        )

    def retire_waystone(self, state_id: int) -> None:
        self._execute("UPDATE waystones SET is_current = 0 WHERE id = ?", (state_id,))

    def waystone_history(self, position: Position) -> list[WaystoneState]:
        rows = self._fetchall(
            _WAYSTONE_SELECT
            + " WHERE w.dimension = ? AND w.pos_x = ? AND w.pos_y = ? AND w.pos_z = ? ORDER BY w.first_seen_at, w.id",
            _position_params(position),
        )
        return [_waystone_from_row(row) for row in rows]

    def query_active_waystones(self, waystone_filter: WaystoneFilter) -> list[WaystoneState]:
        clauses = ["w.is_current = 1"]
        params: list[Any] = []
        if waystone_filter.dimension is not None:
            clauses.append("w.dimension = ?")
            params.append(waystone_filter.dimension.value)
        if waystone_filter.name:
            clauses.append("LOWER(w.name) = LOWER(?)")
            params.append(waystone_filter.name)
        if waystone_filter.owner:
            clauses.append("w.owner = ?")
            params.append(waystone_filter.owner)
        if waystone_filter.source is not None:
            clauses.append("w.source = ?")
            params.append(waystone_filter.source.value)
        if waystone_filter.chunk_x is not None:
            clauses.append("w.chunk_x = ?")
            params.append(waystone_filter.chunk_x)
        if waystone_filter.chunk_z is not None:
            clauses.append("w.chunk_z = ?")
            params.append(waystone_filter.chunk_z)
        page_sql, page_params = _page(waystone_filter.limit, waystone_filter.offset)
        rows = self._fetchall(
            _WAYSTONE_SELECT
            + " WHERE "
            + " AND ".join(clauses)
            + " ORDER BY w.dimension, w.pos_x, w.pos_y, w.pos_z"
            + page_sql,
            [*params, *page_params],
        )
        return [_waystone_from_row(row) for row in rows]
