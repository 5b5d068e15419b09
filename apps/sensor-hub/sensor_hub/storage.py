"""Persistence for correlated sensor records and the device action log."""
from __future__ import annotations

import asyncio
import logging
import math
import re
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Protocol, Sequence, Tuple

from sensor_hub.models import DeviceAction, SensorRecord

logger = logging.getLogger(__name__)

RECORD_SORT_COLUMNS = {"id", "temperature", "humidity", "light", "time"}
ACTION_SORT_COLUMNS = {"id": "id", "nameDevice": "name_device", "action": "action", "timestamp": "timestamp"}

_SCHEMA = (
    """CREATE TABLE IF NOT EXISTS sensor_data (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        temperature REAL,
        humidity REAL,
        light INTEGER,
        time TEXT NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS idx_sensor_data_time ON sensor_data(time)",
    """CREATE TABLE IF NOT EXISTS device_actions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name_device TEXT NOT NULL,
        action TEXT NOT NULL,
        timestamp TEXT NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS idx_device_actions_name ON device_actions(name_device, timestamp)",
)


def _to_db(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_sort(raw: Optional[str], allowed: Iterable[str], default: str) -> Tuple[str, str]:
    """Parse ``column:direction`` against a whitelist, falling back to ``default`` descending."""

    col, _, direction = str(raw or f"{default}:desc").partition(":")
    col = col.strip()
    allowed_set = set(allowed)
    if col not in allowed_set:
        lowered = col.lower()
        col = lowered if lowered in allowed_set else default
    direction = (direction or "desc").strip().upper()
    if direction not in {"ASC", "DESC"}:
        direction = "DESC"
    return col, direction


NUMERIC_RECORD_COLUMNS = ("temperature", "humidity", "light")
_INTEGER_RE = re.compile(r"^[0-9]+$")
_DECIMAL_PREFIX_RE = re.compile(r"^[0-9]+\.[0-9]*$")


def record_search_clause(query: str, key: Optional[str]) -> Tuple[str, List[object]]:
    """Build the WHERE fragment for a value search over the reading columns.

    With ``key`` naming a reading column, an integer matches the whole unit
    (``21`` finds ``21.0`` up to ``21.99``), a trailing-dot decimal matches as a
    text prefix and anything else as a substring. Without a key a numeric query
    must equal one of the readings and text falls back to a substring match on
    all three.
    """

    column = str(key or "").strip().lower()
    if column in NUMERIC_RECORD_COLUMNS:
        if _INTEGER_RE.match(query):
            number = int(query)
            return f"({column} >= ? AND {column} < ?)", [number, number + 1]
        if _DECIMAL_PREFIX_RE.match(query):
            return f"CAST({column} AS TEXT) LIKE ?", [f"{query}%"]
        return f"CAST({column} AS TEXT) LIKE ?", [f"%{query}%"]
    try:
        number = float(query)
    except ValueError:
        number = None
    if number is not None and math.isfinite(number):
        return "(temperature = ? OR humidity = ? OR light = ?)", [number, number, int(number)]
    pattern = f"%{query}%"
    return (
        "(CAST(temperature AS TEXT) LIKE ? OR CAST(humidity AS TEXT) LIKE ? OR CAST(light AS TEXT) LIKE ?)",
        [pattern, pattern, pattern],
    )


@dataclass
class Page:
    items: List[Dict[str, object]] = field(default_factory=list)
    page: int = 1
    limit: int = 20
    total: int = 0
    sort: str = ""

    @property
    def pages(self) -> int:
        return max(1, -(-self.total // self.limit)) if self.limit else 1

    def as_payload(self) -> Dict[str, object]:
        return {
            "data": self.items,
            "page": self.page,
            "limit": self.limit,
            "total": self.total,
            "pages": self.pages,
            "sort": self.sort,
        }


class SensorStore(Protocol):
    """Storage operations the hub services depend on."""

    async def insert_record(self, record: SensorRecord) -> SensorRecord:
        ...

    async def insert_action(self, action: DeviceAction) -> DeviceAction:
        ...

    async def latest_record(self) -> Optional[SensorRecord]:
        ...

    async def last_record_time(self) -> Optional[datetime]:
        ...

    async def latest_actions(self, device_names: Sequence[str]) -> Dict[str, DeviceAction]:
        ...


class SqliteSensorStore:
    """SQLite implementation; every call runs on a worker thread with its own connection."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._initialized = False

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.path), timeout=10)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def initialize(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")
            for statement in _SCHEMA:
                conn.execute(statement)
        self._initialized = True
        logger.info("Sensor store ready at %s", self.path)

    def _ensure(self) -> None:
        if not self._initialized:
            self.initialize()

    async def _run(self, fn, *args):
        return await asyncio.to_thread(fn, *args)

    # -- writes -----------------------------------------------------------

    def _insert_record(self, record: SensorRecord) -> SensorRecord:
        self._ensure()
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT INTO sensor_data (temperature, humidity, light, time) VALUES (?, ?, ?, ?)",
                (record.temperature, record.humidity, record.light, _to_db(record.captured_at)),
            )
            return record.with_id(int(cur.lastrowid))

    async def insert_record(self, record: SensorRecord) -> SensorRecord:
        return await self._run(self._insert_record, record)

    def _insert_action(self, action: DeviceAction) -> DeviceAction:
        self._ensure()
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT INTO device_actions (name_device, action, timestamp) VALUES (?, ?, ?)",
                (action.device_name, action.action, _to_db(action.timestamp)),
            )
            return DeviceAction(
                device_name=action.device_name,
                action=action.action,
                timestamp=action.timestamp,
                id=int(cur.lastrowid),
            )

    async def insert_action(self, action: DeviceAction) -> DeviceAction:
        return await self._run(self._insert_action, action)

    # -- core queries -----------------------------------------------------

    @staticmethod
    def _record_from_row(row: sqlite3.Row) -> SensorRecord:
        light = row["light"]
        return SensorRecord(
            temperature=row["temperature"],
            humidity=row["humidity"],
            light=int(light) if light is not None else None,
            captured_at=_from_db(row["time"]),
            id=int(row["id"]),
        )

    def _latest_record(self) -> Optional[SensorRecord]:
        self._ensure()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, temperature, humidity, light, time FROM sensor_data ORDER BY id DESC LIMIT 1"
            ).fetchone()
        return self._record_from_row(row) if row else None

    async def latest_record(self) -> Optional[SensorRecord]:
        return await self._run(self._latest_record)

    def _last_record_time(self) -> Optional[datetime]:
        self._ensure()
        with self._connect() as conn:
            row = conn.execute("SELECT MAX(time) AS last FROM sensor_data").fetchone()
        if not row or row["last"] is None:
            return None
        return _from_db(row["last"])

    async def last_record_time(self) -> Optional[datetime]:
        return await self._run(self._last_record_time)

    def _latest_actions(self, device_names: Sequence[str]) -> Dict[str, DeviceAction]:
        self._ensure()
        names = [name.strip().lower() for name in device_names if name and name.strip()]
        if not names:
            return {}
        placeholders = ",".join("?" for _ in names)
        query = f"""
            SELECT id, name_device, action, timestamp FROM (
                SELECT id, name_device, action, timestamp,
                       ROW_NUMBER() OVER (
                           PARTITION BY lower(name_device)
                           ORDER BY timestamp DESC, id DESC
                       ) AS rn
                  FROM device_actions
                 WHERE lower(name_device) IN ({placeholders})
            ) WHERE rn = 1
        """
        with self._connect() as conn:
            rows = conn.execute(query, names).fetchall()
        latest: Dict[str, DeviceAction] = {}
        for row in rows:
            latest[str(row["name_device"]).lower()] = DeviceAction(
                device_name=row["name_device"],
                action=row["action"],
                timestamp=_from_db(row["timestamp"]),
                id=int(row["id"]),
            )
        return latest

    async def latest_actions(self, device_names: Sequence[str]) -> Dict[str, DeviceAction]:
        return await self._run(self._latest_actions, list(device_names))

    def _records_since(self, since: datetime) -> List[SensorRecord]:
        self._ensure()
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, temperature, humidity, light, time FROM sensor_data WHERE time >= ? ORDER BY time ASC",
                (_to_db(since),),
            ).fetchall()
        return [self._record_from_row(row) for row in rows]

    async def records_since(self, since: datetime) -> List[SensorRecord]:
        return await self._run(self._records_since, since)

    def _ping(self) -> bool:
        self._ensure()
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row["ok"] == 1)

    async def ping(self) -> bool:
        try:
            return await self._run(self._ping)
        except sqlite3.Error as exc:
            logger.warning("Sensor store ping failed: %s", exc)
            return False

    # -- history browsing -------------------------------------------------

    def _list_records(
        self,
        page: int,
        limit: int,
        sort: Optional[str],
        query: Optional[str],
        key: Optional[str],
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> Page:
        self._ensure()
        col, direction = parse_sort(sort, RECORD_SORT_COLUMNS, "time")
        where: List[str] = []
        params: List[object] = []
        if query:
            clause, clause_params = record_search_clause(query, key)
            where.append(clause)
            params.extend(clause_params)
        if start is not None:
            where.append("time >= ?")
            params.append(_to_db(start))
        if end is not None:
            where.append("time <= ?")
            params.append(_to_db(end))
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        offset = (page - 1) * limit
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT id, temperature, humidity, light, time FROM sensor_data {where_sql} "
                f"ORDER BY {col} {direction}, id {direction} LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ).fetchall()
            total = conn.execute(f"SELECT COUNT(*) AS total FROM sensor_data {where_sql}", params).fetchone()["total"]
        return Page(
            items=[self._record_from_row(row).as_payload() for row in rows],
            page=page,
            limit=limit,
            total=int(total),
            sort=f"{col}:{direction}",
        )

    async def list_records(
        self,
        *,
        page: int = 1,
        limit: int = 20,
        sort: Optional[str] = None,
        query: Optional[str] = None,
        key: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Page:
        return await self._run(self._list_records, page, limit, sort, query, key, start, end)

    def _list_actions(
        self,
        page: int,
        limit: int,
        sort: Optional[str],
        query: Optional[str],
        start: Optional[datetime],
        end: Optional[datetime],
    ) -> Page:
        self._ensure()
        col, direction = parse_sort(sort, ACTION_SORT_COLUMNS, "timestamp")
        where: List[str] = []
        params: List[object] = []
        if query:
            where.append("(name_device LIKE ? OR action LIKE ?)")
            params.extend([f"%{query}%", f"%{query}%"])
        if start is not None:
            where.append("timestamp >= ?")
            params.append(_to_db(start))
        if end is not None:
            where.append("timestamp <= ?")
            params.append(_to_db(end))
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        offset = (page - 1) * limit
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT id, name_device, action, timestamp FROM device_actions {where_sql} "
                f"ORDER BY {ACTION_SORT_COLUMNS[col]} {direction}, id {direction} LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ).fetchall()
            total = conn.execute(f"SELECT COUNT(*) AS total FROM device_actions {where_sql}", params).fetchone()["total"]
        items = [
            DeviceAction(
                device_name=row["name_device"],
                action=row["action"],
                timestamp=_from_db(row["timestamp"]),
                id=int(row["id"]),
            ).as_payload()
            for row in rows
        ]
        return Page(items=items, page=page, limit=limit, total=int(total), sort=f"{col}:{direction}")

    async def list_actions(
        self,
        *,
        page: int = 1,
        limit: int = 20,
        sort: Optional[str] = None,
        query: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Page:
        return await self._run(self._list_actions, page, limit, sort, query, start, end)
