"""
Call record store.

CallStore is the seam the signaling layer talks to; Database is the SQLite
implementation. Every committed write is pushed to the attached realtime
feed as a RowChange so subscribers see it.
"""

import json
import logging
import sqlite3
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from ..core.constants import CallStatus, MediaKind, ROW_INSERT, ROW_UPDATE, can_transition
from ..core.errors import PersistenceFailure, CallNotFound, InvalidTransition, MissingOffer
from ..core.model import CallRecord, RowChange


logger = logging.getLogger('ringline.database')

# Columns callers may write through update_call
WRITABLE_COLUMNS = frozenset({
    'status', 'sdp_offer', 'sdp_answer', 'audio_mode',
    'started_at', 'ended_at', 'duration',
})

CALL_COLUMNS = (
    'id', 'caller_id', 'receiver_id', 'room_id', 'status', 'call_type',
    'sdp_offer', 'sdp_answer', 'audio_mode', 'initiated_at', 'started_at',
    'ended_at', 'duration', 'updated_at', 'updated_by',
)


def _db_value(value):
    return value.value if hasattr(value, 'value') else value


class CallStore(ABC):
    """Async interface to the shared call table."""

    feed = None  # RealtimeFeed, attached by the session

    def attach_feed(self, feed):
        self.feed = feed

    async def _publish(self, change: RowChange):
        if self.feed is None:
            return
        try:
            await self.feed.publish_row(change)
        except Exception as e:
            # Write is already committed; subscribers catch up on the next change
            logger.error(f"Failed to publish {change.event} for call {change.new.id}: {e}", exc_info=True)

    @abstractmethod
    async def insert_call(self, caller_id: str, receiver_id: str, room_id: str,
                          call_type: MediaKind = MediaKind.AUDIO) -> CallRecord:
        """Create a ringing call row; the store assigns the id."""

    @abstractmethod
    async def get_call(self, call_id: str) -> CallRecord:
        """Fetch a call row or raise CallNotFound."""

    @abstractmethod
    async def update_call(self, call_id: str, fields: Dict[str, Any], updated_by: str,
                          allowed_from: Optional[Iterable[CallStatus]] = None,
                          require_offer: bool = False) -> CallRecord:
        """
        Conditionally update a call row.

        Args:
            call_id: Call id
            fields: Column → value (WRITABLE_COLUMNS only)
            updated_by: Identity of the writer
            allowed_from: Statuses the row must currently hold (None = any)
            require_offer: Refuse the write while sdp_offer is unset

        Raises:
            CallNotFound, InvalidTransition, MissingOffer, PersistenceFailure
        """

    @abstractmethod
    async def find_ringing_calls(self, receiver_id: str, since: float) -> List[CallRecord]:
        """Ringing calls addressed to receiver_id initiated at or after `since` (newest first)."""

    @abstractmethod
    async def apply_replica(self, record: CallRecord) -> bool:
        """
        Store a row snapshot written by the other party (no publish).

        The snapshot is refused when it would move the stored row through a
        transition the state machine forbids (a terminal row never changes
        status). Same-status snapshots always apply.

        Returns:
            True if the snapshot was stored
        """

    @abstractmethod
    async def log_event(self, call_id: str, event: str, sender_id: Optional[str] = None,
                        receiver_id: Optional[str] = None,
                        data: Optional[Dict[str, Any]] = None) -> int:
        """Append to the call event log."""

    @abstractmethod
    async def list_events(self, call_id: str) -> List[Dict[str, Any]]:
        """Event log entries for a call, oldest first."""


class Database(CallStore):
    """
    SQLite call store.
    Handles schema initialization and query execution.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Union[Path, str, None] = None,
                 clock: Callable[[], float] = time.time):
        """
        Initialize database manager.

        Args:
            db_path: Path to database file, or ':memory:' (default: paths.database_path)
            clock: Time source for updated_at stamps
        """
        if db_path is None:
            from ..utils.paths import get_paths
            db_path = get_paths().database_path

        self.clock = clock
        self._connection: Optional[sqlite3.Connection] = None

        if str(db_path) == ':memory:':
            self.db_path = ':memory:'
        else:
            self.db_path = Path(db_path)
            # Ensure parent directory exists with secure permissions
            self.db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        logger.info(f"Database manager initialized (path: {self.db_path})")

    @property
    def connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False
            )
            # Use Row factory for dict-like access
            self._connection.row_factory = sqlite3.Row

        return self._connection

    def close(self):
        """Close database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
            logger.debug("Database connection closed")

    @contextmanager
    def transaction(self):
        """
        Context manager for database transactions.

        Usage:
            with db.transaction():
                db.execute("UPDATE ...")
        """
        conn = self.connection
        try:
            yield conn
            conn.commit()
        except Exception as e:
            conn.rollback()
            logger.error(f"Transaction rolled back: {e}")
            raise

    @contextmanager
    def _sql_errors(self, action: str):
        try:
            yield
        except sqlite3.Error as e:
            logger.error(f"Failed to {action}: {e}")
            raise PersistenceFailure(f"Failed to {action}: {e}") from e

    def execute(self, query: str, params: tuple = ()) -> sqlite3.Cursor:
        return self.connection.execute(query, params)

    def fetchone(self, query: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        return self.execute(query, params).fetchone()

    def fetchall(self, query: str, params: tuple = ()) -> List[sqlite3.Row]:
        return self.execute(query, params).fetchall()

    # =========================================================================
    # Schema Management
    # =========================================================================

    def initialize(self):
        """Create tables if they don't exist."""
        with self._sql_errors('initialize schema'):
            if not self._tables_exist():
                logger.info("Database is empty, applying initial schema...")
                self._apply_schema()
            else:
                current_version = self._get_schema_version()
                if current_version != self.SCHEMA_VERSION:
                    logger.warning(
                        f"Schema version mismatch: expected {self.SCHEMA_VERSION}, got {current_version}"
                    )
                else:
                    logger.info(f"Database schema up to date (v{current_version})")

    def _tables_exist(self) -> bool:
        result = self.fetchone(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='_meta'"
        )
        return result is not None

    def _get_schema_version(self) -> int:
        try:
            result = self.fetchone(
                "SELECT int_val FROM _meta WHERE name = 'schema_version'"
            )
            if result:
                return result['int_val']
        except sqlite3.OperationalError:
            pass
        return 0

    def _apply_schema(self):
        """Apply initial schema from schema.sql."""
        schema_file = Path(__file__).parent / 'schema.sql'

        if not schema_file.exists():
            raise FileNotFoundError(f"Schema file not found: {schema_file}")

        with open(schema_file, 'r', encoding='utf-8') as f:
            schema_sql = f.read()

        with self.transaction():
            self.connection.executescript(schema_sql)

        logger.info(f"Schema applied (v{self._get_schema_version()})")

    # =========================================================================
    # Calls
    # =========================================================================

    def _fetch_call(self, call_id: str) -> Optional[CallRecord]:
        row = self.fetchone("SELECT * FROM call WHERE id = ?", (call_id,))
        return CallRecord.from_row(row) if row else None

    async def insert_call(self, caller_id: str, receiver_id: str, room_id: str,
                          call_type: MediaKind = MediaKind.AUDIO) -> CallRecord:
        call_id = str(uuid.uuid4())
        now = self.clock()

        with self._sql_errors(f'create call {room_id}'):
            with self.transaction():
                self.execute("""
                    INSERT INTO call (
                        id, caller_id, receiver_id, room_id, status, call_type,
                        initiated_at, updated_at, updated_by
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (call_id, caller_id, receiver_id, room_id, CallStatus.RINGING.value,
                      _db_value(call_type), now, now, caller_id))
            record = self._fetch_call(call_id)

        logger.debug(f"Created call {call_id} ({caller_id} → {receiver_id}, room {room_id})")
        await self._publish(RowChange(ROW_INSERT, record))
        return record

    async def get_call(self, call_id: str) -> CallRecord:
        with self._sql_errors(f'fetch call {call_id}'):
            record = self._fetch_call(call_id)
        if record is None:
            raise CallNotFound(call_id)
        return record

    async def update_call(self, call_id: str, fields: Dict[str, Any], updated_by: str,
                          allowed_from: Optional[Iterable[CallStatus]] = None,
                          require_offer: bool = False) -> CallRecord:
        unknown = set(fields) - WRITABLE_COLUMNS
        if unknown:
            raise ValueError(f"Not writable call columns: {sorted(unknown)}")

        assignments = [f"{column} = ?" for column in fields]
        params: List[Any] = [_db_value(value) for value in fields.values()]
        assignments += ["updated_at = ?", "updated_by = ?"]
        params += [self.clock(), updated_by]

        where = ["id = ?"]
        params.append(call_id)
        if allowed_from is not None:
            allowed = [_db_value(status) for status in allowed_from]
            where.append(f"status IN ({', '.join('?' for _ in allowed)})")
            params += allowed
        if require_offer:
            where.append("sdp_offer IS NOT NULL")

        query = f"UPDATE call SET {', '.join(assignments)} WHERE {' AND '.join(where)}"

        with self._sql_errors(f'update call {call_id}'):
            old = self._fetch_call(call_id)
            with self.transaction():
                cursor = self.execute(query, tuple(params))
                changed = cursor.rowcount
            new = self._fetch_call(call_id) if changed else None

        if not changed:
            if old is None:
                raise CallNotFound(call_id)
            if require_offer and not old.sdp_offer:
                raise MissingOffer(f"Call {call_id} has no session offer")
            raise InvalidTransition(call_id, fields.get('status'), old.status)

        logger.debug(f"Updated call {call_id}: {sorted(fields)} by {updated_by}")
        await self._publish(RowChange(ROW_UPDATE, new, old))
        return new

    async def find_ringing_calls(self, receiver_id: str, since: float) -> List[CallRecord]:
        with self._sql_errors(f'query ringing calls for {receiver_id}'):
            rows = self.fetchall("""
                SELECT * FROM call
                WHERE receiver_id = ? AND status = ? AND initiated_at >= ?
                ORDER BY initiated_at DESC
            """, (receiver_id, CallStatus.RINGING.value, since))
        return [CallRecord.from_row(row) for row in rows]

    async def apply_replica(self, record: CallRecord) -> bool:
        row = record.to_dict()
        placeholders = ', '.join('?' for _ in CALL_COLUMNS)
        with self._sql_errors(f'store replica of call {record.id}'):
            with self.transaction():
                stored = self._fetch_call(record.id)
                if (stored is not None and stored.status is not record.status
                        and not can_transition(stored.status, record.status)):
                    logger.warning(
                        f"Refused replica of call {record.id}: "
                        f"{stored.status.value} → {record.status.value} by {record.updated_by}"
                    )
                    return False
                self.execute(
                    f"INSERT OR REPLACE INTO call ({', '.join(CALL_COLUMNS)}) VALUES ({placeholders})",
                    tuple(row[column] for column in CALL_COLUMNS)
                )
        logger.debug(f"Applied replica of call {record.id} (status={row['status']})")
        return True

    # =========================================================================
    # Call event log
    # =========================================================================

    async def log_event(self, call_id: str, event: str, sender_id: Optional[str] = None,
                        receiver_id: Optional[str] = None,
                        data: Optional[Dict[str, Any]] = None) -> int:
        with self._sql_errors(f'log {event} for call {call_id}'):
            with self.transaction():
                cursor = self.execute("""
                    INSERT INTO call_event (call_id, event, sender_id, receiver_id, data, time)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (call_id, event, sender_id, receiver_id,
                      json.dumps(data) if data is not None else None, self.clock()))
        return cursor.lastrowid

    async def list_events(self, call_id: str) -> List[Dict[str, Any]]:
        with self._sql_errors(f'list events for call {call_id}'):
            rows = self.fetchall(
                "SELECT * FROM call_event WHERE call_id = ? ORDER BY id", (call_id,)
            )
        return [
            {
                'event': row['event'],
                'sender_id': row['sender_id'],
                'receiver_id': row['receiver_id'],
                'data': json.loads(row['data']) if row['data'] else None,
                'time': row['time'],
            }
            for row in rows
        ]
