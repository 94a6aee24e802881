#!/usr/bin/env python3
"""
Database models and operations for Rivulet.

All SQLite access goes through DatabaseQueue, a single worker task that owns
the connection and runs one operation at a time. Callers submit operations by
name with ``await db.execute("op_name", **params)``; failures come back as
PersistenceError carrying the operation name.
"""

from os import path, access, R_OK
from datetime import datetime
import sqlite3
from sqlite3 import Row, Error
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any, Iterable

from config import config, get_logger
from domain import Source, SourceUpdate, Entry, EntryState, utcnow
from errors import PersistenceError
from telemetry import trace_span

logger = get_logger("models")

SCHEMA_FILE_SIZE_LIMIT = 1024 * 1024


def initialize_database(conn) -> None:
    """Initialize the database with the schema from schema.sql if it is empty."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
            cursor.executescript(_read_schema_file())
            conn.commit()
            logger.info("Database schema initialized successfully")
        else:
            logger.debug("Database already exists with proper schema")
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")

    file_size = path.getsize(schema_path)
    if file_size > SCHEMA_FILE_SIZE_LIMIT:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {SCHEMA_FILE_SIZE_LIMIT} bytes)")

    with open(schema_path, 'r') as f:
        return f.read()


def _to_text(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _to_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        logger.warning(f"Ignoring malformed timestamp in database: {value!r}")
        return None


def _row_to_source(row) -> Source:
    return Source(
        id=row['id'],
        url=row['url'],
        title=row['title'],
        description=row['description'],
        etag=row['etag'],
        last_modified=row['last_modified'],
        last_fetched_at=_to_datetime(row['last_fetched_at']),
        created_at=_to_datetime(row['created_at']),
    )


def _row_to_entry(row) -> Entry:
    return Entry(
        id=row['id'],
        source_id=row['feed_id'],
        title=row['title'],
        link=row['link'],
        content=row['content'],
        summary=row['summary'],
        author=row['author'],
        published_at=_to_datetime(row['published_at']),
        fetched_at=_to_datetime(row['fetched_at']) or utcnow(),
    )


class DatabaseQueue:
    """A queue for database operations so only one task ever touches the connection."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None

    async def start(self) -> None:
        """Open the database and start the worker."""
        if self.running:
            return

        if path.isfile(self.db_path):
            logger.info(f"Using existing database at {self.db_path}")
        else:
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        try:
            self.conn = sqlite3.connect(self.db_path)
            self.conn.row_factory = Row
            self.conn.execute("PRAGMA foreign_keys = ON")
            initialize_database(self.conn)
        except (Error, OSError, ValueError) as e:
            if self.conn:
                self.conn.close()
                self.conn = None
            raise PersistenceError("open", str(e)) from e

        self.running = True
        self.worker_task = create_task(self._worker())
        logger.debug("Database worker started")

    async def stop(self) -> None:
        """Stop the database worker and close the connection."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Wake anyone still waiting so they fail instead of hanging
        for operation_id, event in self.events.items():
            self.results.setdefault(operation_id, {"error": "database worker stopped"})
            event.set()
        self.events.clear()

        logger.debug("Database worker stopped")

    async def __aenter__(self) -> "DatabaseQueue":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _worker(self) -> None:
        """Worker coroutine processing database operations in submission order."""
        while self.running:
            try:
                try:
                    operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
                except TimeoutError:
                    continue

                try:
                    method = getattr(self, operation_name, None)
                    if operation_name.startswith("_") or not callable(method):
                        self.results[operation_id] = {"error": f"Unknown operation: {operation_name}"}
                    else:
                        self.results[operation_id] = {"result": method(**params)}
                except Exception as e:
                    logger.error(f"Database operation error in {operation_name}: {e}")
                    self.results[operation_id] = {"error": str(e)}
                finally:
                    if operation_id in self.events:
                        self.events[operation_id].set()
                    self.queue.task_done()

            except CancelledError:
                logger.debug("Database worker cancelled")
                break

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a database operation and return its result.

        Raises:
            PersistenceError: if the store is not running or the operation failed.
        """
        if not self.running:
            raise PersistenceError(operation_name, "database worker is not running")

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id)
            if "error" in result:
                raise PersistenceError(operation_name, result["error"])
            return result["result"]
        finally:
            self.events.pop(operation_id, None)
            self.results.pop(operation_id, None)

    # Source operations

    def add_source(self, url: str, title: Optional[str] = None, description: Optional[str] = None) -> int:
        """Add a source and return its id. Fails if the URL is already subscribed."""
        cursor = self.conn.cursor()
        cursor.execute(
            "INSERT INTO feeds (url, title, description, created_at) VALUES (?, ?, ?, ?)",
            (url, title, description, _to_text(utcnow()))
        )
        self.conn.commit()
        return cursor.lastrowid

    def get_source(self, source_id: int) -> Optional[Source]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM feeds WHERE id = ?", (source_id,))
        row = cursor.fetchone()
        return _row_to_source(row) if row else None

    def get_source_by_url(self, url: str) -> Optional[Source]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM feeds WHERE url = ?", (url,))
        row = cursor.fetchone()
        return _row_to_source(row) if row else None

    def list_sources(self) -> List[Source]:
        """All sources ordered by title, then URL."""
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM feeds ORDER BY title, url")
        return [_row_to_source(row) for row in cursor.fetchall()]

    def _apply_source_update(self, cursor, source_id: int, update: SourceUpdate) -> None:
        assignments = []
        values: List[Any] = []
        for column in ("title", "description", "etag", "last_modified"):
            value = getattr(update, column)
            if value is not None:
                assignments.append(f"{column} = ?")
                values.append(value)
        if update.last_fetched_at is not None:
            assignments.append("last_fetched_at = ?")
            values.append(_to_text(update.last_fetched_at))
        if not assignments:
            return
        values.append(source_id)
        cursor.execute(f"UPDATE feeds SET {', '.join(assignments)} WHERE id = ?", values)

    def update_source(self, source_id: int, update: SourceUpdate) -> None:
        """Apply a partial update; fields left as None are not touched."""
        cursor = self.conn.cursor()
        try:
            self._apply_source_update(cursor, source_id, update)
            self.conn.commit()
        except Error:
            self.conn.rollback()
            raise

    def delete_source(self, source_id: int) -> bool:
        """Delete a source; its entries and entry state go with it."""
        cursor = self.conn.cursor()
        cursor.execute("DELETE FROM feeds WHERE id = ?", (source_id,))
        self.conn.commit()
        return cursor.rowcount > 0

    # Entry operations

    def _insert_entries(self, cursor, entries: Iterable[Entry]) -> List[Entry]:
        inserted = []
        for entry in entries:
            cursor.execute('''
            INSERT OR IGNORE INTO items (id, feed_id, title, link, content, summary, author, published_at, fetched_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                entry.id,
                entry.source_id,
                entry.title,
                entry.link,
                entry.content,
                entry.summary,
                entry.author,
                _to_text(entry.published_at),
                _to_text(entry.fetched_at),
            ))
            if cursor.rowcount > 0:
                inserted.append(entry)
        return inserted

    def insert_entries(self, entries: List[Entry]) -> int:
        """Insert entries that are not stored yet; return how many were new.

        Existing rows are never overwritten. The batch is one transaction.
        """
        cursor = self.conn.cursor()
        try:
            inserted = self._insert_entries(cursor, entries)
            self.conn.commit()
            return len(inserted)
        except Error:
            self.conn.rollback()
            raise

    def record_fetch(self, source_id: int, update: SourceUpdate, entries: List[Entry]) -> List[Entry]:
        """Apply a post-fetch source update and insert new entries atomically.

        Returns the entries that were actually inserted.
        """
        cursor = self.conn.cursor()
        try:
            self._apply_source_update(cursor, source_id, update)
            inserted = self._insert_entries(cursor, entries)
            self.conn.commit()
            return inserted
        except Error:
            self.conn.rollback()
            raise

    def get_entry(self, entry_id: str) -> Optional[Entry]:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM items WHERE id = ?", (entry_id,))
        row = cursor.fetchone()
        return _row_to_entry(row) if row else None

    def find_entry(self, id_prefix: str) -> Optional[Entry]:
        """Entry whose id starts with id_prefix, if exactly one does."""
        cursor = self.conn.cursor()
        pattern = id_prefix.replace('%', '').replace('_', '') + '%'
        cursor.execute("SELECT * FROM items WHERE id LIKE ? LIMIT 2", (pattern,))
        rows = cursor.fetchall()
        return _row_to_entry(rows[0]) if len(rows) == 1 else None

    def get_entries(self, source_id: Optional[int] = None) -> List[Entry]:
        """Entries newest first, optionally for a single source."""
        cursor = self.conn.cursor()
        if source_id is None:
            cursor.execute("SELECT * FROM items ORDER BY published_at DESC, fetched_at DESC")
        else:
            cursor.execute(
                "SELECT * FROM items WHERE feed_id = ? ORDER BY published_at DESC, fetched_at DESC",
                (source_id,)
            )
        return [_row_to_entry(row) for row in cursor.fetchall()]

    def update_entry_content(self, entry_id: str, content: str) -> bool:
        cursor = self.conn.cursor()
        cursor.execute("UPDATE items SET content = ? WHERE id = ?", (content, entry_id))
        self.conn.commit()
        return cursor.rowcount > 0

    def count_entries(self) -> int:
        cursor = self.conn.cursor()
        cursor.execute("SELECT COUNT(*) FROM items")
        return cursor.fetchone()[0]

    # Read / starred state

    def get_read_state(self, entry_id: str) -> EntryState:
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM item_state WHERE item_id = ?", (entry_id,))
        row = cursor.fetchone()
        if row is None:
            return EntryState(entry_id=entry_id)
        return EntryState(
            entry_id=entry_id,
            is_read=bool(row['is_read']),
            is_starred=bool(row['is_starred']),
            read_at=_to_datetime(row['read_at']),
            starred_at=_to_datetime(row['starred_at']),
        )

    def set_read(self, entry_id: str, is_read: bool) -> None:
        read_at = _to_text(utcnow()) if is_read else None
        cursor = self.conn.cursor()
        cursor.execute('''
        INSERT INTO item_state (item_id, is_read, read_at) VALUES (?, ?, ?)
        ON CONFLICT(item_id) DO UPDATE SET is_read = excluded.is_read, read_at = excluded.read_at
        ''', (entry_id, int(is_read), read_at))
        self.conn.commit()

    def set_starred(self, entry_id: str, is_starred: bool) -> None:
        starred_at = _to_text(utcnow()) if is_starred else None
        cursor = self.conn.cursor()
        cursor.execute('''
        INSERT INTO item_state (item_id, is_starred, starred_at) VALUES (?, ?, ?)
        ON CONFLICT(item_id) DO UPDATE SET is_starred = excluded.is_starred, starred_at = excluded.starred_at
        ''', (entry_id, int(is_starred), starred_at))
        self.conn.commit()

    def unread_count(self, source_id: int) -> int:
        cursor = self.conn.cursor()
        cursor.execute('''
        SELECT COUNT(*) FROM items i
        LEFT JOIN item_state s ON s.item_id = i.id
        WHERE i.feed_id = ? AND (s.is_read IS NULL OR s.is_read = 0)
        ''', (source_id,))
        return cursor.fetchone()[0]
