"""
SQLite catalog of cached assets
"""
import asyncio
import logging
from collections.abc import AsyncGenerator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional

import aiosqlite

from .exceptions import CatalogError
from .models import CatalogEntry, CatalogStats, MediaKind

logger = logging.getLogger(__name__)

UPSERT_FIELDS = (
    "external_id",
    "media_kind",
    "title",
    "local_path",
    "file_size_mb",
    "quality",
    "format",
    "priority",
)


def _timestamp(value: datetime) -> str:
    # Fixed width so lexical ORDER BY matches chronological order
    return value.isoformat(timespec="microseconds")


class SQLiteCatalog:
    """
    SQLite-based durable index of cached videos.

    Implements: ICatalog interface

    Intent:
    Keeps one row per content id describing where the video lives, how big it
    is, and how it has been used. The row is the authority on whether a
    cached copy is *supposed* to exist; the content store is the authority
    on whether it actually does, and callers reconcile the two.

    Key design decisions:
    - Connection pooling prevents resource exhaustion under load
    - Connections run in autocommit mode; multi-statement writes open an
      explicit ``BEGIN IMMEDIATE`` transaction, which takes SQLite's write
      lock up front and makes concurrent upserts for one id serialize
    - WAL journaling lets readers proceed while a writer holds the lock
    - Rows are soft-deleted only; history is kept for auditing
    """

    BUSY_TIMEOUT_SECONDS = 30.0

    def __init__(self, db_path: Path, pool_size: int = 10):
        """
        Initialize the catalog.

        Args:
            db_path: Path to SQLite database file
            pool_size: Maximum number of idle connections kept for reuse
        """
        self.db_path = db_path
        self.pool_size = pool_size
        self._pool: list[aiosqlite.Connection] = []
        self._pool_lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        """
        Initialize database and create tables.

        Intent:
        One-time schema setup. Ensures the database directory exists, switches
        the journal to WAL, and creates the table plus the indexes the
        eviction query and the recency listing rely on. Idempotent.
        """
        if self._initialized:
            return

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path, timeout=self.BUSY_TIMEOUT_SECONDS) as conn:
                await conn.execute("PRAGMA journal_mode=WAL")
                await self._create_tables(conn)
        except aiosqlite.Error as e:
            raise CatalogError(f"Failed to initialize catalog at {self.db_path}: {e}") from e

        self._initialized = True

    async def _create_tables(self, conn: aiosqlite.Connection) -> None:
        """
        Create database tables.

        Key indexes:
        - (is_active, priority, last_accessed, access_count): eviction order
        - last_accessed: recency listing
        """
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS catalog_entries (
                content_id TEXT PRIMARY KEY,
                external_id TEXT NOT NULL,
                media_kind TEXT NOT NULL,
                title TEXT NOT NULL DEFAULT '',
                local_path TEXT,
                file_size_mb REAL NOT NULL DEFAULT 0 CHECK (file_size_mb >= 0),
                quality TEXT NOT NULL DEFAULT '1080p',
                format TEXT NOT NULL DEFAULT 'mp4',
                access_count INTEGER NOT NULL DEFAULT 0,
                last_accessed TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                priority INTEGER NOT NULL DEFAULT 1,
                is_active INTEGER NOT NULL DEFAULT 1
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_eviction_order
            ON catalog_entries(is_active, priority, last_accessed, access_count)
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_last_accessed
            ON catalog_entries(last_accessed)
        """)

        await conn.commit()

    @asynccontextmanager
    async def _get_connection(self) -> AsyncGenerator[aiosqlite.Connection, None]:
        """
        Get a connection from the pool.

        Intent:
        Reuses idle connections, opens new ones on demand, and closes extras
        once the pool is full. A connection is only ever used by one task at
        a time, which is what keeps explicit transactions from interleaving.
        """
        async with self._pool_lock:
            if self._pool:
                conn = self._pool.pop()
            else:
                conn = await aiosqlite.connect(
                    self.db_path,
                    timeout=self.BUSY_TIMEOUT_SECONDS,
                    isolation_level=None,
                )
                conn.row_factory = aiosqlite.Row

        try:
            yield conn
        finally:
            async with self._pool_lock:
                if len(self._pool) < self.pool_size:
                    self._pool.append(conn)
                else:
                    await conn.close()

    async def find(self, content_id: str) -> Optional[CatalogEntry]:
        """
        Get a catalog row by content id, active or not.
        """
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM catalog_entries WHERE content_id = ?",
                (content_id,)
            )
            row = await cursor.fetchone()

            return self._row_to_entry(row) if row else None

    async def find_active(self, content_id: str) -> Optional[CatalogEntry]:
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM catalog_entries WHERE content_id = ? AND is_active = 1",
                (content_id,)
            )
            row = await cursor.fetchone()

            return self._row_to_entry(row) if row else None

    async def upsert(self, content_id: str, fields: Mapping[str, Any]) -> CatalogEntry:
        """
        Create or update the row for a content id and mark it active.

        Intent:
        Registers a committed file. The read of the existing row and the
        write happen inside one ``BEGIN IMMEDIATE`` transaction, so two
        concurrent commits for the same id are serialized by SQLite: one
        fully wins and its ``local_path``/``file_size_mb`` pair is what every
        later reader sees.

        For updates, ``access_count``, ``last_accessed`` and ``created_at`` are
        preserved so re-acquiring a file does not reset its eviction standing.

        Args:
            content_id: Cache key
            fields: Any of external_id, media_kind, title, local_path,
                file_size_mb, quality, format, priority

        Returns:
            The row as persisted

        Raises:
            ValueError: On unknown fields or a negative size
            CatalogError: If the transaction fails (nothing is applied)
        """
        unknown = set(fields) - set(UPSERT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown catalog fields: {sorted(unknown)}")
        if fields.get("file_size_mb", 0) < 0:
            raise ValueError("file_size_mb must not be negative")

        now = datetime.now()

        async with self._get_connection() as conn:
            try:
                await conn.execute("BEGIN IMMEDIATE")
                try:
                    cursor = await conn.execute(
                        "SELECT * FROM catalog_entries WHERE content_id = ?",
                        (content_id,)
                    )
                    existing = await cursor.fetchone()

                    if existing:
                        current = self._row_to_entry(existing)
                        merged = current.model_copy(update={
                            **self._normalize(fields),
                            "is_active": True,
                            "updated_at": now,
                        })
                        merged = CatalogEntry.model_validate(merged.model_dump())
                        await conn.execute("""
                            UPDATE catalog_entries SET
                                external_id = ?,
                                media_kind = ?,
                                title = ?,
                                local_path = ?,
                                file_size_mb = ?,
                                quality = ?,
                                format = ?,
                                priority = ?,
                                is_active = 1,
                                updated_at = ?
                            WHERE content_id = ?
                        """, (
                            merged.external_id,
                            merged.media_kind.value,
                            merged.title,
                            str(merged.local_path) if merged.local_path else None,
                            merged.file_size_mb,
                            merged.quality,
                            merged.format,
                            merged.priority,
                            _timestamp(now),
                            content_id,
                        ))
                    else:
                        values = self._normalize(fields)
                        values.setdefault("external_id", self._split_content_id(content_id)[1])
                        values.setdefault("media_kind", self._split_content_id(content_id)[0])
                        merged = CatalogEntry(
                            content_id=content_id,
                            last_accessed=now,
                            created_at=now,
                            updated_at=now,
                            is_active=True,
                            **values,
                        )
                        await conn.execute("""
                            INSERT INTO catalog_entries (
                                content_id, external_id, media_kind, title,
                                local_path, file_size_mb, quality, format,
                                access_count, last_accessed, created_at,
                                updated_at, priority, is_active
                            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
                        """, (
                            content_id,
                            merged.external_id,
                            merged.media_kind.value,
                            merged.title,
                            str(merged.local_path) if merged.local_path else None,
                            merged.file_size_mb,
                            merged.quality,
                            merged.format,
                            merged.access_count,
                            _timestamp(merged.last_accessed),
                            _timestamp(merged.created_at),
                            _timestamp(merged.updated_at),
                            merged.priority,
                        ))

                    await conn.execute("COMMIT")
                except BaseException:
                    await conn.execute("ROLLBACK")
                    raise
            except aiosqlite.Error as e:
                raise CatalogError(f"Catalog upsert failed for {content_id}: {e}") from e

        logger.debug("Catalog upsert: %s -> %s", content_id, merged.local_path)
        return merged

    async def mark_inactive(self, content_id: str) -> bool:
        """
        Soft-delete a row.

        Intent:
        Used by eviction and by every self-healing path that discovers an
        active row whose file is gone. The row stays for history.

        Returns:
            True if a row changed state
        """
        try:
            async with self._get_connection() as conn:
                cursor = await conn.execute("""
                    UPDATE catalog_entries
                    SET is_active = 0, local_path = NULL, updated_at = ?
                    WHERE content_id = ? AND (is_active = 1 OR local_path IS NOT NULL)
                """, (_timestamp(datetime.now()), content_id))
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            raise CatalogError(f"Failed to deactivate {content_id}: {e}") from e

    async def bump_access(self, content_id: str) -> None:
        """
        Record a successful serve.

        Intent:
        Feeds the LRU/LFU tie-breakers of the eviction order. This runs on the
        read path, so a failed write is logged and dropped instead of failing
        the request that triggered it.
        """
        try:
            async with self._get_connection() as conn:
                await conn.execute("""
                    UPDATE catalog_entries
                    SET access_count = access_count + 1, last_accessed = ?
                    WHERE content_id = ?
                """, (_timestamp(datetime.now()), content_id))
        except (aiosqlite.Error, OSError) as e:
            logger.warning("Could not record access for %s: %s", content_id, e)

    async def list_eviction_candidates(
        self,
        limit: int,
        max_priority: Optional[int] = None,
        exclude: Iterable[str] = (),
    ) -> list[CatalogEntry]:
        """
        Active rows in eviction order.

        Intent:
        Lowest priority tier first; within a tier the least recently and then
        least often accessed go first. ``content_id`` is the final tie-break
        so the order is deterministic.

        Args:
            limit: Maximum number of rows
            max_priority: If set, tiers above it are never returned
            exclude: Content ids to skip (for example, currently locked ones)
        """
        query = "SELECT * FROM catalog_entries WHERE is_active = 1"
        params: list[Any] = []

        if max_priority is not None:
            query += " AND priority <= ?"
            params.append(max_priority)

        excluded = list(exclude)
        if excluded:
            query += f" AND content_id NOT IN ({', '.join('?' for _ in excluded)})"
            params.extend(excluded)

        query += " ORDER BY priority ASC, last_accessed ASC, access_count ASC, content_id ASC LIMIT ?"
        params.append(limit)

        async with self._get_connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()

            return [self._row_to_entry(row) for row in rows]

    async def aggregate_stats(self) -> CatalogStats:
        async with self._get_connection() as conn:
            cursor = await conn.execute("""
                SELECT COUNT(*), COALESCE(SUM(file_size_mb), 0), COALESCE(AVG(access_count), 0)
                FROM catalog_entries WHERE is_active = 1
            """)
            count, total_size_mb, avg_access_count = await cursor.fetchone()

            return CatalogStats(
                count=count,
                total_size_mb=total_size_mb,
                avg_access_count=avg_access_count,
            )

    async def list_active(self, limit: int = 50, offset: int = 0) -> list[CatalogEntry]:
        """
        Active rows, most recently accessed first.
        """
        async with self._get_connection() as conn:
            cursor = await conn.execute("""
                SELECT * FROM catalog_entries WHERE is_active = 1
                ORDER BY last_accessed DESC, content_id ASC
                LIMIT ? OFFSET ?
            """, (limit, offset))
            rows = await cursor.fetchall()

            return [self._row_to_entry(row) for row in rows]

    async def count_active(self) -> int:
        async with self._get_connection() as conn:
            cursor = await conn.execute("SELECT COUNT(*) FROM catalog_entries WHERE is_active = 1")
            return (await cursor.fetchone())[0]

    async def all_active(self) -> list[CatalogEntry]:
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT * FROM catalog_entries WHERE is_active = 1 ORDER BY content_id"
            )
            rows = await cursor.fetchall()

            return [self._row_to_entry(row) for row in rows]

    async def close(self) -> None:
        """
        Close all connections in the pool. Safe to call multiple times.
        """
        async with self._pool_lock:
            for conn in self._pool:
                await conn.close()
            self._pool.clear()

    @staticmethod
    def _split_content_id(content_id: str) -> tuple[str, str]:
        kind, _, external_id = content_id.partition("_")
        return kind, external_id

    @staticmethod
    def _normalize(fields: Mapping[str, Any]) -> dict[str, Any]:
        values = dict(fields)
        if "media_kind" in values:
            values["media_kind"] = MediaKind(values["media_kind"])
        if values.get("local_path") is not None:
            values["local_path"] = Path(values["local_path"])
        if "external_id" in values:
            values["external_id"] = str(values["external_id"])
        return values

    def _row_to_entry(self, row: aiosqlite.Row) -> CatalogEntry:
        """
        Convert database row to CatalogEntry.
        """
        return CatalogEntry(
            content_id=row["content_id"],
            external_id=row["external_id"],
            media_kind=MediaKind(row["media_kind"]),
            title=row["title"],
            local_path=Path(row["local_path"]) if row["local_path"] else None,
            file_size_mb=row["file_size_mb"],
            quality=row["quality"],
            format=row["format"],
            access_count=row["access_count"],
            last_accessed=datetime.fromisoformat(row["last_accessed"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            priority=row["priority"],
            is_active=bool(row["is_active"]),
        )
