"""Vector store over Postgres + pgvector, partitioned by user namespace.

Every operation takes an explicit namespace (``user_{id}``) and every
statement filters on it, so no query or write can cross users.

Result contract (mirrors a hosted vector index):
  upsert / delete_by_key return True on success and False when the store
  reported an error; the caller decides whether that is fatal.  Query
  errors propagate.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import psycopg
from pgvector.psycopg import register_vector_async
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from config import settings
from src.indexing.models import VectorMatch, VectorRecord

logger = logging.getLogger(__name__)


def namespace_for_user(user_id: int) -> str:
    return f"user_{user_id}"


class PgVectorStore:
    def __init__(self, pool: AsyncConnectionPool, timeout: float | None = None) -> None:
        self._pool = pool
        self._timeout = settings.vector_store_timeout_seconds if timeout is None else timeout

    async def upsert(self, records: list[VectorRecord], namespace: str) -> bool:
        if not records:
            return True
        rows = []
        for record in records:
            metadata = {**record.metadata, "namespace": namespace}
            rows.append((namespace, record.id, record.source_key, record.values, Jsonb(metadata)))
        try:
            await asyncio.wait_for(self._upsert_rows(rows), timeout=self._timeout)
        except (psycopg.Error, asyncio.TimeoutError) as exc:
            logger.error("Vector upsert of %d records into %s failed: %s", len(rows), namespace, exc)
            return False
        return True

    async def _upsert_rows(self, rows: list[tuple[Any, ...]]) -> None:
        async with self._pool.connection() as conn:
            await register_vector_async(conn)
            async with conn.cursor() as cur:
                await cur.executemany(
                    """
                    INSERT INTO vector_records (namespace, id, source_key, embedding, metadata)
                    VALUES (%s, %s, %s, %s::vector, %s)
                    ON CONFLICT (namespace, id) DO UPDATE
                    SET source_key = EXCLUDED.source_key,
                        embedding = EXCLUDED.embedding,
                        metadata = EXCLUDED.metadata,
                        updated_at = NOW()
                    """,
                    rows,
                )

    async def delete_by_key(self, key: str, namespace: str) -> bool:
        try:
            deleted = await asyncio.wait_for(
                self._execute(
                    "DELETE FROM vector_records WHERE namespace = %s AND source_key = %s",
                    (namespace, key),
                ),
                timeout=self._timeout,
            )
        except (psycopg.Error, asyncio.TimeoutError) as exc:
            logger.error("Vector delete for %s in %s failed: %s", key, namespace, exc)
            return False
        logger.info("Deleted %d vectors for %s in %s", deleted, key, namespace)
        return True

    async def delete_namespace(self, namespace: str) -> int:
        return await self._execute("DELETE FROM vector_records WHERE namespace = %s", (namespace,))

    async def _execute(self, query: str, params: tuple[Any, ...]) -> int:
        async with self._pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(query, params)
                return cur.rowcount

    async def query(
        self,
        vector: list[float],
        top_k: int,
        namespace: str,
        filter: dict[str, Any] | None = None,
    ) -> list[VectorMatch]:
        async with self._pool.connection() as conn:
            await register_vector_async(conn)
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    """
                    SELECT
                        id,
                        metadata,
                        1 - (embedding <=> %s::vector) AS similarity
                    FROM vector_records
                    WHERE namespace = %s
                      AND metadata @> %s
                    ORDER BY embedding <=> %s::vector
                    LIMIT %s
                    """,
                    (vector, namespace, Jsonb(filter or {}), vector, top_k),
                )
                rows = await cur.fetchall()
        return [
            VectorMatch(id=row["id"], similarity=float(row["similarity"]), metadata=row["metadata"])
            for row in rows
        ]

    async def namespace_stats(self, namespace: str) -> dict[str, int]:
        async with self._pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    """
                    SELECT
                        COUNT(*) AS vector_count,
                        COUNT(DISTINCT source_key) AS source_count
                    FROM vector_records
                    WHERE namespace = %s
                    """,
                    (namespace,),
                )
                row = await cur.fetchone()
        return {
            "vector_count": int(row["vector_count"]) if row else 0,
            "source_count": int(row["source_count"]) if row else 0,
        }
