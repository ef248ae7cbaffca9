# schema.py is just SQL wrapped in Python

from __future__ import annotations

from psycopg import Connection

from config import settings

# runs CREATE TABLE / INDEX IF NOT EXISTS against postgres, so repeated calls are safe
# the vector dimension is interpolated with % because DDL cannot take bind parameters;
# it comes from config as an int, never from user input

# crawl_processes - one row per crawl request, status polled by the UI
# page_results - one row per crawled URL; (process_id, source_url) unique so a page is never stored twice
# pdf_documents - one row per upload, with separate extraction and vector-sync status columns
# vector_records - the vector store; keyed by (namespace, id) so users never share rows,
#   source_key mirrors metadata.url for delete-by-key, HNSW index serves similarity queries


def init_schema(conn: Connection) -> None:
    with conn.cursor() as cur:
        cur.execute("CREATE EXTENSION IF NOT EXISTS vector;")

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS crawl_processes (
                id UUID PRIMARY KEY,
                url TEXT NOT NULL,
                user_id BIGINT NOT NULL,
                status TEXT NOT NULL
                    CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
                error_message TEXT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
            """
        )
        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS crawl_processes_status_updated_idx
            ON crawl_processes (status, updated_at);
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS page_results (
                id UUID PRIMARY KEY,
                process_id UUID NOT NULL REFERENCES crawl_processes(id) ON DELETE CASCADE,
                user_id BIGINT NOT NULL,
                source_url TEXT NOT NULL,
                title TEXT NOT NULL,
                content TEXT NOT NULL,
                internal_links JSONB NOT NULL DEFAULT '[]'::jsonb,
                external_links JSONB NOT NULL DEFAULT '[]'::jsonb,
                author TEXT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
            """
        )
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS page_results_process_url_key
            ON page_results (process_id, source_url);
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS pdf_documents (
                id UUID PRIMARY KEY,
                user_id BIGINT NOT NULL,
                original_filename TEXT NOT NULL,
                storage_path TEXT NOT NULL,
                file_size BIGINT NOT NULL,
                status TEXT NOT NULL
                    CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
                vector_sync_status TEXT NOT NULL
                    CHECK (vector_sync_status IN ('pending', 'processing', 'completed', 'failed')),
                extracted_text TEXT NULL,
                markdown_text TEXT NULL,
                metadata JSONB NULL,
                driver_used TEXT NULL,
                processing_time DOUBLE PRECISION NULL,
                error_message TEXT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            );
            """
        )
        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS pdf_documents_user_idx
            ON pdf_documents (user_id, status);
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS vector_records (
                namespace TEXT NOT NULL,
                id TEXT NOT NULL,
                source_key TEXT NOT NULL,
                embedding VECTOR(%d) NOT NULL,
                metadata JSONB NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                PRIMARY KEY (namespace, id)
            );
            """
            % settings.embedding_dimensions
        )
        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS vector_records_source_key_idx
            ON vector_records (namespace, source_key);
            """
        )
        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS vector_records_embedding_hnsw_idx
            ON vector_records USING hnsw (embedding vector_cosine_ops);
            """
        )

    conn.commit()
