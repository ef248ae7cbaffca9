"""Command-line entry point for the ingestion pipeline.

Usage::

    python -m src.cli init-db
    python -m src.cli crawl https://example.com --depth 2 --user 7
    python -m src.cli pdf-process report.pdf --user 7
    python -m src.cli pdf-extract report.pdf --driver pdftotext
    python -m src.cli search "refund policy" --user 7
    python -m src.cli worker

By default work is enqueued for ``arq`` workers (``worker`` subcommand).
``--local`` runs everything in this process with in-memory crawl state
and waits until every enqueued job has finished.

Results are printed to stdout as JSON; logging goes to stderr.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from typing import Any
from uuid import UUID

from config import settings
from src.errors import IngestionError
from src.pipeline import IngestionPipeline

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    """Route all logging to stderr; stdout carries command output only."""
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    if root.handlers:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    root.addHandler(handler)


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ingest", description="Document ingestion pipeline")
    parser.add_argument(
        "--local",
        action="store_true",
        help="run jobs in this process instead of enqueueing them for workers",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    crawl = sub.add_parser("crawl", help="crawl a site into page results")
    crawl.add_argument("url")
    crawl.add_argument("--depth", type=int, default=settings.crawl_default_depth)
    crawl.add_argument("--user", type=int, required=True)

    process = sub.add_parser("pdf-process", help="store, extract and index a PDF")
    process.add_argument("path")
    process.add_argument("--user", type=int, required=True)
    process.add_argument("--driver")
    process.add_argument("--no-markdown", action="store_true")
    process.add_argument("--inline", action="store_true", help="extract within this command")

    extract = sub.add_parser("pdf-extract", help="extract a PDF without storing it")
    extract.add_argument("path")
    extract.add_argument("--driver")
    extract.add_argument("--no-markdown", action="store_true")

    stats = sub.add_parser("pdf-stats", help="PDF processing statistics for a user")
    stats.add_argument("--user", type=int, required=True)

    delete = sub.add_parser("pdf-delete", help="delete a PDF, its file and its vectors")
    delete.add_argument("document_id", type=UUID)

    sync_page = sub.add_parser("sync-page", help="re-sync a page result's vectors")
    sync_page.add_argument("page_id", type=UUID)
    sync_page.add_argument("--user", type=int, required=True)

    sync_pdf = sub.add_parser("sync-pdf", help="re-sync a PDF document's vectors")
    sync_pdf.add_argument("document_id", type=UUID)
    sync_pdf.add_argument("--user", type=int, required=True)

    search = sub.add_parser("search", help="search a user's indexed content")
    search.add_argument("query")
    search.add_argument("--user", type=int, required=True)
    search.add_argument("--top-k", type=int, default=settings.search_top_k)

    sub.add_parser("init-db", help="create tables and indexes")
    sub.add_parser("worker", help="run an arq worker")
    return parser


def _init_db() -> None:
    import psycopg

    from src.storage.schema import init_schema

    if not settings.database_url:
        raise RuntimeError("DATABASE_URL is not set")
    with psycopg.connect(settings.database_url, autocommit=True) as conn:
        init_schema(conn)
    logger.info("Schema initialized")


def _run_worker() -> None:
    from arq import run_worker

    from src.jobs.worker import WorkerSettings

    run_worker(WorkerSettings)


async def _pdf_extract(args: argparse.Namespace) -> None:
    pipeline = IngestionPipeline.local()
    result = await pipeline.extract_pdf(args.path, args.driver, not args.no_markdown)
    _emit(asdict(result))


async def _run(args: argparse.Namespace) -> None:
    pipeline = IngestionPipeline.local() if args.local else IngestionPipeline()
    async with pipeline:
        if args.command == "crawl":
            process = await pipeline.crawl(args.url, args.depth, args.user)
            await pipeline.drain()
            process = await pipeline.repository.get_crawl_process(process.id) or process
            _emit({"process_id": process.id, "url": process.url, "status": process.status.value})
        elif args.command == "pdf-process":
            document = await pipeline.upload_pdf(
                args.path,
                args.user,
                driver=args.driver,
                convert_to_markdown=not args.no_markdown,
                run_inline=args.inline,
            )
            await pipeline.drain()
            document = await pipeline.repository.get_pdf_document(document.id) or document
            _emit(
                {
                    "document_id": document.id,
                    "status": document.status.value,
                    "vector_sync_status": document.vector_sync_status.value,
                    "driver_used": document.driver_used,
                }
            )
        elif args.command == "pdf-stats":
            _emit(await pipeline.pdf_statistics(args.user))
        elif args.command == "pdf-delete":
            _emit({"deleted": await pipeline.delete_pdf(args.document_id)})
        elif args.command == "sync-page":
            await pipeline.enqueue_page_sync(args.page_id, args.user)
            await pipeline.drain()
            _emit({"page_id": args.page_id, "queued": True})
        elif args.command == "sync-pdf":
            await pipeline.enqueue_pdf_sync(args.document_id, args.user)
            await pipeline.drain()
            _emit({"document_id": args.document_id, "queued": True})
        elif args.command == "search":
            documents = await pipeline.search(args.query, args.user, args.top_k)
            _emit([document.to_dict() for document in documents])


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    _configure_logging()

    try:
        if args.command == "init-db":
            _init_db()
        elif args.command == "worker":
            _run_worker()
        elif args.command == "pdf-extract":
            asyncio.run(_pdf_extract(args))
        else:
            asyncio.run(_run(args))
    except IngestionError as exc:
        logger.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
