import argparse
import asyncio
import json
import uuid

from piclib.core.config import settings
from piclib.core.logging_config import configure_logging
from piclib.db.session import SessionLocal, create_all, engine
from piclib.services.folder_stats import FolderStatsEngine
from piclib.services.metadata_store import MetadataStore
from piclib.workers import job_worker


def _parse_uuid(raw: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(raw).strip())
    except ValueError:
        raise argparse.ArgumentTypeError(f"Not a valid UUID: {raw}")


async def init_db() -> None:
    await create_all()
    await engine.dispose()
    print("Database tables created")


async def recalc_folder(library_id: uuid.UUID, folder_id: uuid.UUID) -> list[dict]:
    """Recalculate a folder and every ancestor up to the library root, in order."""
    stats = FolderStatsEngine(MetadataStore(SessionLocal))
    results: list[dict] = []
    current: uuid.UUID | None = folder_id
    try:
        while current is not None:
            result = await stats.recalculate(library_id, current)
            results.append(result.model_dump(mode="json"))
            current = result.parent_id
    finally:
        await engine.dispose()
    return results


async def drain() -> int:
    try:
        return await job_worker.drain_queue()
    finally:
        await engine.dispose()


def _add_database_commands(subparsers) -> None:
    subparsers.add_parser("init-db", help="Create any missing database tables")


def _add_job_commands(subparsers) -> None:
    subparsers.add_parser("worker", help="Run the job worker until interrupted")
    subparsers.add_parser("drain", help="Process every queued job, then exit")

    recalc = subparsers.add_parser("recalc-folder", help="Recalculate folder statistics up to the library root")
    recalc.add_argument("--library", required=True, type=_parse_uuid, help="Library id")
    recalc.add_argument("--folder", required=True, type=_parse_uuid, help="Folder id")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Picture library maintenance utilities")
    subparsers = parser.add_subparsers(dest="command")
    _add_database_commands(subparsers)
    _add_job_commands(subparsers)
    return parser


def _run_cli_command(args: argparse.Namespace) -> bool:
    if args.command == "init-db":
        asyncio.run(init_db())
        return True

    if args.command == "worker":
        job_worker.main()
        return True

    if args.command == "drain":
        processed = asyncio.run(drain())
        print(f"Processed {processed} job(s)")
        return True

    if args.command == "recalc-folder":
        results = asyncio.run(recalc_folder(args.library, args.folder))
        print(json.dumps(results, indent=2))
        return True

    return False


def main():
    configure_logging(settings.log_json)
    parser = _build_parser()
    args = parser.parse_args()
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
