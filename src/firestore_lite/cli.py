from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional

import typer
from loguru import logger

from .client import Firestore
from .coordinator.bulk_writer import BulkWriterOptions
from .path import ResourcePath
from .utils import iter_ndjson

app = typer.Typer(help="firestore-lite operational CLI")

# ---------------------------
# Common options
# ---------------------------


def project_opt() -> Optional[str]:
    return typer.Option(None, "--project", envvar="FIRESTORE_PROJECT_ID", help="Google Cloud project id")


def database_opt() -> Optional[str]:
    return typer.Option(None, "--database", help="Database id (default: '(default)')")


def emulator_opt() -> Optional[str]:
    return typer.Option(
        None, "--emulator-host", envvar="FIRESTORE_EMULATOR_HOST", help="host:port of a local emulator"
    )


def _client(project: Optional[str], database: Optional[str], emulator_host: Optional[str]) -> Firestore:
    overrides: Dict[str, Any] = {}
    if project:
        overrides["project_id"] = project
    if database:
        overrides["database_id"] = database
    if emulator_host:
        overrides["emulator_host"] = emulator_host
    return Firestore(**overrides)


# ---------------------------
# Reads
# ---------------------------


@app.command("ping")
def ping(
    project: Optional[str] = project_opt(),
    database: Optional[str] = database_opt(),
    emulator_host: Optional[str] = emulator_opt(),
):
    """List root collections to check connectivity and credentials."""

    async def _run() -> int:
        async with _client(project, database, emulator_host) as db:
            return len(await db.list_collections())

    n = asyncio.run(_run())
    typer.echo(json.dumps({"ok": True, "root_collections": n}, indent=2))


@app.command("get")
def get(
    path: str = typer.Argument(..., help="Document path, e.g. users/alice"),
    project: Optional[str] = project_opt(),
    database: Optional[str] = database_opt(),
    emulator_host: Optional[str] = emulator_opt(),
):
    async def _run() -> Dict[str, Any]:
        async with _client(project, database, emulator_host) as db:
            snap = await db.doc(path).get()
            return {"path": path, "exists": snap.exists, "data": snap.to_dict()}

    typer.echo(json.dumps(asyncio.run(_run()), default=str, indent=2))


@app.command("list-collections")
def list_collections(
    parent: Optional[str] = typer.Argument(None, help="Document path; omit for root collections"),
    project: Optional[str] = project_opt(),
    database: Optional[str] = database_opt(),
    emulator_host: Optional[str] = emulator_opt(),
):
    async def _run():
        async with _client(project, database, emulator_host) as db:
            if parent:
                return await db.doc(parent).list_collections()
            return await db.list_collections()

    for ref in asyncio.run(_run()):
        typer.echo(ref.path)


# ---------------------------
# Writes
# ---------------------------


@app.command("import-ndjson")
def import_ndjson(
    collection: str = typer.Argument(..., help="Target collection path"),
    path: str = typer.Argument(..., help="NDJSON file, one document per line"),
    id_field: Optional[str] = typer.Option(
        None, "--id-field", help="Field holding the document id (auto-id when omitted)"
    ),
    merge: bool = typer.Option(False, "--merge", help="Merge into existing documents"),
    max_batch_size: int = typer.Option(20, "--max-batch-size", help="Writes per batchWrite call"),
    throttle: bool = typer.Option(True, "--throttle/--no-throttle", help="Start at 500 ops/s and ramp up"),
    project: Optional[str] = project_opt(),
    database: Optional[str] = database_opt(),
    emulator_host: Optional[str] = emulator_opt(),
):
    """Write every line of an NDJSON file through a BulkWriter."""

    async def _run() -> Dict[str, int]:
        async with _client(project, database, emulator_host) as db:
            coll = db.collection(collection)
            writer = db.bulk_writer(BulkWriterOptions(max_batch_size=max_batch_size, throttling=throttle))
            futures = []
            for obj in iter_ndjson(path):
                doc_id = obj.pop(id_field, None) if id_field else None
                ref = coll.doc(str(doc_id) if doc_id is not None else None)
                futures.append(writer.set(ref, obj, merge=merge))
            await writer.close()

            failed = 0
            for fut in futures:
                if fut.exception() is not None:
                    failed += 1
                    logger.error(f"import-ndjson: {fut.exception()}")
            return {"written": len(futures) - failed, "failed": failed}

    counts = asyncio.run(_run())
    typer.echo(json.dumps(counts, indent=2))
    if counts["failed"]:
        raise typer.Exit(code=1)


@app.command("recursive-delete")
def recursive_delete(
    path: str = typer.Argument(..., help="Document or collection path"),
    yes: bool = typer.Option(False, "--yes", help="Skip the confirmation prompt"),
    project: Optional[str] = project_opt(),
    database: Optional[str] = database_opt(),
    emulator_host: Optional[str] = emulator_opt(),
):
    """Delete a document or collection and everything beneath it."""
    if not yes:
        typer.confirm(f"Delete {path} and all of its descendants?", abort=True)

    async def _run() -> None:
        async with _client(project, database, emulator_host) as db:
            resource = ResourcePath.parse(path)
            ref = db.doc(path) if resource.is_document else db.collection(path)
            await db.recursive_delete(ref)

    asyncio.run(_run())
    logger.success(f"Deleted {path}")


if __name__ == "__main__":
    app()
