from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from previewhub.core.logging import configure_logging
from previewhub.services.context import AppContext
from previewhub.services.snapshots import export_snapshot, import_snapshot


async def _export(project_id: str, output: Path) -> None:
    context = AppContext.build()
    try:
        archive = await export_snapshot(context.files, project_id)
    finally:
        await context.aclose()
    output.write_bytes(archive)
    print(f"project_id={project_id}")
    print(f"snapshot={output}")
    print(f"bytes={len(archive)}")


async def _import(project_id: str, source: Path) -> None:
    # Restores a project's current files from an archive; existing paths get new versions.
    context = AppContext.build()
    try:
        result = await import_snapshot(context.files, project_id, source.read_bytes())
    finally:
        await context.aclose()
    print(f"project_id={project_id}")
    print(f"upserted={result.upserted}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Export or import a project snapshot archive")
    parser.add_argument("project_id")
    parser.add_argument("--output", default=None, help="archive path (default: <project_id>.tar.gz)")
    parser.add_argument("--import-from", default=None, help="import this archive instead of exporting")
    args = parser.parse_args()

    configure_logging()
    if args.import_from:
        asyncio.run(_import(args.project_id, Path(args.import_from)))
        return
    output = Path(args.output or f"{args.project_id}.tar.gz")
    asyncio.run(_export(args.project_id, output))


if __name__ == "__main__":
    main()
