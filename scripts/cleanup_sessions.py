from __future__ import annotations

import argparse
import asyncio

from previewhub.core.logging import configure_logging
from previewhub.services.context import AppContext


async def _run_cleanup(orphans: bool, max_age_minutes: int | None) -> int:
    # One-shot sweep for operators; the worker runs the same pass on a schedule.
    context = AppContext.build()
    try:
        report = await context.sessions.cleanup_expired_sessions()
        print(f"expired_sessions={report.total_expired}")
        print(f"terminated={report.successful}")
        print(f"failed={report.failed}")
        for outcome in report.outcomes:
            if outcome.error:
                print(f"session_error={outcome.session_id} error={outcome.error}")
        if orphans:
            orphan_report = await context.sessions.cleanup_orphaned_machines(max_age_minutes)
            print(f"orphans_scanned={orphan_report.scanned}")
            print(f"orphans_destroyed={len(orphan_report.destroyed)}")
            print(f"orphans_failed={len(orphan_report.failed)}")
        return 1 if report.failed else 0
    finally:
        await context.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Terminate expired preview sessions")
    parser.add_argument("--orphans", action="store_true", help="also destroy machines no session references")
    parser.add_argument("--max-age-minutes", type=int, default=None)
    args = parser.parse_args()

    configure_logging()
    raise SystemExit(asyncio.run(_run_cleanup(args.orphans, args.max_age_minutes)))


if __name__ == "__main__":
    main()
