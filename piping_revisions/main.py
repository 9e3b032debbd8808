"""
Maintenance entry point.

Responsibilities:
  1. Configure logging and initialize the database.
  2. Check or repair the current-revision pointer of every isometric.

Usage:
    python -m piping_revisions.main init-db
    python -m piping_revisions.main check
    python -m piping_revisions.main repair

Keep this file minimal. All operation logic belongs in core/.
"""

import argparse
import sys

from piping_revisions.config.logging_config import setup_logging
from piping_revisions.config.settings import settings
from piping_revisions.core.revision_service import Actor, RevisionService
from piping_revisions.data.database import get_session, init_db
from piping_revisions.data.repositories import IsometricRepository


def _isometric_ids() -> list[int]:
    with get_session() as session:
        return [iso.id for iso in IsometricRepository(session).get_all()]


def _check(service: RevisionService) -> int:
    failures = 0
    for isometric_id in _isometric_ids():
        result = service.check_isometric_invariant(isometric_id)
        if not result.success:
            print(result.message, file=sys.stderr)
            failures += 1
            continue
        for violation in result.data:
            print(violation)
            failures += 1
    return 1 if failures else 0


def _repair(service: RevisionService) -> int:
    actor = Actor(settings.system_actor_id)
    failures = 0
    for isometric_id in _isometric_ids():
        result = service.refresh_current_revision(isometric_id, actor)
        if not result.success:
            print(f"isometric {isometric_id}: {result.message}", file=sys.stderr)
            failures += 1
    return 1 if failures else 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="piping_revisions", description=settings.app_name)
    parser.add_argument("--version", action="version", version=settings.app_version)
    parser.add_argument("command", choices=["init-db", "check", "repair"])
    args = parser.parse_args(argv)

    setup_logging(settings.log_level, json_output=settings.log_json)
    init_db()

    if args.command == "init-db":
        return 0
    service = RevisionService()
    if args.command == "check":
        return _check(service)
    return _repair(service)


if __name__ == "__main__":
    sys.exit(main())
