from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from fieldvault.core.logging import configure_logging
from fieldvault.services.migration.checkpoint import STATUS_ABORTED, STATUS_FAILED, MigrationCheckpoint
from fieldvault.services.migration.service import MigrationOptions, get_migration_service


def _parse_scope(values: list[str]) -> dict[str, Any] | None:
    # Accept repeated --scope column=value pairs; digits are compared as integers.
    scope: dict[str, Any] = {}
    for item in values:
        column, sep, raw = item.partition("=")
        if not sep or not column:
            raise ValueError(f"Invalid --scope value {item!r}; expected column=value")
        scope[column] = int(raw) if raw.isdigit() else raw
    return scope or None


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Encrypt plaintext sensitive fields in place")
    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Start or resume a migration and wait for it in inline mode")
    start.add_argument("--table", required=True)
    start.add_argument("--field", dest="fields", action="append", required=True, help="Repeat per field")
    start.add_argument("--batch-size", type=int, default=None)
    start.add_argument("--dry-run", action="store_true")
    start.add_argument("--scope", action="append", default=[], help="column=value equality filter")

    for name, help_text in (
        ("status", "Show a migration run"),
        ("cancel", "Request cancellation at the next batch boundary"),
        ("rollback", "Restore the pre-migration snapshot of a run"),
    ):
        command = sub.add_parser(name, help=help_text)
        command.add_argument("run_id")
    return parser


def _print_run(checkpoint: MigrationCheckpoint) -> None:
    print(json.dumps(checkpoint.as_dict(), indent=2, default=str))


async def _main(args: argparse.Namespace) -> int:
    service = get_migration_service()
    if args.command == "start":
        checkpoint = await service.start(
            args.table,
            args.fields,
            MigrationOptions(batch_size=args.batch_size, dry_run=args.dry_run, scope=_parse_scope(args.scope)),
        )
        print(f"run_id: {checkpoint.run_id}")
        checkpoint = await service.wait(checkpoint.run_id)
        _print_run(checkpoint)
        return 2 if checkpoint.status in (STATUS_ABORTED, STATUS_FAILED) else 0
    if args.command == "status":
        _print_run(await service.status(args.run_id))
        return 0
    if args.command == "cancel":
        _print_run(await service.cancel(args.run_id))
        return 0
    restored = await service.rollback(args.run_id)
    print(f"restored: {restored}")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_main(args))
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"run_field_migration failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
