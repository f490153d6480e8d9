"""Command line entry point: ``storefront-backup <command>``."""
from __future__ import annotations

import argparse
import getpass
import json
import signal
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional

from core.logging_utils import configure_console_logging, configure_json_logging
from core.paths import ensure_working_dir_structure, resolve_working_dir

from .api import BackupService
from .config import load_config
from .envelope import Passphrase
from .errors import (
    BackupError,
    CorruptEnvelopeError,
    InjectionError,
    RunCancelledError,
    RunLockHeldError,
    WrongPassphraseError,
)
from .restore import CONFIRMATION_TOKEN
from .types import RestoreOutcome

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_UNCONFIRMED = 3
EXIT_BAD_PASSPHRASE = 4
EXIT_LOCKED = 5

Handler = Callable[[BackupService, argparse.Namespace], int]


class _SignalGuard:
    """Turn SIGTERM/SIGINT into :class:`RunCancelledError` for the duration of a command."""

    def __init__(self) -> None:
        self._previous: Dict[int, object] = {}

    def _handle(self, signum, frame) -> None:
        raise RunCancelledError(f"cancelled by {signal.Signals(signum).name}")

    def __enter__(self) -> "_SignalGuard":
        for signum in (signal.SIGTERM, signal.SIGINT):
            try:
                self._previous[signum] = signal.signal(signum, self._handle)
            except ValueError:
                # not the main thread
                continue
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous.clear()
        return False


def _error(exc: BaseException) -> None:
    stage = getattr(exc, "failed_stage", None) or getattr(exc, "stage", None) or "io"
    print(f"ERROR [{stage}]: {exc}", file=sys.stderr)


def _human_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


# ----------------------------------------------------------------------
def _cmd_backup(service: BackupService, args: argparse.Namespace) -> int:
    result = service.run_backup(
        encrypt=False if args.no_encrypt else None,
        rotate=False if args.no_rotate else None,
    )
    print(f"Backup {result.archive_id} written to {result.archive_path} ({_human_size(result.size_bytes)})")
    if not result.encrypted:
        print("WARNING: archive is not encrypted", file=sys.stderr)
    for stage in result.stages:
        if not stage.ok:
            print(f"WARNING [{stage.stage}]: {stage.detail}", file=sys.stderr)
    if result.retention is not None:
        print(f"Rotation removed {len(result.retention.removed)} archive(s), kept {len(result.retention.kept)}")
    return EXIT_OK


def _cmd_test_backup(service: BackupService, args: argparse.Namespace) -> int:
    report = service.self_test(live=args.live)
    for stage in report.passed:
        print(f"PASS {stage}")
    if report.substituted:
        print(f"No live data for {', '.join(report.substituted)}; generated test data was used instead")
    print(f"Self-test passed (archive {_human_size(report.archive_bytes)}, envelope {_human_size(report.envelope_bytes)})")
    return EXIT_OK


def _prompt_passphrase(service: BackupService) -> Optional[Passphrase]:
    if service.config.passphrase:
        return None
    if not sys.stdin.isatty():
        return None
    return Passphrase(getpass.getpass("Backup passphrase: "))


def _cmd_encrypt(service: BackupService, args: argparse.Namespace) -> int:
    envelope = service.encrypt_archive(Path(args.archive))
    print(f"Encrypted to {envelope}")
    return EXIT_OK


def _cmd_decrypt(service: BackupService, args: argparse.Namespace) -> int:
    prompted = _prompt_passphrase(service)
    try:
        output = service.decrypt_archive(
            Path(args.envelope),
            Path(args.output) if args.output else None,
            passphrase=prompted,
        )
    finally:
        if prompted is not None:
            prompted.wipe()
    print(f"Decrypted to {output}")
    return EXIT_OK


def _cmd_restore(service: BackupService, args: argparse.Namespace) -> int:
    components: Optional[List[str]] = None
    if args.only:
        components = [item.strip() for item in args.only.split(",") if item.strip()]
    prompted = _prompt_passphrase(service) if (args.confirm or args.dry_run) and args.backup.endswith(".enc") else None
    try:
        result = service.restore(
            Path(args.backup),
            confirmation_token=CONFIRMATION_TOKEN if args.confirm else None,
            components=components,
            dry_run=args.dry_run,
            resume=args.resume,
            maintenance=args.maintenance,
            passphrase=prompted,
        )
    finally:
        if prompted is not None:
            prompted.wipe()
    if result.outcome is RestoreOutcome.ABORTED_UNCONFIRMED:
        print("Restore not confirmed: nothing was changed. Re-run with --confirm to overwrite live data.", file=sys.stderr)
        return EXIT_UNCONFIRMED
    if result.dry_run:
        print(f"Restore plan for {result.archive.name}:")
        for index, name in enumerate(result.planned, start=1):
            print(f"  {index}. {name}")
        for name in result.skipped:
            print(f"  - {name} (not in backup, skipped)")
        return EXIT_OK
    print(f"Restored {', '.join(result.restored) or 'nothing'} from {result.archive.name}")
    if result.skipped:
        print(f"Skipped: {', '.join(result.skipped)}")
    return EXIT_OK


def _cmd_rotate(service: BackupService, args: argparse.Namespace) -> int:
    summary = service.apply_retention(dry_run=args.dry_run)
    verb = "Would remove" if summary.dry_run else "Removed"
    print(f"{verb} {len(summary.removed)} archive(s), keeping {len(summary.kept)} ({_human_size(summary.freed_bytes)} freed)")
    for archive_id in summary.removed:
        print(f"  - {archive_id}")
    return EXIT_OK


def _cmd_list(service: BackupService, args: argparse.Namespace) -> int:
    backups = service.list_backups()
    if not backups:
        print(f"No backups in {service.config.backups_dir}")
        return EXIT_OK
    for item in backups:
        flag = "enc" if item.encrypted else "plain"
        print(f"{item.id}  {item.created_utc}  {_human_size(item.size_bytes):>10}  {flag}  {item.path.name}")
    return EXIT_OK


def _cmd_push_offsite(service: BackupService, args: argparse.Namespace) -> int:
    result = service.push_offsite()
    print(f"Pushed {len(result.pushed)} archive(s) offsite")
    for name in result.failed:
        print(f"WARNING: failed to push {name}", file=sys.stderr)
    return EXIT_FAILURE if result.failed else EXIT_OK


def _cmd_enter_maintenance(service: BackupService, args: argparse.Namespace) -> int:
    state = service.maintenance().enter(args.reason)
    print(f"Maintenance mode active since {state.since}: {state.reason}")
    return EXIT_OK


def _cmd_exit_maintenance(service: BackupService, args: argparse.Namespace) -> int:
    result = service.maintenance().exit()
    if not result.was_active:
        print("WARNING: maintenance mode was not active", file=sys.stderr)
        return EXIT_OK
    print(f"Maintenance mode exited (was active since {result.previous.since})")
    if result.health_ok is False:
        print("WARNING: health check failed after leaving maintenance; inspect storage/logs/ops.jsonl", file=sys.stderr)
    return EXIT_OK


def _cmd_maintenance_status(service: BackupService, args: argparse.Namespace) -> int:
    print(json.dumps(service.maintenance().status().to_dict(), indent=2))
    return EXIT_OK


# ----------------------------------------------------------------------
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="storefront-backup", description="Backup, encrypt and restore storefront state")
    parser.add_argument("--working-dir", type=Path, default=None, help="Service root (default: $STOREFRONT_HOME or cwd)")
    parser.add_argument("--verbose", action="store_true", help="Verbose console logging")
    commands = parser.add_subparsers(dest="command", required=True)

    def _add(name: str, handler: Handler, help_text: str, *, context: bool = True) -> argparse.ArgumentParser:
        sub = commands.add_parser(name, help=help_text)
        if context:
            sub.add_argument("--context", default=None, help="Backup context (default from settings)")
        sub.set_defaults(handler=handler)
        return sub

    sub = _add("backup", _cmd_backup, "Capture, package and encrypt a backup")
    sub.add_argument("--no-encrypt", action="store_true", help="Keep the archive unencrypted")
    sub.add_argument("--no-rotate", action="store_true", help="Skip retention after the backup")

    sub = _add("test-backup", _cmd_test_backup, "Run the end-to-end self-test")
    sub.add_argument("--live", action="store_true", help="Read from the configured sources instead of fixtures")

    sub = _add("encrypt", _cmd_encrypt, "Encrypt an archive and remove the plaintext", context=False)
    sub.add_argument("archive")

    sub = _add("decrypt", _cmd_decrypt, "Decrypt an envelope", context=False)
    sub.add_argument("envelope")
    sub.add_argument("output", nargs="?", default=None)

    sub = _add("restore", _cmd_restore, "Restore a backup into the live stores")
    sub.add_argument("--backup", required=True, help="Path to the .tar.gz or .tar.gz.enc archive")
    sub.add_argument("--confirm", action="store_true", help="Confirm overwriting live data")
    sub.add_argument("--only", default=None, help="Comma separated component names")
    sub.add_argument("--dry-run", action="store_true", help="Show the plan without changing anything")
    sub.add_argument("--resume", action="store_true", help="Skip components a previous attempt completed")
    sub.add_argument("--maintenance", action="store_true", help="Hold maintenance mode during the restore")

    sub = _add("rotate", _cmd_rotate, "Apply the retention policy")
    sub.add_argument("--dry-run", action="store_true", help="Only report what would be removed")

    _add("list", _cmd_list, "List archives")
    _add("push-offsite", _cmd_push_offsite, "Copy recent encrypted archives offsite")

    sub = _add("enter-maintenance", _cmd_enter_maintenance, "Enter maintenance mode", context=False)
    sub.add_argument("reason", nargs="?", default=None)
    _add("exit-maintenance", _cmd_exit_maintenance, "Exit maintenance mode", context=False)
    _add("maintenance-status", _cmd_maintenance_status, "Show maintenance mode", context=False)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    working_dir = resolve_working_dir(args.working_dir)
    ensure_working_dir_structure(working_dir)
    configure_console_logging(verbose=args.verbose)
    configure_json_logging(working_dir)

    try:
        with _SignalGuard():
            config = load_config(working_dir)
            if getattr(args, "context", None):
                config = config.for_context(args.context)
            with BackupService(config) as service:
                return args.handler(service, args)
    except (WrongPassphraseError, CorruptEnvelopeError) as exc:
        _error(exc)
        return EXIT_BAD_PASSPHRASE
    except RunLockHeldError as exc:
        _error(exc)
        return EXIT_LOCKED
    except InjectionError as exc:
        _error(exc)
        print(f"Restored before the failure: {', '.join(exc.succeeded) or 'none'}", file=sys.stderr)
        print(f"Not attempted: {', '.join(exc.pending) or 'none'}", file=sys.stderr)
        print("Retry with --only or --resume once the cause is fixed.", file=sys.stderr)
        return EXIT_FAILURE
    except BackupError as exc:
        _error(exc)
        return EXIT_FAILURE
    except OSError as exc:
        _error(exc)
        return EXIT_FAILURE


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
