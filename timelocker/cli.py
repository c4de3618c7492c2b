from __future__ import annotations

import argparse
import sys
import threading
import time
import uuid
from datetime import timezone
from pathlib import Path
from typing import Callable, List, Optional, TypeVar

from timelocker.archiver import Archiver
from timelocker.beacon import BeaconClient
from timelocker.config import TimeLockerConfig
from timelocker.errors import OperationCancelled, TimeLockActive, TimeLockerError
from timelocker.locker import LockedItem, TimeLocker
from timelocker.logging_config import setup_logging
from timelocker.progress import ProgressPayload
from timelocker.timelock import TimelockCipher
from timelocker.timeutil import format_remaining, parse_unlock_time


T = TypeVar("T")


def _make_locker(config: TimeLockerConfig) -> TimeLocker:
    beacon = BeaconClient(config.beacon_endpoints, timeout=config.beacon_timeout)
    return TimeLocker(
        TimelockCipher(beacon),
        Archiver(kdf=config.kdf_params()),
        emit_interval_ms=config.emit_interval_ms,
    )


def _progress_printer(verb: str) -> Callable[[str, ProgressPayload], None]:
    def _sink(_event: str, p: ProgressPayload) -> None:
        if p.percentage is None:
            print(f" {p.phase.value}...", flush=True)
        elif p.current_file:
            print(f" {p.percentage:6.2f}% {verb}: {p.current_file}", flush=True)
        else:
            print(f" {p.percentage:6.2f}% {p.phase.value}", flush=True)

    return _sink


def _run_cancellable(locker: TimeLocker, operation_id: str, work: Callable[[], T]) -> T:
    """Run ``work`` on a worker thread; Ctrl-C cancels the operation and waits for cleanup."""
    outcome: dict = {}

    def _target() -> None:
        try:
            outcome["value"] = work()
        except BaseException as exc:
            outcome["error"] = exc

    worker = threading.Thread(target=_target, name=f"timelocker-{operation_id[:8]}", daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.2)
    except KeyboardInterrupt:
        print("\nCancelling...", file=sys.stderr, flush=True)
        locker.cancel(operation_id)
        worker.join()
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


def _status(item: LockedItem) -> str:
    if item.unlockable:
        return "unlockable"
    return "locked (" + format_remaining(item.unlocks.timestamp() - time.time()) + ")"


def cmd_lock(
    source: str,
    unlock_at: str,
    *,
    vault: Optional[str] = None,
    delete_original: bool = False,
    quiet: bool = False,
    config: TimeLockerConfig,
) -> bool:
    when = parse_unlock_time(unlock_at)
    locker = _make_locker(config)
    op_id = uuid.uuid4().hex
    target = vault or (str(config.vault_dir) if config.vault_dir else None)
    sink = None if quiet else _progress_printer("sealing")
    t0 = time.time()
    item = _run_cancellable(
        locker,
        op_id,
        lambda: locker.lock(
            source,
            when,
            vault=target,
            delete_original=delete_original,
            operation_id=op_id,
            sink=sink,
        ),
    )
    dt = max(0.000001, time.time() - t0)
    print(f"Locked: {item.name}")
    print(f"  Container: {item.container_path}")
    print(f"  Unlocks: {item.unlocks.astimezone().strftime('%Y-%m-%d %H:%M:%S %Z')}")
    print(f"  Round: {item.drand_round}")
    size_mib = (item.original_size or 0) / (1024.0 * 1024.0)
    print(f"Done: {size_mib:.2f} MiB in {dt:.1f}s")
    if delete_original:
        if item.original_deleted:
            print(f"  Original deleted: {item.original_path}")
        else:
            print(f"Warning: {item.deletion_error}", file=sys.stderr)
    return True


def cmd_unlock(container: str, *, output: Optional[str] = None, quiet: bool = False, config: TimeLockerConfig) -> bool:
    locker = _make_locker(config)
    op_id = uuid.uuid4().hex
    sink = None if quiet else _progress_printer("unsealing")
    out = _run_cancellable(
        locker,
        op_id,
        lambda: locker.unlock(container, output=output, operation_id=op_id, sink=sink),
    )
    print(f"Unlocked into: {out}")
    return True


def cmd_info(container: str, *, config: TimeLockerConfig) -> bool:
    """Show container metadata; needs no password and no network."""
    item = _make_locker(config).info(container)
    print(f"Container: {item.container_path}")
    print(f"  Original: {item.name}{'/' if item.is_directory else ''}")
    if item.original_size is not None:
        print(f"  Size: {item.original_size} bytes")
    print(f"  Created: {item.created.astimezone(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')}")
    print(f"  Unlocks: {item.unlocks.astimezone(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')}")
    if item.drand_round is not None:
        print(f"  Round: {item.drand_round}")
    print(f"  Status: {_status(item)}")
    return True


def cmd_list(vault: Optional[str], *, config: TimeLockerConfig) -> bool:
    directory = vault or (str(config.vault_dir) if config.vault_dir else ".")
    items = _make_locker(config).list_items(directory)
    for item in items:
        unlocks = item.unlocks.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M")
        print(f"{_status(item)}\t{unlocks}\t{item.name}\t{item.container_path}")
    print(f"{len(items)} container(s)")
    return True


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="timelocker",
        description="Time-locked file encryption",
        epilog="Containers can only be opened once the drand beacon publishes the round they were locked to.",
    )
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_lock = sub.add_parser("lock", help="Lock a file or directory until a future time")
    ap_lock.add_argument("source", help="File or directory to lock")
    ap_lock.add_argument(
        "--unlock-at",
        required=True,
        help="Unlock time: RFC 3339, or local 'YYYY-MM-DD [HH:MM[:SS]]'",
    )
    ap_lock.add_argument("--vault", help="Directory for the container (default: next to the source)")
    ap_lock.add_argument(
        "--delete-original",
        action="store_true",
        help="Delete the source after the container is written and validated",
    )
    ap_lock.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_unlock = sub.add_parser("unlock", help="Unlock a container whose time has come")
    ap_unlock.add_argument("container", help="Container path")
    ap_unlock.add_argument("--output", help="Output directory (default: unlocked_<name> next to the container)")
    ap_unlock.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_info = sub.add_parser("info", help="Show container metadata")
    ap_info.add_argument("container", help="Container path")

    ap_list = sub.add_parser("list", help="List containers in a vault directory")
    ap_list.add_argument("--vault", help="Directory to scan (default: $TIMELOCKER_VAULT or .)")

    args = ap.parse_args(argv)
    try:
        config = TimeLockerConfig.from_env()
    except ValueError as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)
    setup_logging("timelocker", config.log_level)
    try:
        if args.cmd == "lock":
            cmd_lock(
                args.source,
                args.unlock_at,
                vault=args.vault,
                delete_original=args.delete_original,
                quiet=args.quiet,
                config=config,
            )
        elif args.cmd == "unlock":
            cmd_unlock(args.container, output=args.output, quiet=args.quiet, config=config)
        elif args.cmd == "info":
            cmd_info(args.container, config=config)
        elif args.cmd == "list":
            cmd_list(args.vault, config=config)
        else:
            raise RuntimeError("Unknown command")
    except TimeLockActive as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(3)
    except OperationCancelled as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(130)
    except (TimeLockerError, OSError, ValueError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
