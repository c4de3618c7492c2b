"""Lock and unlock operations over containers, the time-lock cipher and the archiver."""

from __future__ import annotations

import logging
import secrets
import shutil
import string
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Union

from . import container
from .archiver import Archiver
from .constants import DEFAULT_EMIT_INTERVAL_MS, DEFAULT_PASSWORD_LENGTH
from .container import ContainerMetadata
from .errors import DecryptionError, InvalidUnlockTime, MissingFieldError, OperationCancelled, TimeLockActive
from .progress import ProgressEmitter, ProgressPhase, ProgressSink, ProgressTracker, calculate_total_size
from .registry import OperationRegistry
from .roundclock import Instant
from .timelock import TimelockCipher


logger = logging.getLogger(__name__)


_PASSWORD_ALPHABET = string.ascii_letters + string.digits


def generate_password(length: int = DEFAULT_PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))


def _as_utc(instant: Instant) -> datetime:
    if isinstance(instant, datetime):
        if instant.tzinfo is None:
            return instant.replace(tzinfo=timezone.utc)
        return instant.astimezone(timezone.utc)
    return datetime.fromtimestamp(float(instant), tz=timezone.utc)


def item_id(container_path: Union[str, Path]) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, str(Path(container_path).resolve())))


@dataclass
class LockedItem:
    id: str
    name: str
    container_path: Path
    created: datetime
    unlocks: datetime
    unlockable: bool
    drand_round: Optional[int] = None
    is_directory: bool = False
    original_size: Optional[int] = None
    original_path: Optional[Path] = None
    original_deleted: bool = False
    deletion_error: Optional[str] = None

    @classmethod
    def from_metadata(cls, path: Path, meta: ContainerMetadata, now: float) -> "LockedItem":
        return cls(
            id=item_id(path),
            name=meta.original_file,
            container_path=path,
            created=meta.created,
            unlocks=meta.unlocks,
            unlockable=meta.is_unlockable(now),
            drand_round=meta.drand_round,
            is_directory=meta.is_directory,
            original_size=meta.original_size,
        )


class TimeLocker:
    def __init__(
        self,
        cipher: Optional[TimelockCipher] = None,
        archiver: Optional[Archiver] = None,
        registry: Optional[OperationRegistry] = None,
        clock: Callable[[], float] = time.time,
        *,
        emit_interval_ms: int = DEFAULT_EMIT_INTERVAL_MS,
    ):
        self.clock = clock
        self.cipher = cipher if cipher is not None else TimelockCipher(clock=clock)
        self.archiver = archiver if archiver is not None else Archiver()
        self.registry = registry if registry is not None else OperationRegistry()
        self.emit_interval_ms = emit_interval_ms

    def _start(self, operation_id: Optional[str], sink: Optional[ProgressSink], event_name: str):
        op_id = operation_id or uuid.uuid4().hex
        tracker = ProgressTracker(emit_interval_ms=self.emit_interval_ms)
        self.registry.register(op_id, tracker)
        return op_id, ProgressEmitter(tracker, sink, event_name)

    def lock(
        self,
        source: Union[str, Path],
        unlock_at: Instant,
        *,
        password: Optional[str] = None,
        vault: Optional[Union[str, Path]] = None,
        delete_original: bool = False,
        operation_id: Optional[str] = None,
        sink: Optional[ProgressSink] = None,
    ) -> LockedItem:
        """Seal ``source`` into a ``.tlock`` container that opens at ``unlock_at``.

        The container is written to ``vault`` (default: next to the source).
        With ``delete_original`` the source is removed only after the new
        container validates; a failed deletion is reported on the result.
        """
        src = Path(source)
        if not src.exists():
            raise FileNotFoundError(f"No such file or directory: '{src}'")
        unlocks = _as_utc(unlock_at)
        now = self.clock()
        if unlocks.timestamp() <= now:
            raise InvalidUnlockTime(f"Unlock time {unlocks.isoformat()} is not in the future")

        target_dir = Path(vault) if vault is not None else src.resolve().parent
        dest = target_dir / container.container_name(src.name)
        if dest.exists():
            raise FileExistsError(f"Container already exists: {dest}")

        op_id, emitter = self._start(operation_id, sink, "lock-progress")
        try:
            emitter.emit_progress_forced(None, ProgressPhase.ENCRYPTING)
            secret = password or generate_password()
            locked = self.cipher.encrypt(secret, unlocks)
            round_number, _ = self.cipher.split(locked)
            original_size, _ = calculate_total_size(src)
            emitter.tracker.raise_if_cancelled()

            meta = ContainerMetadata(
                locked=True,
                created=datetime.fromtimestamp(now, tz=timezone.utc),
                unlocks=unlocks,
                duration=unlocks.strftime("%Y-%m-%d"),
                original_file=src.name,
                drand_round=round_number,
                encrypted_key=self.cipher.armor(locked),
                original_size=original_size,
                is_directory=src.is_dir(),
            )
            container.create(dest, src, meta, secret, archiver=self.archiver, progress=emitter)
            emitter.emit_complete()
        except OperationCancelled:
            logger.info("Lock of %s cancelled", src)
            raise OperationCancelled(op_id) from None
        finally:
            self.registry.unregister(op_id)
        logger.info("Locked %s until %s (round %d)", src, meta.unlocks.isoformat(), round_number)

        item = LockedItem.from_metadata(dest, meta, self.clock())
        item.original_path = src
        if delete_original:
            self._delete_original(src, dest, item)
        return item

    def _delete_original(self, src: Path, dest: Path, item: LockedItem) -> None:
        if not container.validate(dest):
            item.deletion_error = "Container failed validation; original kept"
            logger.warning("Not deleting %s: %s", src, item.deletion_error)
            return
        try:
            if src.is_dir() and not src.is_symlink():
                shutil.rmtree(src)
            else:
                src.unlink()
        except OSError as exc:
            item.deletion_error = f"Failed to delete original: {exc}"
            logger.warning("Could not delete original %s: %s", src, exc)
            return
        item.original_deleted = True

    def unlock(
        self,
        container_path: Union[str, Path],
        *,
        output: Optional[Union[str, Path]] = None,
        operation_id: Optional[str] = None,
        sink: Optional[ProgressSink] = None,
    ) -> Path:
        """Decrypt and extract a container whose unlock time has passed.

        Returns the extraction directory, by default
        ``<container dir>/unlocked_<original name>``.
        """
        path = Path(container_path)
        meta = container.read_metadata(path)
        now = self.clock()
        if not meta.is_unlockable(now):
            raise TimeLockActive(meta.drand_round, meta.unlocks.timestamp(), meta.time_until_unlock(now))
        if meta.encrypted_key is None:
            raise MissingFieldError("encrypted_key")

        out_dir = Path(output) if output is not None else path.parent / f"unlocked_{meta.original_file}"
        op_id, emitter = self._start(operation_id, sink, "unlock-progress")
        try:
            emitter.emit_progress_forced(None, ProgressPhase.ENCRYPTING)
            locked = self.cipher.dearmor(meta.encrypted_key)
            if meta.drand_round is not None and self.cipher.split(locked)[0] != meta.drand_round:
                logger.warning("Metadata round %d does not match the locked key", meta.drand_round)
            try:
                secret = self.cipher.decrypt(locked, meta.unlocks).decode("utf-8")
            except UnicodeDecodeError as exc:
                raise DecryptionError("Recovered archive password is not valid UTF-8") from exc
            emitter.tracker.raise_if_cancelled()
            container.extract(path, secret, out_dir, archiver=self.archiver, progress=emitter)
            emitter.emit_complete()
        except OperationCancelled:
            logger.info("Unlock of %s cancelled", path)
            raise OperationCancelled(op_id) from None
        finally:
            self.registry.unregister(op_id)
        logger.info("Unlocked %s into %s", path, out_dir)
        return out_dir

    def cancel(self, operation_id: str) -> bool:
        return self.registry.cancel(operation_id)

    def info(self, container_path: Union[str, Path]) -> LockedItem:
        path = Path(container_path)
        return LockedItem.from_metadata(path, container.read_metadata(path), self.clock())

    def list_items(self, directory: Union[str, Path]) -> List[LockedItem]:
        now = self.clock()
        return [LockedItem.from_metadata(p, meta, now) for p, meta in container.scan_containers(directory)]
