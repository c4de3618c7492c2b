"""The ``.tlock`` container: a fixed header, readable JSON metadata and a sealed payload.

Layout (little-endian)::

    0   7   magic "TLOCK01"
    7   1   version
    8   4   metadata length (u32, at most 1 MiB)
    12  12  reserved, zero
    24  n   metadata, UTF-8 JSON
    24+n    sealed payload to end of file

Everything up to the payload can be read without any secret.
"""

from __future__ import annotations

import json
import logging
import os
import struct
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional, Sequence, Tuple, Union

from .archiver import Archiver, ArchiverCorruptError, ArchiverPasswordError
from .constants import CONTAINER_MAGIC, CONTAINER_SUFFIX, CONTAINER_VERSION, HEADER_SIZE, MAX_METADATA_SIZE
from .errors import (
    ContainerFormatError,
    CorruptPayloadError,
    MetadataSizeError,
    TimeLockerError,
    UnsupportedVersionError,
    WrongPasswordError,
)
from .progress import ProgressEmitter
from .timeutil import from_rfc3339, to_rfc3339


logger = logging.getLogger(__name__)


_HEADER_STRUCT = struct.Struct("<7sBI12s")
_REQUIRED_FIELDS = ("locked", "created", "unlocks", "duration", "original_file")

PathLike = Union[str, Path]


@dataclass(frozen=True)
class ContainerMetadata:
    locked: bool
    created: datetime
    unlocks: datetime
    duration: str
    original_file: str
    drand_round: Optional[int] = None
    encrypted_key: Optional[str] = None
    original_size: Optional[int] = None
    is_directory: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "locked": self.locked,
            "created": to_rfc3339(self.created),
            "unlocks": to_rfc3339(self.unlocks),
            "duration": self.duration,
            "original_file": self.original_file,
        }
        if self.drand_round is not None:
            d["drand_round"] = self.drand_round
        if self.encrypted_key is not None:
            d["encrypted_key"] = self.encrypted_key
        if self.original_size is not None:
            d["original_size"] = self.original_size
        d["is_directory"] = self.is_directory
        return d

    @classmethod
    def from_dict(cls, d: Any) -> "ContainerMetadata":
        if not isinstance(d, dict):
            raise ContainerFormatError("Invalid metadata: expected a JSON object")
        for key in _REQUIRED_FIELDS:
            if key not in d:
                raise ContainerFormatError(f"Invalid metadata: missing '{key}'")
        for key in ("locked", "is_directory"):
            if key in d and not isinstance(d[key], bool):
                raise ContainerFormatError(f"Invalid metadata: '{key}' must be true or false")
        if d.get("encrypted_key") is not None and not isinstance(d["encrypted_key"], str):
            raise ContainerFormatError("Invalid metadata: 'encrypted_key' must be a string")
        try:
            return cls(
                locked=d["locked"],
                created=from_rfc3339(d["created"]),
                unlocks=from_rfc3339(d["unlocks"]),
                duration=str(d["duration"]),
                original_file=str(d["original_file"]),
                drand_round=None if d.get("drand_round") is None else int(d["drand_round"]),
                encrypted_key=d.get("encrypted_key"),
                original_size=None if d.get("original_size") is None else int(d["original_size"]),
                is_directory=d.get("is_directory", False),
            )
        except (TypeError, ValueError, AttributeError) as exc:
            raise ContainerFormatError(f"Invalid metadata: {exc}") from exc

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), indent=2).encode("utf-8")

    def time_until_unlock(self, now: Optional[float] = None) -> float:
        if now is None:
            now = time.time()
        return self.unlocks.timestamp() - now

    def is_unlockable(self, now: Optional[float] = None) -> bool:
        return self.time_until_unlock(now) <= 0


@dataclass
class ContainerHeader:
    version: int
    metadata_length: int
    reserved: bytes = field(default=b"\x00" * 12)

    def pack(self) -> bytes:
        return _HEADER_STRUCT.pack(CONTAINER_MAGIC, self.version, self.metadata_length, b"\x00" * 12)

    @classmethod
    def unpack(cls, raw: bytes) -> "ContainerHeader":
        if len(raw) < HEADER_SIZE:
            raise ContainerFormatError(f"File too short for a container header ({len(raw)} bytes)")
        magic, version, meta_len, reserved = _HEADER_STRUCT.unpack(raw[:HEADER_SIZE])
        if magic != CONTAINER_MAGIC:
            raise ContainerFormatError("Not a time-locked container (bad magic)")
        if version > CONTAINER_VERSION:
            raise UnsupportedVersionError(f"Unsupported container version: {version}")
        if meta_len > MAX_METADATA_SIZE:
            raise MetadataSizeError(f"Metadata length {meta_len} exceeds {MAX_METADATA_SIZE} bytes")
        return cls(version=version, metadata_length=meta_len, reserved=reserved)


def _read_head(f: BinaryIO) -> Tuple[ContainerHeader, ContainerMetadata]:
    header = ContainerHeader.unpack(f.read(HEADER_SIZE))
    raw = f.read(header.metadata_length)
    if len(raw) < header.metadata_length:
        raise ContainerFormatError(
            f"Metadata truncated: expected {header.metadata_length} bytes, got {len(raw)}"
        )
    try:
        doc = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ContainerFormatError(f"Metadata is not valid JSON: {exc}") from exc
    return header, ContainerMetadata.from_dict(doc)


def read_header(path: PathLike) -> ContainerHeader:
    with open(path, "rb") as f:
        return ContainerHeader.unpack(f.read(HEADER_SIZE))


def read_metadata(path: PathLike) -> ContainerMetadata:
    """Parse header and metadata; the payload is never read."""
    with open(path, "rb") as f:
        return _read_head(f)[1]


def payload_offset(path: PathLike) -> int:
    return HEADER_SIZE + read_header(path).metadata_length


def validate(path: PathLike) -> bool:
    try:
        read_metadata(path)
    except (TimeLockerError, OSError) as exc:
        logger.debug("Container %s failed validation: %s", path, exc)
        return False
    return True


def encode_metadata(metadata: ContainerMetadata) -> bytes:
    raw = metadata.to_json()
    if len(raw) > MAX_METADATA_SIZE:
        raise MetadataSizeError(f"Metadata is {len(raw)} bytes; the limit is {MAX_METADATA_SIZE}")
    return raw


def create(
    dest: PathLike,
    sources: Union[PathLike, Sequence[PathLike]],
    metadata: ContainerMetadata,
    password: str,
    *,
    archiver: Optional[Archiver] = None,
    progress: Optional[ProgressEmitter] = None,
) -> Path:
    """Seal ``sources`` into a new container at ``dest``.

    The file appears under its final name only once it is complete; any
    failure, cancellation included, leaves no partial file behind.
    """
    dest = Path(dest)
    archiver = archiver or Archiver()
    raw_meta = encode_metadata(metadata)
    header = ContainerHeader(version=CONTAINER_VERSION, metadata_length=len(raw_meta))

    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.name}.", suffix=".part", dir=str(dest.parent))
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(header.pack())
            f.write(raw_meta)
            archiver.seal(sources, password, f, progress)
            if progress is not None:
                progress.tracker.raise_if_cancelled()
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, dest)
    except BaseException:
        try:
            tmp.unlink()
        except FileNotFoundError:
            pass
        raise
    logger.info("Wrote container %s", dest)
    return dest


def extract(
    path: PathLike,
    password: str,
    dest_dir: PathLike,
    *,
    archiver: Optional[Archiver] = None,
    progress: Optional[ProgressEmitter] = None,
) -> Path:
    """Unseal the payload of ``path`` into ``dest_dir``.

    Raises:
        WrongPasswordError: ``password`` does not open the payload.
        CorruptPayloadError: the payload is damaged or truncated.
    """
    archiver = archiver or Archiver()
    dest = Path(dest_dir)
    with open(path, "rb") as f:
        _read_head(f)
        try:
            archiver.unseal(f, password, dest, progress)
        except ArchiverPasswordError as exc:
            raise WrongPasswordError(str(exc)) from exc
        except ArchiverCorruptError as exc:
            raise CorruptPayloadError(str(exc)) from exc
    return dest


def container_name(original: str) -> str:
    return original + CONTAINER_SUFFIX


def scan_containers(directory: PathLike) -> List[Tuple[Path, ContainerMetadata]]:
    """Find and parse every container below ``directory``; unreadable files are skipped."""
    root = Path(directory)
    found: List[Tuple[Path, ContainerMetadata]] = []
    if not root.is_dir():
        return found
    for p in sorted(root.rglob("*" + CONTAINER_SUFFIX)):
        if not p.is_file():
            continue
        try:
            found.append((p, read_metadata(p)))
        except (TimeLockerError, OSError) as exc:
            logger.warning("Skipping unreadable container %s: %s", p, exc)
    return found
