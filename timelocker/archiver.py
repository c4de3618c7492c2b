"""Password-sealed tar archives.

Sealed payload layout::

    header   <8sHHH16sIIIQI16s>  magic, version, codec, kdf, salt,
                                 argon2 memory KiB / time / lanes,
                                 total bytes, total files, verifier
    frame*   <IB> length, flags  followed by ``length`` sealed bytes

The plaintext is a PAX tar stream cut into fixed-size frames. Every frame is
compressed with the header codec and sealed with XChaCha20-Poly1305; the
nonce comes from the key and the frame index, and the AAD binds the full
header, the index and the flags. The last frame carries ``FRAME_FINAL``.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
import shutil
import struct
import tarfile
import tempfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, Optional, Sequence, Tuple, Union

from argon2.low_level import Type as ArgonType, hash_secret_raw
from Cryptodome.Cipher import ChaCha20_Poly1305

from .constants import (
    CODEC_DEFLATE,
    CODEC_NONE,
    DEFAULT_CODEC_ID,
    DEFAULT_FRAME_SIZE,
    FRAME_FINAL,
    KDF_ARGON2ID,
    SEAL_MAGIC,
    SEAL_VERSION,
)
from .errors import TimeLockerError
from .progress import ProgressEmitter, ProgressPhase, ProgressTracker, calculate_total_size


logger = logging.getLogger(__name__)


SEAL_HEADER = struct.Struct("<8sHHH16sIIIQI16s")
FRAME_HEADER = struct.Struct("<IB")
FRAME_AAD = struct.Struct("<QB")

NONCE_SIZE = 24
TAG_SIZE = 16
KEY_SIZE = 32
SALT_SIZE = 16
VERIFIER_SIZE = 16
MAX_FRAME_SIZE = 16 * 1024 * 1024

ARGON_TIME_COST = 3
ARGON_MEMORY_COST_KIB = 256 * 1024  # 256 MiB
ARGON_PARALLELISM = 4

_MAX_TIME_COST = 16
_MAX_MEMORY_COST_KIB = 4 * 1024 * 1024
_MAX_PARALLELISM = 16


class ArchiverError(TimeLockerError):
    pass


class ArchiverPasswordError(ArchiverError):
    pass


class ArchiverCorruptError(ArchiverError):
    pass


@dataclass(frozen=True)
class KdfParams:
    time_cost: int = ARGON_TIME_COST
    memory_cost_kib: int = ARGON_MEMORY_COST_KIB
    parallelism: int = ARGON_PARALLELISM

    def check(self) -> None:
        if not 1 <= self.parallelism <= _MAX_PARALLELISM:
            raise ValueError(f"Unsupported Argon2 parallelism: {self.parallelism}")
        if not 1 <= self.time_cost <= _MAX_TIME_COST:
            raise ValueError(f"Unsupported Argon2 time cost: {self.time_cost}")
        if not 8 * self.parallelism <= self.memory_cost_kib <= _MAX_MEMORY_COST_KIB:
            raise ValueError(f"Unsupported Argon2 memory cost: {self.memory_cost_kib} KiB")


@dataclass
class SealHeader:
    version: int
    codec_id: int
    kdf_id: int
    salt: bytes
    kdf: KdfParams
    total_bytes: int
    total_files: int
    verifier: bytes = b"\x00" * VERIFIER_SIZE

    def pack(self) -> bytes:
        return SEAL_HEADER.pack(
            SEAL_MAGIC,
            self.version,
            self.codec_id,
            self.kdf_id,
            self.salt,
            self.kdf.memory_cost_kib,
            self.kdf.time_cost,
            self.kdf.parallelism,
            self.total_bytes,
            self.total_files,
            self.verifier,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "SealHeader":
        if len(data) != SEAL_HEADER.size:
            raise ArchiverCorruptError("Sealed payload truncated in header")
        (magic, version, codec_id, kdf_id, salt, mem, t, p, total_bytes, total_files, verifier) = SEAL_HEADER.unpack(data)
        if magic != SEAL_MAGIC:
            raise ArchiverCorruptError("Not a sealed payload (bad magic)")
        if version > SEAL_VERSION:
            raise ArchiverCorruptError(f"Unsupported sealed payload version: {version}")
        if codec_id not in (CODEC_NONE, CODEC_DEFLATE):
            raise ArchiverCorruptError(f"Unknown codec id: {codec_id}")
        if kdf_id != KDF_ARGON2ID:
            raise ArchiverCorruptError(f"Unknown KDF id: {kdf_id}")
        params = KdfParams(time_cost=t, memory_cost_kib=mem, parallelism=p)
        try:
            params.check()
        except ValueError as exc:
            raise ArchiverCorruptError(str(exc)) from exc
        return cls(version, codec_id, kdf_id, salt, params, total_bytes, total_files, verifier)


@dataclass
class SealSummary:
    total_bytes: int
    total_files: int
    frames: int


def derive_key(password: str, salt: bytes, params: KdfParams) -> bytes:
    return hash_secret_raw(
        password.encode("utf-8"),
        salt,
        time_cost=params.time_cost,
        memory_cost=params.memory_cost_kib,
        parallelism=params.parallelism,
        hash_len=KEY_SIZE,
        type=ArgonType.ID,
    )


class _FrameCipher:
    def __init__(self, key: bytes, codec_id: int):
        self.key = key
        self.codec_id = codec_id
        self._header_bytes = b""

    def compute_verifier(self) -> bytes:
        return hmac.new(self.key, b"TLK_PASSWORD_VERIFY", hashlib.sha256).digest()[:VERIFIER_SIZE]

    def bind(self, header: SealHeader) -> None:
        self._header_bytes = header.pack()

    def _nonce(self, index: int) -> bytes:
        return hmac.new(self.key, b"TLK_FRAME_NONCE" + index.to_bytes(8, "little"), hashlib.sha512).digest()[:NONCE_SIZE]

    def _aad(self, index: int, flags: int) -> bytes:
        return self._header_bytes + FRAME_AAD.pack(index, flags)

    def seal(self, index: int, flags: int, plaintext: bytes) -> bytes:
        if self.codec_id == CODEC_DEFLATE:
            plaintext = zlib.compress(plaintext, 6)
        cipher = ChaCha20_Poly1305.new(key=self.key, nonce=self._nonce(index))
        cipher.update(self._aad(index, flags))
        ciphertext, tag = cipher.encrypt_and_digest(plaintext)
        return ciphertext + tag

    def open(self, index: int, flags: int, blob: bytes) -> bytes:
        cipher = ChaCha20_Poly1305.new(key=self.key, nonce=self._nonce(index))
        cipher.update(self._aad(index, flags))
        try:
            plaintext = cipher.decrypt_and_verify(blob[:-TAG_SIZE], blob[-TAG_SIZE:])
        except ValueError as exc:
            raise ArchiverCorruptError(f"Frame {index} failed authentication") from exc
        if self.codec_id == CODEC_DEFLATE:
            try:
                plaintext = zlib.decompress(plaintext)
            except zlib.error as exc:
                raise ArchiverCorruptError(f"Frame {index} failed to decompress: {exc}") from exc
        return plaintext


class _FrameWriter:
    """File-like sink for ``tarfile`` that emits sealed frames."""

    def __init__(self, out: BinaryIO, cipher: _FrameCipher, frame_size: int):
        self._out = out
        self._cipher = cipher
        self._frame_size = frame_size
        self._buf = bytearray()
        self.frames = 0

    def write(self, data) -> int:
        self._buf += data
        while len(self._buf) >= self._frame_size:
            chunk = bytes(self._buf[: self._frame_size])
            del self._buf[: self._frame_size]
            self._emit(chunk, 0)
        return len(data)

    def finish(self) -> None:
        self._emit(bytes(self._buf), FRAME_FINAL)
        self._buf.clear()

    def _emit(self, chunk: bytes, flags: int) -> None:
        blob = self._cipher.seal(self.frames, flags, chunk)
        self._out.write(FRAME_HEADER.pack(len(blob), flags))
        self._out.write(blob)
        self.frames += 1


class _FrameReader:
    """File-like source for ``tarfile`` that opens frames in order."""

    def __init__(self, src: BinaryIO, cipher: _FrameCipher):
        self._src = src
        self._cipher = cipher
        self._buf = bytearray()
        self._index = 0
        self._final_seen = False

    def read(self, size: int = -1) -> bytes:
        while not self._final_seen and (size < 0 or len(self._buf) < size):
            self._load_next()
        if size < 0 or size > len(self._buf):
            size = len(self._buf)
        chunk = bytes(self._buf[:size])
        del self._buf[:size]
        return chunk

    def drain(self) -> None:
        while not self._final_seen:
            self._load_next()
        self._buf.clear()

    def _load_next(self) -> None:
        hdr = self._src.read(FRAME_HEADER.size)
        if len(hdr) < FRAME_HEADER.size:
            raise ArchiverCorruptError("Sealed payload truncated (missing final frame)")
        length, flags = FRAME_HEADER.unpack(hdr)
        if flags & ~FRAME_FINAL:
            raise ArchiverCorruptError(f"Unknown frame flags: {flags:#x}")
        if not TAG_SIZE <= length <= MAX_FRAME_SIZE:
            raise ArchiverCorruptError(f"Invalid frame length: {length}")
        blob = self._src.read(length)
        if len(blob) < length:
            raise ArchiverCorruptError("Sealed payload truncated inside a frame")
        self._buf += self._cipher.open(self._index, flags, blob)
        self._index += 1
        if flags & FRAME_FINAL:
            self._final_seen = True
            if self._src.read(1):
                raise ArchiverCorruptError("Trailing data after final frame")


class _CountingReader:
    def __init__(self, f: BinaryIO, emitter: ProgressEmitter, name: str):
        self._f = f
        self._emitter = emitter
        self._name = name

    def read(self, size: int = -1) -> bytes:
        data = self._f.read(size)
        self._emitter.tracker.add_bytes(len(data))
        self._emitter.emit_progress(self._name, ProgressPhase.COMPRESSING)
        return data


def _iter_entries(root: Path) -> Iterator[Tuple[Path, str]]:
    """Yield (path, arcname) for ``root`` and, for directories, everything below it."""
    base = root.name or "root"
    yield root, base
    if not root.is_dir() or root.is_symlink():
        return
    for dirpath, dirnames, filenames in os.walk(str(root)):
        dirnames.sort()
        rel = os.path.relpath(dirpath, str(root))
        prefix = base if rel == "." else base + "/" + rel.replace(os.sep, "/")
        for name in dirnames:
            yield Path(dirpath, name), prefix + "/" + name
        for name in sorted(filenames):
            yield Path(dirpath, name), prefix + "/" + name


def _emitter_for(progress: Optional[ProgressEmitter]) -> ProgressEmitter:
    return progress if progress is not None else ProgressEmitter(ProgressTracker())


class Archiver:
    """Seals files and directories into an encrypted, compressed tar stream."""

    def __init__(
        self,
        *,
        codec_id: int = DEFAULT_CODEC_ID,
        frame_size: int = DEFAULT_FRAME_SIZE,
        kdf: Optional[KdfParams] = None,
    ):
        if codec_id not in (CODEC_NONE, CODEC_DEFLATE):
            raise ValueError(f"Unknown codec id: {codec_id}")
        if not 0 < frame_size <= MAX_FRAME_SIZE // 2:
            raise ValueError(f"Frame size out of range: {frame_size}")
        self.codec_id = codec_id
        self.frame_size = frame_size
        self.kdf = kdf or KdfParams()
        self.kdf.check()

    def seal(
        self,
        paths: Union[str, Path, Sequence[Union[str, Path]]],
        password: str,
        out: BinaryIO,
        progress: Optional[ProgressEmitter] = None,
    ) -> SealSummary:
        if isinstance(paths, (str, Path)):
            paths = [paths]
        roots = [Path(p) for p in paths]
        for root in roots:
            if not root.exists():
                raise FileNotFoundError(f"No such file or directory: '{root}'")
        emitter = _emitter_for(progress)
        tracker = emitter.tracker

        emitter.emit_progress_forced(None, ProgressPhase.SCANNING)
        total_bytes = 0
        total_files = 0
        for root in roots:
            b, f = calculate_total_size(root)
            total_bytes += b
            total_files += f
        tracker.set_total(total_bytes, total_files)
        logger.debug("Sealing %d files (%d bytes)", total_files, total_bytes)
        tracker.raise_if_cancelled()

        header = SealHeader(
            version=SEAL_VERSION,
            codec_id=self.codec_id,
            kdf_id=KDF_ARGON2ID,
            salt=os.urandom(SALT_SIZE),
            kdf=self.kdf,
            total_bytes=total_bytes,
            total_files=total_files,
        )
        cipher = _FrameCipher(derive_key(password, header.salt, header.kdf), header.codec_id)
        header.verifier = cipher.compute_verifier()
        cipher.bind(header)
        out.write(header.pack())

        emitter.emit_progress_forced(None, ProgressPhase.COMPRESSING)
        writer = _FrameWriter(out, cipher, self.frame_size)
        with tarfile.open(fileobj=writer, mode="w|", format=tarfile.PAX_FORMAT) as tar:
            for root in roots:
                for path, arcname in _iter_entries(root):
                    tracker.raise_if_cancelled()
                    if path.is_symlink():
                        logger.warning("Skipping symlink %s", path)
                        continue
                    info = tar.gettarinfo(str(path), arcname)
                    if info.isreg():
                        with open(path, "rb") as f:
                            tar.addfile(info, _CountingReader(f, emitter, arcname))
                        tracker.increment_files()
                    else:
                        tar.addfile(info)
                    emitter.emit_progress(arcname, ProgressPhase.COMPRESSING)
        writer.finish()

        emitter.emit_progress_forced(None, ProgressPhase.FINALIZING)
        return SealSummary(total_bytes=total_bytes, total_files=total_files, frames=writer.frames)

    def read_header(self, src: BinaryIO) -> SealHeader:
        return SealHeader.unpack(src.read(SEAL_HEADER.size))

    def unseal(
        self,
        src: BinaryIO,
        password: str,
        dest_dir: Union[str, Path],
        progress: Optional[ProgressEmitter] = None,
    ) -> None:
        """Extract a sealed payload into ``dest_dir``.

        Raises:
            ArchiverPasswordError: ``password`` does not match the payload.
            ArchiverCorruptError: header, frames or tar stream are damaged.
            FileExistsError: an extracted top-level entry already exists.
        """
        emitter = _emitter_for(progress)
        tracker = emitter.tracker
        emitter.emit_progress_forced(None, ProgressPhase.EXTRACTING)

        header = self.read_header(src)
        cipher = _FrameCipher(derive_key(password, header.salt, header.kdf), header.codec_id)
        if not hmac.compare_digest(cipher.compute_verifier(), header.verifier):
            raise ArchiverPasswordError("Invalid password")
        cipher.bind(header)
        tracker.set_total(header.total_bytes, header.total_files)

        dest = Path(dest_dir)
        dest.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=".tlk-unseal-", dir=str(dest.resolve().parent)))
        try:
            reader = _FrameReader(src, cipher)
            try:
                with tarfile.open(fileobj=reader, mode="r|") as tar:
                    for member in tar:
                        tracker.raise_if_cancelled()
                        tar.extract(member, str(staging), filter="data")
                        if member.isreg():
                            tracker.add_bytes(member.size)
                            tracker.increment_files()
                        emitter.emit_progress(member.name, ProgressPhase.EXTRACTING)
            except tarfile.TarError as exc:
                raise ArchiverCorruptError(f"Invalid archive stream: {exc}") from exc
            reader.drain()

            emitter.emit_progress_forced(None, ProgressPhase.FINALIZING)
            entries = sorted(staging.iterdir())
            for entry in entries:
                if os.path.lexists(dest / entry.name):
                    raise FileExistsError(f"Refusing to overwrite existing path: {dest / entry.name}")
            dest.mkdir(exist_ok=True)
            for entry in entries:
                os.replace(entry, dest / entry.name)
        finally:
            shutil.rmtree(staging, ignore_errors=True)
