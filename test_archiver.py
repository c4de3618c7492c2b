from __future__ import annotations

import io
import os
import tempfile
import unittest
from pathlib import Path

from timelocker.archiver import (
    SEAL_HEADER,
    Archiver,
    ArchiverCorruptError,
    ArchiverPasswordError,
    KdfParams,
)
from timelocker.constants import CODEC_NONE
from timelocker.errors import OperationCancelled
from timelocker.progress import ProgressEmitter, ProgressPhase, ProgressTracker


FAST_KDF = KdfParams(time_cost=1, memory_cost_kib=8, parallelism=1)


def _create_sample_tree(base: Path) -> Path:
    root = base / "project"
    (root / "docs" / "notes").mkdir(parents=True)
    (root / "docs" / "a.txt").write_text("hello world\n" * 50, encoding="utf-8")
    (root / "docs" / "notes" / "b.bin").write_bytes(os.urandom(5000))
    (root / "docs" / "notes" / "empty.txt").write_bytes(b"")
    (root / "top.md").write_text("# Title\n", encoding="utf-8")
    return root


def _assert_same_tree(tc: unittest.TestCase, src: Path, dst: Path):
    src_items = sorted(p.relative_to(src).as_posix() for p in src.rglob("*"))
    dst_items = sorted(p.relative_to(dst).as_posix() for p in dst.rglob("*"))
    tc.assertEqual(src_items, dst_items)
    for rel in src_items:
        if (src / rel).is_file():
            tc.assertEqual((src / rel).read_bytes(), (dst / rel).read_bytes(), rel)


def _seal(archiver: Archiver, paths, password: str, progress=None) -> bytes:
    buf = io.BytesIO()
    archiver.seal(paths, password, buf, progress)
    return buf.getvalue()


class ArchiverTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.base = Path(self._tmp.name)
        self.tree = _create_sample_tree(self.base)

    def test_roundtrip_directory(self):
        archiver = Archiver(kdf=FAST_KDF)
        sealed = _seal(archiver, self.tree, "pw")
        self.assertNotIn(b"hello world", sealed)
        out = self.base / "out"
        archiver.unseal(io.BytesIO(sealed), "pw", out)
        _assert_same_tree(self, self.tree, out / "project")
        self.assertEqual([p.name for p in out.iterdir()], ["project"])

    def test_roundtrip_single_file_many_frames_uncompressed(self):
        src = self.base / "big.bin"
        payload = os.urandom(50_000)
        src.write_bytes(payload)
        archiver = Archiver(codec_id=CODEC_NONE, frame_size=4096, kdf=FAST_KDF)
        buf = io.BytesIO()
        summary = archiver.seal(src, "pw", buf)
        self.assertGreater(summary.frames, 10)
        self.assertEqual((summary.total_bytes, summary.total_files), (50_000, 1))
        out = self.base / "out"
        archiver.unseal(io.BytesIO(buf.getvalue()), "pw", out)
        self.assertEqual((out / "big.bin").read_bytes(), payload)

    def test_wrong_password(self):
        archiver = Archiver(kdf=FAST_KDF)
        sealed = _seal(archiver, self.tree, "right")
        out = self.base / "out"
        with self.assertRaises(ArchiverPasswordError):
            archiver.unseal(io.BytesIO(sealed), "wrong", out)
        self.assertFalse(out.exists())

    def test_flipped_byte_is_corruption(self):
        archiver = Archiver(kdf=FAST_KDF)
        sealed = bytearray(_seal(archiver, self.tree, "pw"))
        sealed[SEAL_HEADER.size + 40] ^= 0x01
        with self.assertRaises(ArchiverCorruptError):
            archiver.unseal(io.BytesIO(bytes(sealed)), "pw", self.base / "out")

    def test_header_tamper_is_corruption(self):
        archiver = Archiver(kdf=FAST_KDF)
        sealed = bytearray(_seal(archiver, self.tree, "pw"))
        # total_files field sits just before the verifier
        sealed[SEAL_HEADER.size - 16 - 4] ^= 0x01
        with self.assertRaises(ArchiverCorruptError):
            archiver.unseal(io.BytesIO(bytes(sealed)), "pw", self.base / "out")

    def test_truncation_is_corruption(self):
        archiver = Archiver(codec_id=CODEC_NONE, frame_size=1024, kdf=FAST_KDF)
        sealed = _seal(archiver, self.tree, "pw")
        for cut in (10, SEAL_HEADER.size + 3, len(sealed) // 2, len(sealed) - 1):
            with self.subTest(cut=cut):
                with self.assertRaises(ArchiverCorruptError):
                    archiver.unseal(io.BytesIO(sealed[:cut]), "pw", self.base / f"out{cut}")

    def test_trailing_garbage_is_corruption(self):
        archiver = Archiver(kdf=FAST_KDF)
        sealed = _seal(archiver, self.tree, "pw") + b"junk"
        with self.assertRaises(ArchiverCorruptError):
            archiver.unseal(io.BytesIO(sealed), "pw", self.base / "out")

    def test_failed_unseal_leaves_no_staging(self):
        archiver = Archiver(codec_id=CODEC_NONE, frame_size=1024, kdf=FAST_KDF)
        sealed = _seal(archiver, self.tree, "pw")
        dest = self.base / "restore" / "out"
        with self.assertRaises(ArchiverCorruptError):
            archiver.unseal(io.BytesIO(sealed[:-100]), "pw", dest)
        self.assertEqual(list((self.base / "restore").iterdir()), [])
        self.assertFalse(dest.exists())

    def test_refuses_to_overwrite(self):
        archiver = Archiver(kdf=FAST_KDF)
        sealed = _seal(archiver, self.tree, "pw")
        out = self.base / "out"
        (out / "project").mkdir(parents=True)
        with self.assertRaises(FileExistsError):
            archiver.unseal(io.BytesIO(sealed), "pw", out)

    def test_progress_counts(self):
        events = []
        tracker = ProgressTracker(emit_interval_ms=0)
        em = ProgressEmitter(tracker, lambda n, p: events.append(p))
        archiver = Archiver(kdf=FAST_KDF)
        sealed = _seal(archiver, self.tree, "pw", em)
        self.assertEqual(tracker.total_files, 4)
        self.assertEqual(tracker.files_done, 4)
        self.assertEqual(tracker.bytes_done, tracker.total_bytes)
        phases = [p.phase for p in events]
        self.assertEqual(phases[0], ProgressPhase.SCANNING)
        self.assertIn(ProgressPhase.COMPRESSING, phases)
        self.assertEqual(phases[-1], ProgressPhase.FINALIZING)

        tracker2 = ProgressTracker()
        archiver.unseal(io.BytesIO(sealed), "pw", self.base / "out", ProgressEmitter(tracker2))
        self.assertEqual(tracker2.files_done, 4)
        self.assertEqual(tracker2.bytes_done, tracker.total_bytes)

    def test_cancel_during_seal(self):
        tracker = ProgressTracker(emit_interval_ms=0)

        def _sink(name, payload):
            if payload.phase == ProgressPhase.COMPRESSING:
                tracker.cancel()

        with self.assertRaises(OperationCancelled):
            _seal(Archiver(kdf=FAST_KDF), self.tree, "pw", ProgressEmitter(tracker, _sink))

    def test_cancel_during_unseal_cleans_up(self):
        archiver = Archiver(kdf=FAST_KDF)
        sealed = _seal(archiver, self.tree, "pw")
        tracker = ProgressTracker()
        tracker.cancel()
        dest = self.base / "restore" / "out"
        with self.assertRaises(OperationCancelled):
            archiver.unseal(io.BytesIO(sealed), "pw", dest, ProgressEmitter(tracker))
        self.assertEqual(list((self.base / "restore").iterdir()), [])

    def test_missing_source(self):
        with self.assertRaises(FileNotFoundError):
            _seal(Archiver(kdf=FAST_KDF), self.base / "nope", "pw")

    def test_kdf_bounds(self):
        with self.assertRaises(ValueError):
            Archiver(kdf=KdfParams(time_cost=0, memory_cost_kib=8, parallelism=1))
        with self.assertRaises(ValueError):
            Archiver(kdf=KdfParams(time_cost=1, memory_cost_kib=4, parallelism=1))

    def test_header_records_kdf_params(self):
        archiver = Archiver(kdf=FAST_KDF)
        sealed = _seal(archiver, self.tree, "pw")
        header = archiver.read_header(io.BytesIO(sealed))
        self.assertEqual(header.kdf, FAST_KDF)
        self.assertEqual(header.total_files, 4)


if __name__ == "__main__":
    unittest.main()
