from __future__ import annotations

import base64
import binascii
import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Union

from Cryptodome.Cipher import ChaCha20_Poly1305
from Cryptodome.Hash import SHA256
from Cryptodome.Protocol.KDF import HKDF

from . import ibe
from .beacon import BeaconClient
from .constants import ROUND_PREFIX_SIZE
from .errors import DecryptionError, ForeignLockedKeyError, TimeLockActive
from .roundclock import Instant, is_round_available, round_to_timestamp, unlock_instant_to_target_round


logger = logging.getLogger(__name__)


NONCE_SIZE = 24  # XChaCha20-Poly1305
TAG_SIZE = 16
KEY_SIZE = 32
_HKDF_CONTEXT = b"TIMELOCKER_SECRET_V1"
_AGE_PREFIXES = (b"age-encryption.org/", b"-----BEGIN AGE ENCRYPTED FILE-----")


@dataclass
class TimelockInfo:
    round_number: int
    unlock_timestamp: int
    available: bool


def _derive_secret_key(file_key: bytes) -> bytes:
    return HKDF(file_key, KEY_SIZE, b"", SHA256, context=_HKDF_CONTEXT)


class TimelockCipher:
    """Locks short secrets to a future beacon round.

    A locked secret is ``round (u64 BE) || IBE(file_key) || nonce || ct || tag``
    where the secret is sealed with XChaCha20-Poly1305 under a key derived
    from the IBE-protected file key. The round prefix is authenticated as AAD.
    """

    def __init__(self, beacon: Optional[BeaconClient] = None, *, clock: Callable[[], float] = time.time):
        self.beacon = beacon if beacon is not None else BeaconClient()
        self.chain = self.beacon.chain
        self.clock = clock

    # ---- round helpers bound to this chain ----

    def target_round(self, unlock_instant: Instant) -> int:
        return unlock_instant_to_target_round(
            unlock_instant, genesis=self.chain.genesis_time, period=self.chain.period
        )

    def round_timestamp(self, round_number: int) -> int:
        return round_to_timestamp(round_number, genesis=self.chain.genesis_time, period=self.chain.period)

    def is_available(self, round_number: int) -> bool:
        return is_round_available(
            round_number, self.clock(), genesis=self.chain.genesis_time, period=self.chain.period
        )

    # ---- encryption ----

    def encrypt(self, secret: Union[bytes, str], unlock_instant: Instant) -> bytes:
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        round_number = self.target_round(unlock_instant)
        prefix = round_number.to_bytes(ROUND_PREFIX_SIZE, "big")

        file_key = os.urandom(ibe.FILE_KEY_SIZE)
        header = ibe.encrypt(self.chain.public_key, round_number, file_key)
        nonce = os.urandom(NONCE_SIZE)
        cipher = ChaCha20_Poly1305.new(key=_derive_secret_key(file_key), nonce=nonce)
        cipher.update(prefix)
        ciphertext, tag = cipher.encrypt_and_digest(secret)
        logger.debug("Locked %d-byte secret to round %d", len(secret), round_number)
        return prefix + header + nonce + ciphertext + tag

    # ---- decryption ----

    @staticmethod
    def split(locked: bytes) -> Tuple[int, bytes]:
        if len(locked) <= ROUND_PREFIX_SIZE:
            raise DecryptionError("Invalid locked secret: too short")
        return int.from_bytes(locked[:ROUND_PREFIX_SIZE], "big"), locked[ROUND_PREFIX_SIZE:]

    def decrypt(self, locked: bytes, expected_unlock_instant: Instant) -> bytes:
        """Recover the secret; the round embedded in ``locked`` is authoritative.

        Raises:
            TimeLockActive: the round is not published yet (no network used).
            BeaconUnavailable: no endpoint could supply the signature.
            DecryptionError: malformed or tampered ciphertext.
        """
        round_number, _ = self.split(locked)
        expected = self.target_round(expected_unlock_instant)
        if round_number != expected:
            logger.warning("Round mismatch. Stored: %d, Expected: %d", round_number, expected)
        return self.decrypt_auto(locked)

    @staticmethod
    def check_native(locked: bytes) -> None:
        """Reject age/tlock envelopes, which this cipher cannot open."""
        _, body = TimelockCipher.split(locked)
        if body.lstrip().startswith(_AGE_PREFIXES):
            raise ForeignLockedKeyError(
                "Locked key is an age/tlock envelope from another tool and cannot be opened here"
            )

    def decrypt_auto(self, locked: bytes) -> bytes:
        self.check_native(locked)
        round_number, _ = self.split(locked)
        if not self.is_available(round_number):
            unlock_ts = self.round_timestamp(round_number)
            raise TimeLockActive(round_number, unlock_ts, unlock_ts - self.clock())
        signature = self.beacon.fetch_signature(round_number)
        return self.open_with_signature(locked, signature)

    def open_with_signature(self, locked: bytes, signature: bytes) -> bytes:
        """Decrypt ``locked`` with an already obtained round signature."""
        self.check_native(locked)
        round_number, body = self.split(locked)
        min_len = ibe.CIPHERTEXT_SIZE + NONCE_SIZE + TAG_SIZE
        if len(body) < min_len:
            raise DecryptionError("Invalid locked secret: truncated")
        header = body[: ibe.CIPHERTEXT_SIZE]
        nonce = body[ibe.CIPHERTEXT_SIZE : ibe.CIPHERTEXT_SIZE + NONCE_SIZE]
        ciphertext = body[ibe.CIPHERTEXT_SIZE + NONCE_SIZE : -TAG_SIZE]
        tag = body[-TAG_SIZE:]

        file_key = ibe.decrypt(signature, header)
        cipher = ChaCha20_Poly1305.new(key=_derive_secret_key(file_key), nonce=nonce)
        cipher.update(round_number.to_bytes(ROUND_PREFIX_SIZE, "big"))
        try:
            return cipher.decrypt_and_verify(ciphertext, tag)
        except ValueError as exc:
            raise DecryptionError(f"Time-lock decryption failed: {exc}") from exc

    def info(self, locked: bytes) -> TimelockInfo:
        round_number, _ = self.split(locked)
        return TimelockInfo(
            round_number=round_number,
            unlock_timestamp=self.round_timestamp(round_number),
            available=self.is_available(round_number),
        )

    # ---- JSON transport ----

    @staticmethod
    def armor(locked: bytes) -> str:
        return base64.b64encode(locked).decode("ascii")

    @staticmethod
    def dearmor(text: str) -> bytes:
        try:
            return base64.b64decode(text.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError, AttributeError, TypeError) as exc:
            raise DecryptionError(f"Invalid base64: {exc}") from exc
