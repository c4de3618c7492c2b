"""Identity-based time-lock encryption over BLS12-381.

A beacon round signature is a BLS signature on G1 over ``sha256(round)``,
which doubles as the IBE private key for the identity "that round". The
construction is Boneh-Franklin with the Fujisaki-Okamoto transform:
ciphertext is ``U || V || W`` with ``U = r*G2`` (compressed, 96 bytes),
``V = sigma xor H2(e(Q_id, P_pub)^r)`` and ``W = msg xor H4(sigma)``.

The hash domains and the GT encoding are this package's own, so ciphertexts
are not interchangeable with the age-wrapped envelopes of the tlock tools.
The message is always a 16-byte file key; callers wrap the real secret with
a symmetric cipher keyed from it.
"""

from __future__ import annotations

import hashlib
import os

from py_ecc.bls.g2_primitives import G1_to_pubkey, G2_to_signature, pubkey_to_G1, signature_to_G2
from py_ecc.bls.hash_to_curve import hash_to_G1
from py_ecc.optimized_bls12_381 import G2, curve_order, eq, field_modulus, multiply, pairing

from .errors import DecryptionError


G1_DST = b"BLS_SIG_BLS12381G1_XMD:SHA-256_SSWU_RO_NUL_"
G1_POINT_SIZE = 48
G2_POINT_SIZE = 96
FILE_KEY_SIZE = 16
CIPHERTEXT_SIZE = G2_POINT_SIZE + 2 * FILE_KEY_SIZE

_FQ_BYTES = 48


def round_message(round_number: int) -> bytes:
    return hashlib.sha256(round_number.to_bytes(8, "big")).digest()


def identity_point(round_number: int):
    return hash_to_G1(round_message(round_number), G1_DST, hashlib.sha256)


def _gt_bytes(gt) -> bytes:
    out = bytearray()
    for c in gt.coeffs:
        out += (int(getattr(c, "n", c)) % field_modulus).to_bytes(_FQ_BYTES, "big")
    return bytes(out)


def _xor(a: bytes, b: bytes) -> bytes:
    return bytes(x ^ y for x, y in zip(a, b))


def _h2(gt, n: int) -> bytes:
    return hashlib.sha256(b"IBE-H2" + _gt_bytes(gt)).digest()[:n]


def _h3(sigma: bytes, msg: bytes) -> int:
    counter = 0
    while True:
        digest = hashlib.sha256(b"IBE-H3" + counter.to_bytes(2, "little") + sigma + msg).digest()
        r = int.from_bytes(digest, "big") % curve_order
        if r:
            return r
        counter += 1


def _h4(sigma: bytes, n: int) -> bytes:
    return hashlib.sha256(b"IBE-H4" + sigma).digest()[:n]


def encrypt(public_key: bytes, round_number: int, message: bytes) -> bytes:
    """Encrypt a 16-byte ``message`` to the identity of ``round_number``.

    ``public_key`` is the chain's compressed G2 master public key.
    """
    if len(message) != FILE_KEY_SIZE:
        raise ValueError(f"IBE message must be {FILE_KEY_SIZE} bytes")
    if len(public_key) != G2_POINT_SIZE:
        raise ValueError("Chain public key must be a compressed G2 point (96 bytes)")
    master = signature_to_G2(public_key)
    q_id = identity_point(round_number)

    sigma = os.urandom(FILE_KEY_SIZE)
    r = _h3(sigma, message)
    u = multiply(G2, r)
    # e(Q_id, P_pub)^r == e(Q_id, r*P_pub)
    gt = pairing(multiply(master, r), q_id)
    v = _xor(sigma, _h2(gt, FILE_KEY_SIZE))
    w = _xor(message, _h4(sigma, FILE_KEY_SIZE))
    return bytes(G2_to_signature(u)) + v + w


def decrypt(signature: bytes, ciphertext: bytes) -> bytes:
    """Recover the 16-byte message using the round ``signature`` (compressed G1)."""
    if len(ciphertext) != CIPHERTEXT_SIZE:
        raise DecryptionError("Invalid time-lock ciphertext length")
    if len(signature) != G1_POINT_SIZE:
        raise DecryptionError("Beacon signature must be a compressed G1 point (48 bytes)")
    try:
        u = signature_to_G2(ciphertext[:G2_POINT_SIZE])
        sig = pubkey_to_G1(signature)
    except (ValueError, AssertionError) as exc:
        raise DecryptionError(f"Invalid curve point: {exc}") from exc
    v = ciphertext[G2_POINT_SIZE : G2_POINT_SIZE + FILE_KEY_SIZE]
    w = ciphertext[G2_POINT_SIZE + FILE_KEY_SIZE :]

    gt = pairing(u, sig)
    sigma = _xor(v, _h2(gt, FILE_KEY_SIZE))
    message = _xor(w, _h4(sigma, FILE_KEY_SIZE))
    if not eq(multiply(G2, _h3(sigma, message)), u):
        raise DecryptionError("Time-lock ciphertext does not match the beacon signature")
    return message


def derive_public_key(secret_key: int) -> bytes:
    """Compressed G2 public key for a locally held chain secret."""
    return bytes(G2_to_signature(multiply(G2, secret_key % curve_order)))


def sign_round(secret_key: int, round_number: int) -> bytes:
    """Compressed G1 round signature, as a beacon with ``secret_key`` would publish."""
    return bytes(G1_to_pubkey(multiply(identity_point(round_number), secret_key % curve_order)))
