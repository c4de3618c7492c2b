"""
TimeLocker: files that cannot be opened before a chosen moment.

Features:

- ``.tlock`` containers: a 24-byte header and plain JSON metadata in front of
  a password-sealed payload, readable without any secret.
- The payload password is time-locked to a future drand beacon round with
  identity-based encryption on BLS12-381; nobody can decrypt it before the
  beacon publishes that round's signature.
- Payloads are framed, deflate-compressed tar streams sealed with
  XChaCha20-Poly1305 under an Argon2id key (PyCryptodomex, argon2-cffi).
- Throttled, cancellable progress reporting for lock and unlock operations.
"""

__version__ = "0.1"

__all__ = [
    "constants",
    "roundclock",
    "timelock",
    "container",
    "archiver",
    "progress",
    "locker",
    "registry",
    "beacon",
    "config",
]
