from __future__ import annotations

import unittest
from typing import List

import httpx

from timelocker import ibe
from timelocker.beacon import QUICKNET, BeaconClient, ChainInfo
from timelocker.errors import BeaconUnavailable, DecryptionError, ForeignLockedKeyError, TimeLockActive
from timelocker.roundclock import round_to_timestamp
from timelocker.timelock import TimelockCipher


CHAIN_SECRET = 0x2B7E151628AED2A6ABF7158809CF4F3C762E7160F38B4DA56A784D9045190CFE
GENESIS = 1_600_000_000
PERIOD = 3
TEST_CHAIN = ChainInfo(
    chain_hash="7e57" * 16,
    public_key=ibe.derive_public_key(CHAIN_SECRET),
    genesis_time=GENESIS,
    period=PERIOD,
)


class FakeClock:
    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeBeacon:
    """Serves round signatures for TEST_CHAIN once their round time has passed."""

    def __init__(self, clock: FakeClock, *, failing: int = 0):
        self.clock = clock
        self.failing = failing
        self.requests: List[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        if len(self.requests) <= self.failing:
            return httpx.Response(503, text="unavailable")
        round_number = int(request.url.path.rsplit("/", 1)[-1])
        if round_to_timestamp(round_number, genesis=GENESIS, period=PERIOD) > self.clock():
            return httpx.Response(404, json={"error": "round not yet published"})
        return httpx.Response(
            200,
            json={"round": round_number, "signature": ibe.sign_round(CHAIN_SECRET, round_number).hex()},
        )


def make_cipher(clock: FakeClock, beacon: FakeBeacon, endpoints=("https://one.test", "https://two.test")):
    client = BeaconClient(endpoints, TEST_CHAIN, transport=httpx.MockTransport(beacon))
    return TimelockCipher(client, clock=clock)


class TimelockCipherTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.lock_time = GENESIS + 10_000 * PERIOD
        cls.unlock_at = cls.lock_time + 600
        clock = FakeClock(cls.lock_time)
        cls.locked = make_cipher(clock, FakeBeacon(clock)).encrypt("archive password", cls.unlock_at)
        cls.round = int.from_bytes(cls.locked[:8], "big")

    def test_locked_secret_carries_target_round(self):
        clock = FakeClock(self.lock_time)
        cipher = make_cipher(clock, FakeBeacon(clock))
        self.assertEqual(self.round, cipher.target_round(self.unlock_at))
        self.assertGreaterEqual(cipher.round_timestamp(self.round), self.unlock_at)
        self.assertNotIn(b"archive password", self.locked)

    def test_time_lock_active_before_round_without_network(self):
        clock = FakeClock(self.lock_time)
        beacon = FakeBeacon(clock)
        cipher = make_cipher(clock, beacon)
        with self.assertRaises(TimeLockActive) as cm:
            cipher.decrypt(self.locked, self.unlock_at)
        self.assertEqual(beacon.requests, [])
        self.assertEqual(cm.exception.round_number, self.round)
        self.assertGreater(cm.exception.remaining_seconds, 600)
        self.assertIn("Time lock still active. Unlock in 0 hours, 10 minutes", str(cm.exception))

    def test_decrypt_after_round(self):
        clock = FakeClock(self.unlock_at + 60)
        beacon = FakeBeacon(clock)
        cipher = make_cipher(clock, beacon)
        self.assertEqual(cipher.decrypt(self.locked, self.unlock_at), b"archive password")
        self.assertEqual(len(beacon.requests), 1)
        self.assertTrue(beacon.requests[0].endswith(f"/{TEST_CHAIN.chain_hash}/public/{self.round}"))

    def test_endpoint_failover(self):
        clock = FakeClock(self.unlock_at + 60)
        beacon = FakeBeacon(clock, failing=1)
        cipher = make_cipher(clock, beacon)
        with self.assertLogs("timelocker.beacon", level="WARNING"):
            self.assertEqual(cipher.decrypt_auto(self.locked), b"archive password")
        self.assertEqual([u.split("/")[2] for u in beacon.requests], ["one.test", "two.test"])

    def test_all_endpoints_down(self):
        clock = FakeClock(self.unlock_at + 60)
        beacon = FakeBeacon(clock, failing=10)
        cipher = make_cipher(clock, beacon)
        with self.assertRaises(BeaconUnavailable) as cm:
            cipher.decrypt_auto(self.locked)
        self.assertNotIsInstance(cm.exception, TimeLockActive)
        self.assertEqual(len(beacon.requests), 2)

    def test_round_mismatch_is_logged_not_fatal(self):
        clock = FakeClock(self.unlock_at + 3600)
        cipher = make_cipher(clock, FakeBeacon(clock))
        with self.assertLogs("timelocker.timelock", level="WARNING") as logs:
            self.assertEqual(cipher.decrypt(self.locked, self.unlock_at + 1200), b"archive password")
        self.assertTrue(any("Round mismatch" in line for line in logs.output))

    def test_wrong_signature(self):
        cipher = make_cipher(FakeClock(0), FakeBeacon(FakeClock(0)))
        with self.assertRaises(DecryptionError):
            cipher.open_with_signature(self.locked, ibe.sign_round(CHAIN_SECRET, self.round + 1))

    def test_tampered_ciphertext(self):
        cipher = make_cipher(FakeClock(0), FakeBeacon(FakeClock(0)))
        signature = ibe.sign_round(CHAIN_SECRET, self.round)
        tampered = bytearray(self.locked)
        tampered[-1] ^= 0x01
        with self.assertRaises(DecryptionError):
            cipher.open_with_signature(bytes(tampered), signature)
        with self.assertRaises(DecryptionError):
            cipher.open_with_signature(self.locked[:40], signature)
        with self.assertRaises(DecryptionError):
            cipher.split(b"\x00" * 8)

    def test_age_envelope_rejected_before_network(self):
        envelope = b"age-encryption.org/v1\n-> tlock " + str(self.round).encode() + b" " + TEST_CHAIN.chain_hash.encode()
        foreign = self.round.to_bytes(8, "big") + envelope + b"\n" + bytes(64)
        for now in (self.lock_time, self.unlock_at + 60):
            with self.subTest(now=now):
                clock = FakeClock(now)
                beacon = FakeBeacon(clock)
                cipher = make_cipher(clock, beacon)
                with self.assertRaises(ForeignLockedKeyError) as cm:
                    cipher.decrypt(foreign, self.unlock_at)
                self.assertIsInstance(cm.exception, DecryptionError)
                self.assertEqual(beacon.requests, [])
        armored = self.round.to_bytes(8, "big") + b"-----BEGIN AGE ENCRYPTED FILE-----\nYWdl\n"
        with self.assertRaises(ForeignLockedKeyError):
            TimelockCipher.check_native(armored)
        TimelockCipher.check_native(self.locked)

    def test_info(self):
        clock = FakeClock(self.lock_time)
        cipher = make_cipher(clock, FakeBeacon(clock))
        info = cipher.info(self.locked)
        self.assertEqual(info.round_number, self.round)
        self.assertFalse(info.available)
        clock.now = info.unlock_timestamp
        self.assertTrue(cipher.info(self.locked).available)

    def test_armor(self):
        text = TimelockCipher.armor(self.locked)
        self.assertEqual(TimelockCipher.dearmor(text), self.locked)
        for bad in ("not base64!", "abc", "é"):
            with self.subTest(bad=bad):
                with self.assertRaises(DecryptionError):
                    TimelockCipher.dearmor(bad)


class BeaconClientTests(unittest.TestCase):
    def test_round_url(self):
        client = BeaconClient(["https://api.drand.sh/"])
        self.assertEqual(client.chain, QUICKNET)
        self.assertEqual(
            client.round_url(client.endpoints[0], 42),
            f"https://api.drand.sh/{QUICKNET.chain_hash}/public/42",
        )

    def test_rejects_wrong_round_and_bad_json(self):
        calls = []

        def handler(request):
            calls.append(request.url.host)
            if request.url.host == "a.test":
                return httpx.Response(200, json={"round": 7, "signature": "00"})
            if request.url.host == "b.test":
                return httpx.Response(200, text="<html>")
            return httpx.Response(200, json={"round": 8, "signature": "abcd"})

        client = BeaconClient(
            ["https://a.test", "https://b.test", "https://c.test"],
            TEST_CHAIN,
            transport=httpx.MockTransport(handler),
        )
        with self.assertLogs("timelocker.beacon", level="WARNING"):
            self.assertEqual(client.fetch_signature(8), b"\xab\xcd")
        self.assertEqual(calls, ["a.test", "b.test", "c.test"])

    def test_connect_error_falls_through(self):
        def handler(request):
            if request.url.host == "down.test":
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json={"round": 3, "signature": "ff"})

        client = BeaconClient(["https://down.test", "https://up.test"], TEST_CHAIN, transport=httpx.MockTransport(handler))
        with self.assertLogs("timelocker.beacon", level="WARNING"):
            self.assertEqual(client.fetch_signature(3), b"\xff")

    def test_requires_endpoints(self):
        with self.assertRaises(ValueError):
            BeaconClient([])


class IbeTests(unittest.TestCase):
    def test_message_size_enforced(self):
        with self.assertRaises(ValueError):
            ibe.encrypt(TEST_CHAIN.public_key, 5, b"short")

    def test_quicknet_public_key_decodes(self):
        self.assertEqual(len(QUICKNET.public_key), ibe.G2_POINT_SIZE)


if __name__ == "__main__":
    unittest.main()
