from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import httpx

from .constants import (
    DRAND_ENDPOINTS,
    QUICKNET_CHAIN_HASH,
    QUICKNET_GENESIS_TIME,
    QUICKNET_PERIOD,
    QUICKNET_PUBLIC_KEY,
)
from .errors import BeaconUnavailable


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChainInfo:
    chain_hash: str
    public_key: bytes  # compressed G2 point
    genesis_time: int
    period: int


QUICKNET = ChainInfo(
    chain_hash=QUICKNET_CHAIN_HASH,
    public_key=bytes.fromhex(QUICKNET_PUBLIC_KEY),
    genesis_time=QUICKNET_GENESIS_TIME,
    period=QUICKNET_PERIOD,
)


class BeaconClient:
    """HTTP client for a drand-compatible randomness beacon.

    Endpoints are tried once each, in order; the first valid signature wins.
    ``timeout`` and ``transport`` are handed to ``httpx.Client`` unchanged, so
    callers control per-request deadlines (and tests can inject a
    ``httpx.MockTransport``).
    """

    def __init__(
        self,
        endpoints: Sequence[str] = DRAND_ENDPOINTS,
        chain: ChainInfo = QUICKNET,
        *,
        timeout: Optional[float] = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not endpoints:
            raise ValueError("At least one beacon endpoint is required")
        self.endpoints = tuple(e.rstrip("/") for e in endpoints)
        self.chain = chain
        self.timeout = timeout
        self.transport = transport

    def round_url(self, endpoint: str, round_number: int) -> str:
        return f"{endpoint}/{self.chain.chain_hash}/public/{round_number}"

    def _fetch_from(self, client: httpx.Client, endpoint: str, round_number: int) -> bytes:
        resp = client.get(self.round_url(endpoint, round_number))
        resp.raise_for_status()
        body = resp.json()
        if not isinstance(body, dict):
            raise ValueError("unexpected beacon response")
        if int(body.get("round", -1)) != round_number:
            raise ValueError(f"beacon returned round {body.get('round')}, wanted {round_number}")
        return bytes.fromhex(body["signature"])

    def fetch_signature(self, round_number: int) -> bytes:
        """Return the raw signature bytes for ``round_number``.

        Raises:
            BeaconUnavailable: every endpoint failed (network, HTTP status or
                malformed response). The round may well be published already.
        """
        failures: List[str] = []
        with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
            for endpoint in self.endpoints:
                try:
                    return self._fetch_from(client, endpoint, round_number)
                except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
                    logger.warning("Beacon endpoint %s failed for round %d: %s", endpoint, round_number, exc)
                    failures.append(f"{endpoint}: {exc}")
        raise BeaconUnavailable(
            f"Failed to fetch beacon signature for round {round_number} from all endpoints ("
            + "; ".join(failures)
            + ")"
        )
