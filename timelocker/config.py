"""Runtime settings for the command-line tool."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .archiver import ARGON_MEMORY_COST_KIB, ARGON_PARALLELISM, ARGON_TIME_COST, KdfParams
from .constants import DEFAULT_EMIT_INTERVAL_MS, DRAND_ENDPOINTS


@dataclass
class TimeLockerConfig:
    beacon_endpoints: Tuple[str, ...] = field(default=DRAND_ENDPOINTS)
    beacon_timeout: float = 10.0
    vault_dir: Optional[Path] = None
    log_level: str = "WARNING"
    emit_interval_ms: int = DEFAULT_EMIT_INTERVAL_MS
    kdf_memory_kib: int = ARGON_MEMORY_COST_KIB
    kdf_time_cost: int = ARGON_TIME_COST

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TimeLockerConfig":
        env = os.environ if environ is None else environ
        cfg = cls()
        endpoints = env.get("TIMELOCKER_BEACON_ENDPOINTS", "")
        if endpoints.strip():
            cfg.beacon_endpoints = tuple(e.strip() for e in endpoints.split(",") if e.strip())
        if env.get("TIMELOCKER_BEACON_TIMEOUT"):
            cfg.beacon_timeout = float(env["TIMELOCKER_BEACON_TIMEOUT"])
        if env.get("TIMELOCKER_VAULT"):
            cfg.vault_dir = Path(env["TIMELOCKER_VAULT"]).expanduser()
        if env.get("TIMELOCKER_LOG_LEVEL"):
            cfg.log_level = env["TIMELOCKER_LOG_LEVEL"].upper()
        if env.get("TIMELOCKER_EMIT_INTERVAL_MS"):
            cfg.emit_interval_ms = int(env["TIMELOCKER_EMIT_INTERVAL_MS"])
        if env.get("TIMELOCKER_KDF_MEMORY_KIB"):
            cfg.kdf_memory_kib = int(env["TIMELOCKER_KDF_MEMORY_KIB"])
        if env.get("TIMELOCKER_KDF_TIME_COST"):
            cfg.kdf_time_cost = int(env["TIMELOCKER_KDF_TIME_COST"])
        return cfg

    def kdf_params(self) -> KdfParams:
        # new containers only; existing ones carry their own parameters
        parallelism = min(ARGON_PARALLELISM, max(1, self.kdf_memory_kib // 8))
        return KdfParams(time_cost=self.kdf_time_cost, memory_cost_kib=self.kdf_memory_kib, parallelism=parallelism)
