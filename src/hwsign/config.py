"""
Discovery and timeout configuration.

Usage::

    from hwsign.config import DiscoveryConfig

    config = DiscoveryConfig.from_env()
    config.timeouts.overrides["sign_tx"] = 600.0

Environment variables (all optional)::

    HWSIGN_ENABLE_HID / HWSIGN_ENABLE_SERIAL / HWSIGN_ENABLE_NETWORK
    HWSIGN_ALLOW_VENDORS=ledger,jade     HWSIGN_DENY_VENDORS=specter
    HWSIGN_SCAN_TIMEOUT=5                HWSIGN_POLL_INTERVAL=0.05
    HWSIGN_QUERY_TIMEOUT=10              HWSIGN_CONFIRMATION_TIMEOUT=300
    HWSIGN_TIMEOUT_SIGN_TX=600           (any operation name, upper case)
    HWSIGN_RETRIES=1                     HWSIGN_NETWORK=testnet
    HWSIGN_ENDPOINTS=ledger@127.0.0.1:9999,jade@127.0.0.1:30121
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from .constants import (
    DEFAULT_CONFIRMATION_TIMEOUT,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_QUERY_TIMEOUT,
    DEFAULT_RETRIES,
    DEFAULT_SCAN_TIMEOUT,
    JADE_SIMULATOR_ADDRESS,
    LEDGER_SIMULATOR_ADDRESS,
    NETWORKS,
)

log = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}
_ENV_PREFIX = "HWSIGN_"

# Operations that never wait on a human.  Everything else gets the
# confirmation class timeout.
QUERY_OPERATIONS = frozenset({
    "identify",
    "get_version",
    "get_master_fingerprint",
    "get_extended_pubkey",
    "drain",
})


@dataclass
class Timeouts:
    """Per-operation timeouts in seconds.

    ``None`` in an override disables the timeout for that operation.
    """

    query: float = DEFAULT_QUERY_TIMEOUT
    confirmation: float = DEFAULT_CONFIRMATION_TIMEOUT
    overrides: Dict[str, Optional[float]] = field(default_factory=dict)

    def for_operation(self, operation: str, interactive: bool = False) -> Optional[float]:
        """Timeout for *operation*.

        Args:
            operation: Capability operation name, e.g. ``"sign_tx"``.
            interactive: Force the confirmation class, used when a query
                needs on-device approval (xpub display, PIN unlock).
        """
        if operation in self.overrides:
            return self.overrides[operation]
        if operation in QUERY_OPERATIONS and not interactive:
            return self.query
        return self.confirmation


@dataclass(frozen=True)
class NetworkEndpoint:
    """A simulator or companion app reachable over TCP."""

    vendor: str
    host: str
    port: int

    @classmethod
    def parse(cls, text: str) -> NetworkEndpoint:
        """Parse ``vendor@host:port``."""
        try:
            vendor, address = text.strip().split("@", 1)
            host, port = address.rsplit(":", 1)
            return cls(vendor.strip().lower(), host, int(port))
        except ValueError as exc:
            raise ValueError(f"Bad endpoint {text!r}, expected vendor@host:port") from exc


def _default_endpoints() -> List[NetworkEndpoint]:
    return [
        NetworkEndpoint("ledger", *LEDGER_SIMULATOR_ADDRESS),
        NetworkEndpoint("jade", *JADE_SIMULATOR_ADDRESS),
    ]


@dataclass
class DiscoveryConfig:
    """Settings that shape a discovery scan and the handles it builds."""

    enable_hid: bool = True
    enable_serial: bool = True
    enable_network: bool = False
    allow_vendors: List[str] = field(default_factory=list)
    deny_vendors: List[str] = field(default_factory=list)
    scan_timeout: float = DEFAULT_SCAN_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    retries: int = DEFAULT_RETRIES
    network: str = "mainnet"
    endpoints: List[NetworkEndpoint] = field(default_factory=_default_endpoints)
    timeouts: Timeouts = field(default_factory=Timeouts)

    def __post_init__(self):
        if self.network not in NETWORKS:
            raise ValueError(f"Unknown network {self.network!r}, expected one of {NETWORKS}")
        if self.retries < 0:
            raise ValueError("retries must be >= 0")
        self.allow_vendors = [v.lower() for v in self.allow_vendors]
        self.deny_vendors = [v.lower() for v in self.deny_vendors]

    def vendor_allowed(self, vendor: str) -> bool:
        """Deny list wins; an empty allow list admits every vendor."""
        vendor = vendor.lower()
        if vendor in self.deny_vendors:
            return False
        return not self.allow_vendors or vendor in self.allow_vendors

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> DiscoveryConfig:
        """Build a config from ``HWSIGN_*`` environment variables."""
        env = os.environ if environ is None else environ

        def flag(name: str, default: bool) -> bool:
            raw = env.get(_ENV_PREFIX + name)
            if raw is None:
                return default
            return raw.strip().lower() in _TRUTHY

        def number(name: str, default: float) -> float:
            raw = env.get(_ENV_PREFIX + name)
            if raw is None or not raw.strip():
                return default
            return float(raw)

        def names(name: str) -> List[str]:
            raw = env.get(_ENV_PREFIX + name, "")
            return [part.strip().lower() for part in raw.split(",") if part.strip()]

        timeouts = Timeouts(
            query=number("QUERY_TIMEOUT", DEFAULT_QUERY_TIMEOUT),
            confirmation=number("CONFIRMATION_TIMEOUT", DEFAULT_CONFIRMATION_TIMEOUT),
        )
        override_prefix = _ENV_PREFIX + "TIMEOUT_"
        for key, value in env.items():
            if key.startswith(override_prefix) and value.strip():
                operation = key[len(override_prefix):].lower()
                timeouts.overrides[operation] = float(value)

        endpoints_raw = env.get(_ENV_PREFIX + "ENDPOINTS")
        if endpoints_raw:
            endpoints = [NetworkEndpoint.parse(part)
                         for part in endpoints_raw.split(",") if part.strip()]
        else:
            endpoints = _default_endpoints()

        config = cls(
            enable_hid=flag("ENABLE_HID", True),
            enable_serial=flag("ENABLE_SERIAL", True),
            enable_network=flag("ENABLE_NETWORK", False),
            allow_vendors=names("ALLOW_VENDORS"),
            deny_vendors=names("DENY_VENDORS"),
            scan_timeout=number("SCAN_TIMEOUT", DEFAULT_SCAN_TIMEOUT),
            poll_interval=number("POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
            retries=int(number("RETRIES", DEFAULT_RETRIES)),
            network=env.get(_ENV_PREFIX + "NETWORK", "mainnet").strip().lower(),
            endpoints=endpoints,
            timeouts=timeouts,
        )
        log.debug("Discovery config from environment: %s", config)
        return config
