"""
Pairing secret storage collaborator.

Adapters that pin a device identity across sessions (Coldcard) write
and read through this interface.  Persistence policy belongs to the
application; ``MemoryKeystore`` keeps secrets for the process lifetime.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Optional


class Keystore(ABC):
    """Store and retrieve per-device pairing secrets."""

    @abstractmethod
    def store(self, device_id: str, secret: bytes) -> None:
        """Persist *secret* for *device_id*, replacing any previous value."""

    @abstractmethod
    def retrieve(self, device_id: str) -> Optional[bytes]:
        """Return the stored secret or None."""

    @abstractmethod
    def forget(self, device_id: str) -> None:
        """Drop a stored secret; unknown ids are ignored."""


class MemoryKeystore(Keystore):

    def __init__(self):
        self._secrets: Dict[str, bytes] = {}

    def store(self, device_id: str, secret: bytes) -> None:
        self._secrets[device_id] = bytes(secret)

    def retrieve(self, device_id: str) -> Optional[bytes]:
        return self._secrets.get(device_id)

    def forget(self, device_id: str) -> None:
        self._secrets.pop(device_id, None)

    def __len__(self) -> int:
        return len(self._secrets)
