"""
BIP32 derivation paths and extended public keys.

Only the public data model lives here: parsing and formatting paths,
decoding and encoding serialized xpubs.  Master fingerprints are always
read from the device, never computed from key material.
"""

from __future__ import annotations

import re
import struct
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple, Union

import base58

HARDENED = 0x80000000

# Serialized extended public key version bytes per network
XPUB_VERSIONS = {
    "mainnet": bytes.fromhex("0488b21e"),
    "testnet": bytes.fromhex("043587cf"),
}
# SLIP-132 variants some devices still return (ypub, zpub, Ypub, Zpub...)
_KNOWN_VERSIONS = {
    bytes.fromhex("0488b21e"): "mainnet",
    bytes.fromhex("049d7cb2"): "mainnet",
    bytes.fromhex("04b24746"): "mainnet",
    bytes.fromhex("0295b43f"): "mainnet",
    bytes.fromhex("02aa7ed3"): "mainnet",
    bytes.fromhex("043587cf"): "testnet",
    bytes.fromhex("044a5262"): "testnet",
    bytes.fromhex("045f1cf6"): "testnet",
    bytes.fromhex("024289ef"): "testnet",
    bytes.fromhex("02575483"): "testnet",
}

_STEP_RE = re.compile(r"^(\d+)(['hH]?)$")


def format_fingerprint(fingerprint: bytes) -> str:
    return fingerprint.hex()


def parse_fingerprint(text: str) -> bytes:
    raw = bytes.fromhex(text)
    if len(raw) != 4:
        raise ValueError(f"Fingerprint must be 4 bytes, got {text!r}")
    return raw


# =========================================================================
# Derivation paths
# =========================================================================

@dataclass(frozen=True)
class DerivationPath:
    """Ordered sequence of BIP32 child indices (hardened bit included)."""

    indices: Tuple[int, ...] = ()

    def __post_init__(self):
        for index in self.indices:
            if not 0 <= index <= 0xFFFFFFFF:
                raise ValueError(f"Child index out of range: {index}")

    @classmethod
    def parse(cls, text: Union[str, DerivationPath]) -> DerivationPath:
        """Parse ``m/84'/0'/0'``, ``84h/0h/0h`` or ``m``."""
        if isinstance(text, DerivationPath):
            return text
        text = text.strip()
        parts = [p for p in text.split("/") if p]
        if parts and parts[0] in ("m", "M"):
            parts = parts[1:]
        indices = []
        for part in parts:
            match = _STEP_RE.match(part)
            if match is None:
                raise ValueError(f"Bad derivation step {part!r} in {text!r}")
            value = int(match.group(1))
            if value >= HARDENED:
                raise ValueError(f"Child index too large: {part!r}")
            if match.group(2):
                value |= HARDENED
            indices.append(value)
        return cls(tuple(indices))

    @classmethod
    def from_ints(cls, values: Iterable[int]) -> DerivationPath:
        return cls(tuple(values))

    def to_ints(self) -> List[int]:
        return list(self.indices)

    def to_bytes(self) -> bytes:
        """Big-endian u32 per step, the APDU encoding."""
        return b"".join(struct.pack(">I", i) for i in self.indices)

    def to_string(self, prefix: bool = True, hardened_marker: str = "'") -> str:
        steps = []
        for index in self.indices:
            if index & HARDENED:
                steps.append(f"{index & ~HARDENED}{hardened_marker}")
            else:
                steps.append(str(index))
        body = "/".join(steps)
        if not prefix:
            return body
        return f"m/{body}" if body else "m"

    def __str__(self) -> str:
        return self.to_string()

    def __len__(self) -> int:
        return len(self.indices)

    def child(self, index: int, hardened: bool = False) -> DerivationPath:
        return DerivationPath(self.indices + (index | HARDENED if hardened else index,))

    def parent(self) -> DerivationPath:
        return DerivationPath(self.indices[:-1])

    def prefix(self, depth: int) -> DerivationPath:
        return DerivationPath(self.indices[:depth])

    def _unhardened(self, position: int) -> Optional[int]:
        if len(self.indices) <= position:
            return None
        return self.indices[position] & ~HARDENED

    @property
    def purpose(self) -> Optional[int]:
        if not self.indices or not self.indices[0] & HARDENED:
            return None
        return self._unhardened(0)

    @property
    def coin_type(self) -> Optional[int]:
        return self._unhardened(1)

    @property
    def account(self) -> Optional[int]:
        return self._unhardened(2)

    @property
    def is_standard_address(self) -> bool:
        """``purpose'/coin'/account'/change/index`` with change in {0, 1}."""
        if len(self.indices) != 5:
            return False
        hardened = [bool(i & HARDENED) for i in self.indices]
        return hardened == [True, True, True, False, False] and self.indices[3] in (0, 1)


# =========================================================================
# Extended public keys
# =========================================================================

@dataclass(frozen=True)
class ExtendedPublicKey:
    """A decoded BIP32 extended public key."""

    version: bytes
    depth: int
    parent_fingerprint: bytes
    child_number: int
    chain_code: bytes
    key: bytes
    path: Optional[DerivationPath] = field(default=None, compare=False)

    def __post_init__(self):
        if len(self.version) != 4 or len(self.parent_fingerprint) != 4:
            raise ValueError("version and parent fingerprint must be 4 bytes")
        if len(self.chain_code) != 32:
            raise ValueError("chain code must be 32 bytes")
        if len(self.key) != 33 or self.key[0] not in (2, 3):
            raise ValueError("extended public key must hold a compressed point")

    @classmethod
    def from_string(cls, text: str, path: Optional[DerivationPath] = None) -> ExtendedPublicKey:
        try:
            raw = base58.b58decode_check(text.strip())
        except ValueError as exc:
            raise ValueError(f"Invalid extended key checksum: {text[:12]}...") from exc
        return cls.from_bytes(raw, path)

    @classmethod
    def from_bytes(cls, raw: bytes, path: Optional[DerivationPath] = None) -> ExtendedPublicKey:
        if len(raw) != 78:
            raise ValueError(f"Extended key must be 78 bytes, got {len(raw)}")
        version = raw[0:4]
        if version not in _KNOWN_VERSIONS:
            raise ValueError(f"Unknown extended key version {version.hex()}")
        depth = raw[4]
        parent = raw[5:9]
        (child,) = struct.unpack(">I", raw[9:13])
        return cls(version, depth, parent, child, raw[13:45], raw[45:78], path)

    def to_bytes(self) -> bytes:
        return (self.version + bytes([self.depth]) + self.parent_fingerprint
                + struct.pack(">I", self.child_number) + self.chain_code + self.key)

    def to_string(self) -> str:
        return base58.b58encode_check(self.to_bytes()).decode("ascii")

    def with_version(self, network: str) -> ExtendedPublicKey:
        """Re-encode under the plain xpub/tpub version for *network*."""
        return ExtendedPublicKey(XPUB_VERSIONS[network], self.depth, self.parent_fingerprint,
                                 self.child_number, self.chain_code, self.key, self.path)

    @property
    def network(self) -> str:
        return _KNOWN_VERSIONS[self.version]

    def __str__(self) -> str:
        return self.to_string()


def key_origin(fingerprint: bytes, path: DerivationPath, xpub: Union[str, ExtendedPublicKey]) -> str:
    """Render ``[fingerprint/path]xpub`` as used in descriptors."""
    origin = format_fingerprint(fingerprint)
    if len(path):
        origin += "/" + path.to_string(prefix=False)
    return f"[{origin}]{xpub}"
