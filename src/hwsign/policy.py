"""
Wallet policies, registration proofs and address targets.

A wallet policy is a descriptor template with ``@i`` key placeholders
plus the key list, e.g.::

    WalletPolicy("vault", "wsh(sortedmulti(2,@0/**,@1/**))",
                 ("[f5acc2fd/48'/1'/0'/2']tpubDF...", "[42b4f8cd/48'/1'/0'/2']tpubDE..."))

The policy id is the SHA-256 of the serialized policy (version 2
wallet policy encoding), so two policies with the same name, template
and keys share an id no matter which device registers them.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from hashlib import sha256
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from ledger_bitcoin.wallet import WalletPolicy as LedgerWalletPolicy
from ledger_bitcoin.wallet import WalletType

from .bip32 import DerivationPath, ExtendedPublicKey, key_origin

MAX_POLICY_NAME = 64

# A key with optional origin, as it appears in an output descriptor
KEY_PATTERN = re.compile(r"((\[.+?\])?[xyYzZtuUvV]pub[1-9A-HJ-NP-Za-km-z]{79,108})")
_ORIGIN_PATTERN = re.compile(r"^\[([0-9a-fA-F]{8})((?:/[0-9]+['hH]?)*)\](.+)$")
_CHECKSUM_PATTERN = re.compile(r"#[0-9a-z]{8}$")
_PLACEHOLDER_PATTERN = re.compile(r"@(\d+)(/\*\*)?")

# Implicit single-sig policies by BIP44 purpose
SINGLE_SIG_TEMPLATES = {
    44: "pkh(@0/**)",
    49: "sh(wpkh(@0/**))",
    84: "wpkh(@0/**)",
    86: "tr(@0/**)",
}


@dataclass(frozen=True)
class WalletPolicy:
    """A named descriptor template and its keys."""

    name: str
    template: str
    keys: Tuple[str, ...]

    def __post_init__(self):
        if len(self.name.encode()) > MAX_POLICY_NAME:
            raise ValueError(f"Policy name longer than {MAX_POLICY_NAME} bytes")
        referenced = {int(m.group(1)) for m in _PLACEHOLDER_PATTERN.finditer(self.template)}
        if not self.keys:
            raise ValueError("Policy has no keys")
        if referenced != set(range(len(self.keys))):
            raise ValueError(
                f"Template placeholders {sorted(referenced)} do not match {len(self.keys)} keys")

    @classmethod
    def from_descriptor(cls, name: str, descriptor: str) -> WalletPolicy:
        """Build a policy from a full output descriptor.

        Keys are replaced with ``@i`` in order of first appearance,
        ``/<0;1>/*`` becomes ``/**`` and the checksum is dropped.
        """
        descriptor = _CHECKSUM_PATTERN.sub("", descriptor.strip())
        keys: List[str] = []

        def placeholder(match: re.Match) -> str:
            key = match.group(1)
            if key not in keys:
                keys.append(key)
            return f"@{keys.index(key)}"

        template = KEY_PATTERN.sub(placeholder, descriptor)
        template = template.replace("/<0;1>/*", "/**")
        return cls(name, template, tuple(keys))

    @classmethod
    def single_sig(cls, fingerprint: bytes, account_path: DerivationPath,
                   xpub: Union[str, ExtendedPublicKey]) -> WalletPolicy:
        """Implicit unnamed policy for a standard single-sig account."""
        purpose = account_path.purpose
        if purpose not in SINGLE_SIG_TEMPLATES:
            raise ValueError(f"No single-sig template for purpose {purpose}")
        return cls("", SINGLE_SIG_TEMPLATES[purpose], (key_origin(fingerprint, account_path, xpub),))

    def descriptor(self) -> str:
        """Expand back to a multipath output descriptor (no checksum)."""

        def expand(match: re.Match) -> str:
            key = self.keys[int(match.group(1))]
            return key + "/<0;1>/*" if match.group(2) else key

        return _PLACEHOLDER_PATTERN.sub(expand, self.template)

    def derived_descriptor(self, change: bool, index: int) -> str:
        """Descriptor for a single address, wildcards resolved."""
        return self.descriptor().replace("/<0;1>/*", f"/{int(change)}/{index}")

    def to_ledger(self) -> LedgerWalletPolicy:
        """The same policy as the Ledger app library models it."""
        return LedgerWalletPolicy(self.name, self.template, list(self.keys),
                                  version=WalletType.WALLET_POLICY_V2)

    def serialize(self) -> bytes:
        """Version 2 wallet policy encoding."""
        return self.to_ledger().serialize()

    @property
    def policy_id(self) -> bytes:
        return sha256(self.serialize()).digest()

    @property
    def is_default(self) -> bool:
        """Unnamed single-sig policies need no registration."""
        return not self.name and self.template in SINGLE_SIG_TEMPLATES.values()

    def key_origins(self) -> List[Optional[Tuple[bytes, DerivationPath]]]:
        """``(fingerprint, path)`` per key, or None for keys without origin."""
        origins = []
        for key in self.keys:
            match = _ORIGIN_PATTERN.match(key)
            if match is None:
                origins.append(None)
                continue
            origins.append((bytes.fromhex(match.group(1)),
                            DerivationPath.parse(match.group(2) or "m")))
        return origins

    def fingerprints(self) -> Set[bytes]:
        return {origin[0] for origin in self.key_origins() if origin is not None}

    def key_index_for(self, fingerprint: bytes) -> Optional[int]:
        for index, origin in enumerate(self.key_origins()):
            if origin is not None and origin[0] == fingerprint:
                return index
        return None


@dataclass(frozen=True)
class RegistrationProof:
    """Evidence that a device accepted a policy.

    ``token`` is the vendor artefact echoed back at signing time: the
    Ledger HMAC, or the registration name for devices that keep their
    own wallet list.
    """

    policy_id: bytes
    fingerprint: bytes
    vendor: str
    token: bytes = b""
    name: str = ""

    def matches(self, policy: WalletPolicy, fingerprint: Optional[bytes] = None) -> bool:
        if self.policy_id != policy.policy_id:
            return False
        return fingerprint is None or fingerprint == self.fingerprint

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policy_id": self.policy_id.hex(),
            "fingerprint": self.fingerprint.hex(),
            "vendor": self.vendor,
            "token": self.token.hex(),
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> RegistrationProof:
        return cls(
            policy_id=bytes.fromhex(d["policy_id"]),
            fingerprint=bytes.fromhex(d["fingerprint"]),
            vendor=d["vendor"],
            token=bytes.fromhex(d.get("token", "")),
            name=d.get("name", ""),
        )


@dataclass(frozen=True)
class PolicyAddress:
    """Address of a registered policy at ``change/index``."""

    policy: WalletPolicy
    proof: Optional[RegistrationProof] = None
    change: bool = False
    index: int = 0

    def __post_init__(self):
        if not 0 <= self.index < 0x80000000:
            raise ValueError(f"Address index out of range: {self.index}")


AddressTarget = Union[DerivationPath, PolicyAddress]
