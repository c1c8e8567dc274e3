"""
Device kinds, firmware versions and capability flags.

Capabilities are computed once from the device kind and the firmware
version reported by the identify handshake, so an operation the device
cannot perform is refused before anything goes over the wire.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .bip32 import DerivationPath


class DeviceKind(enum.Enum):
    LEDGER = "ledger"
    LEDGER_SIMULATOR = "ledger_simulator"
    COLDCARD = "coldcard"
    JADE = "jade"
    JADE_SIMULATOR = "jade_simulator"
    SPECTER = "specter"

    @property
    def vendor(self) -> str:
        """Vendor tag shared by a device and its simulator."""
        return self.value.split("_", 1)[0]

    @property
    def display_name(self) -> str:
        return _KIND_NAMES[self]


# Kind → display name
_KIND_NAMES: Dict[DeviceKind, str] = {
    DeviceKind.LEDGER: "Ledger",
    DeviceKind.LEDGER_SIMULATOR: "Ledger (Speculos)",
    DeviceKind.COLDCARD: "Coldcard",
    DeviceKind.JADE: "Blockstream Jade",
    DeviceKind.JADE_SIMULATOR: "Blockstream Jade (emulator)",
    DeviceKind.SPECTER: "Specter DIY",
}


class Capability(enum.Flag):
    NONE = 0
    GET_XPUB = enum.auto()
    DISPLAY_ADDRESS = enum.auto()
    SIGN_PSBT = enum.auto()
    REGISTER_WALLET = enum.auto()
    MULTISIG = enum.auto()
    MINISCRIPT = enum.auto()
    NATIVE_SEGWIT = enum.auto()
    NESTED_SEGWIT = enum.auto()
    LEGACY = enum.auto()
    TAPROOT = enum.auto()
    ARBITRARY_DERIVATION = enum.auto()


_SINGLE_SIG_SCRIPTS = Capability.NATIVE_SEGWIT | Capability.NESTED_SEGWIT | Capability.LEGACY
_CORE = (Capability.GET_XPUB | Capability.DISPLAY_ADDRESS | Capability.SIGN_PSBT
         | _SINGLE_SIG_SCRIPTS)


# =========================================================================
# Versions
# =========================================================================

_VERSION_RE = re.compile(r"v?(\d+)\.(\d+)(?:\.(\d+))?(?:[-+.]?([0-9A-Za-z][0-9A-Za-z.-]*))?")


@dataclass(frozen=True, order=True)
class Version:
    major: int = 0
    minor: int = 0
    patch: int = 0
    prerelease: str = field(default="", compare=False)

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        return f"{text}-{self.prerelease}" if self.prerelease else text


def parse_version(text: str) -> Version:
    """Extract the first ``major.minor[.patch]`` from a version string.

    Accepts ``v2.1.0``, ``2.1.0-rc1``, ``1.0.27`` and strings with the
    version embedded, e.g. ``"Bitcoin 2.1.3"`` or ``"6.2.1X"``.

    Raises:
        ValueError: No version number found.
    """
    match = _VERSION_RE.search(text.strip())
    if match is None:
        raise ValueError(f"No version number in {text!r}")
    major, minor, patch, pre = match.groups()
    return Version(int(major), int(minor), int(patch or 0), pre or "")


# =========================================================================
# Per-kind capability tables
# =========================================================================

# (minimum version, flags unlocked at that version), cumulative
_GATES: Dict[DeviceKind, List[Tuple[Version, Capability]]] = {
    DeviceKind.LEDGER: [
        (Version(2, 0, 0), Capability.GET_XPUB | Capability.DISPLAY_ADDRESS
         | Capability.REGISTER_WALLET | Capability.MULTISIG | _SINGLE_SIG_SCRIPTS
         | Capability.ARBITRARY_DERIVATION),
        # yield format with explicit pubkey length, miniscript and taproot
        (Version(2, 1, 0), Capability.SIGN_PSBT | Capability.MINISCRIPT | Capability.TAPROOT),
    ],
    DeviceKind.COLDCARD: [
        (Version(4, 0, 0), _CORE | Capability.MULTISIG | Capability.ARBITRARY_DERIVATION),
        (Version(6, 0, 0), Capability.TAPROOT | Capability.MINISCRIPT | Capability.REGISTER_WALLET),
    ],
    DeviceKind.JADE: [
        (Version(0, 1, 0), _CORE | Capability.ARBITRARY_DERIVATION),
        (Version(0, 1, 48), Capability.MULTISIG | Capability.REGISTER_WALLET),
        (Version(1, 0, 0), Capability.MINISCRIPT),
        (Version(1, 0, 30), Capability.TAPROOT),
    ],
    DeviceKind.SPECTER: [
        (Version(0, 0, 0), _CORE | Capability.MULTISIG | Capability.MINISCRIPT
         | Capability.REGISTER_WALLET | Capability.ARBITRARY_DERIVATION),
    ],
}
_GATES[DeviceKind.LEDGER_SIMULATOR] = _GATES[DeviceKind.LEDGER]
_GATES[DeviceKind.JADE_SIMULATOR] = _GATES[DeviceKind.JADE]


def capabilities_for(kind: DeviceKind, version: Optional[Version]) -> Capability:
    """Capability flags for *kind* running firmware *version*."""
    flags = Capability.NONE
    if version is None:
        return flags
    for minimum, unlocked in _GATES[kind]:
        if version >= minimum:
            flags |= unlocked
    return flags


def minimum_version(kind: DeviceKind, capability: Capability) -> Optional[Version]:
    """Lowest firmware version that provides every flag in *capability*, if any."""
    available = Capability.NONE
    for minimum, unlocked in _GATES[kind]:
        available |= unlocked
        if capability in available:
            return minimum
    return None


# =========================================================================
# What an operation needs
# =========================================================================

_PURPOSE_SCRIPTS = {
    44: Capability.LEGACY,
    49: Capability.NESTED_SEGWIT,
    84: Capability.NATIVE_SEGWIT,
    86: Capability.TAPROOT,
    48: Capability.MULTISIG,
}

_MULTISIG_FRAGMENT = re.compile(r"\b(sorted)?multi(_a)?\(")
_MINISCRIPT_FRAGMENT = re.compile(
    r"\b(and_v|and_b|and_n|or_b|or_c|or_d|or_i|andor|thresh|older|after|"
    r"sha256|hash256|ripemd160|hash160|pk_k|pk_h|v:|s:|a:|c:|d:|j:|n:|l:|u:|t:)")


def script_capability(path: DerivationPath) -> Capability:
    """Script type implied by the BIP44 purpose of *path*.

    Paths outside the standard purposes need ARBITRARY_DERIVATION.
    """
    return _PURPOSE_SCRIPTS.get(path.purpose, Capability.ARBITRARY_DERIVATION)


def policy_capabilities(template: str) -> Capability:
    """Flags a device needs to register or sign for *template*."""
    needed = Capability.NONE
    if template.startswith("tr("):
        needed |= Capability.TAPROOT
    if template.startswith("sh(wpkh(") or template.startswith("sh(wsh("):
        needed |= Capability.NESTED_SEGWIT
    if template.startswith("pkh(") or template.startswith("sh(multi") or template.startswith("sh(sortedmulti"):
        needed |= Capability.LEGACY
    if _MULTISIG_FRAGMENT.search(template):
        needed |= Capability.MULTISIG
    if _MINISCRIPT_FRAGMENT.search(template):
        needed |= Capability.MINISCRIPT
    if ("wpkh(" in template or "wsh(" in template) and not needed & Capability.NESTED_SEGWIT:
        needed |= Capability.NATIVE_SEGWIT
    return needed
