"""
Base classes for hardware signer adapters.

HardwareSigner defines the uniform capability interface shared by all
vendors (Ledger APDU, Coldcard encrypted USB, Jade CBOR, Specter text).
Identity is the common output of the non-mutating identify handshake,
so discovery gets the same fields regardless of transport.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, ClassVar, Optional

from .bip32 import DerivationPath, ExtendedPublicKey, format_fingerprint
from .capabilities import (
    Capability,
    DeviceKind,
    Version,
    capabilities_for,
    policy_capabilities,
    minimum_version,
    script_capability,
)
from .errors import Unsupported
from .policy import AddressTarget, PolicyAddress, RegistrationProof, WalletPolicy
from .psbt import Psbt
from .transport import Transport

if TYPE_CHECKING:
    from .config import DiscoveryConfig
    from .keystore import Keystore


@dataclass
class Identity:
    """Common output from any identify handshake.

    ``fingerprint`` is None when the device is locked and will not
    reveal it without user interaction.
    """

    kind: DeviceKind
    version: Optional[Version] = None
    fingerprint: Optional[bytes] = None
    model: str = ""
    path: str = ""
    serial: str = ""
    raw_response: bytes = field(default=b"", repr=False)

    @property
    def vendor(self) -> str:
        return self.kind.vendor

    @property
    def fingerprint_hex(self) -> str:
        return format_fingerprint(self.fingerprint) if self.fingerprint else ""


class HardwareSigner(ABC):
    """Base for all vendor protocol adapters.

    Subclasses:
        LedgerSigner   — APDU exchange, PSBTv2 streamed as Merkle maps
        ColdcardSigner — ECDH + AES-CTR encrypted HID channel
        JadeSigner     — CBOR RPC over serial or TCP
        SpecterSigner  — line text protocol over serial
    """

    kind: ClassVar[DeviceKind]
    max_path_depth: ClassVar[int] = 10

    def __init__(self, transport: Transport, network: str = "mainnet"):
        self.transport = transport
        self.network = network
        self.version: Optional[Version] = None

    @classmethod
    def create(cls, transport: Transport, config: DiscoveryConfig,
               keystore: Optional[Keystore] = None,
               pin_server: Optional[Callable] = None) -> HardwareSigner:
        """Build an adapter from discovery settings."""
        return cls(transport, network=config.network)

    # -- Capabilities ----------------------------------------------------

    @property
    def capabilities(self) -> Capability:
        return capabilities_for(self.kind, self.version)

    @property
    def interactive_pending(self) -> bool:
        """True while the next command will need on-device user input
        (e.g. PIN entry) even for a query."""
        return False

    def require(self, needed: Capability, what: str) -> None:
        """Raise Unsupported unless every flag in *needed* is present."""
        missing = needed & ~self.capabilities
        if missing:
            since = minimum_version(self.kind, needed)
            hint = f"available from {since}" if since is not None else "not available on this device"
            raise Unsupported(f"{what} needs {missing} (firmware {self.version or 'unknown'}, {hint})")

    def check_path(self, path: DerivationPath) -> None:
        if len(path) > self.max_path_depth:
            raise Unsupported(f"Path {path} deeper than {self.max_path_depth} levels")
        needed = script_capability(path)
        if needed & Capability.ARBITRARY_DERIVATION:
            self.require(Capability.ARBITRARY_DERIVATION, f"derivation path {path}")

    def check_get_xpub(self, path: DerivationPath) -> None:
        self.require(Capability.GET_XPUB, "get_extended_pubkey")
        self.check_path(path)

    def check_register(self, policy: WalletPolicy) -> None:
        self.require(Capability.REGISTER_WALLET | policy_capabilities(policy.template),
                     f"register_wallet({policy.name!r})")

    def check_display(self, target: AddressTarget) -> None:
        if isinstance(target, PolicyAddress):
            self.require(Capability.DISPLAY_ADDRESS | Capability.REGISTER_WALLET
                         | policy_capabilities(target.policy.template),
                         f"display_address({target.policy.name!r})")
            return
        self.require(Capability.DISPLAY_ADDRESS, "display_address")
        if not target.is_standard_address:
            raise Unsupported(f"{target} is not a purpose'/coin'/account'/change/index path")
        self.require(script_capability(target), f"display_address({target})")

    def check_sign(self, policy: Optional[WalletPolicy]) -> None:
        needed = Capability.SIGN_PSBT
        if policy is not None:
            needed |= policy_capabilities(policy.template)
        self.require(needed, "sign_tx")

    # -- Operations ------------------------------------------------------

    @abstractmethod
    async def identify(self) -> Identity:
        """Version and fingerprint only; never changes device state."""

    @abstractmethod
    async def get_master_fingerprint(self) -> bytes:
        """The 4-byte master key fingerprint, as reported by the device."""

    @abstractmethod
    async def get_extended_pubkey(self, path: DerivationPath, display: bool = False) -> ExtendedPublicKey:
        """Extended public key at *path*; optionally shown on screen."""

    @abstractmethod
    async def register_wallet(self, policy: WalletPolicy) -> RegistrationProof:
        """Ask the device to accept *policy*; needs user confirmation."""

    @abstractmethod
    async def display_address(self, target: AddressTarget) -> str:
        """Show an address on screen and return it as the device rendered it."""

    @abstractmethod
    async def sign_tx(self, psbt: Psbt, policy: Optional[WalletPolicy] = None,
                      proof: Optional[RegistrationProof] = None) -> Psbt:
        """Sign *psbt*; the result carries the device's signatures."""

    async def get_version(self) -> Version:
        if self.version is None:
            await self.identify()
        return self.version

    async def drain(self) -> int:
        """Discard frames left by an abandoned exchange."""
        return await self.transport.drain()

    def close(self) -> None:
        self.transport.close()

    def __repr__(self) -> str:
        return f"{type(self).__name__}(transport={self.transport!r}, version={self.version})"
