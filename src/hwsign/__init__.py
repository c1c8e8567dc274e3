"""hwsign: one async interface for Bitcoin hardware signers."""

from .__version__ import __version__
from .bip32 import DerivationPath, ExtendedPublicKey
from .capabilities import Capability, DeviceKind, Version
from .config import DiscoveryConfig, NetworkEndpoint, Timeouts
from .device_base import HardwareSigner, Identity
from .device_factory import ADAPTERS, Discovery, DeviceRegistry
from .errors import (
    Cancelled,
    DeviceNotFound,
    Disconnected,
    ErrorKind,
    FrameError,
    HWIError,
    MergeConflict,
    PairingRequired,
    PolicyMismatch,
    ProtocolError,
    Timeout,
    Unsupported,
    UserRejected,
)
from .handle import CancelToken, DeviceHandle
from .keystore import Keystore, MemoryKeystore
from .policy import PolicyAddress, RegistrationProof, WalletPolicy
from .psbt import Psbt, merge_psbts
from .signing import SigningOrchestrator

__all__ = [
    "ADAPTERS",
    "CancelToken",
    "Cancelled",
    "Capability",
    "DerivationPath",
    "DeviceHandle",
    "DeviceKind",
    "DeviceNotFound",
    "DeviceRegistry",
    "Disconnected",
    "Discovery",
    "DiscoveryConfig",
    "ErrorKind",
    "ExtendedPublicKey",
    "FrameError",
    "HWIError",
    "HardwareSigner",
    "Identity",
    "Keystore",
    "MemoryKeystore",
    "MergeConflict",
    "NetworkEndpoint",
    "PairingRequired",
    "PolicyAddress",
    "PolicyMismatch",
    "ProtocolError",
    "Psbt",
    "RegistrationProof",
    "SigningOrchestrator",
    "Timeout",
    "Timeouts",
    "Unsupported",
    "UserRejected",
    "Version",
    "WalletPolicy",
    "__version__",
    "merge_psbts",
]
