"""
Error taxonomy shared by every device adapter.

Vendor status words, error strings and RPC codes are translated into
one of these classes at the adapter boundary so consumers never branch
on a particular brand.  Each error carries the device and operation it
came from; the handle fills those in as the error passes through.
"""

from __future__ import annotations

import enum
from typing import Optional


class ErrorKind(enum.Enum):
    DEVICE_NOT_FOUND = "device_not_found"
    DISCONNECTED = "disconnected"
    TIMEOUT = "timeout"
    USER_REJECTED = "user_rejected"
    UNSUPPORTED = "unsupported"
    PROTOCOL_ERROR = "protocol_error"
    POLICY_MISMATCH = "policy_mismatch"
    PAIRING_REQUIRED = "pairing_required"


class HWIError(Exception):
    """Base class for every error raised across the signer interface.

    Attributes:
        kind: Taxonomy member, stable across vendors.
        device: Description of the device involved (vendor and path).
        operation: Capability operation that failed.
        retryable: Whether a bounded retry of a pure query is allowed.
    """

    kind = ErrorKind.PROTOCOL_ERROR
    retryable = False

    def __init__(self, message: str = "", *, device: Optional[str] = None,
                 operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.device = device
        self.operation = operation

    def with_context(self, device: Optional[str] = None,
                     operation: Optional[str] = None) -> HWIError:
        """Fill in missing context, keeping what the adapter already set."""
        if self.device is None:
            self.device = device
        if self.operation is None:
            self.operation = operation
        return self

    def __str__(self) -> str:
        parts = [self.message or self.kind.value]
        if self.operation:
            parts.insert(0, f"{self.operation}:")
        if self.device:
            parts.append(f"[{self.device}]")
        return " ".join(parts)


class DeviceNotFound(HWIError):
    kind = ErrorKind.DEVICE_NOT_FOUND


class Disconnected(HWIError):
    kind = ErrorKind.DISCONNECTED


class Timeout(HWIError):
    kind = ErrorKind.TIMEOUT


class Cancelled(Timeout):
    """The caller's cancel token fired before the device answered."""


class UserRejected(HWIError):
    kind = ErrorKind.USER_REJECTED


class Unsupported(HWIError):
    kind = ErrorKind.UNSUPPORTED


class ProtocolError(HWIError):
    kind = ErrorKind.PROTOCOL_ERROR


class FrameError(ProtocolError):
    """A single garbled or dropped frame; safe to retry a pure query."""

    retryable = True


class MergeConflict(ProtocolError):
    """Two PSBTs carry different signatures for the same key."""


class PolicyMismatch(HWIError):
    kind = ErrorKind.POLICY_MISMATCH


class PairingRequired(HWIError):
    kind = ErrorKind.PAIRING_REQUIRED


__all__ = [
    "Cancelled",
    "DeviceNotFound",
    "Disconnected",
    "ErrorKind",
    "FrameError",
    "HWIError",
    "MergeConflict",
    "PairingRequired",
    "PolicyMismatch",
    "ProtocolError",
    "Timeout",
    "Unsupported",
    "UserRejected",
]
