"""
Specter DIY line protocol adapter.

Each command is written as ``\\r\\n\\r\\n<command>\\r\\n``.  The device
answers ``ACK`` as soon as it parses the line, then the result on a
second line once done (possibly after user confirmation).  Results
starting with ``error:`` are failures.

Specter exposes no firmware version over USB, so the adapter reports
0.0.0 and its capability table does not gate on version.
"""

from __future__ import annotations

import logging
from typing import Optional

from .bip32 import DerivationPath, ExtendedPublicKey, parse_fingerprint
from .capabilities import DeviceKind, Version
from .device_base import HardwareSigner, Identity
from .errors import FrameError, ProtocolError, Unsupported, UserRejected
from .policy import AddressTarget, PolicyAddress, RegistrationProof, WalletPolicy
from .psbt import Psbt
from .transport import FrameBuffer, Transport

log = logging.getLogger(__name__)

LINE_END = b"\r\n"

# Script type keyword for 'showaddr', by BIP44 purpose
_PURPOSE_SCRIPTS = {
    44: "pkh",
    49: "sh-wpkh",
    84: "wpkh",
}


class SpecterSigner(HardwareSigner):
    """Specter DIY over USB serial."""

    kind = DeviceKind.SPECTER

    def __init__(self, transport: Transport, network: str = "mainnet"):
        super().__init__(transport, network)
        self.version = Version(0, 0, 0)
        self._buffer = FrameBuffer(transport)

    async def _query(self, command: str) -> str:
        await self.transport.send(LINE_END * 2 + command.encode() + LINE_END)
        ack = (await self._buffer.read_line(LINE_END)).strip()
        if ack != b"ACK":
            raise FrameError(f"Expected ACK, got {ack[:32]!r}")
        result = (await self._buffer.read_line(LINE_END)).decode("utf-8", "replace").strip()
        if result.startswith("error:"):
            message = result[len("error:"):].strip()
            if "user cancel" in message.lower():
                raise UserRejected(message)
            raise ProtocolError(f"Specter: {message}")
        return result

    async def drain(self) -> int:
        self._buffer.clear()
        return await super().drain()

    async def identify(self) -> Identity:
        fingerprint = await self.get_master_fingerprint()
        return Identity(kind=self.kind, version=self.version, fingerprint=fingerprint,
                        model="Specter DIY", path=self.transport.path)

    async def get_master_fingerprint(self) -> bytes:
        text = await self._query("fingerprint")
        try:
            return parse_fingerprint(text)
        except ValueError as exc:
            raise ProtocolError(f"Bad fingerprint {text!r}") from exc

    async def get_extended_pubkey(self, path: DerivationPath, display: bool = False) -> ExtendedPublicKey:
        if display:
            raise Unsupported("Specter shows xpubs only from its own menu")
        text = await self._query(f"xpub {path.to_string(hardened_marker='h')}")
        try:
            return ExtendedPublicKey.from_string(text, path)
        except ValueError as exc:
            raise ProtocolError(f"Device returned an invalid xpub: {exc}") from exc

    async def register_wallet(self, policy: WalletPolicy) -> RegistrationProof:
        if not policy.name:
            raise Unsupported("Specter only registers named policies")
        fingerprint = await self.get_master_fingerprint()
        await self._query(f"addwallet {policy.name}&{policy.descriptor()}")
        return RegistrationProof(policy.policy_id, fingerprint, self.kind.vendor,
                                 policy.name.encode(), policy.name)

    async def display_address(self, target: AddressTarget) -> str:
        if isinstance(target, PolicyAddress):
            descriptor = target.policy.derived_descriptor(target.change, target.index)
            return await self._query(f"showaddr {descriptor}")
        script = _PURPOSE_SCRIPTS.get(target.purpose)
        if script is None:
            raise Unsupported(f"No single-sig script type for {target}")
        return await self._query(f"showaddr {script} {target.to_string(hardened_marker='h')}")

    async def sign_tx(self, psbt: Psbt, policy: Optional[WalletPolicy] = None,
                      proof: Optional[RegistrationProof] = None) -> Psbt:
        return Psbt.from_base64(await self._query(f"sign {psbt.to_base64()}"))
