"""
Blockstream Jade CBOR RPC adapter.

Every request is a CBOR map ``{"method", "id", "params"}``; the reply
echoes the id and carries ``result`` or ``error``.  Jade also pushes
``{"log": ...}`` messages at any time, which are re-emitted on the
``hwsign.device`` logger at the level their first character implies.

A locked Jade is unlocked through ``auth_user``: the device may hand
back an ``http_request`` for the blind PIN server, which the injected
``pin_server`` coroutine performs before the reply is fed back.
"""

from __future__ import annotations

import io
import itertools
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import cbor2

from .bip32 import HARDENED, DerivationPath, ExtendedPublicKey
from .capabilities import DeviceKind, Version, parse_version
from .device_base import HardwareSigner, Identity
from .errors import FrameError, HWIError, ProtocolError, Unsupported, UserRejected
from .policy import AddressTarget, PolicyAddress, RegistrationProof, WalletPolicy
from .psbt import Psbt
from .transport import FrameBuffer, Transport

log = logging.getLogger(__name__)
device_log = logging.getLogger("hwsign.device")

PinServer = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]

# RPC error codes
USER_CANCELLED = -32000
PROTOCOL_ERROR = -32001
HW_LOCKED = -32002
NETWORK_MISMATCH = -32003
INVALID_REQUEST = -32600
UNKNOWN_METHOD = -32601
BAD_PARAMETERS = -32602
INTERNAL_ERROR = -32603

_ERROR_CLASSES = {
    USER_CANCELLED: UserRejected,
    UNKNOWN_METHOD: Unsupported,
}

_LOG_LEVELS = {
    "E": logging.ERROR,
    "W": logging.WARNING,
    "I": logging.INFO,
    "D": logging.DEBUG,
    "V": logging.DEBUG,
}

# Script variants for single-sig addresses, by BIP44 purpose
_PURPOSE_VARIANTS = {
    44: "pkh(k)",
    49: "sh(wpkh(k))",
    84: "wpkh(k)",
    86: "tr(k)",
}

_MULTISIG_TEMPLATE = re.compile(
    r"^(?P<wrap>sh\(wsh\(|wsh\(|sh\()(?P<sorted>sorted)?multi\((?P<k>\d+),"
    r"(?P<keys>@\d+/\*\*(?:,@\d+/\*\*)*)\)\)+$")

# Firmware that accepts register_descriptor rather than register_multisig
DESCRIPTOR_VERSION = Version(1, 0, 0)


def _error_from_reply(error: Dict[str, Any]) -> HWIError:
    code = error.get("code")
    message = error.get("message", "")
    error_class = _ERROR_CLASSES.get(code, ProtocolError)
    if code == HW_LOCKED:
        message = f"Jade is locked: {message}"
    elif code == NETWORK_MISMATCH:
        message = f"Jade is set up for another network: {message}"
    return error_class(f"{message} (code {code})")


def relay_device_log(entry: Any) -> None:
    """Re-emit a Jade ``log`` message on the device logger."""
    text = entry.decode("utf-8", "replace") if isinstance(entry, (bytes, bytearray)) else str(entry)
    text = text.rstrip()
    if not text:
        return
    device_log.log(_LOG_LEVELS.get(text[0], logging.DEBUG), "jade: %s", text)


class JadeSigner(HardwareSigner):
    """Jade over USB serial."""

    kind = DeviceKind.JADE

    def __init__(self, transport: Transport, network: str = "mainnet",
                 pin_server: Optional[PinServer] = None):
        super().__init__(transport, network)
        self.pin_server = pin_server
        self.state = ""
        self.info: Dict[str, Any] = {}
        self._buffer = FrameBuffer(transport)
        self._ids = itertools.count(1)

    @classmethod
    def create(cls, transport, config, keystore=None, pin_server=None) -> JadeSigner:
        return cls(transport, network=config.network, pin_server=pin_server)

    @property
    def interactive_pending(self) -> bool:
        return self.state == "LOCKED"

    # -- Wire ------------------------------------------------------------

    async def _read_message(self) -> Dict[str, Any]:
        """Decode the next complete CBOR map from the stream."""
        while True:
            if len(self._buffer):
                stream = io.BytesIO(self._buffer.peek())
                try:
                    message = cbor2.CBORDecoder(stream).decode()
                except cbor2.CBORDecodeEOF:
                    pass
                except cbor2.CBORDecodeError as exc:
                    self._buffer.clear()
                    raise FrameError(f"Undecodable message from Jade: {exc}") from exc
                else:
                    self._buffer.consume(stream.tell())
                    if not isinstance(message, dict):
                        raise FrameError(f"Unexpected {type(message).__name__} from Jade")
                    return message
            await self._buffer.fill()

    async def _request(self, method: str, params: Any = None) -> Dict[str, Any]:
        request_id = str(next(self._ids))
        message: Dict[str, Any] = {"method": method, "id": request_id}
        if params is not None:
            message["params"] = params
        log.debug("=> %s (id %s)", method, request_id)
        await self.transport.send(cbor2.dumps(message))

        while True:
            reply = await self._read_message()
            if "log" in reply:
                relay_device_log(reply["log"])
                continue
            if reply.get("id") != request_id:
                log.warning("Dropping Jade reply for unknown id %r", reply.get("id"))
                continue
            break
        if "error" in reply:
            raise _error_from_reply(reply["error"])
        if "result" not in reply:
            raise ProtocolError(f"Jade reply to {method} has no result")
        return reply

    async def _rpc(self, method: str, params: Any = None) -> Any:
        return (await self._request(method, params))["result"]

    async def drain(self) -> int:
        self._buffer.clear()
        return await super().drain()

    # -- Session ---------------------------------------------------------

    async def _refresh_info(self) -> Dict[str, Any]:
        info = await self._rpc("get_version_info")
        if not isinstance(info, dict) or "JADE_VERSION" not in info:
            raise ProtocolError("Malformed get_version_info reply")
        self.info = info
        self.state = info.get("JADE_STATE", "")
        try:
            self.version = parse_version(str(info["JADE_VERSION"]))
        except ValueError as exc:
            raise ProtocolError(f"Jade reported version {info['JADE_VERSION']!r}") from exc
        return info

    async def _ensure_unlocked(self) -> None:
        if not self.state:
            await self._refresh_info()
        if self.state in ("READY", "TEMP"):
            return
        if self.state == "UNINIT":
            raise Unsupported("Jade has no wallet; set it up on the device first")
        if self.pin_server is None:
            raise Unsupported("Jade is locked and no PIN server callback was given")

        result = await self._rpc("auth_user", {"network": self.network, "epoch": int(time.time())})
        while isinstance(result, dict) and "http_request" in result:
            request = result["http_request"]
            response = await self.pin_server(request["params"])
            result = await self._rpc(request["on-reply"], response["body"])
        if result is not True:
            raise UserRejected("Jade PIN entry failed")
        self.state = "READY"
        log.info("Jade %s unlocked", self.transport.path)

    # -- Operations ------------------------------------------------------

    async def identify(self) -> Identity:
        info = await self._refresh_info()
        fingerprint = None
        if self.state in ("READY", "TEMP"):
            fingerprint = await self.get_master_fingerprint()
        networks = info.get("JADE_NETWORKS", "")
        if (networks == "MAIN" and self.network != "mainnet") or (
                networks == "TEST" and self.network == "mainnet"):
            log.warning("Jade restricted to %s networks, configured for %s", networks, self.network)
        return Identity(kind=self.kind, version=self.version, fingerprint=fingerprint,
                        model=info.get("BOARD_TYPE", "Jade"), path=self.transport.path,
                        serial=info.get("EFUSEMAC", ""), raw_response=cbor2.dumps(info))

    async def get_master_fingerprint(self) -> bytes:
        # parent fingerprint of a depth-1 key is the master fingerprint
        xpub = await self.get_extended_pubkey(DerivationPath((HARDENED,)))
        return xpub.parent_fingerprint

    async def get_extended_pubkey(self, path: DerivationPath, display: bool = False) -> ExtendedPublicKey:
        if display:
            raise Unsupported("Jade shows xpubs only from its own menu")
        await self._ensure_unlocked()
        text = await self._rpc("get_xpub", {"network": self.network, "path": path.to_ints()})
        try:
            return ExtendedPublicKey.from_string(text, path)
        except ValueError as exc:
            raise ProtocolError(f"Device returned an invalid xpub: {exc}") from exc

    async def register_wallet(self, policy: WalletPolicy) -> RegistrationProof:
        if not policy.name:
            raise Unsupported("Jade only registers named policies")
        await self._ensure_unlocked()
        fingerprint = await self.get_master_fingerprint()
        if self.version >= DESCRIPTOR_VERSION:
            ok = await self._rpc("register_descriptor", {
                "network": self.network,
                "descriptor_name": policy.name,
                "descriptor": policy.descriptor(),
            })
        else:
            ok = await self._rpc("register_multisig", {
                "network": self.network,
                "multisig_name": policy.name,
                "descriptor": _multisig_descriptor(policy),
            })
        if ok is not True:
            raise UserRejected(f"Jade declined policy {policy.name!r}")
        return RegistrationProof(policy.policy_id, fingerprint, self.kind.vendor,
                                 policy.name.encode(), policy.name)

    async def display_address(self, target: AddressTarget) -> str:
        await self._ensure_unlocked()
        if isinstance(target, PolicyAddress):
            name = target.proof.name if target.proof and target.proof.name else target.policy.name
            if self.version >= DESCRIPTOR_VERSION:
                params = {"network": self.network, "branch": int(target.change),
                          "pointer": target.index, "descriptor_name": name}
            else:
                step = [int(target.change), target.index]
                params = {"network": self.network, "multisig_name": name,
                          "paths": [step] * len(target.policy.keys)}
            return await self._rpc("get_receive_address", params)

        variant = _PURPOSE_VARIANTS.get(target.purpose)
        if variant is None:
            raise Unsupported(f"No single-sig variant for {target}")
        return await self._rpc("get_receive_address", {
            "network": self.network, "path": target.to_ints(), "variant": variant})

    async def sign_tx(self, psbt: Psbt, policy: Optional[WalletPolicy] = None,
                      proof: Optional[RegistrationProof] = None) -> Psbt:
        await self._ensure_unlocked()
        reply = await self._request("sign_psbt", {"network": self.network, "psbt": psbt.serialize()})
        data = bytearray(reply["result"])
        seqnum, seqlen = reply.get("seqnum", 0), reply.get("seqlen", 1)
        while seqnum < seqlen - 1:
            chunk = await self._request("get_extended_data", {
                "origid": reply["id"], "orig": "sign_psbt",
                "seqnum": seqnum + 1, "seqlen": seqlen,
            })
            data.extend(chunk["result"])
            seqnum = chunk.get("seqnum", seqnum + 1)
        return Psbt.parse(bytes(data))


def _multisig_descriptor(policy: WalletPolicy) -> Dict[str, Any]:
    """``register_multisig`` parameters for a plain k-of-n template."""
    match = _MULTISIG_TEMPLATE.match(policy.template)
    if match is None:
        raise Unsupported("This Jade firmware only registers plain multisig policies")
    variant = {"sh(wsh(": "sh(wsh(multi(k)))", "wsh(": "wsh(multi(k))",
               "sh(": "sh(multi(k))"}[match.group("wrap")]
    signers: List[Dict[str, Any]] = []
    for key, origin in zip(policy.keys, policy.key_origins()):
        if origin is None:
            raise Unsupported("Multisig keys need a key origin for Jade")
        fingerprint, path = origin
        signers.append({
            "fingerprint": fingerprint,
            "derivation": path.to_ints(),
            "xpub": key.split("]", 1)[1],
            "path": [],
        })
    return {
        "variant": variant,
        "sorted": bool(match.group("sorted")),
        "threshold": int(match.group("k")),
        "signers": signers,
    }


class JadeSimulatorSigner(JadeSigner):
    """The Jade QEMU emulator, reached over TCP."""

    kind = DeviceKind.JADE_SIMULATOR
