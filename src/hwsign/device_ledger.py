"""
Ledger Bitcoin app (version 2 protocol) adapter.

APDUs go out either as 64-byte HID reports or, for the Speculos
simulator, length-prefixed over TCP.  Long-running commands are
interrupted by the device with status word 0xE000 and a client
command; the host answers with the framework CONTINUE APDU until the
app returns 0x9000.

Command payloads, wallet policy serialization, PSBT map commitments and
the client command interpreter come from ``ledger_bitcoin``; this module
only moves its APDUs over the async transports and maps status words
and interpreter failures onto our error taxonomy.

Protocol:
  1. HID report: channel 0x0101, tag 0x05, 2-byte sequence index,
     then (first report only) the 2-byte APDU length, zero padded.
  2. TCP: 4-byte big-endian APDU length + APDU.  Reply is a 4-byte
     length, the response data, then the 2-byte status word.
  3. PSBTs are sent as Merkle commitments over sorted key/value maps
     (PSBTv2); the app pulls the contents it needs with GET_PREIMAGE,
     GET_MERKLE_LEAF_PROOF and GET_MERKLE_LEAF_INDEX and returns each
     signature with YIELD.
"""

from __future__ import annotations

import io
import logging
import struct
from abc import ABC, abstractmethod
from typing import List, Mapping, Optional, Tuple

from ledger_bitcoin.client_command import ClientCommandInterpreter
from ledger_bitcoin.command_builder import BitcoinCommandBuilder
from ledger_bitcoin.merkle import get_merkleized_map_commitment

from .bip32 import DerivationPath, ExtendedPublicKey
from .capabilities import DeviceKind, Version, parse_version
from .device_base import HardwareSigner, Identity
from .errors import FrameError, PolicyMismatch, ProtocolError, Unsupported, UserRejected
from .policy import (
    SINGLE_SIG_TEMPLATES,
    AddressTarget,
    PolicyAddress,
    RegistrationProof,
    WalletPolicy,
)
from .psbt import Psbt, read_compact_size
from .transport import FrameBuffer, Transport

log = logging.getLogger(__name__)

# =========================================================================
# Constants
# =========================================================================

CLA_BITCOIN = BitcoinCommandBuilder.CLA_BITCOIN
CLA_FRAMEWORK = BitcoinCommandBuilder.CLA_FRAMEWORK
CLA_DASHBOARD = 0xB0

INS_GET_APP_AND_VERSION = 0x01

LEDGER_CHANNEL = 0x0101
LEDGER_TAG_APDU = 0x05

SW_OK = 0x9000
SW_INTERRUPTED_EXECUTION = 0xE000

EMPTY_HMAC = b"\x00" * 32

# Status word → (error class, message)
_SW_ERRORS = {
    0x6985: (UserRejected, "denied by the user"),
    0x6A80: (ProtocolError, "incorrect data"),
    0x6A82: (Unsupported, "request not supported by the app"),
    0x6D00: (Unsupported, "instruction not supported"),
    0x6E00: (Unsupported, "class not supported, is the Bitcoin app open?"),
    0x5515: (ProtocolError, "device is locked"),
    0xB007: (ProtocolError, "bad state"),
    0xB008: (ProtocolError, "signature failure"),
}


def check_status_word(sw: int) -> None:
    """Translate a non-success status word into the error taxonomy."""
    if sw == SW_OK:
        return
    error_class, message = _SW_ERRORS.get(sw, (ProtocolError, "unexpected status word"))
    raise error_class(f"{message} (SW 0x{sw:04X})")




# =========================================================================
# APDU framing
# =========================================================================

def wrap_apdu(apdu: bytes, packet_size: int = 64, channel: int = LEDGER_CHANNEL) -> List[bytes]:
    """Split an APDU into HID reports.

    Layout::

        [channel:2][tag 0x05][seq:2] + (seq 0 only) [apdu length:2] + data
    """
    data = struct.pack(">H", len(apdu)) + apdu
    room = packet_size - 5
    packets = []
    for seq, offset in enumerate(range(0, len(data), room)):
        header = struct.pack(">HBH", channel, LEDGER_TAG_APDU, seq)
        packets.append((header + data[offset:offset + room]).ljust(packet_size, b"\x00"))
    return packets


class HidApduReassembler:
    """Rebuilds one response from a run of HID reports."""

    def __init__(self, channel: int = LEDGER_CHANNEL):
        self._channel = channel
        self._expected: Optional[int] = None
        self._seq = 0
        self._data = bytearray()

    def feed(self, report: bytes) -> Optional[bytes]:
        """Add a report; returns the full response once complete.

        Raises:
            FrameError: Wrong channel/tag or a report out of sequence.
        """
        if len(report) < 5:
            raise FrameError("Short HID report")
        channel, tag, seq = struct.unpack(">HBH", report[:5])
        if channel != self._channel or tag != LEDGER_TAG_APDU:
            raise FrameError(f"Unexpected report header {report[:5].hex()}")
        if seq != self._seq:
            raise FrameError(f"Report {seq} out of order, expected {self._seq}")
        body = report[5:]
        if seq == 0:
            if len(body) < 2:
                raise FrameError("First report lacks response length")
            (self._expected,) = struct.unpack(">H", body[:2])
            body = body[2:]
        self._data.extend(body)
        self._seq += 1
        if len(self._data) >= self._expected:
            return bytes(self._data[:self._expected])
        return None


class ApduFraming(ABC):
    """How APDUs and responses travel over one transport."""

    def __init__(self, transport: Transport):
        self.transport = transport

    @abstractmethod
    async def exchange(self, apdu: bytes) -> Tuple[int, bytes]:
        """Send *apdu*; return ``(status_word, response_data)``."""

    def reset(self) -> None:
        """Forget partial state after an abandoned exchange."""


class HidApduFraming(ApduFraming):

    async def exchange(self, apdu: bytes) -> Tuple[int, bytes]:
        for packet in wrap_apdu(apdu, self.transport.frame_size):
            await self.transport.send(packet)
        assembler = HidApduReassembler()
        while True:
            response = assembler.feed(await self.transport.receive())
            if response is not None:
                break
        if len(response) < 2:
            raise FrameError("Response shorter than a status word")
        return struct.unpack(">H", response[-2:])[0], response[:-2]


class TcpApduFraming(ApduFraming):

    def __init__(self, transport: Transport):
        super().__init__(transport)
        self._buffer = FrameBuffer(transport)

    async def exchange(self, apdu: bytes) -> Tuple[int, bytes]:
        await self.transport.send(struct.pack(">I", len(apdu)) + apdu)
        (size,) = struct.unpack(">I", await self._buffer.read_exactly(4))
        data = await self._buffer.read_exactly(size)
        (sw,) = struct.unpack(">H", await self._buffer.read_exactly(2))
        return sw, data

    def reset(self) -> None:
        self._buffer.clear()


def framing_for(transport: Transport) -> ApduFraming:
    if transport.frame_size:
        return HidApduFraming(transport)
    return TcpApduFraming(transport)



# =========================================================================
# Adapter
# =========================================================================

# What the interpreter raises for a request it cannot answer
_INTERPRETER_ERRORS = (RuntimeError, ValueError, IndexError, KeyError)


def _parse_app_and_version(resp: bytes) -> Tuple[str, str]:
    try:
        if resp[0] != 1:
            raise ProtocolError(f"Unknown app/version format {resp[0]}")
        name_len = resp[1]
        name = resp[2:2 + name_len].decode("ascii")
        ver_len = resp[2 + name_len]
        version = resp[3 + name_len:3 + name_len + ver_len].decode("ascii")
    except (IndexError, UnicodeDecodeError) as exc:
        raise ProtocolError("Malformed app/version response") from exc
    return name, version


def policy_interpreter(policy: WalletPolicy) -> ClientCommandInterpreter:
    """Interpreter preloaded with everything the app may ask about *policy*."""
    wallet = policy.to_ledger()
    client = ClientCommandInterpreter()
    client.add_known_preimage(wallet.serialize())
    client.add_known_list([k.encode() for k in wallet.keys_info])
    # apps speaking protocol 0 fetch the template itself
    client.add_known_preimage(wallet.descriptor_template.encode())
    return client


class LedgerSigner(HardwareSigner):
    """Ledger devices running the Bitcoin app 2.x."""

    kind = DeviceKind.LEDGER

    BITCOIN_APPS = ("Bitcoin", "Bitcoin Test", "Bitcoin Recovery")

    def __init__(self, transport: Transport, network: str = "mainnet", model: str = ""):
        super().__init__(transport, network)
        self.model = model
        self.app_name = ""
        self._framing = framing_for(transport)
        self._builder = BitcoinCommandBuilder()
        self._fingerprint: Optional[bytes] = None

    # -- Wire ------------------------------------------------------------

    async def _exchange(self, cla: int, ins: int, p1: int = 0, p2: int = 0,
                        data: bytes = b"") -> Tuple[int, bytes]:
        if len(data) > 255:
            raise ProtocolError("APDU data longer than 255 bytes")
        apdu = bytes([cla, ins, p1, p2, len(data)]) + data
        log.debug("=> %s", apdu.hex())
        sw, resp = await self._framing.exchange(apdu)
        log.debug("<= %s %04x", resp.hex(), sw)
        return sw, resp

    async def _send(self, apdu: Mapping) -> Tuple[int, bytes]:
        return await self._exchange(apdu["cla"], apdu["ins"], apdu["p1"], apdu["p2"], apdu["data"])

    @property
    def _protocol_version(self) -> int:
        return 1 if self.version is not None and self.version >= Version(2, 1, 0) else 0

    async def _command(self, apdu: dict,
                       client: Optional[ClientCommandInterpreter] = None) -> bytes:
        """Run one Bitcoin app command, answering its client commands."""
        client = client or ClientCommandInterpreter()
        # the builder stamps the newest protocol; older apps reject it
        apdu["p2"] = self._protocol_version
        sw, resp = await self._send(apdu)
        while sw == SW_INTERRUPTED_EXECUTION:
            try:
                reply = client.execute(resp)
            except _INTERPRETER_ERRORS as exc:
                raise ProtocolError(f"Cannot answer client command: {exc}") from exc
            sw, resp = await self._send(self._builder.continue_interrupted(reply))
        check_status_word(sw)
        return resp

    async def drain(self) -> int:
        self._framing.reset()
        return await super().drain()

    # -- Operations ------------------------------------------------------

    async def identify(self) -> Identity:
        sw, resp = await self._exchange(CLA_DASHBOARD, INS_GET_APP_AND_VERSION)
        check_status_word(sw)
        name, version = _parse_app_and_version(resp)
        if name not in self.BITCOIN_APPS:
            raise Unsupported(f"Open the Bitcoin app (device is running {name!r})")
        self.app_name = name
        try:
            self.version = parse_version(version)
        except ValueError as exc:
            raise ProtocolError(f"Ledger reported version {version!r}") from exc
        if (name == "Bitcoin Test") != (self.network == "testnet"):
            log.warning("Ledger app %r does not match network %s", name, self.network)

        fingerprint = None
        if self.version >= Version(2, 0, 0):
            fingerprint = await self.get_master_fingerprint()
        else:
            log.warning("Ledger Bitcoin app %s uses the legacy protocol", self.version)
        return Identity(kind=self.kind, version=self.version, fingerprint=fingerprint,
                        model=self.model or name, path=self.transport.path, raw_response=resp)

    async def get_master_fingerprint(self) -> bytes:
        resp = await self._command(self._builder.get_master_fingerprint())
        if len(resp) != 4:
            raise ProtocolError(f"Fingerprint response of {len(resp)} bytes")
        self._fingerprint = resp
        return resp

    async def _known_fingerprint(self) -> bytes:
        if self._fingerprint is None:
            return await self.get_master_fingerprint()
        return self._fingerprint

    async def get_extended_pubkey(self, path: DerivationPath, display: bool = False) -> ExtendedPublicKey:
        resp = await self._command(self._builder.get_extended_pubkey(list(path.indices), display))
        try:
            return ExtendedPublicKey.from_string(resp.decode("ascii"), path)
        except (UnicodeDecodeError, ValueError) as exc:
            raise ProtocolError(f"Device returned an invalid xpub: {exc}") from exc

    async def register_wallet(self, policy: WalletPolicy) -> RegistrationProof:
        fingerprint = await self._known_fingerprint()
        if policy.is_default:
            return RegistrationProof(policy.policy_id, fingerprint, self.kind.vendor, EMPTY_HMAC, "")
        if not policy.name:
            raise Unsupported("Ledger only registers named policies")

        resp = await self._command(self._builder.register_wallet(policy.to_ledger()),
                                   policy_interpreter(policy))
        if len(resp) != 64:
            raise ProtocolError(f"Registration response of {len(resp)} bytes")
        wallet_id, hmac = resp[:32], resp[32:]
        if wallet_id != policy.policy_id:
            raise ProtocolError("Device computed a different wallet id")
        log.info("Registered policy %r on %s", policy.name, self.transport.path)
        return RegistrationProof(policy.policy_id, fingerprint, self.kind.vendor, hmac, policy.name)

    async def _default_policy(self, account: DerivationPath) -> WalletPolicy:
        fingerprint = await self._known_fingerprint()
        xpub = await self.get_extended_pubkey(account)
        return WalletPolicy.single_sig(fingerprint, account, xpub)

    async def display_address(self, target: AddressTarget) -> str:
        if isinstance(target, PolicyAddress):
            policy = target.policy
            hmac = EMPTY_HMAC if policy.is_default else target.proof.token
            change, index = target.change, target.index
        else:
            policy = await self._default_policy(target.prefix(3))
            hmac = EMPTY_HMAC
            change, index = target.indices[3], target.indices[4]

        apdu = self._builder.get_wallet_address(wallet=policy.to_ledger(), wallet_hmac=hmac,
                                                address_index=index, change=int(change),
                                                display=True)
        resp = await self._command(apdu, policy_interpreter(policy))
        try:
            return resp.decode("ascii")
        except UnicodeDecodeError as exc:
            raise ProtocolError("Device returned a non-ASCII address") from exc

    async def _infer_policy(self, psbt: Psbt) -> WalletPolicy:
        """Find the standard single-sig account the inputs spend from."""
        fingerprint = await self._known_fingerprint()
        for m in psbt.inputs:
            origins = list(m.bip32_derivations.values()) + list(m.tap_bip32_derivations.values())
            for info in origins:
                if (info.fingerprint == fingerprint and info.path.is_standard_address
                        and info.path.purpose in SINGLE_SIG_TEMPLATES):
                    return await self._default_policy(info.path.prefix(3))
        raise PolicyMismatch("No input spends from a single-sig account of this device; "
                             "pass the wallet policy")

    async def sign_tx(self, psbt: Psbt, policy: Optional[WalletPolicy] = None,
                      proof: Optional[RegistrationProof] = None) -> Psbt:
        if policy is None:
            policy = await self._infer_policy(psbt)
        hmac = EMPTY_HMAC if policy.is_default else proof.token

        v2 = psbt.to_v2()
        global_map = dict(v2.global_map.entries)
        input_maps = [dict(m.entries) for m in v2.inputs]
        output_maps = [dict(m.entries) for m in v2.outputs]

        client = policy_interpreter(policy)
        for mapping in [global_map] + input_maps + output_maps:
            client.add_known_mapping(mapping)
        client.add_known_list([get_merkleized_map_commitment(m) for m in input_maps])
        client.add_known_list([get_merkleized_map_commitment(m) for m in output_maps])

        apdu = self._builder.sign_psbt(global_map, input_maps, output_maps,
                                       policy.to_ledger(), hmac)
        await self._command(apdu, client)

        result = psbt.copy()
        for item in client.yielded:
            _apply_yielded_signature(result, item)
        if not client.yielded:
            log.warning("Ledger returned no signatures")
        return result


def _apply_yielded_signature(psbt: Psbt, item: bytes) -> None:
    """Insert one ``input_index | pubkey_len | pubkey | signature`` record."""
    stream = io.BytesIO(item)
    index = read_compact_size(stream)
    pubkey_len = stream.read(1)
    if not pubkey_len or index >= len(psbt.inputs):
        raise ProtocolError("Malformed signature from device")
    pubkey = stream.read(pubkey_len[0])
    signature = stream.read()
    target = psbt.inputs[index]
    if len(pubkey) == 33:
        target.add_partial_sig(pubkey, signature)
    elif len(pubkey) == 32:
        target.add_tap_key_sig(signature)
    elif len(pubkey) == 64:
        target.add_tap_script_sig(pubkey[:32], pubkey[32:], signature)
    else:
        raise ProtocolError(f"Unexpected pubkey length {len(pubkey)} in signature")


class LedgerSimulatorSigner(LedgerSigner):
    """Speculos, reached over its APDU TCP port."""

    kind = DeviceKind.LEDGER_SIMULATOR
