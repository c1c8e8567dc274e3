"""
Coldcard USB protocol adapter.

Messages are split into 64-byte HID reports.  The first byte of each
report holds the payload length (low 6 bits), 0x80 on the last report
and 0x40 when the message is encrypted.

After an ECDH handshake (``ncry``) every command travels AES-256-CTR
encrypted under ``sha256(shared_point.x || shared_point.y)``, with an
independent counter in each direction.  The device answers the
handshake with its master fingerprint and xpub; those are pinned in the
keystore so a swapped device is noticed on the next session.

Command packing and reply decoding come from ``ckcc-protocol``; this
module frames them over the async transport, keeps the session and
turns ``ckcc`` exceptions into our error taxonomy.

Large payloads (PSBTs, wallet files) are uploaded in 2 KiB blocks,
verified with ``sha2`` and referenced by hash from the command that
uses them.
"""

from __future__ import annotations

import asyncio
import json
import logging
import struct
from hashlib import sha256
from typing import Callable, List, Optional

import pyaes
from ckcc.constants import (
    AF_CLASSIC,
    AF_P2TR,
    AF_P2WPKH,
    AF_P2WPKH_P2SH,
    MAX_BLK_LEN,
    USB_NCRY_V1,
)
from ckcc.protocol import (
    CCBusyError,
    CCFramingError,
    CCProtocolPacker,
    CCProtocolUnpacker,
    CCProtoError,
    CCUserRefused,
)
from ecdsa import SECP256k1, SigningKey, VerifyingKey
from ecdsa.util import number_to_string

from .bip32 import DerivationPath, ExtendedPublicKey
from .capabilities import DeviceKind, Version, parse_version
from .device_base import HardwareSigner, Identity
from .errors import (
    FrameError,
    PairingRequired,
    ProtocolError,
    Unsupported,
    UserRejected,
)
from .policy import AddressTarget, PolicyAddress, RegistrationProof, WalletPolicy
from .psbt import Psbt
from .transport import Transport

log = logging.getLogger(__name__)

MAX_PACKET_PAYLOAD = 63

FLAG_LAST = 0x80
FLAG_ENCRYPTED = 0x40

# Seconds to wait for the user to approve a wallet enrollment
ENROLL_TIMEOUT = 300.0

_PURPOSE_FORMATS = {
    44: AF_CLASSIC,
    49: AF_P2WPKH_P2SH,
    84: AF_P2WPKH,
    86: AF_P2TR,
}

_PAIRING_COMPLAINTS = ("no key", "must encrypt")


# =========================================================================
# Framing and response decoding
# =========================================================================

def frame_message(msg: bytes, encrypted: bool = False) -> List[bytes]:
    """Split *msg* into HID report payloads (without the report ID)."""
    packets = []
    for offset in range(0, len(msg), MAX_PACKET_PAYLOAD):
        chunk = msg[offset:offset + MAX_PACKET_PAYLOAD]
        header = len(chunk)
        if offset + len(chunk) == len(msg):
            header |= FLAG_LAST
        if encrypted:
            header |= FLAG_ENCRYPTED
        packets.append(bytes([header]) + chunk)
    return packets


def decode_response(msg: bytes):
    """Decode a decrypted response with ``CCProtocolUnpacker``.

    Returns:
        None for ``okay``, int for ``int1``, str for ``asci``, bytes for
        ``biny``, ``(length, sha256)`` for ``strx``, and
        ``(pubkey, xfp, xpub)`` for ``mypb``.

    Raises:
        UserRejected: ``refu``.
        Unsupported: ``err_`` for a command the firmware lacks.
        PairingRequired: The device wants an encrypted session first.
        FrameError: ``fram`` errors, unknown tags and truncated replies.
        ProtocolError: ``err_``, ``busy`` or a malformed body.
    """
    if len(msg) < 4:
        raise FrameError("Response shorter than its tag")
    try:
        return CCProtocolUnpacker.decode(msg)
    except CCUserRefused as exc:
        raise UserRejected("Refused on device") from exc
    except CCBusyError as exc:
        raise ProtocolError("Coldcard is busy with another request") from exc
    except CCFramingError as exc:
        text = str(exc)
        if any(c in text for c in _PAIRING_COMPLAINTS):
            raise PairingRequired(f"Coldcard: {text}") from exc
        raise FrameError(f"Coldcard framing error: {text}") from exc
    except CCProtoError as exc:
        text = str(exc)
        if "Unknown cmd" in text:
            raise Unsupported(text) from exc
        if any(c in text for c in _PAIRING_COMPLAINTS):
            raise PairingRequired(text) from exc
        raise ProtocolError(text) from exc
    except (AssertionError, struct.error, UnicodeDecodeError) as exc:
        raise ProtocolError(f"Malformed {msg[:4]!r} response from Coldcard") from exc


# Miniscript wallet commands
def _miniscript_enroll(length: int, file_sha: bytes) -> bytes:
    return struct.pack("<4sI32s", b"mins", length, file_sha)


def _miniscript_ls() -> bytes:
    return b"msls"


def _miniscript_address(name: str, change: bool, index: int) -> bytes:
    return struct.pack("<4sII", b"msas", int(change), index) + name.encode("ascii")


# =========================================================================
# Encrypted session
# =========================================================================

class ColdcardSession:
    """ECDH key agreement and the two AES-CTR streams."""

    def __init__(self):
        self._key = SigningKey.generate(curve=SECP256k1, hashfunc=sha256)
        self.encrypt: Optional[Callable[[bytes], bytes]] = None
        self.decrypt: Optional[Callable[[bytes], bytes]] = None
        self.fingerprint: Optional[bytes] = None
        self.master_xpub = ""

    @property
    def pubkey(self) -> bytes:
        """Our 64-byte uncompressed public key, without the 0x04 prefix."""
        return self._key.get_verifying_key().to_string()

    def handshake_request(self) -> bytes:
        return CCProtocolPacker.encrypt_start(self.pubkey, USB_NCRY_V1)

    def complete(self, device_pubkey: bytes, xfp: int, xpub: str) -> None:
        """Derive the session key from the device's half of the handshake."""
        try:
            theirs = VerifyingKey.from_string(device_pubkey, curve=SECP256k1, hashfunc=sha256)
        except (ValueError, AssertionError) as exc:
            raise ProtocolError("Device sent an invalid session pubkey") from exc
        point = theirs.pubkey.point * self._key.privkey.secret_multiplier
        order = SECP256k1.order
        session_key = sha256(number_to_string(point.x(), order)
                             + number_to_string(point.y(), order)).digest()
        self.encrypt = pyaes.AESModeOfOperationCTR(session_key, pyaes.Counter(0)).encrypt
        self.decrypt = pyaes.AESModeOfOperationCTR(session_key, pyaes.Counter(0)).decrypt
        self.fingerprint = struct.pack("<I", xfp) if xfp else None
        self.master_xpub = xpub
        self._key = None


# =========================================================================
# Adapter
# =========================================================================

def _normalize_version(text: str) -> Version:
    """Q-series firmware counts from 1.x.xQ; align it with Mk4 6.x.xX."""
    version = parse_version(text)
    if text.strip().upper().endswith("Q") and version.major < 4:
        return Version(version.major + 5, version.minor, version.patch, "Q")
    return version


class ColdcardSigner(HardwareSigner):
    """Coldcard Mk3/Mk4/Q over USB HID."""

    kind = DeviceKind.COLDCARD

    def __init__(self, transport: Transport, network: str = "mainnet", keystore=None):
        super().__init__(transport, network)
        self.keystore = keystore
        self.model = ""
        self._session: Optional[ColdcardSession] = None

    @classmethod
    def create(cls, transport, config, keystore=None, pin_server=None) -> ColdcardSigner:
        return cls(transport, network=config.network, keystore=keystore)

    @property
    def _device_id(self) -> str:
        return f"coldcard:{self.transport.path}"

    # -- Wire ------------------------------------------------------------

    async def _send_recv(self, msg: bytes, encrypt: bool = True):
        if encrypt:
            session = await self._ensure_session()
            msg = session.encrypt(msg)
        for packet in frame_message(msg, encrypt):
            await self.transport.send(packet)

        resp = bytearray()
        while True:
            report = await self.transport.receive()
            if not report:
                continue
            flag = report[0]
            resp.extend(report[1:1 + (flag & 0x3F)])
            if flag & FLAG_LAST:
                break
        if flag & FLAG_ENCRYPTED:
            if self._session is None or self._session.decrypt is None:
                raise FrameError("Encrypted response without a session")
            resp = self._session.decrypt(bytes(resp))
        return decode_response(bytes(resp))

    async def _ensure_session(self) -> ColdcardSession:
        if self._session is not None:
            return self._session
        session = ColdcardSession()
        result = await self._send_recv(session.handshake_request(), encrypt=False)
        if not isinstance(result, tuple) or len(result) != 3:
            raise ProtocolError("Unexpected reply to key exchange")
        device_pubkey, xfp, xpub = result
        if isinstance(xpub, bytes):
            try:
                xpub = xpub.decode("ascii")
            except UnicodeDecodeError as exc:
                raise ProtocolError("Key exchange carried a non-ASCII xpub") from exc
        session.complete(device_pubkey, xfp, xpub)
        self._check_pinned(xpub)
        self._session = session
        log.debug("Coldcard session established with %s (xfp %08x)", self.transport.path, xfp)
        return session

    def _check_pinned(self, xpub: str) -> None:
        if self.keystore is None or not xpub:
            return
        pinned = self.keystore.retrieve(self._device_id)
        if pinned is None:
            self.keystore.store(self._device_id, xpub.encode())
        elif pinned != xpub.encode():
            raise PairingRequired("Coldcard identity changed since it was paired; "
                                  "forget the old pairing to continue")

    async def _upload(self, data: bytes) -> bytes:
        """Upload *data* in blocks; returns its SHA-256 after the device confirms it."""
        for offset in range(0, len(data), MAX_BLK_LEN):
            chunk = data[offset:offset + MAX_BLK_LEN]
            echoed = await self._send_recv(CCProtocolPacker.upload(offset, len(data), chunk))
            if echoed != offset:
                raise ProtocolError(f"Upload offset mismatch at {offset}")
        digest = sha256(data).digest()
        if await self._send_recv(CCProtocolPacker.sha256()) != digest:
            raise ProtocolError("Upload checksum mismatch")
        return digest

    async def _download(self, length: int, digest: bytes) -> bytes:
        data = bytearray()
        while len(data) < length:
            chunk = await self._send_recv(
                CCProtocolPacker.download(len(data), min(MAX_BLK_LEN, length - len(data)), 1))
            if not chunk:
                raise ProtocolError("Download stalled")
            data.extend(chunk)
        if sha256(data).digest() != digest:
            raise ProtocolError("Download checksum mismatch")
        return bytes(data)

    async def drain(self) -> int:
        self._session = None
        return await super().drain()

    # -- Operations ------------------------------------------------------

    async def identify(self) -> Identity:
        session = await self._ensure_session()
        text = await self._send_recv(CCProtocolPacker.version())
        lines = text.split("\n")
        if len(lines) < 2:
            raise ProtocolError(f"Unexpected version reply {text!r}")
        try:
            self.version = _normalize_version(lines[1])
        except ValueError as exc:
            raise ProtocolError(f"Coldcard reported version {lines[1]!r}") from exc
        self.model = lines[3].strip() if len(lines) > 3 else ""
        return Identity(kind=self.kind, version=self.version, fingerprint=session.fingerprint,
                        model=self.model, path=self.transport.path, raw_response=text.encode())

    async def get_master_fingerprint(self) -> bytes:
        session = await self._ensure_session()
        if session.fingerprint is None:
            raise ProtocolError("Coldcard has no seed loaded")
        return session.fingerprint

    async def get_extended_pubkey(self, path: DerivationPath, display: bool = False) -> ExtendedPublicKey:
        if display:
            raise Unsupported("Coldcard cannot show an xpub on request over USB")
        text = await self._send_recv(CCProtocolPacker.get_xpub(path.to_string()))
        try:
            return ExtendedPublicKey.from_string(text, path)
        except ValueError as exc:
            raise ProtocolError(f"Device returned an invalid xpub: {exc}") from exc

    async def register_wallet(self, policy: WalletPolicy) -> RegistrationProof:
        if not policy.name:
            raise Unsupported("Coldcard only registers named policies")
        fingerprint = await self.get_master_fingerprint()
        if policy.name in await self._registered_names():
            log.info("Policy %r already enrolled on %s", policy.name, self.transport.path)
        else:
            wallet_file = json.dumps({"name": policy.name, "desc": policy.descriptor()}).encode()
            digest = await self._upload(wallet_file)
            await self._send_recv(_miniscript_enroll(len(wallet_file), digest))
            await self._await_enrollment(policy.name)
        return RegistrationProof(policy.policy_id, fingerprint, self.kind.vendor,
                                 policy.name.encode(), policy.name)

    async def _await_enrollment(self, name: str) -> None:
        """Poll until *name* is listed, the user refuses, or the request lapses.

        Raises:
            UserRejected: Refused on the device, the approval screen went
                away without adding the wallet, or ENROLL_TIMEOUT passed.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + ENROLL_TIMEOUT
        while loop.time() < deadline:
            if name in await self._registered_names():
                return
            try:
                # 'refu' once the user declines
                await self._send_recv(CCProtocolPacker.get_signed_txn())
            except ProtocolError as exc:
                if "No active request" not in str(exc):
                    raise
                if name in await self._registered_names():
                    return
                raise UserRejected(f"Coldcard did not enroll {name!r}") from exc
            await asyncio.sleep(self.transport.poll_interval)
        raise UserRejected(f"Enrollment of {name!r} not approved within {ENROLL_TIMEOUT:g}s")

    async def _registered_names(self) -> List[str]:
        raw = await self._send_recv(_miniscript_ls())
        try:
            names = json.loads(raw) if raw else []
        except ValueError as exc:
            raise ProtocolError("Malformed wallet list") from exc
        return [n if isinstance(n, str) else n[0] for n in names]

    async def display_address(self, target: AddressTarget) -> str:
        if isinstance(target, PolicyAddress):
            name = target.proof.name if target.proof and target.proof.name else target.policy.name
            return await self._send_recv(_miniscript_address(name, target.change, target.index))
        addr_fmt = _PURPOSE_FORMATS.get(target.purpose)
        if addr_fmt is None:
            raise Unsupported(f"No single-sig address format for {target}")
        return await self._send_recv(CCProtocolPacker.show_address(target.to_string(), addr_fmt))

    async def sign_tx(self, psbt: Psbt, policy: Optional[WalletPolicy] = None,
                      proof: Optional[RegistrationProof] = None) -> Psbt:
        raw = psbt.serialize()
        digest = await self._upload(raw)
        await self._send_recv(CCProtocolPacker.sign_transaction(len(raw), digest))
        while True:
            done = await self._send_recv(CCProtocolPacker.get_signed_txn())
            if done is not None:
                break
            await asyncio.sleep(self.transport.poll_interval)
        length, result_digest = done
        return Psbt.parse(await self._download(length, result_digest))
