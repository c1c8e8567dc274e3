"""Tests for the Coldcard adapter: framing, encrypted session and command flows."""

import json
import struct
from hashlib import sha256

import pyaes
import pytest
from ckcc.constants import AF_P2WPKH
from ecdsa import SECP256k1, SigningKey, VerifyingKey
from ecdsa.util import number_to_string

from conftest import DEADBEEF, ScriptedTransport, der_signature, make_psbt, make_xpub, pubkey

from hwsign import device_coldcard
from hwsign.bip32 import DerivationPath
from hwsign.capabilities import Version
from hwsign.device_coldcard import (
    FLAG_ENCRYPTED,
    FLAG_LAST,
    ColdcardSigner,
    _normalize_version,
    decode_response,
    frame_message,
)
from hwsign.errors import FrameError, PairingRequired, ProtocolError, Unsupported, UserRejected
from hwsign.keystore import MemoryKeystore
from hwsign.policy import PolicyAddress, RegistrationProof, WalletPolicy
from hwsign.psbt import Psbt

XFP = struct.unpack("<I", DEADBEEF)[0]


# =========================================================================
# Fake device
# =========================================================================

class FakeColdcard:
    """Device end of the USB protocol, including its half of the ECDH."""

    def __init__(self, xpub_seed=9, version="6.2.1X", model="mk4"):
        self.master_xpub = make_xpub("m", parent=b"\0" * 4, seed=xpub_seed).to_string()
        self.version = version
        self.model = model
        self.key = SigningKey.generate(curve=SECP256k1, hashfunc=sha256)
        self.encrypt = self.decrypt = None
        self.rx = bytearray()
        self.commands = []
        self.upload = bytearray()
        self.wallets = []
        self.pending_wallet = None
        self.enrolled = []
        self.enroll_outcome = "approve"
        self.active = None
        self.refuse_sign = False
        self.result = b""
        self.stok_polls = 0
        self.shown = None

    def responder(self, packet):
        flag = packet[0]
        self.rx.extend(packet[1:1 + (flag & 0x3F)])
        if not flag & FLAG_LAST:
            return []
        msg, self.rx = bytes(self.rx), bytearray()
        encrypted = bool(flag & FLAG_ENCRYPTED)
        if encrypted:
            msg = self.decrypt(msg)
        reply = self.handle(msg)
        if encrypted:
            reply = self.encrypt(reply)
        return frame_message(reply, encrypted)

    # -- Commands --------------------------------------------------------

    def handle(self, msg):
        cmd = msg[:4]
        self.commands.append(cmd)
        handler = getattr(self, "cmd_" + cmd.decode().strip("_"), None)
        if handler is None:
            return b"err_Unknown cmd"
        return handler(msg)

    def cmd_ncry(self, msg):
        _, version, host_pubkey = struct.unpack("<4sI64s", msg)
        host = VerifyingKey.from_string(host_pubkey, curve=SECP256k1)
        point = host.pubkey.point * self.key.privkey.secret_multiplier
        key = sha256(number_to_string(point.x(), SECP256k1.order)
                     + number_to_string(point.y(), SECP256k1.order)).digest()
        self.decrypt = pyaes.AESModeOfOperationCTR(key, pyaes.Counter(0)).decrypt
        self.encrypt = pyaes.AESModeOfOperationCTR(key, pyaes.Counter(0)).encrypt
        xpub = self.master_xpub.encode()
        return (b"mypb" + self.key.get_verifying_key().to_string()
                + struct.pack("<II", XFP, len(xpub)) + xpub)

    def cmd_vers(self, msg):
        return f"asci2024-03-01\n{self.version}\n3.1.5\n{self.model}\n".encode()

    def cmd_xpub(self, msg):
        path = msg[4:].decode()
        return b"asci" + make_xpub(path, seed=3).to_string().encode()

    def cmd_upld(self, msg):
        offset, total = struct.unpack_from("<II", msg, 4)
        if offset == 0:
            self.upload = bytearray()
        self.upload[offset:] = msg[12:]
        return b"int1" + struct.pack("<I", offset)

    def cmd_sha2(self, msg):
        return b"biny" + sha256(self.upload).digest()

    def cmd_mins(self, msg):
        length, digest = struct.unpack_from("<I32s", msg, 4)
        assert sha256(self.upload[:length]).digest() == digest
        self.pending_wallet = json.loads(bytes(self.upload[:length]))
        self.active = "enroll"
        return b"okay"

    def cmd_msls(self, msg):
        # the user approves while the host polls
        if self.pending_wallet is not None and self.enroll_outcome == "approve":
            self.enrolled.append(self.pending_wallet)
            self.wallets.append(self.pending_wallet["name"])
            self.pending_wallet = None
            self.active = None
        return b"asci" + json.dumps(self.wallets).encode()

    def cmd_msas(self, msg):
        change, index = struct.unpack_from("<II", msg, 4)
        self.shown = (msg[12:].decode(), change, index)
        return b"ascibc1qmultisigaddress"

    def cmd_show(self, msg):
        (addr_fmt,) = struct.unpack_from("<I", msg, 4)
        self.shown = (addr_fmt, msg[8:].decode())
        return b"ascibc1qsinglesigaddress"

    def cmd_stxn(self, msg):
        length, flags, digest = struct.unpack_from("<II32s", msg, 4)
        assert sha256(self.upload[:length]).digest() == digest
        psbt = Psbt.parse(bytes(self.upload[:length]))
        psbt.inputs[0].add_partial_sig(pubkey(7), der_signature(7))
        self.result = psbt.serialize()
        self.active = "sign"
        return b"okay"

    def cmd_stok(self, msg):
        if self.active is None:
            return b"err_No active request"
        if self.active == "enroll":
            return self._enroll_status()
        self.stok_polls += 1
        if self.stok_polls < 2:
            return b"okay"
        if self.refuse_sign:
            return b"refu"
        return b"strx" + struct.pack("<I32s", len(self.result), sha256(self.result).digest())

    def _enroll_status(self):
        if self.enroll_outcome == "refuse":
            self.active = self.pending_wallet = None
            return b"refu"
        if self.enroll_outcome == "abandon":
            self.active = self.pending_wallet = None
            return b"err_No active request"
        return b"okay"

    def cmd_dwld(self, msg):
        offset, length, _ = struct.unpack_from("<III", msg, 4)
        return b"biny" + self.result[offset:offset + length]


async def open_coldcard(fake, keystore=None, path="hid:coldcard"):
    transport = ScriptedTransport(path, frame_size=64, responder=fake.responder,
                                  poll_interval=0.001)
    await transport.open()
    return ColdcardSigner(transport, keystore=keystore)


def vault_policy():
    path = "m/48'/0'/0'/2'"
    return WalletPolicy("vault", "wsh(sortedmulti(2,@0/**,@1/**))", (
        f"[deadbeef/48'/0'/0'/2']{make_xpub(path, seed=1)}",
        f"[0badf00d/48'/0'/0'/2']{make_xpub(path, seed=2)}",
    ))


# =========================================================================
# Framing and decoding
# =========================================================================

class TestFrameMessage:

    def test_flags(self):
        packets = frame_message(b"x" * 100, encrypted=True)
        assert [p[0] for p in packets] == [63 | FLAG_ENCRYPTED, 37 | FLAG_LAST | FLAG_ENCRYPTED]
        assert all(len(p) <= 64 for p in packets)

    def test_single(self):
        assert frame_message(b"vers") == [bytes([4 | FLAG_LAST]) + b"vers"]


class TestDecodeResponse:

    def test_values(self):
        assert decode_response(b"okay") is None
        assert decode_response(b"int1" + struct.pack("<I", 7)) == 7
        assert decode_response(b"ascihello") == "hello"
        assert decode_response(b"biny\x01\x02") == b"\x01\x02"

    @pytest.mark.parametrize("msg,error", [
        (b"refu", UserRejected),
        (b"busy", ProtocolError),
        (b"err_Unknown cmd", Unsupported),
        (b"err_Bad PSBT", ProtocolError),
        (b"framno key", PairingRequired),
        (b"frambad length", FrameError),
        (b"what", FrameError),
        (b"ok", FrameError),
        (b"int1\x07", ProtocolError),
        (b"strx" + b"\x00" * 10, ProtocolError),
        (b"mypb" + b"\x00" * 20, ProtocolError),
    ])
    def test_errors(self, msg, error):
        with pytest.raises(error):
            decode_response(msg)


class TestNormalizeVersion:

    def test_mk4(self):
        assert _normalize_version("6.2.1X") == Version(6, 2, 1)

    def test_q_series(self):
        assert _normalize_version("1.3.0Q") == Version(6, 3, 0)


# =========================================================================
# Session
# =========================================================================

class TestSession:

    async def test_identify(self):
        signer = await open_coldcard(FakeColdcard())
        identity = await signer.identify()
        assert identity.fingerprint == DEADBEEF
        assert identity.version == Version(6, 2, 1)
        assert identity.model == "mk4"

    async def test_unparseable_version(self):
        signer = await open_coldcard(FakeColdcard(version="unknown"))
        with pytest.raises(ProtocolError, match="unknown"):
            await signer.identify()

    async def test_traffic_after_handshake_is_encrypted(self):
        fake = FakeColdcard()
        signer = await open_coldcard(fake)
        await signer.identify()
        transport = signer.transport
        assert transport.sent[0][1:5] == b"ncry"
        assert all(p[0] & FLAG_ENCRYPTED for p in transport.sent[2:])
        assert not any(b"vers" in p for p in transport.sent[2:])
        assert fake.commands == [b"ncry", b"vers"]

    async def test_pins_identity(self):
        keystore = MemoryKeystore()
        first = await open_coldcard(FakeColdcard(), keystore)
        await first.identify()
        first.close()
        assert keystore.retrieve("coldcard:hid:coldcard") is not None

        again = await open_coldcard(FakeColdcard(), keystore)
        assert (await again.identify()).fingerprint == DEADBEEF

    async def test_swapped_device(self):
        keystore = MemoryKeystore()
        first = await open_coldcard(FakeColdcard(xpub_seed=9), keystore)
        await first.identify()
        first.close()
        second = await open_coldcard(FakeColdcard(xpub_seed=10), keystore)
        with pytest.raises(PairingRequired):
            await second.identify()

    async def test_forgotten_pairing_accepts_new_device(self):
        keystore = MemoryKeystore()
        first = await open_coldcard(FakeColdcard(xpub_seed=9), keystore)
        await first.identify()
        first.close()
        keystore.forget("coldcard:hid:coldcard")
        second = await open_coldcard(FakeColdcard(xpub_seed=10), keystore)
        await second.identify()
        assert keystore.retrieve("coldcard:hid:coldcard") is not None

    async def test_drain_restarts_session(self):
        fake = FakeColdcard()
        signer = await open_coldcard(fake)
        await signer.identify()
        await signer.drain()
        await signer.identify()
        assert fake.commands.count(b"ncry") == 2


# =========================================================================
# Operations
# =========================================================================

class TestOperations:

    async def test_get_extended_pubkey(self):
        signer = await open_coldcard(FakeColdcard())
        xpub = await signer.get_extended_pubkey(DerivationPath.parse("m/84'/0'/0'"))
        assert xpub == make_xpub("m/84'/0'/0'", seed=3)

    async def test_xpub_display_unsupported(self):
        signer = await open_coldcard(FakeColdcard())
        with pytest.raises(Unsupported):
            await signer.get_extended_pubkey(DerivationPath.parse("m/84'/0'/0'"), display=True)

    async def test_register_uploads_wallet_file(self):
        fake = FakeColdcard()
        signer = await open_coldcard(fake)
        policy = vault_policy()
        proof = await signer.register_wallet(policy)
        assert proof.token == b"vault"
        assert proof.fingerprint == DEADBEEF
        assert fake.enrolled == [{"name": "vault", "desc": policy.descriptor()}]
        assert b"mins" in fake.commands

    async def test_register_already_enrolled(self):
        fake = FakeColdcard()
        fake.wallets = ["vault"]
        signer = await open_coldcard(fake)
        await signer.register_wallet(vault_policy())
        assert b"upld" not in fake.commands

    async def test_register_refused(self):
        fake = FakeColdcard()
        fake.enroll_outcome = "refuse"
        signer = await open_coldcard(fake)
        with pytest.raises(UserRejected):
            await signer.register_wallet(vault_policy())
        assert fake.wallets == []

    async def test_register_dismissed_without_enrolling(self):
        fake = FakeColdcard()
        fake.enroll_outcome = "abandon"
        signer = await open_coldcard(fake)
        with pytest.raises(UserRejected, match="did not enroll"):
            await signer.register_wallet(vault_policy())

    async def test_register_gives_up_after_timeout(self, monkeypatch):
        monkeypatch.setattr(device_coldcard, "ENROLL_TIMEOUT", 0.02)
        fake = FakeColdcard()
        fake.enroll_outcome = "wait"
        signer = await open_coldcard(fake)
        with pytest.raises(UserRejected, match="not approved"):
            await signer.register_wallet(vault_policy())
        assert fake.commands.count(b"stok") >= 1

    async def test_show_single_sig(self):
        fake = FakeColdcard()
        signer = await open_coldcard(fake)
        address = await signer.display_address(DerivationPath.parse("m/84'/0'/0'/0/4"))
        assert address == "bc1qsinglesigaddress"
        assert fake.shown == (AF_P2WPKH, "m/84'/0'/0'/0/4")

    async def test_show_policy_address(self):
        fake = FakeColdcard()
        signer = await open_coldcard(fake)
        policy = vault_policy()
        proof = RegistrationProof(policy.policy_id, DEADBEEF, "coldcard", b"vault", "vault")
        await signer.display_address(PolicyAddress(policy, proof, change=True, index=3))
        assert fake.shown == ("vault", 1, 3)

    async def test_sign_multi_block(self):
        fake = FakeColdcard()
        signer = await open_coldcard(fake)
        psbt = make_psbt(40)
        assert len(psbt.serialize()) > 2048
        signed = await signer.sign_tx(psbt)
        assert signed.inputs[0].partial_sigs == {pubkey(7): der_signature(7)}
        assert fake.commands.count(b"upld") == 2
        assert fake.stok_polls == 2

    async def test_sign_refused(self):
        fake = FakeColdcard()
        fake.refuse_sign = True
        signer = await open_coldcard(fake)
        with pytest.raises(UserRejected):
            await signer.sign_tx(make_psbt())
