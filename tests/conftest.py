"""Shared fixtures: scripted transports and builders for keys and PSBTs."""

import asyncio
import struct
from collections import deque
from typing import Callable, Deque, Iterable, List, Optional

import pytest

from hwsign.bip32 import HARDENED, XPUB_VERSIONS, DerivationPath, ExtendedPublicKey
from hwsign.capabilities import DeviceKind, Version
from hwsign.config import DiscoveryConfig
from hwsign.device_base import HardwareSigner, Identity
from hwsign.errors import Disconnected
from hwsign.handle import DeviceHandle
from hwsign.policy import RegistrationProof
from hwsign.psbt import (
    PSBT_GLOBAL_UNSIGNED_TX,
    PSBT_IN_BIP32_DERIVATION,
    PSBT_IN_WITNESS_UTXO,
    KeyOriginInfo,
    Psbt,
    PsbtInput,
    PsbtMap,
    PsbtOutput,
    Transaction,
    TxIn,
    TxOut,
)
from hwsign.transport import Transport

# secp256k1 generator, a valid compressed point
G_COMPRESSED = bytes.fromhex("0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798")

DEADBEEF = bytes.fromhex("deadbeef")
COSIGNER = bytes.fromhex("0badf00d")


# =========================================================================
# Scripted transport
# =========================================================================

class ScriptedTransport(Transport):
    """In-memory transport.

    Every ``send`` is recorded and handed to ``responder``; whatever the
    responder returns is queued for ``receive``.
    """

    def __init__(self, path: str = "mock:0", frame_size: Optional[int] = None,
                 responder: Optional[Callable[[bytes], Iterable[bytes]]] = None,
                 poll_interval: float = 0.01):
        super().__init__(path, poll_interval)
        self.frame_size = frame_size
        self.responder = responder
        self.sent: List[bytes] = []
        self.incoming: Deque[bytes] = deque()
        self._is_open = False
        self.fail_reads = False

    @property
    def is_open(self) -> bool:
        return self._is_open

    async def _open(self) -> None:
        self._is_open = True

    def _close(self) -> None:
        self._is_open = False

    async def send(self, data: bytes) -> None:
        if not self._is_open:
            raise Disconnected("Transport not open")
        self.sent.append(bytes(data))
        if self.responder is not None:
            for reply in self.responder(bytes(data)) or ():
                self.incoming.append(reply)

    async def _read_available(self) -> bytes:
        if self.fail_reads:
            raise Disconnected("unplugged")
        if self.incoming:
            return self.incoming.popleft()
        return b""

    def queue(self, *chunks: bytes) -> None:
        self.incoming.extend(chunks)


@pytest.fixture(autouse=True)
def _release_claims():
    """Transports claim their path process-wide; start each test clean."""
    Transport._claimed.clear()
    yield
    Transport._claimed.clear()


@pytest.fixture
def transport():
    return ScriptedTransport()


# =========================================================================
# Keys
# =========================================================================

def make_xpub(path: str = "m/84'/0'/0'", parent: bytes = b"\x01\x02\x03\x04",
              seed: int = 1, network: str = "mainnet") -> ExtendedPublicKey:
    """A syntactically valid xpub; key material is not meaningful."""
    parsed = DerivationPath.parse(path)
    child = parsed.indices[-1] if parsed.indices else 0
    return ExtendedPublicKey(XPUB_VERSIONS[network], len(parsed), parent, child,
                             bytes([seed]) * 32, G_COMPRESSED, parsed)


def pubkey(seed: int) -> bytes:
    return bytes([0x02]) + bytes([seed]) * 32


# =========================================================================
# PSBTs
# =========================================================================

P2WSH_SCRIPT = b"\x00\x20" + b"\x55" * 32


def make_psbt(n_inputs: int = 1, derivations: Optional[List[tuple]] = None,
              with_utxo: bool = True) -> Psbt:
    """PSBTv0 spending *n_inputs* fake outpoints to one output.

    Args:
        derivations: ``(pubkey, fingerprint, path)`` added to every input.
    """
    tx = Transaction(2, [TxIn(bytes([i + 1]) * 32, i) for i in range(n_inputs)],
                     [TxOut(90_000, P2WSH_SCRIPT)], 0)
    global_map = PsbtMap({bytes([PSBT_GLOBAL_UNSIGNED_TX]): tx.serialize()})
    inputs = []
    for _ in range(n_inputs):
        m = PsbtInput()
        if with_utxo:
            m[bytes([PSBT_IN_WITNESS_UTXO])] = TxOut(100_000, P2WSH_SCRIPT).serialize()
        for key, fingerprint, path in derivations or ():
            info = KeyOriginInfo(fingerprint, DerivationPath.parse(path))
            m[bytes([PSBT_IN_BIP32_DERIVATION]) + key] = info.serialize()
        inputs.append(m)
    return Psbt(global_map, inputs, [PsbtOutput()])


def der_signature(seed: int) -> bytes:
    """Placeholder DER-shaped signature with a SIGHASH_ALL byte."""
    r = bytes([seed]) * 32
    s = bytes([seed ^ 0xFF]) * 32
    body = b"\x02\x20" + r + b"\x02\x20" + s
    return b"\x30" + bytes([len(body)]) + body + b"\x01"


def hardened(*steps: int) -> List[int]:
    return [s | HARDENED for s in steps]


def u32le(value: int) -> bytes:
    return struct.pack("<I", value)


# =========================================================================
# Scripted adapter
# =========================================================================

class FakeSigner(HardwareSigner):
    """Adapter double with controllable failures.

    ``display_address`` waits for a line on the transport, so tests can
    hold it pending and exercise cancellation and timeouts.
    """

    kind = DeviceKind.LEDGER

    def __init__(self, transport: Transport, version: Version = Version(2, 1, 3),
                 fingerprint: bytes = DEADBEEF):
        super().__init__(transport)
        self.version = version
        self.fingerprint = fingerprint
        self.failures: Deque[Exception] = deque()
        self.calls: List[str] = []
        self.drains = 0
        self.active = 0
        self.max_active = 0
        self.delay = 0.0
        self.signed_inputs: List[Psbt] = []

    async def _enter(self, name: str) -> None:
        self.calls.append(name)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.failures:
                raise self.failures.popleft()
        finally:
            self.active -= 1

    async def identify(self) -> Identity:
        await self._enter("identify")
        return Identity(kind=self.kind, version=self.version, fingerprint=self.fingerprint,
                        path=self.transport.path)

    async def get_master_fingerprint(self) -> bytes:
        await self._enter("get_master_fingerprint")
        return self.fingerprint

    async def get_extended_pubkey(self, path, display=False):
        await self._enter("get_extended_pubkey")
        return make_xpub(str(path))

    async def register_wallet(self, policy):
        await self._enter("register_wallet")
        return RegistrationProof(policy.policy_id, self.fingerprint, "ledger", b"\x33" * 32, policy.name)

    async def display_address(self, target):
        await self._enter("display_address")
        return (await self.transport.receive()).decode()

    async def sign_tx(self, psbt, policy=None, proof=None):
        await self._enter("sign_tx")
        self.signed_inputs.append(psbt)
        psbt.inputs[0].add_partial_sig(pubkey(9), der_signature(9))
        return psbt

    async def drain(self) -> int:
        self.drains += 1
        return await self.transport.drain(quiet=0.01)


async def make_handle(path: str = "mock:handle", config: Optional[DiscoveryConfig] = None,
                      **kwargs) -> DeviceHandle:
    transport = ScriptedTransport(path, poll_interval=0.005)
    await transport.open()
    adapter = FakeSigner(transport, **kwargs)
    identity = Identity(kind=adapter.kind, version=adapter.version,
                        fingerprint=adapter.fingerprint, path=path)
    return DeviceHandle(adapter, identity, config)
