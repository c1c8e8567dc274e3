"""
BIP174 / BIP370 partially signed transactions.

Parses and serializes PSBT version 0 and version 2, keeps every raw
key/value pair so unknown and proprietary fields round-trip, and
implements the signature combiner used by the signing orchestrator.

Only structure is checked here.  Signatures are carried, never
verified.
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
import struct
from dataclasses import dataclass, field
from hashlib import sha256
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

from .bip32 import DerivationPath
from .errors import MergeConflict, ProtocolError

log = logging.getLogger(__name__)

PSBT_MAGIC = b"psbt\xff"

# =========================================================================
# Key types
# =========================================================================

PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_GLOBAL_XPUB = 0x01
PSBT_GLOBAL_TX_VERSION = 0x02
PSBT_GLOBAL_FALLBACK_LOCKTIME = 0x03
PSBT_GLOBAL_INPUT_COUNT = 0x04
PSBT_GLOBAL_OUTPUT_COUNT = 0x05
PSBT_GLOBAL_TX_MODIFIABLE = 0x06
PSBT_GLOBAL_VERSION = 0xFB

PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_BIP32_DERIVATION = 0x06
PSBT_IN_FINAL_SCRIPTSIG = 0x07
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08
PSBT_IN_PREVIOUS_TXID = 0x0E
PSBT_IN_OUTPUT_INDEX = 0x0F
PSBT_IN_SEQUENCE = 0x10
PSBT_IN_TAP_KEY_SIG = 0x13
PSBT_IN_TAP_SCRIPT_SIG = 0x14
PSBT_IN_TAP_BIP32_DERIVATION = 0x16

PSBT_OUT_BIP32_DERIVATION = 0x02
PSBT_OUT_AMOUNT = 0x03
PSBT_OUT_SCRIPT = 0x04
PSBT_OUT_TAP_BIP32_DERIVATION = 0x07

# Entries a signer adds; the combiner only ever moves these.
SIGNATURE_KEY_TYPES = frozenset({PSBT_IN_PARTIAL_SIG, PSBT_IN_TAP_KEY_SIG, PSBT_IN_TAP_SCRIPT_SIG})


# =========================================================================
# Serialization helpers
# =========================================================================

def write_compact_size(n: int) -> bytes:
    if n < 0:
        raise ValueError("compact size must be non-negative")
    if n < 0xFD:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", n)
    if n <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", n)
    return b"\xff" + struct.pack("<Q", n)


def _read(stream: io.BytesIO, n: int) -> bytes:
    data = stream.read(n)
    if len(data) != n:
        raise ProtocolError(f"Unexpected end of data: wanted {n} bytes, got {len(data)}")
    return data


def read_compact_size(stream: io.BytesIO) -> int:
    first = _read(stream, 1)[0]
    if first < 0xFD:
        return first
    if first == 0xFD:
        return struct.unpack("<H", _read(stream, 2))[0]
    if first == 0xFE:
        return struct.unpack("<I", _read(stream, 4))[0]
    return struct.unpack("<Q", _read(stream, 8))[0]


def _read_bytes(stream: io.BytesIO) -> bytes:
    return _read(stream, read_compact_size(stream))


def _write_bytes(data: bytes) -> bytes:
    return write_compact_size(len(data)) + data


def hash256(data: bytes) -> bytes:
    return sha256(sha256(data).digest()).digest()


# =========================================================================
# Transactions
# =========================================================================

@dataclass
class TxIn:
    txid: bytes  # internal byte order
    vout: int
    script_sig: bytes = b""
    sequence: int = 0xFFFFFFFF


@dataclass
class TxOut:
    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return struct.pack("<q", self.value) + _write_bytes(self.script_pubkey)

    @classmethod
    def parse(cls, data: bytes) -> TxOut:
        stream = io.BytesIO(data)
        (value,) = struct.unpack("<q", _read(stream, 8))
        return cls(value, _read_bytes(stream))


@dataclass
class Transaction:
    version: int = 2
    inputs: List[TxIn] = field(default_factory=list)
    outputs: List[TxOut] = field(default_factory=list)
    locktime: int = 0

    @classmethod
    def parse(cls, data: bytes) -> Transaction:
        stream = io.BytesIO(data)
        (version,) = struct.unpack("<i", _read(stream, 4))
        n_inputs = read_compact_size(stream)
        segwit = False
        if n_inputs == 0:
            flag = _read(stream, 1)[0]
            if flag != 1:
                raise ProtocolError("Bad segwit flag in transaction")
            segwit = True
            n_inputs = read_compact_size(stream)
        inputs = []
        for _ in range(n_inputs):
            txid = _read(stream, 32)
            (vout,) = struct.unpack("<I", _read(stream, 4))
            script_sig = _read_bytes(stream)
            (sequence,) = struct.unpack("<I", _read(stream, 4))
            inputs.append(TxIn(txid, vout, script_sig, sequence))
        outputs = []
        for _ in range(read_compact_size(stream)):
            (value,) = struct.unpack("<q", _read(stream, 8))
            outputs.append(TxOut(value, _read_bytes(stream)))
        if segwit:
            # witnesses are not needed for txid or amounts
            for _ in range(n_inputs):
                for _ in range(read_compact_size(stream)):
                    _read_bytes(stream)
        (locktime,) = struct.unpack("<I", _read(stream, 4))
        if stream.read(1):
            raise ProtocolError("Trailing bytes after transaction")
        return cls(version, inputs, outputs, locktime)

    def serialize(self) -> bytes:
        parts = [struct.pack("<i", self.version), write_compact_size(len(self.inputs))]
        for txin in self.inputs:
            parts.append(txin.txid + struct.pack("<I", txin.vout)
                         + _write_bytes(txin.script_sig) + struct.pack("<I", txin.sequence))
        parts.append(write_compact_size(len(self.outputs)))
        parts.extend(out.serialize() for out in self.outputs)
        parts.append(struct.pack("<I", self.locktime))
        return b"".join(parts)

    def txid(self) -> bytes:
        """Transaction id in internal byte order."""
        return hash256(self.serialize())


# =========================================================================
# Key/value maps
# =========================================================================

@dataclass(frozen=True)
class KeyOriginInfo:
    fingerprint: bytes
    path: DerivationPath

    @classmethod
    def parse(cls, value: bytes) -> KeyOriginInfo:
        if len(value) < 4 or len(value) % 4:
            raise ProtocolError("Bad key origin length")
        indices = struct.unpack(f"<{len(value) // 4 - 1}I", value[4:])
        return cls(value[:4], DerivationPath(indices))

    def serialize(self) -> bytes:
        return self.fingerprint + b"".join(struct.pack("<I", i) for i in self.path.indices)


class PsbtMap:
    """Ordered raw key/value pairs of one PSBT map."""

    def __init__(self, entries: Optional[Dict[bytes, bytes]] = None):
        self.entries: Dict[bytes, bytes] = dict(entries or {})

    def __contains__(self, key: bytes) -> bool:
        return key in self.entries

    def __getitem__(self, key: bytes) -> bytes:
        return self.entries[key]

    def __setitem__(self, key: bytes, value: bytes) -> None:
        self.entries[key] = value

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[bytes]:
        return iter(self.entries)

    def items(self):
        return self.entries.items()

    def get(self, key: bytes, default=None):
        return self.entries.get(key, default)

    def pop(self, key: bytes, default=None):
        return self.entries.pop(key, default)

    def by_type(self, key_type: int) -> Dict[bytes, bytes]:
        """Entries of *key_type*, keyed by the key data after the type byte."""
        return {k[1:]: v for k, v in self.entries.items() if k and k[0] == key_type}

    def single(self, key_type: int) -> Optional[bytes]:
        return self.entries.get(bytes([key_type]))

    def copy(self):
        return type(self)(self.entries)

    @classmethod
    def parse(cls, stream: io.BytesIO):
        entries: Dict[bytes, bytes] = {}
        while True:
            key_len = read_compact_size(stream)
            if key_len == 0:
                break
            key = _read(stream, key_len)
            value = _read_bytes(stream)
            if key in entries:
                raise ProtocolError(f"Duplicate PSBT key {key.hex()}")
            entries[key] = value
        return cls(entries)

    def serialize(self) -> bytes:
        parts = [_write_bytes(k) + _write_bytes(v) for k, v in self.entries.items()]
        return b"".join(parts) + b"\x00"


class PsbtInput(PsbtMap):

    @property
    def witness_utxo(self) -> Optional[TxOut]:
        raw = self.single(PSBT_IN_WITNESS_UTXO)
        return TxOut.parse(raw) if raw is not None else None

    @property
    def non_witness_utxo(self) -> Optional[Transaction]:
        raw = self.single(PSBT_IN_NON_WITNESS_UTXO)
        return Transaction.parse(raw) if raw is not None else None

    @property
    def has_utxo(self) -> bool:
        return (bytes([PSBT_IN_WITNESS_UTXO]) in self
                or bytes([PSBT_IN_NON_WITNESS_UTXO]) in self)

    @property
    def partial_sigs(self) -> Dict[bytes, bytes]:
        return self.by_type(PSBT_IN_PARTIAL_SIG)

    @property
    def tap_key_sig(self) -> Optional[bytes]:
        return self.single(PSBT_IN_TAP_KEY_SIG)

    @property
    def tap_script_sigs(self) -> Dict[Tuple[bytes, bytes], bytes]:
        return {(k[:32], k[32:]): v for k, v in self.by_type(PSBT_IN_TAP_SCRIPT_SIG).items()}

    @property
    def bip32_derivations(self) -> Dict[bytes, KeyOriginInfo]:
        return {k: KeyOriginInfo.parse(v)
                for k, v in self.by_type(PSBT_IN_BIP32_DERIVATION).items()}

    @property
    def tap_bip32_derivations(self) -> Dict[bytes, KeyOriginInfo]:
        result = {}
        for xonly, value in self.by_type(PSBT_IN_TAP_BIP32_DERIVATION).items():
            stream = io.BytesIO(value)
            n_leaves = read_compact_size(stream)
            _read(stream, 32 * n_leaves)
            result[xonly] = KeyOriginInfo.parse(stream.read())
        return result

    def signatures(self) -> Dict[bytes, bytes]:
        """All signature entries, keyed by full raw key."""
        return {k: v for k, v in self.entries.items() if k and k[0] in SIGNATURE_KEY_TYPES}

    def add_partial_sig(self, pubkey: bytes, signature: bytes) -> None:
        self[bytes([PSBT_IN_PARTIAL_SIG]) + pubkey] = signature

    def add_tap_key_sig(self, signature: bytes) -> None:
        self[bytes([PSBT_IN_TAP_KEY_SIG])] = signature

    def add_tap_script_sig(self, xonly: bytes, leaf_hash: bytes, signature: bytes) -> None:
        self[bytes([PSBT_IN_TAP_SCRIPT_SIG]) + xonly + leaf_hash] = signature


class PsbtOutput(PsbtMap):

    @property
    def bip32_derivations(self) -> Dict[bytes, KeyOriginInfo]:
        return {k: KeyOriginInfo.parse(v)
                for k, v in self.by_type(PSBT_OUT_BIP32_DERIVATION).items()}


# =========================================================================
# PSBT
# =========================================================================

class Psbt:
    """A parsed PSBT (version 0 or 2)."""

    def __init__(self, global_map: PsbtMap, inputs: List[PsbtInput], outputs: List[PsbtOutput]):
        self.global_map = global_map
        self.inputs = inputs
        self.outputs = outputs

    # -- Parsing -------------------------------------------------------

    @classmethod
    def parse(cls, data: bytes) -> Psbt:
        if not data.startswith(PSBT_MAGIC):
            raise ProtocolError("Missing PSBT magic")
        stream = io.BytesIO(data[len(PSBT_MAGIC):])
        global_map = PsbtMap.parse(stream)

        version = _global_version(global_map)
        if version == 0:
            raw_tx = global_map.single(PSBT_GLOBAL_UNSIGNED_TX)
            if raw_tx is None:
                raise ProtocolError("PSBTv0 without unsigned transaction")
            tx = Transaction.parse(raw_tx)
            if any(txin.script_sig for txin in tx.inputs):
                raise ProtocolError("Unsigned transaction has non-empty scriptSig")
            n_inputs, n_outputs = len(tx.inputs), len(tx.outputs)
        elif version == 2:
            n_inputs = _global_count(global_map, PSBT_GLOBAL_INPUT_COUNT)
            n_outputs = _global_count(global_map, PSBT_GLOBAL_OUTPUT_COUNT)
        else:
            raise ProtocolError(f"Unsupported PSBT version {version}")

        inputs = [PsbtInput.parse(stream) for _ in range(n_inputs)]
        outputs = [PsbtOutput.parse(stream) for _ in range(n_outputs)]
        if stream.read(1):
            raise ProtocolError("Trailing bytes after PSBT")
        psbt = cls(global_map, inputs, outputs)
        log.debug("Parsed PSBTv%d: %d inputs, %d outputs", version, n_inputs, n_outputs)
        return psbt

    @classmethod
    def from_base64(cls, text: str) -> Psbt:
        try:
            raw = base64.b64decode(text.strip(), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ProtocolError("PSBT is not valid base64") from exc
        return cls.parse(raw)

    def serialize(self) -> bytes:
        parts = [PSBT_MAGIC, self.global_map.serialize()]
        parts.extend(m.serialize() for m in self.inputs)
        parts.extend(m.serialize() for m in self.outputs)
        return b"".join(parts)

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode("ascii")

    def copy(self) -> Psbt:
        return Psbt(self.global_map.copy(), [m.copy() for m in self.inputs],
                    [m.copy() for m in self.outputs])

    def __eq__(self, other) -> bool:
        return isinstance(other, Psbt) and self.serialize() == other.serialize()

    def __repr__(self) -> str:
        return f"Psbt(version={self.version}, inputs={len(self.inputs)}, outputs={len(self.outputs)})"

    # -- Transaction view ----------------------------------------------

    @property
    def version(self) -> int:
        return _global_version(self.global_map)

    @property
    def tx(self) -> Transaction:
        """The unsigned transaction (rebuilt from per-map fields for v2)."""
        if self.version == 0:
            return Transaction.parse(self.global_map.single(PSBT_GLOBAL_UNSIGNED_TX))
        tx_version = _unpack_field("<i", self.global_map.single(PSBT_GLOBAL_TX_VERSION),
                                   "Transaction version", 2)
        locktime = _unpack_field("<I", self.global_map.single(PSBT_GLOBAL_FALLBACK_LOCKTIME),
                                 "Fallback locktime", 0)
        inputs = []
        for index, m in enumerate(self.inputs):
            txid = m.single(PSBT_IN_PREVIOUS_TXID)
            vout = m.single(PSBT_IN_OUTPUT_INDEX)
            if txid is None or vout is None:
                raise ProtocolError(f"PSBTv2 input {index} lacks previous outpoint")
            if len(txid) != 32:
                raise ProtocolError(f"PSBTv2 input {index} previous txid is {len(txid)} bytes")
            inputs.append(TxIn(
                txid,
                _unpack_field("<I", vout, f"Input {index} output index"),
                b"",
                _unpack_field("<I", m.single(PSBT_IN_SEQUENCE), f"Input {index} sequence", 0xFFFFFFFF),
            ))
        outputs = []
        for index, m in enumerate(self.outputs):
            amount = m.single(PSBT_OUT_AMOUNT)
            script = m.single(PSBT_OUT_SCRIPT)
            if amount is None or script is None:
                raise ProtocolError(f"PSBTv2 output {index} lacks amount or script")
            outputs.append(TxOut(_unpack_field("<q", amount, f"Output {index} amount"), script))
        return Transaction(tx_version, inputs, outputs, locktime)

    def same_transaction(self, other: Psbt) -> bool:
        a, b = self.tx, other.tx
        return ([(i.txid, i.vout) for i in a.inputs] == [(i.txid, i.vout) for i in b.inputs]
                and a.outputs == b.outputs)

    def fingerprints(self) -> Set[bytes]:
        """Master fingerprints referenced by any input key origin."""
        found = set()
        for m in self.inputs:
            found.update(info.fingerprint for info in m.bip32_derivations.values())
            found.update(info.fingerprint for info in m.tap_bip32_derivations.values())
        return found

    def signature_count(self) -> int:
        return sum(len(m.signatures()) for m in self.inputs)

    # -- Validation ----------------------------------------------------

    def validate(self) -> None:
        """Check every input carries the UTXO data a signer needs.

        Raises:
            ProtocolError: Missing UTXO data, or a non-witness UTXO whose
                txid does not match the spent outpoint.
        """
        tx = self.tx
        for index, (m, txin) in enumerate(zip(self.inputs, tx.inputs)):
            if not m.has_utxo:
                raise ProtocolError(f"Input {index} has no witness or non-witness UTXO")
            prev = m.non_witness_utxo
            if prev is not None:
                if prev.txid() != txin.txid:
                    raise ProtocolError(f"Input {index} non-witness UTXO does not match outpoint")
                if txin.vout >= len(prev.outputs):
                    raise ProtocolError(f"Input {index} spends missing output {txin.vout}")

    # -- Conversion ----------------------------------------------------

    def to_v2(self) -> Psbt:
        """Return a PSBTv2 copy (devices such as Ledger only take v2)."""
        if self.version == 2:
            return self.copy()
        tx = self.tx
        g = PsbtMap()
        g[bytes([PSBT_GLOBAL_TX_VERSION])] = struct.pack("<i", tx.version)
        g[bytes([PSBT_GLOBAL_FALLBACK_LOCKTIME])] = struct.pack("<I", tx.locktime)
        g[bytes([PSBT_GLOBAL_INPUT_COUNT])] = write_compact_size(len(tx.inputs))
        g[bytes([PSBT_GLOBAL_OUTPUT_COUNT])] = write_compact_size(len(tx.outputs))
        for key, value in self.global_map.items():
            if key[0] not in (PSBT_GLOBAL_UNSIGNED_TX, PSBT_GLOBAL_VERSION):
                g[key] = value
        g[bytes([PSBT_GLOBAL_VERSION])] = struct.pack("<I", 2)

        inputs = []
        for m, txin in zip(self.inputs, tx.inputs):
            new = m.copy()
            new[bytes([PSBT_IN_PREVIOUS_TXID])] = txin.txid
            new[bytes([PSBT_IN_OUTPUT_INDEX])] = struct.pack("<I", txin.vout)
            new[bytes([PSBT_IN_SEQUENCE])] = struct.pack("<I", txin.sequence)
            inputs.append(new)
        outputs = []
        for m, txout in zip(self.outputs, tx.outputs):
            new = m.copy()
            new[bytes([PSBT_OUT_AMOUNT])] = struct.pack("<q", txout.value)
            new[bytes([PSBT_OUT_SCRIPT])] = txout.script_pubkey
            outputs.append(new)
        return Psbt(g, inputs, outputs)

    # -- Combining -----------------------------------------------------

    def combine(self, other: Psbt) -> Psbt:
        """Return a copy of this PSBT with *other*'s signatures merged in.

        Signatures for distinct keys are unioned; an identical signature
        for the same key is a no-op.  Nothing present here is removed.

        Raises:
            ProtocolError: The PSBTs describe different transactions.
            MergeConflict: Both carry different signatures for one key.
        """
        if len(self.inputs) != len(other.inputs) or not self.same_transaction(other):
            raise ProtocolError("Cannot combine PSBTs for different transactions")
        merged = self.copy()
        added = 0
        for index, (mine, theirs) in enumerate(zip(merged.inputs, other.inputs)):
            for key, signature in theirs.signatures().items():
                existing = mine.get(key)
                if existing is None:
                    mine[key] = signature
                    added += 1
                elif existing != signature:
                    raise MergeConflict(
                        f"Input {index} has conflicting signatures for key {key[1:].hex()}")
        log.debug("Combined PSBT: %d signature(s) added", added)
        return merged


def merge_psbts(psbts: Iterable[Psbt]) -> Psbt:
    """Fold :meth:`Psbt.combine` over several co-signer results."""
    iterator = iter(psbts)
    try:
        result = next(iterator)
    except StopIteration:
        raise ValueError("merge_psbts() needs at least one PSBT") from None
    for psbt in iterator:
        result = result.combine(psbt)
    return result


def _unpack_field(fmt: str, raw: Optional[bytes], what: str, default: Optional[int] = None) -> int:
    """Decode a fixed-width PSBTv2 value, or *default* when the field is absent."""
    if raw is None and default is not None:
        return default
    size = struct.calcsize(fmt)
    if raw is None or len(raw) != size:
        raise ProtocolError(f"{what} must be {size} bytes, got {0 if raw is None else len(raw)}")
    return struct.unpack(fmt, raw)[0]


def _global_version(global_map: PsbtMap) -> int:
    raw = global_map.single(PSBT_GLOBAL_VERSION)
    if raw is None:
        return 0
    if len(raw) != 4:
        raise ProtocolError("Bad PSBT version field")
    return struct.unpack("<I", raw)[0]


def _global_count(global_map: PsbtMap, key_type: int) -> int:
    raw = global_map.single(key_type)
    if raw is None:
        raise ProtocolError(f"PSBTv2 missing global field 0x{key_type:02x}")
    return read_compact_size(io.BytesIO(raw))
