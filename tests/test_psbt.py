"""Tests for PSBT parsing, validation, v2 conversion and the combiner."""

import base64

import pytest

from conftest import COSIGNER, DEADBEEF, der_signature, make_psbt, pubkey

from hwsign.bip32 import DerivationPath
from hwsign.errors import MergeConflict, ProtocolError
from hwsign.psbt import (
    PSBT_GLOBAL_FALLBACK_LOCKTIME,
    PSBT_GLOBAL_INPUT_COUNT,
    PSBT_GLOBAL_VERSION,
    PSBT_IN_NON_WITNESS_UTXO,
    PSBT_IN_OUTPUT_INDEX,
    PSBT_IN_PREVIOUS_TXID,
    PSBT_IN_SEQUENCE,
    PSBT_IN_SIGHASH_TYPE,
    PSBT_OUT_AMOUNT,
    Psbt,
    Transaction,
    TxIn,
    TxOut,
    merge_psbts,
    read_compact_size,
    write_compact_size,
)


def signed(psbt, seed, key_seed=None, index=0):
    out = psbt.copy()
    out.inputs[index].add_partial_sig(pubkey(key_seed or seed), der_signature(seed))
    return out


# =========================================================================
# Encoding
# =========================================================================

class TestCompactSize:

    @pytest.mark.parametrize("n,encoded", [
        (0, b"\x00"),
        (0xFC, b"\xfc"),
        (0xFD, b"\xfd\xfd\x00"),
        (0x10000, b"\xfe\x00\x00\x01\x00"),
    ])
    def test_encoding(self, n, encoded):
        assert write_compact_size(n) == encoded

    def test_read(self):
        import io
        assert read_compact_size(io.BytesIO(b"\xfd\x01\x02")) == 0x0201


class TestParse:

    def test_serialize_parse_preserves_unknown_fields(self):
        psbt = make_psbt()
        psbt.inputs[0][b"\xfc\x05proprietary"] = b"value"
        again = Psbt.parse(psbt.serialize())
        assert again == psbt
        assert again.inputs[0][b"\xfc\x05proprietary"] == b"value"

    def test_base64(self):
        psbt = make_psbt(2)
        assert Psbt.from_base64(psbt.to_base64()) == psbt

    def test_bad_magic(self):
        with pytest.raises(ProtocolError):
            Psbt.parse(b"notpsbt")

    def test_bad_base64(self):
        with pytest.raises(ProtocolError):
            Psbt.from_base64("!!!")

    def test_truncated(self):
        raw = make_psbt().serialize()
        with pytest.raises(ProtocolError):
            Psbt.parse(raw[:-3])

    def test_duplicate_key(self):
        raw = make_psbt().serialize()
        # duplicate the unsigned tx entry inside the global map
        magic, body = raw[:5], raw[5:]
        tx_entry_len = 1 + 1 + 1 + body[2]  # key len, key, value len (< 0xfd), value
        duplicated = magic + body[:tx_entry_len] + body
        with pytest.raises(ProtocolError):
            Psbt.parse(duplicated)

    def test_unknown_version_rejected(self):
        psbt = make_psbt()
        psbt.global_map[bytes([PSBT_GLOBAL_VERSION])] = b"\x07\x00\x00\x00"
        with pytest.raises(ProtocolError):
            Psbt.parse(psbt.serialize())


# =========================================================================
# Validation and conversion
# =========================================================================

class TestValidate:

    def test_valid(self):
        make_psbt(3).validate()

    def test_missing_utxo(self):
        with pytest.raises(ProtocolError, match="Input 0"):
            make_psbt(with_utxo=False).validate()

    def test_non_witness_utxo_must_match_outpoint(self):
        psbt = make_psbt()
        prev = Transaction(2, [TxIn(b"\x09" * 32, 0)], [TxOut(1, b"\x51")], 0)
        psbt.inputs[0][bytes([PSBT_IN_NON_WITNESS_UTXO])] = prev.serialize()
        with pytest.raises(ProtocolError, match="does not match"):
            psbt.validate()

    def test_v2_output_index_width(self):
        v2 = make_psbt().to_v2()
        v2.inputs[0][bytes([PSBT_IN_OUTPUT_INDEX])] = b"\x00\x00\x00"
        with pytest.raises(ProtocolError, match="output index"):
            v2.validate()

    @pytest.mark.parametrize("section,key_type,value", [
        ("input", PSBT_IN_SEQUENCE, b"\xff\xff"),
        ("output", PSBT_OUT_AMOUNT, b"\x01" * 7),
        ("global", PSBT_GLOBAL_FALLBACK_LOCKTIME, b"\x00" * 5),
    ])
    def test_v2_fixed_width_fields(self, section, key_type, value):
        v2 = make_psbt().to_v2()
        target = {"input": v2.inputs[0], "output": v2.outputs[0], "global": v2.global_map}[section]
        target[bytes([key_type])] = value
        with pytest.raises(ProtocolError, match="bytes"):
            v2.tx


class TestToV2:

    def test_fields_moved_into_maps(self):
        psbt = make_psbt(2)
        v2 = psbt.to_v2()
        assert v2.version == 2
        assert v2.global_map.single(PSBT_GLOBAL_INPUT_COUNT) == b"\x02"
        assert v2.inputs[1].single(PSBT_IN_PREVIOUS_TXID) == b"\x02" * 32
        assert v2.outputs[0].single(PSBT_OUT_AMOUNT) is not None

    def test_same_transaction_view(self):
        psbt = make_psbt(2)
        v2 = Psbt.parse(psbt.to_v2().serialize())
        assert v2.tx.serialize() == psbt.tx.serialize()
        assert v2.same_transaction(psbt)

    def test_original_untouched(self):
        psbt = make_psbt()
        before = psbt.serialize()
        psbt.to_v2()
        assert psbt.serialize() == before


class TestInspection:

    def test_fingerprints_and_derivations(self):
        path = "m/48'/0'/0'/2'/0/0"
        psbt = make_psbt(derivations=[(pubkey(1), DEADBEEF, path), (pubkey(2), COSIGNER, path)])
        assert psbt.fingerprints() == {DEADBEEF, COSIGNER}
        origin = psbt.inputs[0].bip32_derivations[pubkey(1)]
        assert origin.path == DerivationPath.parse(path)

    def test_signature_count(self):
        assert signed(signed(make_psbt(), 1), 2).signature_count() == 2


# =========================================================================
# Combiner
# =========================================================================

class TestCombine:

    def test_disjoint_keys_union(self):
        base = make_psbt()
        merged = signed(base, 1).combine(signed(base, 2))
        assert set(merged.inputs[0].partial_sigs) == {pubkey(1), pubkey(2)}

    def test_commutative(self):
        base = make_psbt()
        a, b = signed(base, 1), signed(base, 2)
        assert a.combine(b).inputs[0].signatures() == b.combine(a).inputs[0].signatures()

    def test_idempotent(self):
        a = signed(make_psbt(), 1)
        assert a.combine(a) == a

    def test_conflict_fails(self):
        base = make_psbt()
        a = signed(base, 1)
        b = signed(base, 9, key_seed=1)
        with pytest.raises(MergeConflict):
            a.combine(b)

    def test_conflict_is_protocol_error(self):
        base = make_psbt()
        with pytest.raises(ProtocolError):
            signed(base, 1).combine(signed(base, 3, key_seed=1))

    def test_different_transactions(self):
        with pytest.raises(ProtocolError, match="different transactions"):
            make_psbt(1).combine(make_psbt(2))

    def test_non_signature_fields_not_merged(self):
        base = make_psbt()
        other = base.copy()
        other.inputs[0][bytes([PSBT_IN_SIGHASH_TYPE])] = b"\x01\x00\x00\x00"
        assert bytes([PSBT_IN_SIGHASH_TYPE]) not in base.combine(other).inputs[0]

    def test_combine_does_not_mutate(self):
        base = make_psbt()
        before = base.serialize()
        base.combine(signed(base, 1))
        assert base.serialize() == before

    def test_taproot_signatures(self):
        base = make_psbt()
        a = base.copy()
        a.inputs[0].add_tap_key_sig(b"\x11" * 64)
        b = base.copy()
        b.inputs[0].add_tap_script_sig(b"\x22" * 32, b"\x33" * 32, b"\x44" * 64)
        merged = a.combine(b)
        assert merged.inputs[0].tap_key_sig == b"\x11" * 64
        assert merged.inputs[0].tap_script_sigs == {(b"\x22" * 32, b"\x33" * 32): b"\x44" * 64}

    def test_v0_and_v2_of_same_tx_combine(self):
        base = make_psbt()
        merged = signed(base, 1).combine(signed(base.to_v2(), 2))
        assert len(merged.inputs[0].partial_sigs) == 2
        assert merged.version == 0


class TestMergePsbts:

    def test_three_cosigners(self):
        base = make_psbt()
        merged = merge_psbts([signed(base, 1), signed(base, 2), signed(base, 3)])
        assert merged.signature_count() == 3

    def test_needs_one(self):
        with pytest.raises(ValueError):
            merge_psbts([])

    def test_base64_of_merge_decodes(self):
        base = make_psbt()
        merged = merge_psbts([signed(base, 1), signed(base, 2)])
        assert base64.b64decode(merged.to_base64()).startswith(b"psbt\xff")
