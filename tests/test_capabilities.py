"""Tests for capabilities – device kinds, firmware gates and requirements."""

import unittest

from hwsign.bip32 import DerivationPath
from hwsign.capabilities import (
    Capability,
    DeviceKind,
    Version,
    capabilities_for,
    minimum_version,
    parse_version,
    policy_capabilities,
    script_capability,
)


class TestDeviceKind(unittest.TestCase):

    def test_simulator_shares_vendor(self):
        self.assertEqual(DeviceKind.LEDGER_SIMULATOR.vendor, "ledger")
        self.assertEqual(DeviceKind.JADE_SIMULATOR.vendor, "jade")
        self.assertEqual(DeviceKind.COLDCARD.vendor, "coldcard")


class TestParseVersion(unittest.TestCase):

    def test_plain(self):
        self.assertEqual(parse_version("2.1.3"), Version(2, 1, 3))

    def test_v_prefix_and_missing_patch(self):
        self.assertEqual(parse_version("v1.0"), Version(1, 0, 0))

    def test_embedded(self):
        self.assertEqual(parse_version("Bitcoin 2.1.3"), Version(2, 1, 3))

    def test_suffix_kept_as_prerelease(self):
        v = parse_version("6.2.1X")
        self.assertEqual(v, Version(6, 2, 1))
        self.assertEqual(v.prerelease, "X")
        self.assertEqual(str(parse_version("2.1.0-rc1")), "2.1.0-rc1")

    def test_garbage(self):
        with self.assertRaises(ValueError):
            parse_version("unknown")

    def test_ordering(self):
        self.assertLess(Version(1, 0, 29), Version(1, 0, 30))
        self.assertLess(Version(0, 9, 99), Version(1, 0, 0))


class TestGates(unittest.TestCase):

    def test_unknown_version_has_nothing(self):
        self.assertEqual(capabilities_for(DeviceKind.LEDGER, None), Capability.NONE)

    def test_old_ledger_app(self):
        self.assertEqual(capabilities_for(DeviceKind.LEDGER, Version(1, 6, 5)), Capability.NONE)

    def test_ledger_signing_needs_2_1(self):
        caps = capabilities_for(DeviceKind.LEDGER, Version(2, 0, 6))
        self.assertIn(Capability.REGISTER_WALLET, caps)
        self.assertNotIn(Capability.SIGN_PSBT, caps)
        self.assertIn(Capability.SIGN_PSBT, capabilities_for(DeviceKind.LEDGER, Version(2, 1, 0)))

    def test_simulator_matches_device(self):
        v = Version(2, 2, 1)
        self.assertEqual(capabilities_for(DeviceKind.LEDGER_SIMULATOR, v),
                         capabilities_for(DeviceKind.LEDGER, v))

    def test_jade_taproot(self):
        self.assertNotIn(Capability.TAPROOT, capabilities_for(DeviceKind.JADE, Version(1, 0, 29)))
        self.assertIn(Capability.TAPROOT, capabilities_for(DeviceKind.JADE, Version(1, 0, 30)))

    def test_coldcard_registration_needs_6(self):
        self.assertNotIn(Capability.REGISTER_WALLET,
                         capabilities_for(DeviceKind.COLDCARD, Version(5, 4, 0)))
        self.assertIn(Capability.MULTISIG, capabilities_for(DeviceKind.COLDCARD, Version(5, 4, 0)))

    def test_specter_no_taproot(self):
        caps = capabilities_for(DeviceKind.SPECTER, Version(0, 0, 0))
        self.assertIn(Capability.REGISTER_WALLET, caps)
        self.assertNotIn(Capability.TAPROOT, caps)

    def test_minimum_version(self):
        self.assertEqual(minimum_version(DeviceKind.JADE, Capability.TAPROOT), Version(1, 0, 30))
        self.assertIsNone(minimum_version(DeviceKind.SPECTER, Capability.TAPROOT))

    def test_minimum_version_of_combined_flags(self):
        self.assertEqual(minimum_version(DeviceKind.JADE, Capability.MULTISIG | Capability.TAPROOT),
                         Version(1, 0, 30))
        self.assertEqual(minimum_version(DeviceKind.LEDGER, Capability.GET_XPUB | Capability.SIGN_PSBT),
                         Version(2, 1, 0))
        self.assertIsNone(minimum_version(DeviceKind.SPECTER, Capability.MULTISIG | Capability.TAPROOT))


class TestRequirements(unittest.TestCase):

    def test_script_capability(self):
        for path, cap in [("m/44'/0'/0'", Capability.LEGACY),
                          ("m/49'/0'/0'", Capability.NESTED_SEGWIT),
                          ("m/84'/0'/0'/0/1", Capability.NATIVE_SEGWIT),
                          ("m/86'/0'/0'", Capability.TAPROOT),
                          ("m/48'/0'/0'/2'", Capability.MULTISIG),
                          ("m/0'/7", Capability.ARBITRARY_DERIVATION)]:
            self.assertEqual(script_capability(DerivationPath.parse(path)), cap, path)

    def test_multisig_template(self):
        self.assertEqual(policy_capabilities("wsh(sortedmulti(2,@0/**,@1/**))"),
                         Capability.MULTISIG | Capability.NATIVE_SEGWIT)

    def test_nested_single_sig(self):
        self.assertEqual(policy_capabilities("sh(wpkh(@0/**))"), Capability.NESTED_SEGWIT)

    def test_legacy(self):
        self.assertEqual(policy_capabilities("pkh(@0/**)"), Capability.LEGACY)

    def test_taproot(self):
        self.assertEqual(policy_capabilities("tr(@0/**)"), Capability.TAPROOT)

    def test_miniscript(self):
        needed = policy_capabilities("wsh(and_v(v:pk(@0/**),older(1000)))")
        self.assertIn(Capability.MINISCRIPT, needed)
        self.assertNotIn(Capability.MULTISIG, needed)


if __name__ == "__main__":
    unittest.main()
