"""Tests for the error taxonomy."""

import unittest

from hwsign.errors import (
    Cancelled,
    DeviceNotFound,
    Disconnected,
    ErrorKind,
    FrameError,
    HWIError,
    MergeConflict,
    PairingRequired,
    PolicyMismatch,
    ProtocolError,
    Timeout,
    Unsupported,
    UserRejected,
)


class TestKinds(unittest.TestCase):

    def test_every_class_has_its_kind(self):
        expected = {
            DeviceNotFound: ErrorKind.DEVICE_NOT_FOUND,
            Disconnected: ErrorKind.DISCONNECTED,
            Timeout: ErrorKind.TIMEOUT,
            UserRejected: ErrorKind.USER_REJECTED,
            Unsupported: ErrorKind.UNSUPPORTED,
            ProtocolError: ErrorKind.PROTOCOL_ERROR,
            PolicyMismatch: ErrorKind.POLICY_MISMATCH,
            PairingRequired: ErrorKind.PAIRING_REQUIRED,
        }
        for cls, kind in expected.items():
            self.assertEqual(cls().kind, kind, cls.__name__)

    def test_merge_conflict_is_protocol_error(self):
        self.assertIsInstance(MergeConflict(), ProtocolError)
        self.assertEqual(MergeConflict().kind, ErrorKind.PROTOCOL_ERROR)

    def test_cancelled_is_timeout(self):
        self.assertIsInstance(Cancelled(), Timeout)

    def test_only_frame_errors_retry(self):
        self.assertTrue(FrameError().retryable)
        for cls in (UserRejected, PolicyMismatch, ProtocolError, Timeout, Disconnected):
            self.assertFalse(cls().retryable, cls.__name__)


class TestContext(unittest.TestCase):

    def test_with_context_fills_missing(self):
        err = UserRejected("denied").with_context("Ledger at hid:1", "sign_tx")
        self.assertEqual(err.device, "Ledger at hid:1")
        self.assertEqual(err.operation, "sign_tx")

    def test_with_context_keeps_adapter_values(self):
        err = ProtocolError("bad", operation="identify")
        err.with_context("dev", "sign_tx")
        self.assertEqual(err.operation, "identify")
        self.assertEqual(err.device, "dev")

    def test_str_includes_context(self):
        err = Timeout("No answer within 10s", device="Jade at /dev/ttyUSB0",
                      operation="get_master_fingerprint")
        text = str(err)
        self.assertTrue(text.startswith("get_master_fingerprint:"))
        self.assertIn("No answer within 10s", text)
        self.assertIn("[Jade at /dev/ttyUSB0]", text)

    def test_str_without_message_uses_kind(self):
        self.assertEqual(str(Unsupported()), "unsupported")

    def test_all_are_hwi_errors(self):
        for cls in (DeviceNotFound, Disconnected, Timeout, Cancelled, UserRejected,
                    Unsupported, ProtocolError, FrameError, MergeConflict,
                    PolicyMismatch, PairingRequired):
            self.assertTrue(issubclass(cls, HWIError))


if __name__ == "__main__":
    unittest.main()
