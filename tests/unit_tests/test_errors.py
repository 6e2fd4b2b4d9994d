"""
Unit tests for the error taxonomy and exit codes.
"""

import unittest

from sdpctl.errors import (
    APIError,
    CanceledByContext,
    ControllerOfflineError,
    ExitCode,
    FieldError,
    MultiError,
    NothingToPrepareError,
    TransportError,
    UpgradeFailedError,
    exit_code_for,
)


class TestErrors(unittest.TestCase):
    """Test error formatting and exit code mapping."""

    def test_api_error_format(self):
        """Test APIError includes status, code, field errors and request id."""
        err = APIError(
            500,
            "internal error",
            code="server-error",
            field_errors=[FieldError("name", "is required")],
            request_id="req-1",
        )
        text = str(err)
        self.assertIn("HTTP 500 server-error: internal error", text)
        self.assertIn("name: is required", text)
        self.assertIn("req-1", text)

    def test_upgrade_failed_message(self):
        err = UpgradeFailedError("gw1", "never switched partition")
        self.assertEqual(str(err), "upgrade failed on gw1: never switched partition")
        self.assertEqual(err.appliance, "gw1")

    def test_exit_codes(self):
        """Test each error category has its own exit code."""
        self.assertEqual(exit_code_for(None), ExitCode.OK)
        self.assertEqual(exit_code_for(ValueError("x")), ExitCode.GENERAL)
        self.assertEqual(exit_code_for(KeyboardInterrupt()), ExitCode.CANCELED)
        self.assertEqual(exit_code_for(NothingToPrepareError("x")), ExitCode.PLAN_EMPTY)
        self.assertEqual(exit_code_for(ControllerOfflineError("x")), ExitCode.CONTROLLER_FATAL)
        self.assertEqual(exit_code_for(TransportError("x")), ExitCode.TRANSPORT)

    def test_multi_error_flattens(self):
        """Test nested aggregates are flattened."""
        inner = MultiError([TransportError("a"), TransportError("b")])
        outer = MultiError([inner, UpgradeFailedError("gw1", "boom")])
        self.assertEqual(len(outer), 3)
        self.assertIn("3 errors occurred", str(outer))

    def test_multi_error_or_none(self):
        self.assertIsNone(MultiError().error_or_none())
        single = TransportError("a")
        self.assertIs(MultiError([single]).error_or_none(), single)

    def test_multi_error_exit_code_precedence(self):
        """Test the most severe category wins."""
        err = MultiError([TransportError("a"), UpgradeFailedError("gw1", "x")])
        self.assertEqual(err.exit_code, ExitCode.APPLIANCE_FAILED)
        err.append(CanceledByContext())
        self.assertEqual(exit_code_for(err), ExitCode.CANCELED)


if __name__ == "__main__":
    unittest.main()
