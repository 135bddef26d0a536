"""Tests for serve error taxonomy payloads."""

import unittest

from serveman.errors import (
    NoPortAvailableError,
    ProcessExitedUnexpectedlyError,
    ReadinessTimeoutError,
    ServeError,
    SpawnFailureError,
)


class ErrorTaxonomyTests(unittest.TestCase):
    """Ensure every error carries a stable class/code pair."""

    def test_codes_are_stable(self) -> None:
        cases = [
            (NoPortAvailableError(14097, 14099), "port_allocation", "PORT_RANGE_EXHAUSTED"),
            (SpawnFailureError("/proj/a", ["opencode"], "not found"), "process", "SPAWN_FAILED"),
            (ReadinessTimeoutError(14097, 10.0), "readiness", "READINESS_TIMEOUT"),
            (ProcessExitedUnexpectedlyError("/proj/a", 14097, 1), "process", "PROCESS_EXITED"),
        ]
        for error, error_class, error_code in cases:
            with self.subTest(error_code=error_code):
                self.assertIsInstance(error, ServeError)
                self.assertEqual(error.error_class, error_class)
                self.assertEqual(error.error_code, error_code)

    def test_payload_includes_schema_and_message(self) -> None:
        payload = NoPortAvailableError(14097, 14099).to_payload()
        self.assertEqual(payload["error_schema_version"], "error.v1")
        self.assertEqual(payload["error_code"], "PORT_RANGE_EXHAUSTED")
        self.assertIn("14097-14099", payload["message"])

    def test_readiness_message_names_port_and_timeout(self) -> None:
        message = str(ReadinessTimeoutError(14098, 2.5))
        self.assertIn("14098", message)
        self.assertIn("2.5s", message)


if __name__ == "__main__":
    unittest.main()
