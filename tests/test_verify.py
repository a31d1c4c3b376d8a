"""
Tests for outcome verification.
"""

from __future__ import annotations

import pytest

from update_cycle.errors import VerificationError
from update_cycle.verify import expected_marker, verify


class TestVerify:
    """Tests for verify and UpdateOutcome."""

    def test_new_version_passes(self) -> None:
        """Test output from an updated client."""
        outcome = verify("Starting...\nmy_app 2.0\n", "my_app")
        assert outcome.passed is True
        assert outcome.expected == "my_app 2.0"
        outcome.raise_for_failure()

    @pytest.mark.parametrize("output", ["my_app 1.0\n", "", "my_app\n2.0\n", "other_app 2.0"])
    def test_other_output_fails(self, output: str) -> None:
        """Test that anything without the marker fails."""
        outcome = verify(output, "my_app")
        assert outcome.passed is False
        with pytest.raises(VerificationError, match="my_app 2.0"):
            outcome.raise_for_failure()

    def test_custom_version(self) -> None:
        """Test a different target version."""
        assert verify("my_app 3.1", "my_app", "3.1").passed is True

    def test_error_details(self) -> None:
        """Test that the failure carries the expected marker and output."""
        with pytest.raises(VerificationError) as exc_info:
            verify("my_app 1.0", "my_app").raise_for_failure()
        assert exc_info.value.error_code == "verification_failure"
        assert exc_info.value.details == {"expected": "my_app 2.0", "output": "my_app 1.0"}

    def test_expected_marker(self) -> None:
        """Test the marker format."""
        assert expected_marker("demo", "2.0") == "demo 2.0"
