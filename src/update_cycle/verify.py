"""Outcome verification of the updated client."""

from __future__ import annotations

from dataclasses import dataclass

from update_cycle.errors import VerificationError


@dataclass(frozen=True)
class UpdateOutcome:
    """Captured client output and whether it shows the expected version."""

    output: str
    expected: str
    passed: bool

    def raise_for_failure(self) -> None:
        """Raise VerificationError unless the outcome passed."""
        if not self.passed:
            raise VerificationError(
                f"Client output does not contain '{self.expected}'",
                details={"expected": self.expected, "output": self.output[-500:]},
            )


def expected_marker(app_name: str, version: str = "2.0") -> str:
    """Text an updated client prints, e.g. 'my_app 2.0'."""
    return f"{app_name} {version}"


def verify(output: str, app_name: str, version: str = "2.0") -> UpdateOutcome:
    """
    Check client output for the updated version marker.

    >>> verify("my_app 2.0\\n", "my_app").passed
    True
    >>> verify("my_app 1.0\\n", "my_app").passed
    False
    """
    expected = expected_marker(app_name, version)
    return UpdateOutcome(output=output, expected=expected, passed=expected in output)
