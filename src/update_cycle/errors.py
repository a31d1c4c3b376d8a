"""
Error types for the update cycle orchestrator.

This module defines the UpdateCycleError base class and its subclasses.
Stages raise these errors instead of returning ad-hoc status codes; the
pipeline driver catches them and turns them into failed stage results.
"""

from __future__ import annotations

from typing import Any


class UpdateCycleError(Exception):
    """
    Base exception class for orchestrator errors.

    Attributes:
        error_code: Internal error code string (e.g., "external_process_failure",
            "unsupported_platform", "verification_failure").
        message: Human-readable error message.
        details: Optional structured details (command, paths, exit status).

    Example:
        >>> raise UpdateCycleError(
        ...     error_code="failed_precondition",
        ...     message="Version marker not found",
        ...     details={"path": "src/myapp/settings.py"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize an UpdateCycleError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for logging.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ExternalProcessError(UpdateCycleError):
    """
    Error raised when an external collaborator fails.

    Covers non-zero exit status, timeouts and commands that cannot be
    executed at all. Always fatal for the run.
    """

    def __init__(
        self,
        message: str,
        *,
        command: list[str] | None = None,
        returncode: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize an ExternalProcessError."""
        merged = dict(details or {})
        if command is not None:
            merged.setdefault("command", " ".join(command))
        if returncode is not None:
            merged.setdefault("returncode", returncode)
        super().__init__(
            error_code="external_process_failure", message=message, details=merged
        )
        self.command = command
        self.returncode = returncode


class UnsupportedPlatformError(UpdateCycleError):
    """Error raised at startup when the host platform has no path defaults."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnsupportedPlatformError."""
        super().__init__(
            error_code="unsupported_platform", message=message, details=details
        )


class UnsafeDeletionTargetError(UpdateCycleError):
    """
    Error raised when a directory does not end with the application name.

    Never fatal: the environment manager logs it and skips the path.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnsafeDeletionTargetError."""
        super().__init__(
            error_code="unsafe_deletion_target", message=message, details=details
        )


class VerificationError(UpdateCycleError):
    """Error raised when the client output lacks the expected version marker."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a VerificationError."""
        super().__init__(
            error_code="verification_failure", message=message, details=details
        )


class FailedPreconditionError(UpdateCycleError):
    """
    Error raised when a precondition for a stage is not met.

    Used for missing files, a missing version marker and filesystem errors.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )
