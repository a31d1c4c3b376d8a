"""
Version marker mutation for the second release.

The sample application reads its version from a single assignment in its
settings module (APP_VERSION = '1.0'). Before the new release is built the
literal is rewritten, and afterwards the file is restored byte for byte.
The settings file lives in the real source tree, outside the working
directories, so bumped() guarantees the restore on every exit path.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from update_cycle.errors import FailedPreconditionError
from update_cycle.logging import get_logger

logger = get_logger(__name__)


def _marker_pattern(variable: str, version: str) -> re.Pattern[str]:
    return re.compile(
        rf"^(\s*{re.escape(variable)}\s*=\s*)(['\"]){re.escape(version)}\2",
        re.MULTILINE,
    )


def has_version(text: str, version: str, variable: str = "APP_VERSION") -> bool:
    """Return True if the marker line currently holds the given version."""
    return _marker_pattern(variable, version).search(text) is not None


def replace_version(
    text: str,
    old: str,
    new: str,
    variable: str = "APP_VERSION",
) -> str:
    """
    Rewrite the version literal on the marker line.

    Only the first `<variable> = '<old>'` assignment is touched; the quote
    style and everything else in the text are preserved.

    Raises:
        FailedPreconditionError: If no marker line holds the old version.
    """
    pattern = _marker_pattern(variable, old)
    new_text, count = pattern.subn(
        lambda m: f"{m.group(1)}{m.group(2)}{new}{m.group(2)}", text, count=1
    )
    if count == 0:
        raise FailedPreconditionError(
            f"Version marker {variable} = '{old}' not found",
            details={"variable": variable, "version": old},
        )
    return new_text


class VersionMarker:
    """
    Bump/rollback pair for the version marker in one source file.

    Attributes:
        path: The settings source file.
        old_version: Version found in the file before the bump.
        new_version: Version written by the bump.
        variable: Name of the version variable.
    """

    def __init__(
        self,
        path: Path,
        old_version: str = "1.0",
        new_version: str = "2.0",
        variable: str = "APP_VERSION",
    ) -> None:
        self.path = Path(path)
        self.old_version = old_version
        self.new_version = new_version
        self.variable = variable
        self._original: bytes | None = None

    @property
    def is_bumped(self) -> bool:
        """True between a successful bump() and the matching rollback()."""
        return self._original is not None

    def _read(self) -> bytes:
        try:
            return self.path.read_bytes()
        except OSError as e:
            raise FailedPreconditionError(
                f"Cannot read settings file: {self.path}",
                details={"path": str(self.path), "error": str(e)},
            ) from e

    def _write(self, data: bytes) -> None:
        try:
            self.path.write_bytes(data)
        except OSError as e:
            raise FailedPreconditionError(
                f"Cannot write settings file: {self.path}",
                details={"path": str(self.path), "error": str(e)},
            ) from e

    def bump(self) -> None:
        """
        Rewrite the marker from old_version to new_version.

        Raises:
            FailedPreconditionError: If already bumped, or the file cannot be
                read, written or does not contain the marker.
        """
        if self.is_bumped:
            raise FailedPreconditionError(
                "Version marker is already bumped",
                details={"path": str(self.path)},
            )
        original = self._read()
        # Bytes round-trip, so line endings are preserved
        text = original.decode("utf-8")
        bumped = replace_version(text, self.old_version, self.new_version, self.variable)
        self._write(bumped.encode("utf-8"))
        self._original = original
        logger.info(
            f"Bumped {self.variable} to {self.new_version}",
            extra={"path": str(self.path)},
        )

    def rollback(self) -> bool:
        """
        Restore the marker to old_version.

        After a bump the original bytes are written back. Without a bump the
        inverse substitution is applied only if the file is in the bumped
        state, so the call is safe on every exit path.

        Returns:
            True if the file was changed.
        """
        if self._original is not None:
            self._write(self._original)
            self._original = None
            logger.info(
                f"Rolled {self.variable} back to {self.old_version}",
                extra={"path": str(self.path)},
            )
            return True

        if not self.path.exists():
            return False
        text = self._read().decode("utf-8")
        if not has_version(text, self.new_version, self.variable):
            return False
        restored = replace_version(text, self.new_version, self.old_version, self.variable)
        self._write(restored.encode("utf-8"))
        logger.warning(
            f"Found {self.variable} left at {self.new_version}, restored {self.old_version}",
            extra={"path": str(self.path)},
        )
        return True

    @contextmanager
    def bumped(self) -> Iterator[VersionMarker]:
        """
        Bump on entry and roll back on every exit path.

        For callers that build outside UpdateCyclePipeline (a one-off v2
        rebuild, say). The pipeline cannot hold one `with` block across its
        separate BUMP_V2 and ROLLBACK_V1 stages, so it calls bump() and
        rollback() directly and repeats rollback() in its finally block.
        """
        self.bump()
        try:
            yield self
        finally:
            self.rollback()
