"""
Client update driver.

The installed client is run twice: the first run checks the update server
and applies the update (it opens a console session the operator closes),
the second run only reports its version, which is captured for
verification.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from update_cycle.errors import FailedPreconditionError
from update_cycle.logging import get_logger
from update_cycle.process import run_command

if TYPE_CHECKING:
    from update_cycle.config import AppConfig

logger = get_logger(__name__)


class ClientDriver:
    """Runs the installed client executable."""

    def __init__(self, config: AppConfig) -> None:
        self.config = config

    @property
    def client_path(self) -> Path:
        """Full path of the installed client."""
        return self.config.client_path

    def _args(self) -> list[str]:
        path = self.client_path
        if not path.exists():
            raise FailedPreconditionError(
                f"Installed client not found: {path}",
                details={"client_path": str(path)},
            )
        return [str(path)]

    async def run_once(self) -> int:
        """
        Run the client in the foreground to trigger the update.

        The client inherits the terminal so the operator can interact with
        it.

        Returns:
            The exit status (always 0; failures raise).

        Raises:
            ExternalProcessError: If the client exits non-zero or times out.
        """
        result = await run_command(
            self._args(),
            stage="CLIENT_UPDATE",
            timeout=self.config.client.timeout_seconds,
            cwd=self.config.install_dir,
            capture_output=False,
        )
        return result.returncode

    async def run_and_capture(self) -> str:
        """
        Run the client again and capture its standard output.

        Raises:
            ExternalProcessError: If the client exits non-zero or times out.
        """
        result = await run_command(
            self._args(),
            stage="CLIENT_VERIFY_RUN",
            timeout=self.config.client.timeout_seconds,
            cwd=self.config.install_dir,
        )
        logger.debug("Captured client output", extra={"stdout": result.stdout})
        return result.stdout
