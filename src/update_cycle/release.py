"""
Release pipeline: build, publish and install application bundles.

All heavy lifting is done by external collaborators (bundler, repository
initializer, repository publisher, archive extractor). This module renders
their command templates from the configuration and runs them; a non-zero
exit of any of them raises ExternalProcessError.
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Any

from update_cycle.errors import FailedPreconditionError
from update_cycle.logging import get_logger
from update_cycle.process import render_command, run_command

if TYPE_CHECKING:
    from update_cycle.config import AppConfig

logger = get_logger(__name__)


class ReleasePipeline:
    """
    Drives the external release tooling for one sample application.

    Attributes:
        config: The application configuration.
    """

    def __init__(self, config: AppConfig) -> None:
        self.config = config

    def _context(self, **extra: Any) -> dict[str, Any]:
        config = self.config
        return {
            "app_name": config.app_name,
            "project_dir": config.project_dir,
            "scratch_dir": config.scratch_dir,
            "repository_dir": config.repository_dir,
            "install_dir": config.install_dir,
            "data_dir": config.data_dir,
            "client_path": config.client_path,
            "spec_file": config.paths.spec_file,
            **extra,
        }

    async def initialize_repository(self) -> None:
        """Run the repository initializer."""
        args = render_command(self.config.tools.repo_init, **self._context())
        await run_command(
            args,
            stage="REPO_INIT",
            timeout=self.config.timeouts.repo_init_seconds,
            cwd=self.config.project_dir,
        )

    async def build_bundle(self, version: str) -> None:
        """
        Build the application bundle for a version.

        Output paths are scoped by version so the two builds never share a
        work directory.
        """
        args = render_command(self.config.tools.bundler, **self._context(version=version))
        await run_command(
            args,
            stage=f"BUILD_V{_major(version)}",
            timeout=self.config.timeouts.build_seconds,
            cwd=self.config.project_dir,
        )
        logger.info(f"Built bundle {self.config.app_name} {version}")

    async def publish_bundle(self, version: str) -> None:
        """Add the most recently built bundle to the update repository."""
        args = render_command(
            self.config.tools.repo_publish, **self._context(version=version)
        )
        await run_command(
            args,
            stage=f"PUBLISH_V{_major(version)}",
            timeout=self.config.timeouts.publish_seconds,
            cwd=self.config.project_dir,
        )
        logger.info(f"Published {self.config.app_name} {version}")

    async def install_bundle(self, version: str) -> Path:
        """
        Simulate a client installation by extracting the published archive.

        Returns:
            The archive that was installed.

        Raises:
            FailedPreconditionError: If the archive was not published.
        """
        archive = self._existing_archive(version)
        args = render_command(
            self.config.tools.extractor,
            **self._context(version=version, archive=archive),
        )
        await run_command(
            args,
            stage=f"SIMULATE_INSTALL_V{_major(version)}",
            timeout=self.config.timeouts.extract_seconds,
            cwd=self.config.project_dir,
        )
        logger.info(f"Installed {archive.name} into {self.config.install_dir}")
        return archive

    def seed_patch_cache(self, version: str) -> Path | None:
        """
        Copy the installed archive into the client's targets cache.

        The publisher needs it to compute a patch for the next version, so
        this must happen before the next build.

        Returns:
            The cached copy, or None when patch updates are disabled.
        """
        if not self.config.enable_patch_update:
            logger.info("Patch updates disabled, not seeding the targets cache")
            return None

        archive = self._existing_archive(version)
        target_dir = self.config.targets_cache_dir
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            cached = Path(shutil.copy2(archive, target_dir / archive.name))
        except OSError as e:
            raise FailedPreconditionError(
                f"Failed to copy {archive.name} into the targets cache",
                details={"archive": str(archive), "target_dir": str(target_dir), "error": str(e)},
            ) from e
        logger.info(f"Seeded targets cache with {cached.name}", extra={"path": str(cached)})
        return cached

    def _existing_archive(self, version: str) -> Path:
        archive = self.config.archive_path(version)
        if not archive.is_file():
            raise FailedPreconditionError(
                f"Archive not found: {archive}",
                details={"archive": str(archive), "version": version},
            )
        return archive


def _major(version: str) -> str:
    """Major component used in stage names (1.0 -> 1)."""
    return version.split(".", 1)[0]
