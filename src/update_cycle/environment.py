"""
Working directory management.

The orchestrator owns three directories: the scratch/build directory, the
client install directory and the client data directory (which holds the
update_cache/targets cache). Each of them must end with the application
name; that suffix check is the only guard before a directory is removed.
"""

from __future__ import annotations

import shutil
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from update_cycle.errors import FailedPreconditionError, UnsafeDeletionTargetError
from update_cycle.logging import get_logger

if TYPE_CHECKING:
    from update_cycle.config import AppConfig
    from update_cycle.confirm import ConfirmFunc

logger = get_logger(__name__)


@dataclass(frozen=True)
class WorkingDirectorySet:
    """The fixed, ordered set of directories used during a run."""

    scratch_dir: Path
    install_dir: Path
    data_dir: Path
    targets_cache_dir: Path

    @classmethod
    def from_config(cls, config: AppConfig) -> WorkingDirectorySet:
        """Build the set from a loaded configuration."""
        return cls(
            scratch_dir=config.scratch_dir,
            install_dir=config.install_dir,
            data_dir=config.data_dir,
            targets_cache_dir=config.targets_cache_dir,
        )

    def __iter__(self) -> Iterator[Path]:
        """Iterate over the top-level directories (the removal roots)."""
        return iter((self.scratch_dir, self.install_dir, self.data_dir))


def is_safe_deletion_target(path: Path, app_name: str) -> bool:
    """Return True if the final path segment ends with the application name."""
    return path.name.endswith(app_name)


def check_deletion_target(path: Path, app_name: str) -> None:
    """
    Verify that a directory may be removed.

    Raises:
        UnsafeDeletionTargetError: If the path does not end with app_name.
    """
    if not is_safe_deletion_target(path, app_name):
        raise UnsafeDeletionTargetError(
            f"Refusing to remove {path}: name does not end with '{app_name}'",
            details={"path": str(path), "app_name": app_name},
        )


def ensure_directory(path: Path) -> Path:
    """
    Ensure a directory exists, creating parents as needed.

    Raises:
        FailedPreconditionError: If the directory cannot be created.
    """
    try:
        path.mkdir(parents=True, exist_ok=True)
        return path
    except OSError as e:
        raise FailedPreconditionError(
            f"Failed to create directory: {path}",
            details={"path": str(path), "error": str(e)},
        ) from e


def remove_directory(path: Path) -> bool:
    """
    Remove a directory tree.

    Returns:
        True if the directory was removed, False if it did not exist.

    Raises:
        FailedPreconditionError: If removal fails.
    """
    if not path.exists():
        return False
    try:
        shutil.rmtree(path)
    except OSError as e:
        raise FailedPreconditionError(
            f"Failed to remove directory: {path}",
            details={"path": str(path), "error": str(e)},
        ) from e
    logger.debug("Removed directory", extra={"path": str(path)})
    return True


class EnvironmentManager:
    """Creates and removes the working directory set."""

    def __init__(self, directories: WorkingDirectorySet, app_name: str) -> None:
        """
        Initialize the manager.

        Args:
            directories: The working directory set.
            app_name: Application name used by the deletion guard.
        """
        self.directories = directories
        self.app_name = app_name

    def present(self) -> list[Path]:
        """Return the working directories currently on disk."""
        return [path for path in self.directories if path.exists()]

    def reset_all(self, confirm: ConfirmFunc | None = None) -> list[Path]:
        """
        Remove every working directory that exists.

        Args:
            confirm: Optional confirmation callback, asked once before
                anything is removed. None means removal is already approved.

        Returns:
            The directories that were removed.

        Raises:
            FailedPreconditionError: If a directory cannot be removed.
        """
        present = self.present()
        if not present:
            return []

        if confirm is not None:
            listing = ", ".join(str(path) for path in present)
            if not confirm(f"Remove existing directories ({listing})?"):
                logger.info("Directory removal declined, leaving them in place")
                return []

        removed: list[Path] = []
        for path in present:
            try:
                check_deletion_target(path, self.app_name)
            except UnsafeDeletionTargetError as e:
                logger.warning(e.message, extra=e.details)
                continue
            if remove_directory(path):
                logger.info(f"Removed {path}")
                removed.append(path)
        return removed

    def ensure_all(self) -> list[Path]:
        """
        Create every working directory and the targets cache.

        Idempotent: existing directories and their contents are left alone.

        Returns:
            All ensured directories.
        """
        ensured = [ensure_directory(path) for path in self.directories]
        ensured.append(ensure_directory(self.directories.targets_cache_dir))
        return ensured
