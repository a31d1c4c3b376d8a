"""
Pytest configuration for the update cycle orchestrator tests.
"""

from __future__ import annotations

import socket
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from update_cycle.config import AppConfig

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]

FAKE_TOOLCHAIN = Path(__file__).parent / "fake_toolchain.py"

SETTINGS_TEXT = (
    "import pathlib\n"
    "\n"
    "APP_NAME = 'my_app'\n"
    "APP_VERSION = '1.0'\n"
    "\n"
    "DATA_DIR = pathlib.Path.home() / APP_NAME\n"
)


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests that spawn real processes (deselect with '-m \"not integration\"')",
    )


@pytest.fixture
def free_port() -> int:
    """Return a TCP port that is currently free on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Create a sample application tree with a settings module."""
    project = tmp_path / "project"
    settings = project / "src" / "myapp" / "settings.py"
    settings.parent.mkdir(parents=True)
    settings.write_text(SETTINGS_TEXT)
    return project


@pytest.fixture
def make_config(
    tmp_path: Path, project_dir: Path, free_port: int
) -> Callable[..., AppConfig]:
    """
    Build an AppConfig wired to the fake toolchain.

    Keyword arguments:
        build_fail_on: Version whose build fails.
        publish_fail: Make every publish fail.
        overrides: Extra top-level config entries.
    """

    def _make(
        build_fail_on: str | None = None,
        publish_fail: bool = False,
        **overrides: Any,
    ) -> AppConfig:
        python = sys.executable
        toolchain = str(FAKE_TOOLCHAIN)
        server_url = f"http://127.0.0.1:{free_port}/"

        bundler = [
            python,
            toolchain,
            "build",
            "{version}",
            str(project_dir / "src" / "myapp" / "settings.py"),
            "{scratch_dir}/dist",
            "{app_name}",
            server_url,
        ]
        if build_fail_on:
            bundler += ["--fail-on", build_fail_on]

        publisher = [python, toolchain, "publish", "{scratch_dir}/dist", "{repository_dir}", "{app_name}"]
        if publish_fail:
            publisher.append("--fail")

        data: dict[str, Any] = {
            "app_name": "my_app",
            "paths": {
                "project_dir": str(project_dir),
                "install_dir": str(tmp_path / "Applications" / "my_app"),
                "data_dir": str(tmp_path / "Library" / "my_app"),
            },
            "tools": {
                "bundler": bundler,
                "repo_init": [python, toolchain, "init", "{repository_dir}"],
                "repo_publish": publisher,
                "extractor": [python, "-m", "tarfile", "-e", "{archive}", "{install_dir}"],
            },
            "server": {"port": free_port, "ready_timeout_seconds": 15},
            "client": {"executable": "main", "timeout_seconds": 60},
            "timeouts": {
                "build_seconds": 60,
                "repo_init_seconds": 60,
                "publish_seconds": 60,
                "extract_seconds": 60,
            },
        }
        data.update(overrides)
        return AppConfig(**data)

    return _make
