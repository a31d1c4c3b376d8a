"""
Tests for the update cycle pipeline.

Tests cover:
- Stage ordering and the skip-after-failure rule
- Rollback and server shutdown on every exit path
- Cleanup offer approve/decline
- End-to-end cycles against the fake toolchain and a real HTTP server
"""

from __future__ import annotations

import sys
from collections.abc import Callable
from pathlib import Path

import pytest

from conftest import SETTINGS_TEXT
from update_cycle.config import AppConfig
from update_cycle.confirm import OperatorInteraction, always_yes
from update_cycle.errors import ExternalProcessError, FailedPreconditionError
from update_cycle.pipeline import MUST_RUN_STAGES, RunReport, Stage, StageResult, UpdateCyclePipeline
from update_cycle.release import ReleasePipeline


class Abort(BaseException):
    """Stands in for an interrupt raised inside a stage."""


# =============================================================================
# Test doubles
# =============================================================================


class FakeRelease:
    """Release tooling double that records calls."""

    def __init__(self, fail_build: str | None = None, error: BaseException | None = None) -> None:
        self.calls: list[str] = []
        self.fail_build = fail_build
        self.error = error

    async def initialize_repository(self) -> None:
        self.calls.append("init")

    async def build_bundle(self, version: str) -> None:
        self.calls.append(f"build {version}")
        if version == self.fail_build:
            raise self.error or ExternalProcessError(
                f"[BUILD_V{version[0]}] Command exited with status 1", returncode=1
            )

    async def publish_bundle(self, version: str) -> None:
        self.calls.append(f"publish {version}")

    async def install_bundle(self, version: str) -> Path:
        self.calls.append(f"install {version}")
        return Path(f"my_app-{version}.tar.gz")

    def seed_patch_cache(self, version: str) -> Path | None:
        self.calls.append(f"seed {version}")
        return None


class FakeServer:
    """Update server double."""

    def __init__(self) -> None:
        self.running = False
        self.start_count = 0
        self.stop_count = 0

    async def start(self) -> None:
        self.running = True
        self.start_count += 1

    async def wait_until_ready(self) -> int:
        return 1

    async def stop(self) -> bool:
        if not self.running:
            return False
        self.running = False
        self.stop_count += 1
        return True


class FakeClient:
    """Client driver double."""

    def __init__(self, output: str = "my_app 2.0\n") -> None:
        self.output = output
        self.runs = 0

    async def run_once(self) -> int:
        self.runs += 1
        return 0

    async def run_and_capture(self) -> str:
        self.runs += 1
        return self.output


@pytest.fixture
def settings_file(project_dir: Path) -> Path:
    """The sample application's settings module."""
    return project_dir / "src" / "myapp" / "settings.py"


def _pipeline(
    config: AppConfig,
    *,
    approve: bool = True,
    release: FakeRelease | ReleasePipeline | None = None,
    server: FakeServer | None = None,
    client: FakeClient | None = None,
) -> UpdateCyclePipeline:
    return UpdateCyclePipeline(
        config,
        OperatorInteraction.automatic(approve=approve),
        release=release or FakeRelease(),
        server=server or FakeServer(),
        client=client or FakeClient(),
    )


def _stages(report: RunReport) -> list[Stage]:
    return [result.stage for result in report.results]


def _ran(report: RunReport) -> list[Stage]:
    return [result.stage for result in report.results if not result.skipped]


# =============================================================================
# RunReport Tests
# =============================================================================


class TestRunReport:
    """Tests for RunReport."""

    def test_empty_report_is_not_success(self) -> None:
        """Test that a report without a verified outcome exits 1."""
        assert RunReport().exit_code == 1

    def test_success(self) -> None:
        """Test exit code 0."""
        report = RunReport(
            results=[StageResult(stage=Stage.ENV_RESET, success=True)], outcome_passed=True
        )
        assert report.failed_stage is None
        assert report.exit_code == 0

    def test_failed_stage_ignores_skipped(self) -> None:
        """Test that skipped stages are not reported as the failure."""
        report = RunReport(
            results=[
                StageResult(stage=Stage.BUILD_V1, success=False),
                StageResult(stage=Stage.PUBLISH_V1, success=False, skipped=True),
            ]
        )
        assert report.failed_stage == Stage.BUILD_V1
        assert report.result_for(Stage.PUBLISH_V1).skipped is True
        assert report.result_for(Stage.DONE) is None

    def test_must_run_stages(self) -> None:
        """Test the set of stages that run after a failure."""
        assert MUST_RUN_STAGES == {Stage.ROLLBACK_V1, Stage.SERVER_STOP, Stage.CLEANUP_OFFER}


# =============================================================================
# Stage sequencing with test doubles
# =============================================================================


class TestStageSequence:
    """Tests for the stage order and skip rule."""

    @pytest.mark.asyncio
    async def test_success_runs_every_stage(
        self, make_config: Callable[..., AppConfig], settings_file: Path
    ) -> None:
        """Test a successful run."""
        release, server, client = FakeRelease(), FakeServer(), FakeClient()
        pipeline = _pipeline(make_config(), release=release, server=server, client=client)

        report = await pipeline.run()

        assert report.exit_code == 0
        assert report.outcome_passed is True
        assert _stages(report) == [stage for stage, _ in pipeline.stages()]
        assert _stages(report)[0] == Stage.ENV_RESET
        assert _stages(report)[-1] == Stage.CLEANUP_OFFER
        assert all(result.success for result in report.results)
        assert release.calls == [
            "init",
            "build 1.0",
            "publish 1.0",
            "install 1.0",
            "seed 1.0",
            "build 2.0",
            "publish 2.0",
        ]
        assert (server.start_count, server.stop_count) == (1, 1)
        assert client.runs == 2
        assert pipeline.state == Stage.DONE
        assert settings_file.read_text() == SETTINGS_TEXT

    @pytest.mark.asyncio
    async def test_patch_disabled_omits_seed(self, make_config: Callable[..., AppConfig]) -> None:
        """Test that PATCH_CACHE_SEED is left out with patch updates disabled."""
        release = FakeRelease()
        pipeline = _pipeline(make_config(enable_patch_update=False), release=release)

        report = await pipeline.run()

        assert report.exit_code == 0
        assert Stage.PATCH_CACHE_SEED not in _stages(report)
        assert "seed 1.0" not in release.calls

    @pytest.mark.asyncio
    async def test_version_bumped_during_second_build(
        self, make_config: Callable[..., AppConfig], settings_file: Path
    ) -> None:
        """Test that the second build sees the new version and the first does not."""
        seen: dict[str, str] = {}

        class RecordingRelease(FakeRelease):
            async def build_bundle(self, version: str) -> None:
                seen[version] = settings_file.read_text()

        await _pipeline(make_config(), release=RecordingRelease()).run()

        assert "APP_VERSION = '1.0'" in seen["1.0"]
        assert "APP_VERSION = '2.0'" in seen["2.0"]
        assert settings_file.read_text() == SETTINGS_TEXT

    @pytest.mark.asyncio
    async def test_build_failure_skips_to_must_run(
        self, make_config: Callable[..., AppConfig], settings_file: Path
    ) -> None:
        """Test that a failed v2 build skips everything but the must-run stages."""
        server = FakeServer()
        pipeline = _pipeline(make_config(), release=FakeRelease(fail_build="2.0"), server=server)

        report = await pipeline.run()

        assert report.exit_code == 1
        assert report.failed_stage == Stage.BUILD_V2
        assert report.result_for(Stage.BUILD_V2).error["error_code"] == "external_process_failure"
        assert report.result_for(Stage.PUBLISH_V2).skipped is True
        assert report.result_for(Stage.SERVER_START).skipped is True
        assert report.result_for(Stage.OUTCOME_CHECK).skipped is True
        assert report.outcome_passed is None
        after = _ran(report)[_ran(report).index(Stage.BUILD_V2) + 1 :]
        assert after == [Stage.ROLLBACK_V1, Stage.SERVER_STOP, Stage.CLEANUP_OFFER]
        assert server.start_count == 0
        assert settings_file.read_text() == SETTINGS_TEXT

    @pytest.mark.asyncio
    async def test_first_build_failure(
        self, make_config: Callable[..., AppConfig], settings_file: Path
    ) -> None:
        """Test that a failed v1 build never touches the settings file."""
        report = await _pipeline(make_config(), release=FakeRelease(fail_build="1.0")).run()

        assert report.failed_stage == Stage.BUILD_V1
        assert report.result_for(Stage.BUMP_V2).skipped is True
        assert report.result_for(Stage.ROLLBACK_V1).success is True
        assert settings_file.read_text() == SETTINGS_TEXT

    @pytest.mark.asyncio
    async def test_unexpected_error_is_recorded(self, make_config: Callable[..., AppConfig]) -> None:
        """Test that a non-domain exception fails the stage as 'internal'."""
        report = await _pipeline(
            make_config(), release=FakeRelease(fail_build="1.0", error=ValueError("boom"))
        ).run()

        error = report.result_for(Stage.BUILD_V1).error
        assert error == {"error_code": "internal", "message": "ValueError: boom"}

    @pytest.mark.asyncio
    async def test_outcome_mismatch(self, make_config: Callable[..., AppConfig]) -> None:
        """Test that a client still on the old version fails OUTCOME_CHECK."""
        server = FakeServer()
        pipeline = _pipeline(make_config(), server=server, client=FakeClient("my_app 1.0\n"))

        report = await pipeline.run()

        assert report.exit_code == 1
        assert report.failed_stage == Stage.OUTCOME_CHECK
        assert report.outcome_passed is False
        assert report.result_for(Stage.CLEANUP_OFFER).success is True
        assert server.stop_count == 1

    @pytest.mark.asyncio
    async def test_interrupt_still_rolls_back(
        self, make_config: Callable[..., AppConfig], settings_file: Path
    ) -> None:
        """Test that an interrupt during the v2 build restores the settings file."""
        pipeline = _pipeline(
            make_config(), release=FakeRelease(fail_build="2.0", error=Abort())
        )

        with pytest.raises(Abort):
            await pipeline.run()

        assert pipeline.state == Stage.BUILD_V2
        assert settings_file.read_text() == SETTINGS_TEXT

    @pytest.mark.asyncio
    async def test_interrupt_while_serving_stops_server(
        self, make_config: Callable[..., AppConfig]
    ) -> None:
        """Test that the server is stopped when the run is interrupted."""
        server = FakeServer()

        class InterruptedClient(FakeClient):
            async def run_once(self) -> int:
                raise Abort

        pipeline = _pipeline(make_config(), server=server, client=InterruptedClient())
        with pytest.raises(Abort):
            await pipeline.run()

        assert server.running is False
        assert server.stop_count == 1

    @pytest.mark.asyncio
    async def test_operator_pause_between_client_runs(
        self, make_config: Callable[..., AppConfig]
    ) -> None:
        """Test that the operator checkpoint sits between the two client runs."""
        events: list[str] = []
        client = FakeClient()

        def pause(message: str) -> None:
            events.append(f"pause after {client.runs} run(s)")

        pipeline = UpdateCyclePipeline(
            make_config(),
            OperatorInteraction(confirm=always_yes, pause=pause),
            release=FakeRelease(),
            server=FakeServer(),
            client=client,
        )
        await pipeline.run()

        assert events == ["pause after 1 run(s)"]
        assert client.runs == 2


class TestVersionMarkerFailures:
    """Tests for an unwritable settings file."""

    @pytest.fixture
    def read_only_settings(
        self, settings_file: Path, monkeypatch: pytest.MonkeyPatch
    ) -> dict[str, bool]:
        """Make writes to the settings file fail while `locked` is set."""
        state = {"locked": True}
        original_write_bytes = Path.write_bytes

        def write_bytes(self: Path, data: bytes) -> int:
            if state["locked"] and self == settings_file:
                raise PermissionError(13, "Permission denied", str(self))
            return original_write_bytes(self, data)

        monkeypatch.setattr(Path, "write_bytes", write_bytes)
        return state

    @pytest.mark.asyncio
    async def test_failed_bump_is_not_rolled_back(
        self,
        make_config: Callable[..., AppConfig],
        settings_file: Path,
        read_only_settings: dict[str, bool],
    ) -> None:
        """Test that an unwritable settings file fails BUMP_V2 and nothing else."""
        pipeline = _pipeline(make_config())

        report = await pipeline.run()

        assert report.exit_code == 1
        assert report.failed_stage == Stage.BUMP_V2
        assert report.result_for(Stage.BUMP_V2).error["error_code"] == "failed_precondition"
        assert report.result_for(Stage.ROLLBACK_V1).success is True
        assert pipeline.marker.is_bumped is False
        assert settings_file.read_text() == SETTINGS_TEXT

    @pytest.mark.asyncio
    async def test_failed_restore_is_reported(
        self,
        make_config: Callable[..., AppConfig],
        read_only_settings: dict[str, bool],
    ) -> None:
        """Test that a restore failure is recorded at ROLLBACK_V1 instead of raised."""
        read_only_settings["locked"] = False

        class LockingRelease(FakeRelease):
            async def build_bundle(self, version: str) -> None:
                await super().build_bundle(version)
                if version == "2.0":
                    read_only_settings["locked"] = True

        report = await _pipeline(make_config(), release=LockingRelease()).run()

        assert report.exit_code == 1
        assert report.failed_stage == Stage.ROLLBACK_V1
        assert report.result_for(Stage.SERVER_START).skipped is True
        assert report.result_for(Stage.CLEANUP_OFFER).success is True

    @pytest.mark.asyncio
    async def test_server_stopped_when_restore_fails(
        self, make_config: Callable[..., AppConfig]
    ) -> None:
        """Test that a failing restore on the way out does not skip server shutdown."""
        server = FakeServer()

        class StuckMarker:
            """Restores once at ROLLBACK_V1, then the file becomes unwritable."""

            rollbacks = 0

            def bump(self) -> None:
                pass

            def rollback(self) -> bool:
                self.rollbacks += 1
                if self.rollbacks > 1:
                    raise FailedPreconditionError("Cannot write settings file: settings.py")
                return True

        class InterruptedClient(FakeClient):
            async def run_once(self) -> int:
                raise Abort

        pipeline = UpdateCyclePipeline(
            make_config(),
            OperatorInteraction.automatic(),
            release=FakeRelease(),
            marker=StuckMarker(),
            server=server,
            client=InterruptedClient(),
        )

        with pytest.raises(Abort):
            await pipeline.run()

        assert server.running is False
        assert server.stop_count == 1


class TestCleanup:
    """Tests for the environment reset and cleanup offer."""

    @pytest.mark.asyncio
    async def test_cleanup_approved(self, make_config: Callable[..., AppConfig]) -> None:
        """Test that approving the offer removes every working directory."""
        config = make_config()
        await _pipeline(config, approve=True).run()

        assert not config.scratch_dir.exists()
        assert not config.install_dir.exists()
        assert not config.data_dir.exists()

    @pytest.mark.asyncio
    async def test_cleanup_declined(self, make_config: Callable[..., AppConfig]) -> None:
        """Test that declining the offer leaves the working directories."""
        config = make_config()
        report = await _pipeline(config, approve=False).run()

        assert report.exit_code == 0
        assert config.scratch_dir.is_dir()
        assert config.install_dir.is_dir()
        assert config.targets_cache_dir.is_dir()

    @pytest.mark.asyncio
    async def test_stale_directories_reset(self, make_config: Callable[..., AppConfig]) -> None:
        """Test that leftovers of an earlier run are removed at the start."""
        config = make_config()
        stale = config.install_dir / "stale.txt"
        stale.parent.mkdir(parents=True)
        stale.write_text("old")

        pipeline = _pipeline(config, approve=True)
        calls: list[list[Path]] = []
        original = pipeline.environment.reset_all

        def recording_reset(confirm=None) -> list[Path]:
            result = original(confirm)
            calls.append(result)
            return result

        pipeline.environment.reset_all = recording_reset
        await pipeline.run()

        assert calls[0] == [config.install_dir]
        assert not stale.exists()


# =============================================================================
# End-to-end cycles
# =============================================================================


@pytest.mark.integration
@pytest.mark.skipif(sys.platform == "win32", reason="fake client is a POSIX script")
class TestEndToEnd:
    """Full cycles against the fake toolchain and a real update server."""

    @pytest.mark.asyncio
    async def test_full_cycle_updates_client(
        self, make_config: Callable[..., AppConfig], settings_file: Path
    ) -> None:
        """Test that the installed 1.0 client updates itself to 2.0."""
        config = make_config()
        pipeline = UpdateCyclePipeline(config, OperatorInteraction.automatic(approve=True))

        report = await pipeline.run()

        assert report.failed_stage is None, report.model_dump()
        assert report.exit_code == 0
        assert "my_app 2.0" in pipeline.client_output
        assert pipeline.server.start_count == 1
        assert pipeline.server.stop_count == 1
        assert pipeline.server.is_running is False
        assert settings_file.read_text() == SETTINGS_TEXT
        assert not config.scratch_dir.exists()
        assert not config.install_dir.exists()
        assert not config.data_dir.exists()

    @pytest.mark.asyncio
    async def test_full_cycle_keeps_directories_when_declined(
        self, make_config: Callable[..., AppConfig]
    ) -> None:
        """Test that a declined cleanup leaves the published repository behind."""
        config = make_config()
        pipeline = UpdateCyclePipeline(config, OperatorInteraction.automatic(approve=False))

        report = await pipeline.run()

        assert report.exit_code == 0
        assert config.archive_path("1.0").is_file()
        assert config.archive_path("2.0").is_file()
        assert (config.targets_cache_dir / config.archive_path("1.0").name).is_file()
        assert (config.install_dir / "VERSION").read_text() == "2.0"

    @pytest.mark.asyncio
    async def test_second_build_failure(
        self, make_config: Callable[..., AppConfig], settings_file: Path
    ) -> None:
        """Test that a failing v2 build never starts the server and restores settings."""
        config = make_config(build_fail_on="2.0")
        pipeline = UpdateCyclePipeline(config, OperatorInteraction.automatic(approve=True))

        report = await pipeline.run()

        assert report.exit_code == 1
        assert report.failed_stage == Stage.BUILD_V2
        assert report.result_for(Stage.SERVER_START).skipped is True
        assert pipeline.server.start_count == 0
        assert settings_file.read_text() == SETTINGS_TEXT
        assert not config.scratch_dir.exists()

    @pytest.mark.asyncio
    async def test_publish_failure(self, make_config: Callable[..., AppConfig]) -> None:
        """Test that a failing publisher stops the cycle at PUBLISH_V1."""
        config = make_config(publish_fail=True)
        report = await UpdateCyclePipeline(
            config, OperatorInteraction.automatic(approve=False)
        ).run()

        assert report.failed_stage == Stage.PUBLISH_V1
        assert report.result_for(Stage.SIMULATE_INSTALL_V1).skipped is True
