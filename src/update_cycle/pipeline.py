"""
Update cycle pipeline.

This module implements the UpdateCyclePipeline class that runs the whole
cycle as an explicit sequence of stages:

    INIT -> ENV_RESET -> ENV_CREATE -> REPO_INIT -> BUILD_V1 -> PUBLISH_V1
    -> SIMULATE_INSTALL_V1 -> [PATCH_CACHE_SEED] -> BUMP_V2 -> BUILD_V2
    -> PUBLISH_V2 -> ROLLBACK_V1 -> SERVER_START -> CLIENT_UPDATE
    -> OPERATOR_CONFIRM -> CLIENT_VERIFY_RUN -> SERVER_STOP
    -> OUTCOME_CHECK -> CLEANUP_OFFER -> DONE

Each stage produces a StageResult. After the first failure the remaining
stages are skipped, except ROLLBACK_V1, SERVER_STOP and CLEANUP_OFFER which
always run. Rollback and server shutdown are repeated in a finally block so
that they also happen when the run is interrupted outside a stage.
"""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from update_cycle.client import ClientDriver
from update_cycle.environment import EnvironmentManager, WorkingDirectorySet
from update_cycle.errors import UpdateCycleError
from update_cycle.logging import get_logger
from update_cycle.release import ReleasePipeline
from update_cycle.server import UpdateServer
from update_cycle.verify import UpdateOutcome, verify
from update_cycle.version_marker import VersionMarker

if TYPE_CHECKING:
    from update_cycle.config import AppConfig
    from update_cycle.confirm import OperatorInteraction

logger = get_logger(__name__)


class Stage(str, Enum):
    """Stages of the update cycle, in execution order."""

    INIT = "init"
    ENV_RESET = "env_reset"
    ENV_CREATE = "env_create"
    REPO_INIT = "repo_init"
    BUILD_V1 = "build_v1"
    PUBLISH_V1 = "publish_v1"
    SIMULATE_INSTALL_V1 = "simulate_install_v1"
    PATCH_CACHE_SEED = "patch_cache_seed"
    BUMP_V2 = "bump_v2"
    BUILD_V2 = "build_v2"
    PUBLISH_V2 = "publish_v2"
    ROLLBACK_V1 = "rollback_v1"
    SERVER_START = "server_start"
    CLIENT_UPDATE = "client_update"
    OPERATOR_CONFIRM = "operator_confirm"
    CLIENT_VERIFY_RUN = "client_verify_run"
    SERVER_STOP = "server_stop"
    OUTCOME_CHECK = "outcome_check"
    CLEANUP_OFFER = "cleanup_offer"
    DONE = "done"


# Stages that run even after an upstream failure
MUST_RUN_STAGES: frozenset[Stage] = frozenset(
    {Stage.ROLLBACK_V1, Stage.SERVER_STOP, Stage.CLEANUP_OFFER}
)


class StageResult(BaseModel):
    """Result of a single stage."""

    stage: Stage = Field(..., description="Stage that ran")
    success: bool = Field(..., description="Whether the stage succeeded")
    skipped: bool = Field(default=False, description="Skipped after an earlier failure")
    error: dict[str, Any] | None = Field(default=None, description="Error details")
    duration_seconds: float = Field(default=0.0, ge=0, description="Wall-clock time")


class RunReport(BaseModel):
    """Ordered stage results and the verification outcome of a run."""

    results: list[StageResult] = Field(default_factory=list)
    outcome_passed: bool | None = Field(
        default=None, description="Verification result; None if never checked"
    )

    @property
    def failed_stage(self) -> Stage | None:
        """First stage that failed, if any."""
        for result in self.results:
            if not result.success and not result.skipped:
                return result.stage
        return None

    @property
    def exit_code(self) -> int:
        """0 when every stage ran and the client reported the new version."""
        if self.failed_stage is None and self.outcome_passed:
            return 0
        return 1

    def result_for(self, stage: Stage) -> StageResult | None:
        """Return the result recorded for a stage."""
        for result in self.results:
            if result.stage == stage:
                return result
        return None


StageAction = Callable[[], Awaitable[None]]


class UpdateCyclePipeline:
    """
    Runs one complete update cycle.

    Collaborating components can be injected for testing; by default they
    are built from the configuration.

    Attributes:
        config: The application configuration.
        interaction: Confirmation and pause callbacks.
        state: The stage currently running (DONE once finished).
        outcome: Verification outcome once OUTCOME_CHECK has run.
    """

    def __init__(
        self,
        config: AppConfig,
        interaction: OperatorInteraction,
        *,
        environment: EnvironmentManager | None = None,
        release: ReleasePipeline | None = None,
        marker: VersionMarker | None = None,
        server: UpdateServer | None = None,
        client: ClientDriver | None = None,
    ) -> None:
        self.config = config
        self.interaction = interaction
        self.environment = environment or EnvironmentManager(
            WorkingDirectorySet.from_config(config), config.app_name
        )
        self.release = release or ReleasePipeline(config)
        self.marker = marker or VersionMarker(
            config.settings_file,
            old_version=config.release.base_version,
            new_version=config.release.new_version,
            variable=config.release.version_variable,
        )
        self.server = server or UpdateServer(config)
        self.client = client or ClientDriver(config)
        self.state = Stage.INIT
        self.client_output: str | None = None
        self.outcome: UpdateOutcome | None = None

    def stages(self) -> list[tuple[Stage, StageAction]]:
        """Return the ordered stage list for this configuration."""
        base = self.config.release.base_version
        new = self.config.release.new_version

        stages: list[tuple[Stage, StageAction]] = [
            (Stage.ENV_RESET, self._reset_environment),
            (Stage.ENV_CREATE, self._create_environment),
            (Stage.REPO_INIT, self.release.initialize_repository),
            (Stage.BUILD_V1, lambda: self.release.build_bundle(base)),
            (Stage.PUBLISH_V1, lambda: self.release.publish_bundle(base)),
            (Stage.SIMULATE_INSTALL_V1, self._install_base),
        ]
        if self.config.enable_patch_update:
            stages.append((Stage.PATCH_CACHE_SEED, self._seed_patch_cache))
        stages += [
            (Stage.BUMP_V2, self._bump_version),
            (Stage.BUILD_V2, lambda: self.release.build_bundle(new)),
            (Stage.PUBLISH_V2, lambda: self.release.publish_bundle(new)),
            (Stage.ROLLBACK_V1, self._rollback_version),
            (Stage.SERVER_START, self._start_server),
            (Stage.CLIENT_UPDATE, self._run_client_update),
            (Stage.OPERATOR_CONFIRM, self._operator_confirm),
            (Stage.CLIENT_VERIFY_RUN, self._run_client_verify),
            (Stage.SERVER_STOP, self._stop_server),
            (Stage.OUTCOME_CHECK, self._check_outcome),
            (Stage.CLEANUP_OFFER, self._offer_cleanup),
        ]
        return stages

    async def run(self) -> RunReport:
        """
        Run every stage and return the report.

        Stage failures never propagate; they are recorded in the report.
        """
        report = RunReport()
        failed = False
        logger.info(
            f"Starting update cycle for {self.config.app_name}",
            extra={"patch_update": self.config.enable_patch_update},
        )

        try:
            for stage, action in self.stages():
                if failed and stage not in MUST_RUN_STAGES:
                    report.results.append(
                        StageResult(stage=stage, success=False, skipped=True)
                    )
                    continue
                result = await self._run_stage(stage, action)
                report.results.append(result)
                failed = failed or not result.success
        finally:
            try:
                self.marker.rollback()
            except UpdateCycleError as e:
                logger.error(
                    f"Could not restore the version marker: {e.message}",
                    extra={"stage": self.state.value, **e.details},
                )
            finally:
                await self.server.stop()

        report.outcome_passed = self.outcome.passed if self.outcome else None
        self.state = Stage.DONE
        self._log_summary(report)
        return report

    async def _run_stage(self, stage: Stage, action: StageAction) -> StageResult:
        self.state = stage
        logger.info(f"==> {stage.name}", extra={"stage": stage.value})
        started = time.monotonic()
        error: dict[str, Any] | None = None

        try:
            await action()
        except UpdateCycleError as e:
            logger.error(
                f"Stage {stage.name} failed: {e.message}",
                extra={"stage": stage.value, **e.details},
            )
            error = e.to_dict()
        except Exception as e:
            logger.exception(
                f"Stage {stage.name} failed unexpectedly",
                extra={"stage": stage.value},
            )
            error = {"error_code": "internal", "message": f"{type(e).__name__}: {e}"}

        return StageResult(
            stage=stage,
            success=error is None,
            error=error,
            duration_seconds=time.monotonic() - started,
        )

    # -------------------------------------------------------------------------
    # Stage actions
    # -------------------------------------------------------------------------

    async def _reset_environment(self) -> None:
        self.environment.reset_all(self.interaction.confirm)

    async def _create_environment(self) -> None:
        self.environment.ensure_all()

    async def _install_base(self) -> None:
        await self.release.install_bundle(self.config.release.base_version)

    async def _seed_patch_cache(self) -> None:
        self.release.seed_patch_cache(self.config.release.base_version)

    async def _bump_version(self) -> None:
        self.marker.bump()

    async def _rollback_version(self) -> None:
        self.marker.rollback()

    async def _start_server(self) -> None:
        await self.server.start()
        await self.server.wait_until_ready()

    async def _run_client_update(self) -> None:
        await self.client.run_once()

    async def _operator_confirm(self) -> None:
        self.interaction.pause(
            f"Close the {self.config.app_name} session once the update has been "
            "applied, then press enter to run it again..."
        )

    async def _run_client_verify(self) -> None:
        self.client_output = await self.client.run_and_capture()

    async def _stop_server(self) -> None:
        await self.server.stop()

    async def _check_outcome(self) -> None:
        self.outcome = verify(
            self.client_output or "",
            self.config.app_name,
            self.config.release.new_version,
        )
        if self.outcome.passed:
            logger.info(f"Client reports '{self.outcome.expected}'")
        self.outcome.raise_for_failure()

    async def _offer_cleanup(self) -> None:
        present = self.environment.present()
        for path in present:
            logger.info(f"Working directory still present: {path}")
        if not present:
            return
        if self.interaction.confirm("Remove all working directories?"):
            self.environment.reset_all()
        else:
            logger.info("Leaving working directories in place")

    def _log_summary(self, report: RunReport) -> None:
        failed_stage = report.failed_stage
        if failed_stage is None and report.outcome_passed:
            logger.info("Update cycle PASSED")
        elif failed_stage is not None:
            logger.error(
                f"Update cycle FAILED at stage {failed_stage.name}",
                extra={"stage": failed_stage.value},
            )
        else:
            logger.error("Update cycle FAILED")
