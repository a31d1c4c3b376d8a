"""
Command-line entry point for the update cycle orchestrator.

Exit codes:
    0   the updated client reported the new version
    1   a stage failed or the client did not report the new version
    2   fatal startup error (invalid configuration, unsupported platform)
    130 interrupted by the operator
"""

from __future__ import annotations

import asyncio

import yaml
from pydantic import ValidationError

from update_cycle.config import load_config
from update_cycle.confirm import OperatorInteraction
from update_cycle.errors import UpdateCycleError
from update_cycle.logging import get_logger, setup_logging
from update_cycle.pipeline import UpdateCyclePipeline

logger = get_logger(__name__)

EXIT_STARTUP_ERROR = 2
EXIT_INTERRUPTED = 130


def main(argv: list[str] | None = None) -> int:
    """
    Load the configuration and run one update cycle.

    Args:
        argv: Command-line arguments (defaults to sys.argv).

    Returns:
        The process exit code.
    """
    setup_logging()

    try:
        config = load_config(cli_args=argv)
    except UpdateCycleError as e:
        logger.error(f"Startup failed: {e.message}", extra=e.details)
        return EXIT_STARTUP_ERROR
    except (ValidationError, FileNotFoundError, yaml.YAMLError) as e:
        logger.error(f"Invalid configuration: {e}")
        return EXIT_STARTUP_ERROR

    setup_logging(config.logging)

    if config.interaction.assume_yes:
        interaction = OperatorInteraction.automatic(approve=True)
    else:
        interaction = OperatorInteraction.interactive()

    pipeline = UpdateCyclePipeline(config, interaction)
    try:
        report = asyncio.run(pipeline.run())
    except KeyboardInterrupt:
        logger.error(f"Interrupted during stage {pipeline.state.name}")
        return EXIT_INTERRUPTED

    return report.exit_code
