"""
Operator interaction strategies.

Destructive cleanup and the pause between the two client runs go through an
injected OperatorInteraction, so automated runs can approve or decline
everything without a terminal while interactive runs prompt on stdin.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from update_cycle.logging import get_logger

logger = get_logger(__name__)

ConfirmFunc = Callable[[str], bool]
PauseFunc = Callable[[str], None]

_AFFIRMATIVE = frozenset({"", "y", "yes"})


def prompt_confirm(question: str, input_func: Callable[[str], str] = input) -> bool:
    """
    Ask a yes/no question on the terminal.

    An empty answer counts as yes. End of input counts as no.
    """
    try:
        answer = input_func(f"{question} [Y/n] ")
    except EOFError:
        logger.warning("No input available, treating as 'no'", extra={"question": question})
        return False
    return answer.strip().lower() in _AFFIRMATIVE


def prompt_pause(message: str, input_func: Callable[[str], str] = input) -> None:
    """Block until the operator presses enter."""
    try:
        input_func(f"{message} ")
    except EOFError:
        logger.warning("No input available, continuing", extra={"prompt": message})


def always_yes(question: str) -> bool:
    """Approve without asking."""
    logger.debug("Auto-approved", extra={"question": question})
    return True


def always_no(question: str) -> bool:
    """Decline without asking."""
    logger.debug("Auto-declined", extra={"question": question})
    return False


def no_pause(message: str) -> None:
    """Skip the operator checkpoint."""
    logger.debug("Skipping operator pause", extra={"prompt": message})


@dataclass(frozen=True)
class OperatorInteraction:
    """Confirmation and pause callbacks used by the pipeline."""

    confirm: ConfirmFunc
    pause: PauseFunc

    @classmethod
    def interactive(cls) -> OperatorInteraction:
        """Prompt on the terminal."""
        return cls(confirm=prompt_confirm, pause=prompt_pause)

    @classmethod
    def automatic(cls, approve: bool = True) -> OperatorInteraction:
        """Never prompt; approve or decline every question."""
        return cls(confirm=always_yes if approve else always_no, pause=no_pause)
