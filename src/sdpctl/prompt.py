"""
Operator confirmation prompts.
"""

import logging
from typing import Callable, Optional

from sdpctl.errors import CanceledByUser

logger = logging.getLogger(__name__)

YES_ANSWERS = ("y", "yes")


def confirm(
    question: str,
    no_interactive: bool = False,
    read: Optional[Callable[[str], str]] = None,
) -> None:
    """
    Ask a yes/no question.

    Raises:
        CanceledByUser: Unless the answer is yes
    """
    if no_interactive:
        logger.debug(f"Skipping prompt in non-interactive mode: {question}")
        return
    read = read or input
    try:
        answer = read(f"{question} [y/N] ")
    except EOFError:
        answer = ""
    if answer.strip().lower() not in YES_ANSWERS:
        raise CanceledByUser()
