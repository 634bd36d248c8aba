from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Callable
from typing import TextIO

import click

from .errors import ConfirmationUnavailableError, UserAbortedError

logger = logging.getLogger(__name__)


def _click_prompt(text: str) -> bool:
    return click.confirm(text, default=False)


class ConfirmationGate:
    """Single yes/no prompt shared by the approval gate and the deploy retry loop.

    The gate refuses to prompt whenever the answer could not be attributed to
    one stack: without a terminal, or when several stacks deploy concurrently.
    ``test_mode`` lifts only the terminal check so tests can drive the prompt.
    """

    def __init__(
        self,
        *,
        test_mode: bool = False,
        prompt: Callable[[str], bool] | None = None,
        stdin: TextIO | None = None,
    ) -> None:
        self.test_mode = test_mode
        self._prompt = prompt if prompt is not None else _click_prompt
        self._stdin = stdin if stdin is not None else sys.stdin

    def _is_interactive(self) -> bool:
        isatty = getattr(self._stdin, "isatty", None)
        return bool(isatty is not None and isatty())

    async def ask_user_confirmation(self, concurrency: int, motivation: str, question: str) -> None:
        if not self.test_mode and not self._is_interactive():
            raise ConfirmationUnavailableError(
                f"{motivation}, but terminal (TTY) is not attached so we are unable to get a confirmation from the user"
            )
        if concurrency > 1:
            raise ConfirmationUnavailableError(
                f"{motivation}, but concurrency is greater than 1 so we are unable to get a confirmation from the user"
            )
        if not await self.confirm(question):
            raise UserAbortedError("Aborted by user")

    async def confirm(self, question: str) -> bool:
        """Prompt once and return the answer; never raises on a decline."""
        text = click.style(question, fg="cyan")
        confirmed = await asyncio.to_thread(self._prompt, text)
        logger.debug("Confirmation %r answered %s", question, confirmed)
        return bool(confirmed)
