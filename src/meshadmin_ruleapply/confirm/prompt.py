#!/usr/bin/env python3
"""
Confirmation Prompt - Asks the operator to confirm the new ruleset before a deadline.
"""

import sys
import time
import select
import logging
from enum import Enum
from typing import Dict, Any, List, Optional, TextIO

from ..errors import ConfirmationTimeout


class ConfirmationState(Enum):
    """States of the confirmation exchange."""

    AWAITING_CONFIRM = "awaiting_confirm"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    TIMED_OUT = "timed_out"


class ConfirmationPrompt:
    """Bounded-wait interactive confirmation."""

    def __init__(self, config: Dict[str, Any], stream: Optional[TextIO] = None,
                 output: Optional[TextIO] = None):
        """Initialize prompt with configuration."""
        self.config = config
        self.stream = stream if stream is not None else sys.stdin
        self.output = output if output is not None else sys.stderr
        self.logger = logging.getLogger(__name__)

        self.prompt = config.get('prompt', 'Can you establish NEW connections to the machine? (y/N) ')
        self.affirmative: List[str] = [t.lower() for t in config.get('affirmative', ['y']) if t]
        self.state = ConfirmationState.AWAITING_CONFIRM

    def ask(self, timeout: float) -> ConfirmationState:
        """Show the prompt and wait up to timeout seconds for an answer."""
        self.state = ConfirmationState.AWAITING_CONFIRM
        self.output.write(self.prompt)
        self.output.flush()

        try:
            answer = self._read_with_deadline(time.monotonic() + timeout)
        except ConfirmationTimeout:
            self.output.write("\n")
            self.output.flush()
            self.state = ConfirmationState.TIMED_OUT
        except KeyboardInterrupt:
            self.output.write("\n")
            self.output.flush()
            self.logger.info("Confirmation interrupted, treating as declined")
            self.state = ConfirmationState.DECLINED
        else:
            self.state = self.interpret(answer)

        self.logger.debug(f"Confirmation state: {self.state.value}")
        return self.state

    def interpret(self, answer: str) -> ConfirmationState:
        """Map an answer to CONFIRMED or DECLINED."""
        answer = answer.strip().lower()
        if answer and any(answer.startswith(token) or token.startswith(answer)
                          for token in self.affirmative):
            return ConfirmationState.CONFIRMED
        return ConfirmationState.DECLINED

    def _read_with_deadline(self, deadline: float) -> str:
        """Read one line from the stream, raising ConfirmationTimeout at the deadline."""
        remaining = max(0.0, deadline - time.monotonic())
        ready, _, _ = select.select([self.stream], [], [], remaining)
        if not ready:
            raise ConfirmationTimeout("No confirmation received within the timeout")

        # EOF reads as an empty answer
        return self.stream.readline()
