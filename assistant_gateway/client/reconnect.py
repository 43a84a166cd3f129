"""
Client reconnection policy.

Pure decision logic, kept apart from any transport so it can be reused
by every client and tested without sockets:

    delay(attempt) = min(base * 2**attempt, cap)

The attempt counter resets on every successful connect. After
``max_attempts`` consecutive failures reconnection is abandoned and the
caller surfaces a terminal error. A disconnect the client asked for never
triggers reconnection.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

BASE_DELAY_MS = 1000
MAX_DELAY_MS = 30000
MAX_ATTEMPTS = 5


class ReconnectExhausted(Exception):
    """Raised by clients once the policy gives up."""

    def __init__(self, attempts: int):
        super().__init__(f"Gave up reconnecting after {attempts} attempts")
        self.attempts = attempts


@dataclass
class ReconnectPolicy:
    base_delay_ms: int = BASE_DELAY_MS
    max_delay_ms: int = MAX_DELAY_MS
    max_attempts: int = MAX_ATTEMPTS
    attempts: int = 0

    def delay_ms(self, attempt: Optional[int] = None) -> int:
        n = self.attempts if attempt is None else attempt
        return min(self.base_delay_ms * (2 ** n), self.max_delay_ms)

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def on_connected(self) -> None:
        self.attempts = 0

    def next_delay(self, explicit: bool) -> Optional[float]:
        """
        Decide what to do after a disconnect.

        Returns the delay in seconds before the next attempt, or None when
        the client must not reconnect (explicit close or attempts used up).
        Each non-None return consumes one attempt.
        """
        if explicit or self.exhausted:
            return None
        delay = self.delay_ms()
        self.attempts += 1
        return delay / 1000.0
