"""Action dispatch — turn a Decision into calls on the collaborators.

continue / use-remedy  send the command, then verify it landed
notify                 post through the notifier, rate-limited per hour
wait                   nothing to do
phase-transition       handled by the phase manager, not here

Verification re-captures the session and counts four independent
signals; two agreeing is a pass. Sends are retried with exponential
backoff and a final failure raises DispatchError.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable

from shepherd.human.slack import Notifier
from shepherd.retry import RetryExhausted, retry_with_backoff
from shepherd.schemas import Action, Decision, DispatchOutcome, Observation
from shepherd.sessions import SessionDriver, SessionUnavailable

logger = logging.getLogger(__name__)

REQUIRED_SIGNALS = 2
TRANSCRIPT_PROBE_CHARS = 40


class DispatchError(Exception):
    """A send could not be delivered and verified within the retry budget."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class VerificationFailed(Exception):
    """Fewer than REQUIRED_SIGNALS signals confirmed the send."""


class NotificationThrottle:
    """Sliding one-hour window limiting outgoing notifications."""

    def __init__(self, max_per_hour: int = 10, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_per_hour = max_per_hour
        self._clock = clock
        self._sent: deque[float] = deque()

    def allow(self) -> bool:
        now = self._clock()
        while self._sent and now - self._sent[0] >= 3600:
            self._sent.popleft()
        if len(self._sent) >= self.max_per_hour:
            return False
        self._sent.append(now)
        return True


def verification_signals(before: Observation, after: Observation, text: str) -> dict[str, bool]:
    """The four independent signals that a send was accepted."""
    probe = " ".join(text.split())[:TRANSCRIPT_PROBE_CHARS].lower()
    transcript = " ".join(after.transcript_tail.split()).lower()
    return {
        "input_cleared": not after.can_accept_input,
        "working": after.processing,
        "text_visible": bool(probe) and probe in transcript,
        "no_new_error": len(after.problems) <= len(before.problems),
    }


class ActionDispatcher:
    """Sends, verifies, retries, and rate-limits on behalf of the orchestrator."""

    def __init__(
        self,
        driver: SessionDriver,
        notifier: Notifier,
        max_attempts: int = 3,
        backoff_base: float = 2.0,
        verify_delay: float = 3.0,
        max_notifications_per_hour: int = 10,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        is_cancelled: Callable[[], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.driver = driver
        self.notifier = notifier
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.verify_delay = verify_delay
        self.throttle = NotificationThrottle(max_notifications_per_hour, clock)
        self._sleep = sleep
        self._is_cancelled = is_cancelled

    async def dispatch(
        self,
        decision: Decision,
        project_name: str,
        session_id: str,
        observation: Observation,
    ) -> DispatchOutcome:
        """Carry out one decision. Raises DispatchError when a send fails for good."""
        if decision.action in (Action.CONTINUE, Action.USE_REMEDY):
            if not decision.command:
                raise DispatchError(f"{decision.action.value} decision has no command")
            attempts = await self.send_and_verify(session_id, decision.command, observation)
            return DispatchOutcome(
                action=decision.action, success=True, attempts=attempts,
                detail=f"sent {decision.command[:60]!r}",
            )

        if decision.action == Action.NOTIFY:
            delivered = await self.notify(
                "Attention needed", decision.rationale,
                severity="warning", project_name=project_name,
            )
            return DispatchOutcome(
                action=decision.action, success=delivered, attempts=1 if delivered else 0,
                detail="notified" if delivered else "suppressed or undelivered",
            )

        if decision.action == Action.WAIT:
            logger.debug("%s: waiting (%s)", project_name, decision.rationale)
            return DispatchOutcome(action=decision.action, success=True, detail="no-op")

        raise DispatchError(f"{decision.action.value} is not dispatched directly")

    async def send_and_verify(self, session_id: str, text: str, before: Observation) -> int:
        """Send `text` and confirm it landed. Returns the attempts used."""
        target = before.input_target

        async def attempt(n: int) -> None:
            sent = await self.driver.send_text(session_id, target, text)
            if not sent:
                raise SessionUnavailable(f"send to {session_id} was not accepted")
            if self.verify_delay > 0:
                await self._sleep(self.verify_delay)
            after = await self.driver.capture_state(session_id)
            signals = verification_signals(before, after, text)
            agreeing = sum(signals.values())
            if agreeing < REQUIRED_SIGNALS:
                raise VerificationFailed(
                    f"only {agreeing}/{len(signals)} signals confirmed send: {signals}"
                )
            logger.debug("Send to %s verified on attempt %d: %s", session_id, n + 1, signals)

        try:
            _, attempts = await retry_with_backoff(
                attempt,
                max_attempts=self.max_attempts,
                base_delay=self.backoff_base,
                is_cancelled=self._is_cancelled,
                sleep=self._sleep,
                description=f"send to {session_id}",
            )
        except RetryExhausted as e:
            raise DispatchError(str(e), attempts=e.attempts) from e
        return attempts

    async def notify(
        self,
        title: str,
        message: str,
        severity: str = "info",
        project_name: str = "",
        force: bool = False,
    ) -> bool:
        """Rate-limited notification. `force` bypasses the hourly limit."""
        if not force and not self.throttle.allow():
            logger.debug("Notification dropped (rate limit): %s — %s", title, message)
            return False
        try:
            return await self.notifier.notify(title, message, severity, project_name)
        except Exception as e:
            logger.warning("Notifier raised: %s", e)
            return False
