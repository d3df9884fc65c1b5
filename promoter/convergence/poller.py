"""
Convergence Poller — fixed-interval status polling until an application is
synced and healthy in the same observation, a deadline passes, or the agent
keeps reporting failure.
"""

import time
import asyncio
import logging
from typing import Optional, Callable, Awaitable

from promoter.config.settings import settings
from promoter.errors import ConvergenceTimeout, ConvergenceFailed
from promoter.agent_client.client import DeliveryAgentClient, ConvergenceObservation

logger = logging.getLogger(__name__)


class ConvergencePoller:
    """
    Polls DeliveryAgentClient.get_status every poll_interval seconds.
    An observation reporting sync=error or health=degraded counts towards the
    failure streak; failure_threshold consecutive ones abort with ConvergenceFailed.
    Cancelling the awaiting task stops polling without touching the agent.
    """

    def __init__(
        self,
        client: DeliveryAgentClient,
        failure_threshold: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.failure_threshold = failure_threshold or settings.convergence_failure_threshold
        self._clock = clock
        self._sleep = sleep

    @staticmethod
    async def _at_revision(
        observation: ConvergenceObservation,
        expected_revision: Optional[str],
        revision_reached: Optional[Callable[[str], Awaitable[bool]]],
    ) -> bool:
        # Agents that do not report a revision are taken at their word
        if not expected_revision or not observation.revision:
            return True
        if observation.revision == expected_revision:
            return True
        if revision_reached is not None:
            return await revision_reached(observation.revision)
        return False

    async def await_convergence(
        self,
        application_id: str,
        timeout: float,
        poll_interval: float,
        on_observation: Optional[Callable[[ConvergenceObservation], None]] = None,
        expected_revision: Optional[str] = None,
        revision_reached: Optional[Callable[[str], Awaitable[bool]]] = None,
    ) -> ConvergenceObservation:
        """
        Return the first observation that is synced and healthy at
        expected_revision (or a revision for which revision_reached is true).
        A synced+healthy observation at an older revision is stale and keeps
        polling. Each poll is bounded by the time left before the deadline,
        or one poll_interval once the deadline has been reached.
        """
        if timeout <= 0 or poll_interval <= 0:
            raise ValueError("timeout and poll_interval must be positive")

        started = self._clock()
        failing_streak = 0
        polls = 0
        observation: Optional[ConvergenceObservation] = None
        while True:
            budget = max(timeout - (self._clock() - started), poll_interval)
            try:
                observation = await asyncio.wait_for(self.client.get_status(application_id), budget)
            except asyncio.TimeoutError:
                logger.warning(f"[POLLER] {application_id} status poll exceeded {budget:.1f}s")
                raise ConvergenceTimeout(application_id, timeout, observation)
            polls += 1
            if on_observation:
                on_observation(observation)

            if observation.converged:
                if await self._at_revision(observation, expected_revision, revision_reached):
                    logger.info(f"[POLLER] {application_id} converged after {polls} polls")
                    return observation
                logger.info(
                    f"[POLLER] {application_id} healthy at stale revision "
                    f"{observation.revision[:8]}, waiting for {expected_revision[:8]}"
                )

            if observation.failing:
                failing_streak += 1
                if failing_streak >= self.failure_threshold:
                    logger.warning(
                        f"[POLLER] {application_id} failing for {failing_streak} consecutive polls "
                        f"(sync={observation.sync_state.value}, health={observation.health_state.value})"
                    )
                    raise ConvergenceFailed(application_id, failing_streak, observation)
            else:
                failing_streak = 0

            if self._clock() - started >= timeout:
                logger.warning(f"[POLLER] {application_id} not converged after {timeout}s ({polls} polls)")
                raise ConvergenceTimeout(application_id, timeout, observation)

            await self._sleep(poll_interval)
