import asyncio
from typing import Any, Awaitable, Optional

from loguru import logger

from media_job_client.errors import ProtocolError, TransientError
from media_job_client.models import (
    JobState,
    PollingConfig,
    PollOutcome,
    PollResult,
    StatusSnapshot,
)
from media_job_client.progress import NullProgressSink, ProgressSink
from media_job_client.status_source import StatusSource

UNKNOWN_ERROR = "Unknown error"


class _Interrupted(Exception):
    """Raised out of a suspension point when cancellation or the deadline wins"""

    def __init__(self, result: PollResult):
        self.result = result
        super().__init__(result.value)


class PollLoop:
    """Polls the status of one job until it reaches a terminal state.

    Transport failures never end the loop. Unparsable responses end it only
    after `max_consecutive_protocol_errors` in a row. Besides a terminal job
    status, the loop stops on the cancel event, the `timeout` deadline or
    `max_attempts`, each of which is observed while awaiting a request and
    while waiting between polls.
    """

    def __init__(
        self,
        job_id: str,
        status_source: StatusSource,
        config: Optional[PollingConfig] = None,
        progress_sink: Optional[ProgressSink] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.job_id = job_id
        self.status_source = status_source
        self.config = config or PollingConfig()
        self.progress_sink = progress_sink or NullProgressSink()
        self.cancel_event = cancel_event
        self.logger = logger

        self.attempts = 0
        self.last_snapshot: Optional[StatusSnapshot] = None
        self._protocol_errors = 0
        self._deadline: Optional[float] = None

    async def run(self) -> PollOutcome:
        """Poll until the job is terminal or a bound is hit"""
        loop = asyncio.get_event_loop()
        if self.config.timeout is not None:
            self._deadline = loop.time() + self.config.timeout

        self.logger.info(f"Tracking progress for job {self.job_id}...")
        try:
            while True:
                interrupted = self._check_bounds()
                if interrupted is not None:
                    return self._interrupted(interrupted)

                self.attempts += 1
                try:
                    outcome = await self._poll_once()
                    if outcome is not None:
                        return outcome
                    if self._attempts_exhausted():
                        continue
                    await self._wait_before_next_poll()
                except _Interrupted as interrupt:
                    return self._interrupted(interrupt.result)
        finally:
            self.progress_sink.close()

    async def _poll_once(self) -> Optional[PollOutcome]:
        """One fetch; returns an outcome only when polling should stop"""
        try:
            snapshot = await self._suspend(self.status_source.fetch(self.job_id))
        except TransientError as e:
            self.logger.debug(f"Transient error polling job {self.job_id} (attempt {self.attempts}): {e}")
            return None
        except ProtocolError as e:
            self._protocol_errors += 1
            self.logger.warning(
                f"Unparsable status for job {self.job_id} "
                f"({self._protocol_errors} in a row): {e}"
            )
            limit = self.config.max_consecutive_protocol_errors
            if limit is not None and self._protocol_errors >= limit:
                reason = f"Status endpoint returned {self._protocol_errors} consecutive unparsable responses: {e}"
                self.logger.error(f"Giving up on job {self.job_id}: {reason}")
                return self._outcome(PollResult.protocol_error, reason)
            return None

        self._protocol_errors = 0
        self.last_snapshot = snapshot
        if not snapshot.recognized:
            self.logger.warning(
                f"Job {self.job_id} reported unrecognized status '{snapshot.raw_status}', treating as running"
            )
        self._publish(snapshot)

        if snapshot.state == JobState.completed:
            self.logger.info(f"Job {self.job_id} completed after {self.attempts} polls")
            return self._outcome(PollResult.succeeded)
        if snapshot.state == JobState.failed:
            reason = snapshot.error_message or UNKNOWN_ERROR
            self.logger.error(f"Job {self.job_id} failed: {reason}")
            return self._outcome(PollResult.failed, reason)
        return None

    def _publish(self, snapshot: StatusSnapshot) -> None:
        try:
            self.progress_sink.on_update(snapshot)
        except Exception:
            self.logger.opt(exception=True).warning(f"Progress sink failed for job {self.job_id}")

    async def _wait_before_next_poll(self) -> None:
        delay = self.config.poll_interval
        self.logger.debug(f"Job {self.job_id} not finished, waiting {delay:.2f}s before next poll")
        await self._suspend(asyncio.sleep(delay))

    async def _suspend(self, aw: Awaitable[Any]) -> Any:
        """Await `aw` unless cancellation or the deadline comes first.

        The losing awaitables are cancelled, including `aw` itself, so no
        request is left in flight once the loop stops.
        """
        task = asyncio.ensure_future(aw)
        waiters = {task}
        cancel_waiter = None
        if self.cancel_event is not None:
            cancel_waiter = asyncio.ensure_future(self.cancel_event.wait())
            waiters.add(cancel_waiter)

        timeout = None
        if self._deadline is not None:
            timeout = max(self._deadline - asyncio.get_event_loop().time(), 0)

        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending = [waiter for waiter in waiters if not waiter.done()]
            for waiter in pending:
                waiter.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if task in done:
            return task.result()
        if cancel_waiter is not None and cancel_waiter in done:
            raise _Interrupted(PollResult.cancelled)
        raise _Interrupted(PollResult.timed_out)

    def _check_bounds(self) -> Optional[PollResult]:
        if self.cancel_event is not None and self.cancel_event.is_set():
            return PollResult.cancelled
        if self._deadline is not None and asyncio.get_event_loop().time() >= self._deadline:
            return PollResult.timed_out
        if self._attempts_exhausted():
            return PollResult.timed_out
        return None

    def _attempts_exhausted(self) -> bool:
        return self.config.max_attempts is not None and self.attempts >= self.config.max_attempts

    def _interrupted(self, result: PollResult) -> PollOutcome:
        if result == PollResult.cancelled:
            reason = f"Polling for job {self.job_id} was cancelled"
        elif self._attempts_exhausted():
            reason = f"Job {self.job_id} did not complete within {self.config.max_attempts} polls"
        else:
            reason = f"Job {self.job_id} did not complete within {self.config.timeout} seconds"
        self.logger.warning(reason)
        return self._outcome(result, reason)

    def _outcome(self, result: PollResult, reason: Optional[str] = None) -> PollOutcome:
        return PollOutcome(
            job_id=self.job_id,
            result=result,
            snapshot=self.last_snapshot,
            reason=reason,
            attempts=self.attempts,
        )
