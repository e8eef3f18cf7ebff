import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Union

from loguru import logger

from media_job_client.api_session import ApiSession
from media_job_client.errors import (
    JobCancelledError,
    JobFailedError,
    JobTimeoutError,
    ProtocolError,
)
from media_job_client.models import PollingConfig, PollOutcome, PollResult
from media_job_client.poll_loop import PollLoop
from media_job_client.progress import NullProgressSink, ProgressSink
from media_job_client.settings import ClientSettings
from media_job_client.status_source import HttpStatusSource, StatusSource
from media_job_client.transfers import (
    Configuration,
    HttpResultsFetcher,
    HttpUploader,
    ResultsFetcher,
    Uploader,
)


class JobClient:
    def __init__(
        self,
        uploader: Uploader,
        status_source: StatusSource,
        results_fetcher: ResultsFetcher,
        config: Optional[PollingConfig] = None,
        progress_sink: Optional[ProgressSink] = None,
    ):
        self.uploader = uploader
        self.status_source = status_source
        self.results_fetcher = results_fetcher
        self.config = config or PollingConfig()
        self.progress_sink = progress_sink or NullProgressSink()
        self.logger = logger

    @classmethod
    @asynccontextmanager
    async def connect(
        cls,
        settings: ClientSettings,
        progress_sink: Optional[ProgressSink] = None,
    ) -> AsyncIterator["JobClient"]:
        """Open an HTTP session from `settings` and yield a client bound to it"""
        if settings.api_key is None:
            raise ValueError("An API key is required to connect")

        async with ApiSession(
            settings.api_url,
            settings.api_key.get_secret_value(),
            request_timeout=settings.request_timeout,
            upload_timeout=settings.upload_timeout,
        ) as session:
            yield cls(
                HttpUploader(session),
                HttpStatusSource(session),
                HttpResultsFetcher(session),
                config=settings.polling_config(),
                progress_sink=progress_sink,
            )

    async def run(
        self,
        file_path: Union[str, Path],
        configuration: Optional[Configuration] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Any:
        """Upload a file, wait for its job to finish and return the job's results"""
        job_id = await self.uploader.submit(file_path, configuration)
        outcome = await self.wait_for_job(job_id, cancel_event)
        self._raise_for_outcome(outcome)
        return await self.results_fetcher.fetch(job_id)

    async def wait_for_job(self, job_id: str, cancel_event: Optional[asyncio.Event] = None) -> PollOutcome:
        """Poll an already submitted job until it is terminal or a bound is hit"""
        poll_loop = PollLoop(
            job_id,
            self.status_source,
            config=self.config,
            progress_sink=self.progress_sink,
            cancel_event=cancel_event,
        )
        return await poll_loop.run()

    def _raise_for_outcome(self, outcome: PollOutcome) -> None:
        if outcome.result == PollResult.succeeded:
            return

        payload = outcome.snapshot.raw_response if outcome.snapshot is not None else None
        if outcome.result == PollResult.failed:
            raise JobFailedError(outcome.reason, job_id=outcome.job_id, server_payload=payload)
        if outcome.result == PollResult.cancelled:
            raise JobCancelledError(outcome.reason)
        if outcome.result == PollResult.timed_out:
            raise JobTimeoutError(outcome.reason)
        raise ProtocolError(outcome.reason)
