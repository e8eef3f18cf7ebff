from typing import Protocol

from loguru import logger

from media_job_client.api_session import ApiSession
from media_job_client.models import StatusSnapshot


class StatusSource(Protocol):
    async def fetch(self, job_id: str) -> StatusSnapshot:
        """One status round trip. Raises TransientError or ProtocolError, never retries."""
        ...


class HttpStatusSource:
    def __init__(self, session: ApiSession):
        self.session = session
        self.logger = logger

    async def fetch(self, job_id: str) -> StatusSnapshot:
        data = await self.session.get(f"/api/v1/projects/{job_id}/status")
        snapshot = StatusSnapshot.from_payload(data)
        self.logger.debug(
            f"Job {job_id} status={snapshot.raw_status} "
            f"progress={snapshot.progress_percent:.0f}% stage={snapshot.progress_stage}"
        )
        return snapshot
