import json
from pathlib import Path
from typing import Any, Optional, Protocol, Union

import aiohttp
from loguru import logger

from media_job_client.api_session import ApiSession
from media_job_client.errors import FetchError, MediaJobError, UploadError

Configuration = Union[str, dict]


class Uploader(Protocol):
    async def submit(self, file_path: Union[str, Path], configuration: Optional[Configuration] = None) -> str:
        """Upload a file and return the job id the service assigned to it"""
        ...


class ResultsFetcher(Protocol):
    async def fetch(self, job_id: str) -> Any:
        ...


class HttpUploader:
    def __init__(self, session: ApiSession):
        self.session = session
        self.logger = logger

    async def submit(self, file_path: Union[str, Path], configuration: Optional[Configuration] = None) -> str:
        path = Path(file_path)
        if not path.is_file():
            raise UploadError(f"Upload failed: file not found at {path}")

        self.logger.info(f"Uploading {path}...")
        try:
            with path.open("rb") as fh:
                form = aiohttp.FormData()
                form.add_field("file", fh, filename=path.name)
                if configuration is not None:
                    # Configuration is opaque: strings pass through, anything else is JSON-encoded
                    if not isinstance(configuration, str):
                        configuration = json.dumps(configuration)
                    form.add_field("configuration", configuration)
                data = await self.session.post_form("/api/v1/projects/upload", form)
        except MediaJobError as e:
            raise UploadError(f"Upload failed: {e.message}", server_payload=e.server_payload) from e
        except OSError as e:
            raise UploadError(f"Upload failed: could not read {path}: {e}") from e

        project_id = data.get("projectId") if isinstance(data, dict) else None
        if not project_id:
            raise UploadError("Upload failed: response did not include a project id", server_payload=data)

        self.logger.info(f"Project created: {project_id}")
        return str(project_id)


class HttpResultsFetcher:
    def __init__(self, session: ApiSession):
        self.session = session
        self.logger = logger

    async def fetch(self, job_id: str) -> Any:
        try:
            results = await self.session.get(f"/api/v1/projects/{job_id}/results")
        except MediaJobError as e:
            raise FetchError(f"Failed to get results: {e.message}", server_payload=e.server_payload) from e
        self.logger.debug(f"Fetched results for job {job_id}")
        return results
