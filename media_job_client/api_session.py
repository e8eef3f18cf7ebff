import asyncio
import json
from typing import Any, Optional

import aiohttp
from loguru import logger

from media_job_client.errors import ProtocolError, TransientError


class ApiSession:
    """aiohttp session bound to one API base URL and key.

    Every response is expected to wrap its payload as `{"data": ...}`;
    `request` returns the unwrapped payload.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        request_timeout: float = 30.0,
        upload_timeout: Optional[float] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.request_timeout = request_timeout
        self.upload_timeout = upload_timeout
        self.logger = logger
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "ApiSession":
        self._session = aiohttp.ClientSession(
            headers={"X-API-Key": self.api_key},
            timeout=aiohttp.ClientTimeout(total=self.request_timeout),
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def get(self, path: str) -> Any:
        return await self.request("GET", path)

    async def post_form(self, path: str, form: aiohttp.FormData) -> Any:
        # Uploads are bounded by upload_timeout only, not the per-request default
        timeout = aiohttp.ClientTimeout(total=self.upload_timeout)
        return await self.request("POST", path, data=form, timeout=timeout)

    async def request(self, method: str, path: str, **kwargs) -> Any:
        """Performs one round trip and returns the `data` member of the body.

        Raises TransientError on transport failures and non-2xx statuses,
        ProtocolError when the body is not a JSON envelope.
        """
        if self._session is None:
            raise RuntimeError("API session not initialized. Use 'async with' context manager.")

        url = self.url(path)
        try:
            async with self._session.request(method, url, **kwargs) as response:
                body = await self._read_body(response)
                if response.status >= 400:
                    if response.status in (401, 403):
                        self.logger.warning(f"Authentication failed at {url} ({response.status})")
                    raise TransientError(
                        f"HTTP {response.status} from {method} {url}",
                        status=response.status,
                        server_payload=body,
                    )
        except asyncio.TimeoutError as e:
            raise TransientError(f"Timed out waiting for {method} {url}") from e
        except aiohttp.ClientError as e:
            raise TransientError(f"Connection error for {method} {url}: {e}") from e

        if not isinstance(body, dict) or "data" not in body:
            raise ProtocolError(f"Response from {method} {url} has no data envelope", server_payload=body)
        return body["data"]

    async def _read_body(self, response: aiohttp.ClientResponse) -> Any:
        raw = await response.read()
        if not raw.strip():
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except ValueError:
            # covers both UnicodeDecodeError and JSONDecodeError
            text = raw.decode("utf-8", errors="replace")
            if response.status < 400:
                raise ProtocolError(
                    f"Invalid JSON response from {response.url}: '{text[:100]}'",
                    server_payload=text,
                )
            return text
