from typing import Any, Optional


class MediaJobError(Exception):
    """Base class for everything the client raises"""

    def __init__(self, message: str, server_payload: Optional[Any] = None):
        self.message = message
        self.server_payload = server_payload
        super().__init__(message)


class TransientError(MediaJobError):
    """The status request itself failed (timeout, connection error, non-2xx)"""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        server_payload: Optional[Any] = None,
    ):
        self.status = status
        super().__init__(message, server_payload)


class ProtocolError(MediaJobError):
    """A response could not be parsed into the expected shape"""


class JobFailedError(MediaJobError):
    """The service reported the job as Failed"""

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        server_payload: Optional[Any] = None,
    ):
        self.job_id = job_id
        super().__init__(message, server_payload)


class JobCancelledError(MediaJobError):
    pass


class JobTimeoutError(MediaJobError):
    pass


class UploadError(MediaJobError):
    pass


class FetchError(MediaJobError):
    pass
