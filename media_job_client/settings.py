from typing import Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from media_job_client.models import PollingConfig


# Read once by the CLI and passed down explicitly; library code never
# looks at the environment itself.
class ClientSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SHORTCUT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_key: Optional[SecretStr] = None
    api_url: str = "https://web2labs.com"
    poll_interval: float = Field(default=5.0, ge=0)
    poll_timeout: Optional[float] = Field(default=None, gt=0)
    max_poll_attempts: Optional[int] = Field(default=None, ge=1)
    max_protocol_errors: Optional[int] = Field(default=5, ge=1)
    request_timeout: float = Field(default=30.0, gt=0)
    upload_timeout: Optional[float] = Field(default=None, gt=0)
    log_level: str = "INFO"

    def polling_config(self) -> PollingConfig:
        return PollingConfig(
            poll_interval=self.poll_interval,
            timeout=self.poll_timeout,
            max_attempts=self.max_poll_attempts,
            max_consecutive_protocol_errors=self.max_protocol_errors,
        )
