from typing import Optional

from pydantic import HttpUrl, SecretStr, field_validator
from pydantic_settings import BaseSettings
from rich import print

from batchpoll.core.interfaces.logging import LoggingPort
from batchpoll.core.models.entry import Region

# using pydantic_settings to manage environment variables
# and do automatic type casting in a central place
class BatchPollSettings(BaseSettings):
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": True,
        "extra": "ignore"  # ignore unrelated environment variables
    }
    BATCHPOLL_LOG_LEVEL: str = "INFO"
    BATCHPOLL_REGION: Region = Region.europe
    BATCHPOLL_MERCHANT_ID: str = "merchant"
    BATCHPOLL_REMOTE_SERVICE_URL: HttpUrl = HttpUrl("http://remote-jobs:8080/")
    BATCHPOLL_REMOTE_API_KEY: Optional[SecretStr] = None
    BATCHPOLL_REMOTE_TIMEOUT: float = 30.0  # seconds
    BATCHPOLL_DATABASE_URL: str = "sqlite+pysqlite:///./batchpoll.db"
    BATCHPOLL_POLL_INTERVAL: float = 120.0  # seconds between ticks of run_forever
    BATCHPOLL_MAX_SUBMIT_RETRIES: int = 4
    BATCHPOLL_MAX_STATUS_RETRIES: int = 10
    BATCHPOLL_MAX_DOWNLOAD_RETRIES: int = 4
    BATCHPOLL_MAX_INVOKE_RETRIES: int = 4
    BATCHPOLL_MAX_VERIFICATION_RETRIES: int = 3
    # 30 min, 1 h, then every 4 h
    BATCHPOLL_RETRY_DELAYS: list[float] = [1800.0, 3600.0, 14400.0]
    BATCHPOLL_LEASE_SECONDS: float = 600.0
    BATCHPOLL_REMOTE_RETRY_ATTEMPTS: int = 3

    @field_validator("BATCHPOLL_MERCHANT_ID")
    def ensure_merchant_id(cls, value: str) -> str:
        """Reject blank merchant ids early; every entry is owned by one."""
        if not value.strip():
            raise ValueError("BATCHPOLL_MERCHANT_ID must not be empty")
        return value.strip()

    def print_settings(self, logger: LoggingPort):
        """Prints the settings for debugging purposes"""
        logger.info("batchpoll settings:")
        print(self)


def load_settings(**overrides) -> BatchPollSettings:
    """Read settings from the environment / .env; keyword overrides win."""
    return BatchPollSettings(**overrides)
