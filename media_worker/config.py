import importlib
import socket
from typing import Any, Callable, Optional

from pydantic import Field, PositiveInt, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class WorkerSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    MANAGER_URL: str
    WORKER_API_KEY: str = Field(min_length=1)
    WORKER_ID: str = Field(default_factory=lambda: f"worker-{socket.gethostname()}")

    MAX_CONCURRENT_JOBS: PositiveInt = 2
    POLL_INTERVAL_SECONDS: PositiveInt = 5
    HEARTBEAT_INTERVAL_SECONDS: PositiveInt = 30
    DRAIN_TIMEOUT_SECONDS: PositiveInt = 300

    EVENT_PROCESSING_ENABLED: bool = True

    # "package.module:function" import paths for the work itself
    JOB_HANDLER: Optional[str] = None
    EVENT_HANDLER: Optional[str] = None

    LOG_LEVEL: str = "INFO"

    @field_validator("MANAGER_URL")
    @classmethod
    def _strip_slash(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("MANAGER_URL must be an http(s) URL")
        return value.rstrip("/")

    @model_validator(mode="after")
    def _needs_a_handler(self) -> "WorkerSettings":
        if not self.JOB_HANDLER and not (self.EVENT_PROCESSING_ENABLED and self.EVENT_HANDLER):
            raise ValueError("Configure JOB_HANDLER and/or EVENT_HANDLER; this worker has nothing to do")
        return self


def load_handler(path: str) -> Callable[..., Any]:
    """Resolves "package.module:attr" to the callable it names."""
    module_name, sep, attr = path.partition(":")
    if not sep or not attr:
        raise ValueError(f"Handler path must look like 'package.module:function', got {path!r}")

    handler = getattr(importlib.import_module(module_name), attr)
    if not callable(handler):
        raise TypeError(f"{path} is not callable")
    return handler
