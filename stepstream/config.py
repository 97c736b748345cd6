import os
from collections.abc import Mapping

import msgspec
from dotenv import load_dotenv

from stepstream.errors import StepStreamConfigurationError
from stepstream.interface import Record

ENV_PREFIX = "STEPSTREAM_"

ENV_FIELDS = {
    "BASE_URL": "base_url",
    "RESEARCH_PATH": "research_path",
    "HISTORY_PATH": "history_path",
    "TIMEOUT": "timeout_seconds",
    "HISTORY": "history_enabled",
    "LOG_LEVEL": "log_level",
}


class ClientConfig(Record):
    """Settings for talking to a research server."""

    base_url: str
    research_path: str = "/api/research"
    history_path: str = "/api/history"
    timeout_seconds: float = 300.0
    history_enabled: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "ClientConfig":
        """Build a config from `STEPSTREAM_*` variables.

        When `env` is omitted, a `.env` file in the working directory is loaded
        into the process environment first.
        """
        if env is None:
            load_dotenv()
            env = os.environ

        raw = {
            name: env[ENV_PREFIX + key]
            for key, name in ENV_FIELDS.items()
            if env.get(ENV_PREFIX + key)
        }
        if "base_url" not in raw:
            raise StepStreamConfigurationError(
                f"{ENV_PREFIX}BASE_URL must be set to the research server URL"
            )
        try:
            return msgspec.convert(raw, type=cls, strict=False)
        except msgspec.ValidationError as exc:
            raise StepStreamConfigurationError(f"Invalid configuration: {exc}") from exc
