from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class HarnessSettings(BaseSettings):
    # Engine connection
    ENGINE_HOST: str = "localhost"

    # Timeouts (seconds)
    RECEIVE_TIMEOUT: float = 10.0
    HANDSHAKE_TIMEOUT: float = 10.0
    STARTUP_TIMEOUT: Optional[float] = None  # None: wait until the engine exits
    SHUTDOWN_GRACE: float = 2.0
    POLL_INTERVAL: float = 0.05

    # Wire framing
    FRAMING: Literal["terminator", "length"] = "terminator"
    FRAME_TERMINATOR: str = "fffefdfc"  # hex

    # Profiling launcher, prepended to the engine command line with --profile
    PROFILER_COMMAND: str = "perf record -g --"

    # Logging
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="REPLAY_HARNESS_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("FRAME_TERMINATOR")
    @classmethod
    def _terminator_is_hex(cls, value: str) -> str:
        if not value or len(bytes.fromhex(value)) == 0:
            raise ValueError("FRAME_TERMINATOR must be a non-empty hex string")
        return value.lower()

    @field_validator("LOG_LEVEL")
    @classmethod
    def _known_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")
        return value

    @property
    def frame_terminator(self) -> bytes:
        return bytes.fromhex(self.FRAME_TERMINATOR)


settings = HarnessSettings()


def get_settings() -> HarnessSettings:
    return settings
