"""Provide the server configuration model."""

import os
import re
import tempfile
from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator

_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}


def parse_duration(value: Union[str, int, float]) -> float:
    """Parse a duration such as ``15``, ``15s``, ``500ms`` or ``2m`` into seconds."""
    if isinstance(value, (int, float)):
        return float(value)
    match = re.fullmatch(r"\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*", value)
    if not match:
        raise ValueError(f"Invalid duration: {value!r}")
    number, unit = match.groups()
    return float(number) * _DURATION_UNITS[unit or "s"]


def default_repos_path() -> str:
    """Create a temporary directory to serve repositories from."""
    return tempfile.mkdtemp(prefix="gitd")


class ServerConfig(BaseModel):
    """Represent the configuration of a gitd server.

    Built once at startup and passed to the router and the process bridge.
    """

    host: str = "localhost"
    port: int = 12345
    repos_path: str = Field(default_factory=default_repos_path)
    log_level: str = "WARNING"
    log_file: Optional[str] = None
    shutdown_timeout: float = 15.0
    chunk_size: int = Field(default=65536, gt=0)
    git_executable: str = "git"

    @field_validator("repos_path")
    @classmethod
    def absolute_repos_path(cls, value: str) -> str:
        """Make the repositories root absolute."""
        return os.path.abspath(os.path.expanduser(value))

    @field_validator("log_level")
    @classmethod
    def upper_log_level(cls, value: str) -> str:
        """Normalize the log level name."""
        return value.upper()

    @field_validator("shutdown_timeout", mode="before")
    @classmethod
    def parse_shutdown_timeout(cls, value):
        """Accept durations with units."""
        return parse_duration(value)
