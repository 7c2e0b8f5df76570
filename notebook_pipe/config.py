"""Configuration for notebook-pipe."""

import sys
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables.

    Environment variables are prefixed with NOTEBOOK_PIPE_
    Example: NOTEBOOK_PIPE_CONNECT_TIMEOUT=60

    Attributes:
        language: Language named by code fences and notebook metadata
        interpreter: Interpreter executable (defaults to the running Python)
        interpreter_args: Arguments placed before the channel address
        environment_path: Package environment / working directory for the interpreter
        channel_prefix: Namespace prefix for generated channel addresses
        connect_timeout: Seconds to wait for the interpreter to connect back
        stop_timeout: Seconds to wait for the interpreter to exit before killing it
        max_line_bytes: Longest protocol line accepted from the interpreter
        preload_script_uri: Script injected once per document before HTML outputs
        fill_outputs: Show stored outputs as soon as a document is opened
    """

    model_config = SettingsConfigDict(env_prefix="NOTEBOOK_PIPE_")

    language: str = Field(default="python")
    interpreter: Optional[str] = Field(default=None)
    interpreter_args: list[str] = Field(
        default_factory=lambda: ["-m", "notebook_pipe.agent"],
    )
    environment_path: Optional[str] = Field(default=None)
    channel_prefix: str = Field(default="notebook-pipe-kernel")
    connect_timeout: float = Field(default=30.0, gt=0)
    stop_timeout: float = Field(default=5.0, gt=0)
    max_line_bytes: int = Field(default=16 * 1024 * 1024, ge=1024)
    preload_script_uri: str = Field(
        default="https://cdn.jsdelivr.net/npm/@jupyter-widgets/html-manager@*/dist/embed-amd.js",
    )
    fill_outputs: bool = Field(default=False)


def get_interpreter_path(settings: Settings) -> str:
    """Interpreter executable used to launch kernels."""
    return settings.interpreter or sys.executable


def get_environment_path(settings: Settings) -> Optional[str]:
    """Package environment directory passed to the interpreter, if any."""
    return settings.environment_path
