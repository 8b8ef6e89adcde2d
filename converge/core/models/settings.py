"""
Engine settings — knobs that shape how plans are applied.

Read from the ``settings:`` block of converge.yml and overridden by CLI
flags. None of these affect what a plan contains, only how it runs.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class EngineSettings(BaseModel):
    """Apply-time configuration."""

    parallelism: int = Field(default=10, ge=1)
    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=0.5, ge=0)
    retry_max_delay: float = Field(default=8.0, ge=0)
    breaker_threshold: int = Field(default=5, ge=1)
    breaker_timeout: float = Field(default=30.0, ge=0)
    state_path: str = ".converge/state.json"
