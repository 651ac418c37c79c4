"""Per-step and per-run configuration."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

# A number, or a function computing it from ``(shared, ctx)`` at run time.
IntOrFn = Union[int, Callable[..., int]]
FloatOrFn = Union[float, Callable[..., float]]


class StepOptions(BaseModel):
    """Retry / delay / timeout settings attached to a single step.

    Every field accepts either a plain number or a callable
    ``(shared, ctx) -> number`` so values can depend on the current state,
    e.g. ``retries=lambda s, ctx: 3 if ctx.item == "flaky" else 1``.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True)

    retries: IntOrFn = Field(
        default=1, description="Total attempts for the step body (1 = no retry)"
    )
    retry_delay: FloatOrFn = Field(
        default=0.0, description="Seconds to wait between attempts"
    )
    timeout: Optional[FloatOrFn] = Field(
        default=None, description="Per-attempt wall-clock limit in seconds"
    )

    @field_validator("retries")
    @classmethod
    def _check_retries(cls, value: Any) -> Any:
        if not callable(value) and value < 1:
            raise ValueError("retries must be >= 1")
        return value

    @field_validator("retry_delay")
    @classmethod
    def _check_delay(cls, value: Any) -> Any:
        if not callable(value) and value < 0:
            raise ValueError("retry_delay must be >= 0")
        return value

    @field_validator("timeout")
    @classmethod
    def _check_timeout(cls, value: Any) -> Any:
        if value is not None and not callable(value) and value <= 0:
            raise ValueError("timeout must be > 0 seconds")
        return value

    @classmethod
    def coerce(cls, options: "StepOptions | Mapping[str, Any] | None") -> "StepOptions":
        """Accept ``None``, a plain mapping, or an existing ``StepOptions``."""
        if options is None:
            return _DEFAULT_OPTIONS
        if isinstance(options, StepOptions):
            return options
        return cls(**options)

    def resolve(self, name: str, shared: Any, ctx: Any) -> Any:
        """Return the value of *name*, calling it first when it is a function."""
        value = getattr(self, name)
        if callable(value):
            return value(shared, ctx)
        return value


_DEFAULT_OPTIONS = StepOptions()


@dataclass
class RunOptions:
    """Configuration for a single ``run()`` / ``stream()`` call."""

    # Ceiling on label jumps per run; None disables the check.
    max_cycles: Optional[int] = None
    # Ceiling on executed steps per run (nested chains included).
    max_steps: Optional[int] = None
    # Any object with ``is_set()`` (``asyncio.Event``, ``threading.Event``).
    cancel: Any = None
