"""Error types and helpers for the agent orchestrator."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

import click


class OrchestratorError(RuntimeError):
    """Base class for orchestration failures."""


class ValidationError(OrchestratorError):
    """Raised when an agent payload does not match its contract.

    Carries every violated field, not just the first one.
    """

    def __init__(self, agent: str, direction: str, errors: Sequence[str]) -> None:
        self.agent = agent
        self.direction = direction
        self.errors = list(errors)
        joined = "; ".join(self.errors) or "unknown validation error"
        super().__init__(f"Invalid {direction} for agent '{agent}': {joined}")


class TransportError(OrchestratorError):
    """Raised when the language-model call fails or times out. Retryable."""


class ParseError(OrchestratorError):
    """Raised when a response holds no recoverable structured payload. Retryable."""


class ConfigurationError(click.ClickException):
    """Raised when required external-service configuration is missing."""


RETRYABLE_ERRORS: tuple[type[Exception], ...] = (TransportError, ParseError, ValidationError)


def _format_location(loc: Iterable[Any]) -> str:
    parts: list[str] = []
    for item in loc:
        if isinstance(item, int):
            parts.append(f"[{item}]")
        elif parts:
            parts.append(f".{item}")
        else:
            parts.append(str(item))
    return "".join(parts) or "<root>"


def format_validation_errors(raw_errors: Iterable[dict[str, Any]]) -> list[str]:
    """Turn pydantic error dicts into stable `field: message` lines."""
    lines: list[str] = []
    for err in raw_errors:
        line = f"{_format_location(err.get('loc', ()))}: {err.get('msg', 'invalid value')}"
        if line not in lines:
            lines.append(line)
    return lines
