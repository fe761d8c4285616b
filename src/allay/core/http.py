"""Translate service outcomes into HTTP responses."""

from __future__ import annotations

from typing import TypeVar

from fastapi import HTTPException

from allay.core.outcome import Outcome

T = TypeVar("T")


def unwrap(outcome: Outcome[T]) -> T:
    """Return the outcome's value or raise the matching HTTPException."""
    if outcome.error is not None:
        raise HTTPException(
            status_code=outcome.error.kind.http_status,
            detail=outcome.error.message,
        )
    return outcome.value  # type: ignore[return-value]
