"""Cross-cutting building blocks shared by the services."""

from allay.core.outcome import ErrorKind, Outcome, ServiceError

__all__ = ["ErrorKind", "Outcome", "ServiceError"]
