"""
Error taxonomy for the rules engine.

ConfigurationError aborts a whole cycle. Everything else is scoped to one rule
and ends up in the cycle summary's error list or in that rule's run record.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class AutorulesError(Exception):
    """Base class for engine errors.

    Attributes:
        message: Human-readable message
        context: Optional structured payload safe to log/serialize
        original_error: Optional wrapped exception
    """

    def __init__(
        self,
        message: str,
        *,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"message": self.message, "context": self.context}
        if self.original_error is not None:
            data["original_error"] = type(self.original_error).__name__
        return data


class ConfigurationError(AutorulesError):
    """Backing stores missing or unreachable. Fatal for the invocation."""


class PersistenceError(AutorulesError):
    """An alert, action or run write failed. Not retried."""


class FactReadError(AutorulesError):
    """A performance fact read failed. The rule evaluates with no data."""


class PerRuleError(AutorulesError):
    """Anything raised while gating, evaluating or persisting a single rule."""

    def __init__(
        self,
        rule_id: str,
        message: str,
        *,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message, context={"rule_id": rule_id}, original_error=original_error)
        self.rule_id = rule_id

    @classmethod
    def wrap(cls, rule_id: str, exc: BaseException) -> "PerRuleError":
        if isinstance(exc, PerRuleError):
            return exc
        message = str(exc) or type(exc).__name__
        return cls(rule_id, message, original_error=exc)

    def to_dict(self) -> Dict[str, Any]:
        return {"rule_id": self.rule_id, "message": self.message}
