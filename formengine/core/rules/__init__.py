from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, Union


class RuleKind(str, Enum):
    SYNC = "sync"
    ASYNC = "async"
    CONDITIONAL = "conditional"


def now_ms() -> float:
    return time.time() * 1000.0


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """
    Locked project standard for rule outputs.

    - valid: Blocking status. If False, the field must not be submitted.
    - rule_id: Rule that produced this result.
    - message: Field-level message shown to the user (English only).
    - timestamp: Creation time in epoch milliseconds.

    Results are never patched; a newer result supersedes an older one.
    """
    valid: bool
    rule_id: str
    message: Optional[str] = None
    timestamp: float = field(default_factory=now_ms)


@dataclass(frozen=True, slots=True)
class RuleContext:
    field_id: str
    form_values: Mapping[str, Any]

    def get(self, field_id: str, default: Any = None) -> Any:
        return self.form_values.get(field_id, default)


RuleOutcome = Union[ValidationResult, bool]
EvaluateFn = Callable[[Any, RuleContext], Union[RuleOutcome, Awaitable[RuleOutcome]]]
ConditionFn = Callable[[Mapping[str, Any]], bool]


@dataclass(frozen=True, slots=True)
class ValidationRule:
    """
    A single rule registered for a field.

    - evaluate(value, context) may return a ValidationResult, a bool, or an
      awaitable of either. A bool is turned into a result using `message`.
    - condition(form_values): the rule is skipped while it returns False.
      Required for CONDITIONAL rules, optional for SYNC and ASYNC ones (an
      ASYNC rule with a condition is still debounced).
    - depends_on: other fields this rule reads. They become dependency edges
      and part of the cache key.
    - ttl_ms / timeout_ms: override the engine defaults for this rule.
    """
    id: str
    kind: RuleKind
    evaluate: EvaluateFn
    message: str = "Validation failed"
    condition: Optional[ConditionFn] = None
    depends_on: Tuple[str, ...] = ()
    ttl_ms: Optional[int] = None
    timeout_ms: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("rule id is required")
        if self.kind is RuleKind.CONDITIONAL and self.condition is None:
            raise ValueError(f"conditional rule {self.id!r} needs a condition")
        # Accept lists from callers but keep the stored value hashable.
        object.__setattr__(self, "depends_on", tuple(self.depends_on))

    @property
    def is_async(self) -> bool:
        return self.kind is RuleKind.ASYNC

    @property
    def signature(self) -> str:
        return f"{self.id}-{self.kind.value}"


def ok_result(rule_id: str) -> ValidationResult:
    return ValidationResult(valid=True, rule_id=rule_id)


def error_result(rule_id: str, message: str) -> ValidationResult:
    return ValidationResult(valid=False, rule_id=rule_id, message=message)


def first_error(results: "list[ValidationResult]") -> Optional[str]:
    """Message of the first failing result, or None when all passed."""
    for r in results:
        if not r.valid:
            return r.message or "Validation failed"
    return None


def summarize(results_by_field: Dict[str, "list[ValidationResult]"]) -> Dict[str, str]:
    """field_id -> first error message, for fields that have one."""
    errors: Dict[str, str] = {}
    for field_id, results in results_by_field.items():
        msg = first_error(results)
        if msg:
            errors[field_id] = msg
    return errors


# Re-export commonly used rule factories
from .common_rules import (  # noqa: E402
    async_custom,
    custom,
    email,
    equals_field,
    phone,
    required,
    url,
)
