from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Mapping, Optional, Tuple

from formengine.core.errors import FormEngineError, RuleExecutionError, RuleTimeoutError
from formengine.core.rules import (
    RuleContext,
    ValidationResult,
    ValidationRule,
    error_result,
)


logger = logging.getLogger(__name__)

ErrorSink = Callable[[FormEngineError], None]

MSG_RULE_ERROR = "validation error"
MSG_RULE_TIMEOUT = "validation timed out"


def log_error(err: FormEngineError) -> None:
    logger.error("%s", err)


class RuleEvaluator:
    """
    Runs one rule against one value.

    evaluate() returns:
      - None when the rule's condition is False (skipped, not a pass); this
        applies to every rule kind that carries a condition
      - a ValidationResult otherwise; rule exceptions and timeouts become
        failing results and are reported to on_error.
    """

    def __init__(self, timeout_ms: float = 5_000, on_error: Optional[ErrorSink] = None):
        self.timeout_ms = timeout_ms
        self.error_sink: Optional[ErrorSink] = on_error

    def set_error_sink(self, sink: ErrorSink) -> None:
        self.error_sink = sink

    def _on_error(self, err: FormEngineError) -> None:
        (self.error_sink or log_error)(err)

    def should_run(self, rule: ValidationRule, form_values: Mapping[str, Any], field_id: str = "") -> bool:
        if rule.condition is None:
            return True
        try:
            return bool(rule.condition(form_values))
        except Exception as e:
            # A broken condition must not crash the form; run the rule instead.
            self._on_error(RuleExecutionError(field_id, rule.id, e))
            return True

    async def evaluate(
        self,
        rule: ValidationRule,
        field_id: str,
        value: Any,
        form_values: Mapping[str, Any],
    ) -> Optional[ValidationResult]:
        result, _ = await self.run(rule, field_id, value, form_values)
        return result

    async def run(
        self,
        rule: ValidationRule,
        field_id: str,
        value: Any,
        form_values: Mapping[str, Any],
        *,
        check_condition: bool = True,
    ) -> Tuple[Optional[ValidationResult], bool]:
        """
        Same as evaluate() but also tells whether the result may be cached.
        Results produced by an exception or a timeout are not cacheable.
        check_condition=False is for callers that already called should_run().
        """
        if check_condition and not self.should_run(rule, form_values, field_id):
            return None, False

        ctx = RuleContext(field_id=field_id, form_values=form_values)
        timeout_ms = rule.timeout_ms if rule.timeout_ms is not None else self.timeout_ms
        try:
            outcome = rule.evaluate(value, ctx)
            if inspect.isawaitable(outcome):
                outcome = await asyncio.wait_for(outcome, timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            self._on_error(RuleTimeoutError(field_id, rule.id, timeout_ms))
            return error_result(rule.id, MSG_RULE_TIMEOUT), False
        except Exception as e:
            self._on_error(RuleExecutionError(field_id, rule.id, e))
            return error_result(rule.id, MSG_RULE_ERROR), False

        return self._normalize(rule, outcome), True

    @staticmethod
    def _normalize(rule: ValidationRule, outcome: Any) -> ValidationResult:
        if isinstance(outcome, ValidationResult):
            if outcome.rule_id == rule.id:
                return outcome
            return ValidationResult(valid=outcome.valid, rule_id=rule.id, message=outcome.message)
        if bool(outcome):
            return ValidationResult(valid=True, rule_id=rule.id)
        return ValidationResult(valid=False, rule_id=rule.id, message=rule.message)
