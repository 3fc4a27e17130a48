from __future__ import annotations

import re
from typing import Any, Awaitable, Callable, Iterable, Optional
from urllib.parse import urlparse

from . import RuleContext, RuleKind, ValidationRule
from formengine.core.canonical import is_blank


_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^\+?[1-9]\d{0,15}$")


def required(message: str = "This field is required", *, rule_id: str = "required") -> ValidationRule:
    """
    Value must not be empty.
    - Placeholder values are treated as empty.
    - 0 and False are accepted.
    """
    def _check(value: Any, ctx: RuleContext) -> bool:
        return not is_blank(value)

    return ValidationRule(id=rule_id, kind=RuleKind.SYNC, evaluate=_check, message=message)


def email(message: str = "Invalid email format", *, rule_id: str = "email") -> ValidationRule:
    """Empty values pass; combine with required() to enforce presence."""
    def _check(value: Any, ctx: RuleContext) -> bool:
        if is_blank(value):
            return True
        return bool(_EMAIL_RE.match(str(value).strip()))

    return ValidationRule(id=rule_id, kind=RuleKind.SYNC, evaluate=_check, message=message)


def phone(message: str = "Invalid phone number", *, rule_id: str = "phone") -> ValidationRule:
    def _check(value: Any, ctx: RuleContext) -> bool:
        if is_blank(value):
            return True
        s = re.sub(r"[\s()-]", "", str(value))
        return bool(_PHONE_RE.match(s))

    return ValidationRule(id=rule_id, kind=RuleKind.SYNC, evaluate=_check, message=message)


def url(message: str = "Invalid URL format", *, rule_id: str = "url") -> ValidationRule:
    def _check(value: Any, ctx: RuleContext) -> bool:
        if is_blank(value):
            return True
        parsed = urlparse(str(value).strip())
        return parsed.scheme in ("http", "https") and bool(parsed.netloc)

    return ValidationRule(id=rule_id, kind=RuleKind.SYNC, evaluate=_check, message=message)


def equals_field(
    other_field: str,
    message: Optional[str] = None,
    *,
    rule_id: Optional[str] = None,
) -> ValidationRule:
    """
    Value must equal the current value of `other_field`.
    Registers `other_field` as a dependency so edits there re-validate this field.
    """
    def _check(value: Any, ctx: RuleContext) -> bool:
        return value == ctx.get(other_field)

    return ValidationRule(
        id=rule_id or f"equals_{other_field}",
        kind=RuleKind.SYNC,
        evaluate=_check,
        message=message or f"must match {other_field}",
        depends_on=(other_field,),
    )


def custom(
    rule_id: str,
    check: Callable[[Any], bool],
    message: str = "Validation failed",
    *,
    when: Optional[Callable[[Any], bool]] = None,
    depends_on: Iterable[str] = (),
    ttl_ms: Optional[int] = None,
) -> ValidationRule:
    """
    Wraps a plain predicate. With `when`, the rule becomes CONDITIONAL and is
    only run while when(form_values) holds.
    """
    def _check(value: Any, ctx: RuleContext) -> bool:
        return check(value) is True

    return ValidationRule(
        id=rule_id,
        kind=RuleKind.CONDITIONAL if when is not None else RuleKind.SYNC,
        evaluate=_check,
        message=message,
        condition=when,
        depends_on=tuple(depends_on),
        ttl_ms=ttl_ms,
    )


def async_custom(
    rule_id: str,
    check: Callable[[Any], Awaitable[bool]],
    message: str = "Validation failed",
    *,
    when: Optional[Callable[[Any], bool]] = None,
    depends_on: Iterable[str] = (),
    ttl_ms: Optional[int] = None,
    timeout_ms: Optional[int] = None,
) -> ValidationRule:
    """
    Remote/IO-bound check (e.g. "username is available"). Debounced by the
    engine; with `when` it only runs while when(form_values) holds.
    """
    async def _check(value: Any, ctx: RuleContext) -> bool:
        return (await check(value)) is True

    return ValidationRule(
        id=rule_id,
        kind=RuleKind.ASYNC,
        evaluate=_check,
        message=message,
        condition=when,
        depends_on=tuple(depends_on),
        ttl_ms=ttl_ms,
        timeout_ms=timeout_ms,
    )
