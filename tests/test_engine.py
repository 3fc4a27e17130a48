import asyncio

import pytest

from formengine.config import EngineConfig
from formengine.core.cache import ValidationCache
from formengine.core.engine import ValidationEngine
from formengine.core.errors import CycleError, RuleExecutionError, RuleSetError, RuleTimeoutError
from formengine.core.evaluator import RuleEvaluator
from formengine.core.rules import (
    RuleKind,
    ValidationResult,
    ValidationRule,
    async_custom,
    custom,
    email,
    equals_field,
    required,
)


def counting_rule(rule_id, calls, *, valid=True, depends_on=(), kind=RuleKind.SYNC, **kw):
    """Rule that records every value it is evaluated with."""
    def _evaluate(value, ctx):
        calls.append(value)
        return valid

    return ValidationRule(id=rule_id, kind=kind, evaluate=_evaluate, depends_on=depends_on, **kw)


@pytest.fixture
def engine(clock):
    return ValidationEngine(EngineConfig(debounce_ms=0), clock=clock)


# ----------------------------
# Registration
# ----------------------------
def test_duplicate_field_registration_is_rejected(engine):
    engine.register_field("name", [required()])
    with pytest.raises(RuleSetError):
        engine.register_field("name", [required()])


def test_duplicate_rule_ids_are_rejected(engine):
    with pytest.raises(RuleSetError):
        engine.register_field("name", [required(), required()])


def test_cycle_is_rejected_before_any_rule_runs(engine):
    calls = []
    engine.register_field("A", [counting_rule("a", calls, depends_on=("B",))])

    with pytest.raises(CycleError) as exc:
        engine.register_field("B", [counting_rule("b", calls, depends_on=("A",))])

    assert set(exc.value.path) == {"A", "B"}
    assert "B" not in engine.fields
    assert calls == []


# ----------------------------
# Cache
# ----------------------------
@pytest.mark.asyncio
async def test_same_value_is_served_from_cache(engine, clock):
    calls = []
    engine.register_field("name", [counting_rule("r", calls)])

    await engine.validate_field("name", "Ann")
    await engine.validate_field("name", "Ann")
    assert calls == ["Ann"]

    await engine.validate_field("name", "Bob")
    assert calls == ["Ann", "Bob"]

    clock.advance(engine.config.sync_ttl_ms)
    await engine.validate_field("name", "Ann")
    assert calls == ["Ann", "Bob", "Ann"]


@pytest.mark.asyncio
async def test_dependency_value_is_part_of_the_cache_key(engine):
    calls = []
    engine.register_field("confirm", [counting_rule("match", calls, depends_on=("email",))])

    await engine.validate_field("confirm", "a@x.com", {"email": "a@x.com"})
    await engine.validate_field("confirm", "a@x.com", {"email": "b@x.com"})
    # Fields the rule does not read do not matter.
    await engine.validate_field("confirm", "a@x.com", {"email": "b@x.com", "name": "Ann"})

    assert len(calls) == 2


@pytest.mark.asyncio
async def test_field_change_invalidates_dependents(engine):
    calls = []
    engine.register_field("email", [email()])
    engine.register_field("confirm", [counting_rule("match", calls, depends_on=("email",))])
    values = {"email": "a@x.com", "confirm": "a@x.com"}

    await engine.validate_field("confirm", "a@x.com", values)
    await engine.validate_field("confirm", "a@x.com", values)
    assert len(calls) == 1

    affected = engine.on_field_change("email", "a@x.com", values)
    assert affected == ["confirm"]

    await engine.validate_field("confirm", "a@x.com", values)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_warm_cache_precomputes_without_committing(engine):
    calls = []
    engine.register_field("name", [counting_rule("r", calls)])
    engine.register_field("empty", [counting_rule("r", calls)])

    await engine.warm_cache({"name": "Ann", "empty": ""})
    assert calls == ["Ann"]
    assert engine.results_for("name") == []

    await engine.validate_field("name", "Ann", {"name": "Ann", "empty": ""})
    assert calls == ["Ann"]
    assert engine.cache_stats().hits >= 1


# ----------------------------
# Debounce / staleness
# ----------------------------
@pytest.mark.asyncio
async def test_rapid_calls_collapse_into_one_async_run():
    engine = ValidationEngine(EngineConfig(debounce_ms=50))
    calls = []

    async def available(value, ctx):
        calls.append(value)
        return True

    engine.register_field("username", [ValidationRule(id="available", kind=RuleKind.ASYNC, evaluate=available)])

    tasks = [asyncio.create_task(engine.validate_field("username", f"user{i}")) for i in range(10)]
    results = await asyncio.gather(*tasks)

    assert calls == ["user9"]
    assert all(r == results[-1] for r in results)
    assert engine.results_for("username") == results[-1]


@pytest.mark.asyncio
async def test_sync_rules_are_not_debounced():
    engine = ValidationEngine(EngineConfig(debounce_ms=10_000))
    engine.register_field("name", [required()])

    results = await asyncio.wait_for(engine.validate_field("name", ""), timeout=1)
    assert results[0].valid is False


@pytest.mark.asyncio
async def test_stale_result_never_overwrites_newer_one(engine):
    async def check(value, ctx):
        if value == "slow":
            await asyncio.sleep(0.1)
        return ValidationResult(valid=value == "fast", rule_id="check", message=value)

    engine.register_field("f", [ValidationRule(id="check", kind=RuleKind.ASYNC, evaluate=check)])

    first = asyncio.create_task(engine.validate_field("f", "slow"))
    await asyncio.sleep(0.01)
    second = await engine.validate_field("f", "fast")
    first_results = await first

    assert second[0].message == "fast"
    assert first_results == second
    assert engine.results_for("f")[0].message == "fast"
    assert engine.is_validating("f") is False


# ----------------------------
# Ordering
# ----------------------------
@pytest.mark.asyncio
async def test_validate_form_runs_in_dependency_order(engine):
    order = []

    def rule_for(name, deps=()):
        def _evaluate(value, ctx):
            order.append(name)
            return True
        return ValidationRule(id=f"r_{name}", kind=RuleKind.SYNC, evaluate=_evaluate, depends_on=deps)

    # Registered in reverse on purpose.
    engine.register_field("C", [rule_for("C", ("B",))])
    engine.register_field("B", [rule_for("B", ("A",))])
    engine.register_field("A", [rule_for("A")])

    results = await engine.validate_form({"A": 1, "B": 2, "C": 3})

    assert order == ["A", "B", "C"]
    assert set(results) == {"A", "B", "C"}
    assert engine.on_field_change("A", 1) == ["B", "C"]


@pytest.mark.asyncio
async def test_results_keep_rule_order(engine):
    async def remote_ok(value, ctx):
        return True

    engine.register_field(
        "name",
        [
            ValidationRule(id="remote", kind=RuleKind.ASYNC, evaluate=remote_ok),
            required(),
        ],
    )
    results = await engine.validate_field("name", "Ann")
    assert [r.rule_id for r in results] == ["remote", "required"]


# ----------------------------
# Failures
# ----------------------------
@pytest.mark.asyncio
async def test_broken_rule_does_not_crash_validation(engine):
    reported = []
    engine.add_error_listener(reported.append)
    calls = []

    def boom(value, ctx):
        calls.append(value)
        raise RuntimeError("bug")

    engine.register_field("name", [ValidationRule(id="boom", kind=RuleKind.SYNC, evaluate=boom), required()])

    results = await engine.validate_field("name", "Ann")
    assert results[0].valid is False
    assert results[0].message == "validation error"
    assert results[1].valid is True
    assert isinstance(reported[0], RuleExecutionError)

    # Error results are not cached.
    await engine.validate_field("name", "Ann")
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_timed_out_rule_reports_and_is_retried(engine):
    reported = []
    engine.add_error_listener(reported.append)
    calls = []

    async def slow(value, ctx):
        calls.append(value)
        await asyncio.sleep(0.5)
        return True

    engine.register_field("username", [ValidationRule(id="slow", kind=RuleKind.ASYNC, evaluate=slow, timeout_ms=20)])

    results = await engine.validate_field("username", "bob")
    assert results[0].message == "validation timed out"
    assert isinstance(reported[0], RuleTimeoutError)

    await engine.validate_field("username", "bob")
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_reporting(engine):
    def bad_listener(err):
        raise RuntimeError("listener bug")

    engine.add_error_listener(bad_listener)

    def boom(value, ctx):
        raise ValueError("x")

    engine.register_field("name", [ValidationRule(id="boom", kind=RuleKind.SYNC, evaluate=boom)])
    results = await engine.validate_field("name", "Ann")
    assert results[0].valid is False


# ----------------------------
# Conditional rules
# ----------------------------
@pytest.mark.asyncio
async def test_skipped_conditional_rule_is_not_cached_as_pass(engine):
    calls = []

    def zip_ok(value):
        calls.append(value)
        return len(value) == 5

    engine.register_field(
        "zip",
        [custom("us_zip", zip_ok, "Invalid ZIP", when=lambda fv: fv.get("country") == "US", depends_on=["country"])],
    )

    assert await engine.validate_field("zip", "12", {"country": "DE"}) == []
    assert calls == []

    results = await engine.validate_field("zip", "12", {"country": "US"})
    assert results[0].valid is False
    assert results[0].message == "Invalid ZIP"
    assert calls == ["12"]


@pytest.mark.asyncio
async def test_condition_gates_sync_rules_too(engine):
    calls = []
    engine.register_field(
        "nickname",
        [counting_rule("r", calls, valid=False, condition=lambda fv: fv.get("show_nickname") is True)],
    )

    assert await engine.validate_field("nickname", "x", {"show_nickname": False}) == []
    assert calls == []

    results = await engine.validate_field("nickname", "x", {"show_nickname": True})
    assert [r.valid for r in results] == [False]
    assert calls == ["x"]


@pytest.mark.asyncio
async def test_conditional_async_rule_is_still_debounced():
    engine = ValidationEngine(EngineConfig(debounce_ms=50))
    calls = []

    async def available(value):
        calls.append(value)
        return True

    engine.register_field("username", [async_custom("available", available, when=lambda fv: fv.get("new_account"))])

    assert await engine.validate_field("username", "ann", {"new_account": False}) == []
    assert calls == []

    tasks = [
        asyncio.create_task(engine.validate_field("username", f"user{i}", {"new_account": True}))
        for i in range(5)
    ]
    results = await asyncio.gather(*tasks)

    assert calls == ["user4"]
    assert results[-1][0].valid is True


# ----------------------------
# Injected collaborators
# ----------------------------
@pytest.mark.asyncio
async def test_injected_empty_cache_is_used(clock):
    shared = ValidationCache(clock)
    engine = ValidationEngine(EngineConfig(debounce_ms=0), cache=shared, clock=clock)
    engine.register_field("name", [required()])

    await engine.validate_field("name", "Ann")
    assert len(shared) == 1


@pytest.mark.asyncio
async def test_injected_evaluator_errors_reach_engine_listeners():
    sink_errors, listener_errors = [], []

    def boom(value, ctx):
        raise RuntimeError("bug")

    engine = ValidationEngine(
        EngineConfig(debounce_ms=0),
        evaluator=RuleEvaluator(on_error=sink_errors.append),
        on_error=listener_errors.append,
    )
    engine.register_field("name", [ValidationRule(id="boom", kind=RuleKind.SYNC, evaluate=boom)])

    await engine.validate_field("name", "Ann")

    assert [type(e) for e in listener_errors] == [RuleExecutionError]
    assert sink_errors == listener_errors


# ----------------------------
# End to end
# ----------------------------
@pytest.mark.asyncio
async def test_confirm_email_follows_email_changes(engine):
    engine.register_field("email", [required(), email()])
    engine.register_field("confirmEmail", [required(), equals_field("email")])

    values = {"email": "a@x.com", "confirmEmail": "a@x.com"}
    form = await engine.validate_form(values)
    assert all(r.valid for results in form.values() for r in results)

    values["email"] = "b@x.com"
    affected = engine.on_field_change("email", "b@x.com", values)
    assert affected == ["confirmEmail"]

    email_results = await engine.validate_field("email", "b@x.com", values)
    assert all(r.valid for r in email_results)

    confirm = await engine.validate_field("confirmEmail", values["confirmEmail"], values)
    failing = [r for r in confirm if not r.valid]
    assert [r.message for r in failing] == ["must match email"]
