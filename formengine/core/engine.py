from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from formengine.config import EngineConfig
from formengine.core.cache import CacheStats, Clock, ValidationCache
from formengine.core.canonical import context_signature, is_blank, stable_hash
from formengine.core.dependency_graph import DependencyGraph, FieldDependency
from formengine.core.errors import FormEngineError, RuleSetError
from formengine.core.evaluator import ErrorSink, RuleEvaluator
from formengine.core.rules import RuleKind, ValidationResult, ValidationRule


logger = logging.getLogger(__name__)


class _StaleValidation(Exception):
    """A newer validate_field() call for the same field superseded this one."""


class ValidationEngine:
    """
    Orchestrates RuleEvaluator + ValidationCache + DependencyGraph.

    Ordering contract:
    - Every validate_field() call bumps the field's generation.
    - A call whose generation is no longer current (checked after the
      debounce window and after async rules return) is stale: its results
      are discarded and it resolves with the newest call's results.
    - Only the newest call's results are committed (results_for()).
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        cache: Optional[ValidationCache] = None,
        graph: Optional[DependencyGraph] = None,
        evaluator: Optional[RuleEvaluator] = None,
        clock: Optional[Clock] = None,
        on_error: Optional[ErrorSink] = None,
    ):
        self.config = config or EngineConfig()
        self._cache = cache if cache is not None else ValidationCache(clock)
        self._graph = graph if graph is not None else DependencyGraph()
        self._listeners: List[ErrorSink] = [on_error] if on_error else []

        # Rule errors always flow through _report; an injected evaluator's own
        # sink becomes one of the listeners.
        if evaluator is None:
            evaluator = RuleEvaluator(self.config.rule_timeout_ms)
        elif evaluator.error_sink is not None:
            self._listeners.append(evaluator.error_sink)
        evaluator.set_error_sink(self._report)
        self._evaluator = evaluator

        self._rules: Dict[str, Tuple[ValidationRule, ...]] = {}
        self._generations: Dict[str, int] = {}
        self._latest: Dict[str, asyncio.Future] = {}
        self._committed: Dict[str, List[ValidationResult]] = {}
        self.last_duration_ms: float = 0.0

    # ----------------------------
    # Error channel
    # ----------------------------
    def add_error_listener(self, listener: ErrorSink) -> None:
        self._listeners.append(listener)

    def _report(self, err: FormEngineError) -> None:
        logger.error("%s", err)
        for listener in list(self._listeners):
            try:
                listener(err)
            except Exception:
                logger.exception("Validation error listener failed")

    # ----------------------------
    # Registration (setup time)
    # ----------------------------
    @property
    def graph(self) -> DependencyGraph:
        return self._graph

    @property
    def fields(self) -> List[str]:
        return list(self._rules)

    def rules_for(self, field_id: str) -> Tuple[ValidationRule, ...]:
        return self._rules.get(field_id, ())

    def register_field(self, field_id: str, rules: Sequence[ValidationRule]) -> None:
        """
        Registers the rule set of a field. Rule sets are immutable: registering
        the same field twice raises RuleSetError. Dependency cycles raise
        CycleError and leave the engine unchanged.
        """
        fid = (field_id or "").strip()
        if not fid:
            raise RuleSetError("field_id is required")
        if fid in self._rules:
            raise RuleSetError(f"Rules for field {fid!r} are already registered")

        seen = set()
        for rule in rules:
            if not isinstance(rule, ValidationRule):
                raise RuleSetError(f"Field {fid!r}: expected ValidationRule, got {type(rule).__name__}")
            if rule.id in seen:
                raise RuleSetError(f"Field {fid!r}: duplicate rule id {rule.id!r}")
            seen.add(rule.id)

        reads: List[str] = []
        for rule in rules:
            for dep in rule.depends_on:
                if dep not in reads:
                    reads.append(dep)

        self._graph.add_field(fid)
        if reads:
            self._graph.register(FieldDependency(fid, tuple(reads)))

        self._rules[fid] = tuple(rules)
        logger.debug("Registered %d rules for field %s", len(rules), fid)

    def register_dependency(self, dependency: FieldDependency) -> None:
        self._graph.register(dependency)

    # ----------------------------
    # Cache helpers
    # ----------------------------
    def _cache_key(self, field_id: str, rule: ValidationRule, value: Any, form_values: Mapping[str, Any]) -> str:
        if rule.depends_on:
            reads: Optional[Iterable[str]] = rule.depends_on
        elif rule.condition is not None:
            # Undeclared reads: the condition may look at any field.
            reads = None
        else:
            reads = ()
        ctx = context_signature(form_values, reads, exclude=field_id)
        return stable_hash(field_id, value, rule.signature, ctx)

    def _ttl(self, rule: ValidationRule) -> int:
        if rule.ttl_ms is not None:
            return rule.ttl_ms
        if rule.kind is RuleKind.ASYNC:
            return self.config.async_ttl_ms
        return self.config.sync_ttl_ms

    async def _run_pending(
        self,
        field_id: str,
        pending: List[Tuple[ValidationRule, str]],
        value: Any,
        form_values: Mapping[str, Any],
    ) -> Dict[str, ValidationResult]:
        if not pending:
            return {}

        outcomes = await asyncio.gather(
            *(
                self._evaluator.run(rule, field_id, value, form_values, check_condition=False)
                for rule, _ in pending
            )
        )

        out: Dict[str, ValidationResult] = {}
        for (rule, key), (result, cacheable) in zip(pending, outcomes):
            if result is None:
                continue
            if cacheable:
                self._cache.set(key, result, self._ttl(rule), field_id=field_id, rule_id=rule.id)
            out[rule.id] = result
        return out

    # ----------------------------
    # Validation
    # ----------------------------
    def _ensure_current(self, field_id: str, generation: Optional[int]) -> None:
        if generation is not None and self._generations.get(field_id) != generation:
            raise _StaleValidation(field_id)

    async def _resolve(
        self,
        field_id: str,
        generation: Optional[int],
        value: Any,
        form_values: Mapping[str, Any],
        immediate: bool,
    ) -> List[ValidationResult]:
        rules = self._rules.get(field_id, ())
        resolved: Dict[str, ValidationResult] = {}
        pending_sync: List[Tuple[ValidationRule, str]] = []
        pending_async: List[Tuple[ValidationRule, str]] = []

        for rule in rules:
            # Rules whose condition is False are neither run nor cached as passing.
            if not self._evaluator.should_run(rule, form_values, field_id):
                continue
            key = self._cache_key(field_id, rule, value, form_values)
            cached = self._cache.get(key)
            if cached is not None:
                resolved[rule.id] = cached
            elif rule.is_async:
                pending_async.append((rule, key))
            else:
                pending_sync.append((rule, key))

        resolved.update(await self._run_pending(field_id, pending_sync, value, form_values))
        self._ensure_current(field_id, generation)

        if pending_async:
            if not immediate and self.config.debounce_ms > 0:
                await asyncio.sleep(self.config.debounce_ms / 1000.0)
                self._ensure_current(field_id, generation)
            resolved.update(await self._run_pending(field_id, pending_async, value, form_values))
            self._ensure_current(field_id, generation)

        return [resolved[r.id] for r in rules if r.id in resolved]

    async def validate_field(
        self,
        field_id: str,
        value: Any,
        form_values: Optional[Mapping[str, Any]] = None,
        *,
        immediate: bool = False,
    ) -> List[ValidationResult]:
        """
        Validates one field. Sync rules run at once; async rules wait for the
        debounce window unless immediate=True. Never raises for rule failures.
        """
        values = dict(form_values or {})
        values[field_id] = value

        generation = self._generations.get(field_id, 0) + 1
        self._generations[field_id] = generation

        fut: asyncio.Future = asyncio.get_running_loop().create_future()
        self._latest[field_id] = fut
        started = time.perf_counter()

        try:
            results = await self._resolve(field_id, generation, value, values, immediate)
        except _StaleValidation:
            logger.debug("Discarding stale validation of %s (generation %d)", field_id, generation)
            newest = self._latest[field_id]
            results = await asyncio.shield(newest)
            if not fut.done():
                fut.set_result(results)
            return list(results)
        except BaseException:
            # Cancelled: callers waiting on this call get the last committed state.
            if not fut.done():
                fut.set_result(list(self._committed.get(field_id, [])))
            raise

        self._committed[field_id] = results
        self.last_duration_ms = (time.perf_counter() - started) * 1000.0
        fut.set_result(results)
        return list(results)

    async def validate_form(self, form_values: Mapping[str, Any]) -> Dict[str, List[ValidationResult]]:
        """
        Validates every registered field, bypassing debounce. Fields of one
        dependency level run concurrently; levels run in topological order.
        """
        values = dict(form_values)
        started = time.perf_counter()
        out: Dict[str, List[ValidationResult]] = {}

        for level in self._graph.levels():
            batch = [f for f in level if f in self._rules]
            if not batch:
                continue
            results = await asyncio.gather(
                *(self.validate_field(f, values.get(f), values, immediate=True) for f in batch)
            )
            out.update(zip(batch, results))

        self.last_duration_ms = (time.perf_counter() - started) * 1000.0
        return out

    def on_field_change(self, field_id: str, value: Any, form_values: Optional[Mapping[str, Any]] = None) -> List[str]:
        """
        Drops cached results of every field that (transitively) reads
        `field_id` and the field's own expired entries. Returns the affected
        fields in topological order so the caller knows what to re-validate.
        """
        affected = self._graph.affected(field_id)
        self._cache.sweep(field_id)
        if affected:
            dropped = self._cache.invalidate_fields(affected)
            logger.debug("%s changed: %d cached results dropped for %s", field_id, dropped, affected)
        return affected

    async def warm_cache(self, form_values: Mapping[str, Any]) -> None:
        """Pre-computes results for non-empty values without committing them."""
        values = dict(form_values)
        await asyncio.gather(
            *(
                self._resolve(f, None, values.get(f), values, True)
                for f in self._rules
                if not is_blank(values.get(f))
            )
        )

    # ----------------------------
    # State
    # ----------------------------
    def results_for(self, field_id: str) -> List[ValidationResult]:
        return list(self._committed.get(field_id, []))

    def committed(self) -> Dict[str, List[ValidationResult]]:
        return {k: list(v) for k, v in self._committed.items()}

    def is_validating(self, field_id: str) -> bool:
        fut = self._latest.get(field_id)
        return fut is not None and not fut.done()

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_stats(self) -> CacheStats:
        return self._cache.stats()
