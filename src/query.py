"""
Question answering over the charging-station business tables.

QuerySystem.plan_and_query is the single entry point used by request shells:

1. parse the time range and resolve the sources the question refers to
2. drop sources outside their validity window, then re-apply the connector rule
3. build SQL from a formula template or a plain aggregation plan; questions the
   rules cannot express go to the model fallback, and an unavailable model falls
   back to a plain sum over the available sources
4. sanitize, execute once (no retries) and format

Every request is planned from scratch; nothing about a plan or its result is cached.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from availability import SourceAvailability, ValidityWindowCache, store_window_loader
from config import SystemConfig, get_config
from database_adapter import DatabaseAdapter, create_database_adapter
from errors import ChargeQAError, FormulaNotApplicable, ModelUnavailable, NoSourceResolved, StoreExecutionFailed, UnknownError
from formulas import FormulaContext, FormulaLibrary
from ir_models import ResolvedPlan, TimeRange
from llm_fallback import LLMFallback
from query_planner import QueryPlanner
from result_formatter import format_rows, friendly_error
from source_catalog import SourceCatalog, get_catalog
from source_resolver import SourceResolution, apply_connector_rule, is_database_question, resolve_sources
from sql_sanitizer import QuerySanitizer
from time_phrases import parse_time_range

# Setup logging is configured at the entrypoint; avoid per-module basicConfig
logger = logging.getLogger(__name__)

GENERAL_MESSAGE = '该问题不涉及经营数据查询，将按一般问题处理。'


@dataclass
class PreparedQuery:
    """SQL ready for execution plus how it was produced."""
    sql: str
    method: str                          # rules | formula | llm | last_resort
    plan: Optional[ResolvedPlan] = None
    resolution: Optional[SourceResolution] = None


@dataclass
class QueryOutcome:
    kind: str                            # rows | general | error
    rows: List[Dict[str, Any]] = field(default_factory=list)
    sql: Optional[str] = None
    plan: Optional[ResolvedPlan] = None
    message: str = ''
    error: Optional[str] = None
    method: Optional[str] = None
    elapsed_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'rows': self.rows,
            'sql': self.sql,
            'plan': self.plan.summary() if self.plan else None,
            'message': self.message,
            'error': self.error,
            'method': self.method,
            'elapsed_ms': self.elapsed_ms,
        }


def _as_date(now) -> date:
    if now is None:
        return date.today()
    if isinstance(now, datetime):
        return now.date()
    return now


class QuerySystem:
    """Rule-first question answering with a model fallback."""

    def __init__(
        self,
        adapter: Optional[DatabaseAdapter] = None,
        llm: Optional[LLMFallback] = None,
        catalog: Optional[SourceCatalog] = None,
        config: Optional[SystemConfig] = None,
        availability: Optional[SourceAvailability] = None,
    ):
        """
        Initialize query system.

        Args:
            adapter: Store adapter; built from configuration when omitted
            llm: Model fallback; built from configuration when omitted
            catalog: Source catalog; the process-wide catalog when omitted
            config: System configuration; the global configuration when omitted
            availability: Validity-window filter; store-backed when configured
        """
        self.config = config or get_config()
        self.catalog = catalog or get_catalog()
        self.adapter = adapter if adapter is not None else create_database_adapter(self.config.store)
        self.llm = llm or LLMFallback(catalog=self.catalog, llm_cfg=self.config.llm)
        self.availability = availability or self._build_availability()
        self.formulas = FormulaLibrary(self.catalog, self.availability)
        self.planner = QueryPlanner(self.catalog)
        self.sanitizer = QuerySanitizer(self.catalog)

    def _build_availability(self) -> SourceAvailability:
        store_cfg = self.config.store
        if store_cfg.store_validity_windows and self.adapter is not None:
            logger.info(f"Validity windows loaded from the store (ttl={store_cfg.validity_ttl_seconds}s)")
            cache = ValidityWindowCache(
                store_window_loader(self.adapter, self.catalog),
                ttl_seconds=store_cfg.validity_ttl_seconds,
            )
            return SourceAvailability(self.catalog, cache)
        return SourceAvailability(self.catalog)

    def prepare(self, question: str, now=None, state: Optional[Dict[str, Any]] = None) -> Optional[PreparedQuery]:
        """Plan a question and produce sanitized SQL. Returns None for non-data questions."""
        today = _as_date(now)
        question = (question or '').strip()
        state = state if state is not None else {}

        tr = parse_time_range(question, today)
        state['time'] = [tr.start.isoformat(), tr.end.isoformat()] if tr.has_time else None
        resolution = resolve_sources(question, today, self.catalog, tr)
        resolved = resolution.sources
        state['resolved'] = list(resolved)
        state['rule'] = resolution.rule

        formula = self.formulas.detect(question)
        state['formula'] = formula.value if formula else None
        if not resolved and not (formula and self.formulas.is_self_sourcing(formula)):
            if not is_database_question(question, self.catalog):
                return None
            raise NoSourceResolved('question matched no data source', question=question)

        available = self.availability.filter(resolved, tr)
        resolution = apply_connector_rule(
            resolution.with_sources(available),
            question,
            self.catalog,
            lambda sid: self.availability.is_available(sid, tr),
        )
        state['sources'] = list(resolution.sources)

        try:
            prepared = self._rule_sql(question, today, tr, resolution, resolved, formula)
        except FormulaNotApplicable as e:
            logger.info(f"Rules declined the question ({e.message}); asking the model")
            prepared = self._model_sql(question, tr, resolution)

        state['method'] = prepared.method
        if prepared.plan is not None:
            state['plan'] = prepared.plan.summary()
        prepared.sql = self.sanitizer.sanitize(prepared.sql, question)
        state['sql'] = prepared.sql
        logger.debug(f"SQL ({prepared.method}): {prepared.sql}")
        return prepared

    def _rule_sql(self, question: str, today: date, tr: TimeRange, resolution: SourceResolution,
                  resolved, formula) -> PreparedQuery:
        cue = next((c for c in self.config.planner.model_only_cues if c in question), None)
        if cue:
            raise FormulaNotApplicable('question needs free-form SQL', cue=cue)

        if formula is not None:
            ctx = FormulaContext(
                question=question,
                now=today,
                time_range=tr,
                site=resolution.site,
                sources=tuple(resolution.sources),
                resolved=tuple(resolved),
            )
            result = self.formulas.build(formula, ctx)
            plan = ResolvedPlan(
                sources=list(resolution.sources),
                metric_keyword=result.params.get('metric'),
                time_range=tr,
                site=resolution.site,
                formula=formula,
                formula_params=result.params,
                metadata=dict(resolution.metadata, resolver_rule=resolution.rule),
            )
            logger.info(f"Formula plan: {plan.summary()} params={result.params}")
            return PreparedQuery(result.sql, 'formula', plan, resolution)

        plan = self.planner.build_plan(question, resolution, list(resolution.sources), tr)
        logger.info(f"Plan: {plan.summary()}")
        return PreparedQuery(self.planner.render(plan, question), 'rules', plan, resolution)

    def _model_sql(self, question: str, tr: TimeRange, resolution: SourceResolution) -> PreparedQuery:
        try:
            generated = self.llm.generate_sql(question, list(resolution.sources), resolution.site, tr)
            return PreparedQuery(generated['sql'], 'llm', None, resolution)
        except ModelUnavailable as e:
            if not resolution.sources:
                raise
            logger.warning(f"Model unavailable ({e.message}); answering with a plain sum over {list(resolution.sources)}")
            plan = ResolvedPlan(
                sources=list(resolution.sources),
                aggregation='sum',
                time_range=tr,
                site=resolution.site,
                metadata=dict(resolution.metadata, resolver_rule=resolution.rule, last_resort=True),
            )
            return PreparedQuery(self.planner.render(plan, question), 'last_resort', plan, resolution)

    def plan_and_query(self, question: str, now=None) -> QueryOutcome:
        """Answer one question. Errors come back as outcomes of kind 'error'."""
        started = time.monotonic()
        state: Dict[str, Any] = {'question': question}
        logger.info(f"Processing question: {question}")
        try:
            prepared = self.prepare(question, now, state)
            if prepared is None:
                outcome = QueryOutcome(kind='general', message=GENERAL_MESSAGE)
            else:
                if self.adapter is None:
                    raise StoreExecutionFailed('no store is configured', stage='connect', sql=prepared.sql)
                rows = self.adapter.execute_query(prepared.sql)
                outcome = QueryOutcome(
                    kind='rows',
                    rows=rows,
                    sql=prepared.sql,
                    plan=prepared.plan,
                    message=format_rows(rows, self.config.planner.max_display_rows),
                    method=prepared.method,
                )
        except ChargeQAError as e:
            logger.warning(f"Question failed [{e.code}]: {e.message} | state={state} | details={e.details}")
            outcome = self._error_outcome(e, state)
        except Exception as e:
            logger.exception(f"Unexpected error for question {question!r} | state={state}")
            outcome = self._error_outcome(UnknownError(str(e), exception=type(e).__name__), state)
        outcome.elapsed_ms = int((time.monotonic() - started) * 1000)
        return outcome

    def _error_outcome(self, error: ChargeQAError, state: Dict[str, Any]) -> QueryOutcome:
        return QueryOutcome(
            kind='error',
            sql=error.details.get('sql') or state.get('sql'),
            message=friendly_error(error.code, error.details.get('engine_error')),
            error=error.code,
            method=state.get('method'),
        )


def plan_and_query(question: str, now=None) -> QueryOutcome:
    """Convenience wrapper over a QuerySystem built from configuration."""
    return QuerySystem().plan_and_query(question, now)
