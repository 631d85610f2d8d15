"""
End-to-end planning scenarios for the charging-station question system.

Each scenario plans a question against the bundled catalog on a fixed date and checks
which sources, formula and SQL shape come out. Nothing is executed against a store.
"""

from datetime import date

import pytest

from config import LLMConfig, SystemConfig
from database_adapter import DatabaseAdapter
from ir_models import FormulaId
from llm_fallback import LLMFallback
from query import QuerySystem


TODAY = date(2026, 3, 15)


@pytest.fixture
def system():
    cfg = SystemConfig()
    cfg.llm = LLMConfig(enabled=False)
    return QuerySystem(
        adapter=DatabaseAdapter(':memory:'),
        llm=LLMFallback(llm_cfg=cfg.llm),
        config=cfg,
    )


def test_site_total_before_a_source_was_retired(system):
    prepared = system.prepare("2024年四方坪充电电量是多少", TODAY)
    assert prepared.method == 'rules'
    assert prepared.plan.sources == ['特来电', '能科']
    assert prepared.plan.aggregation == 'sum'
    assert prepared.plan.formula is None
    assert '[滴滴]' not in prepared.sql


def test_site_total_after_a_source_was_added(system):
    prepared = system.prepare("2025年11月四方坪充电电量是多少", TODAY)
    assert prepared.plan.sources == ['特来电', '滴滴']
    assert "[充电完成时间] >= '2025-11-01' AND [充电完成时间] < '2025-12-01'" in prepared.sql
    assert '[能科]' not in prepared.sql


def test_per_gun_average_uses_installed_count(system):
    prepared = system.prepare("2025年四方坪平均每把枪的充电服务费是多少", TODAY)
    assert prepared.method == 'formula'
    assert prepared.plan.formula == FormulaId.PER_UNIT_AVERAGE
    params = prepared.plan.formula_params
    assert params['divisor'] == 365
    assert params['unit_count'] == 142
    assert params['unit_year'] == 2025
    assert params['metric'] == '充电服务费'
    assert prepared.plan.sources == ['特来电', '滴滴']


def test_year_over_year_comparison(system):
    prepared = system.prepare("2025年对比2024年四方坪充电电量", TODAY)
    assert prepared.plan.formula == FormulaId.PERIOD_COMPARISON
    assert prepared.sql.count('[增减量]') == 1
    assert '增长率' not in prepared.sql
    current, previous = prepared.sql.split(' CROSS JOIN ')
    assert '[特来电]' in current and '[滴滴]' in current and '[能科]' not in current
    assert '[特来电]' in previous and '[能科]' in previous and '[滴滴]' not in previous


def test_unrelated_question_is_general(system):
    assert system.prepare("今天天气怎么样", TODAY) is None
    outcome = system.plan_and_query("今天天气怎么样", TODAY)
    assert outcome.kind == 'general'
