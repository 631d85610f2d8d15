from datetime import date
from types import SimpleNamespace

import pytest

from config import LLMConfig, SystemConfig
from database_adapter import DatabaseAdapter
from errors import StoreExecutionFailed
from llm_fallback import LLMFallback
from query import GENERAL_MESSAGE, QuerySystem
from result_formatter import FRIENDLY_ERRORS, NO_DATA_MESSAGE


TODAY = date(2026, 3, 15)


def isnumeric(value):
    try:
        float(str(value).strip())
        return 1
    except (TypeError, ValueError):
        return 0


def setup_store(adapter: DatabaseAdapter):
    """Two charging tables with a few rows the guards must skip."""
    adapter.connect()
    adapter.register_function('ISNUMERIC', 1, isnumeric)
    conn = adapter.connection
    conn.execute(
        "CREATE TABLE [特来电] ([电站名称] TEXT, [终端名称] TEXT, [充电电量(度)] REAL, "
        "[充电费用(元)] REAL, [订单编号] TEXT, [充电结束时间] TEXT)"
    )
    conn.execute("CREATE TABLE [能科] ([充电量] REAL, [消费金额] REAL, [结束日期时间] TEXT)")
    conn.executemany(
        "INSERT INTO [特来电] VALUES (?, ?, ?, ?, ?, ?)",
        [
            ('四方坪站', 'A1', 10.5, 8.0, 'o1', '2024-03-01 10:00:00'),
            ('四方坪站', 'A2', None, 3.0, 'o2', '2024-04-01 09:00:00'),
            ('华为飞狐特来电高岭超充站', 'G1', 100.0, 70.0, 'o3', '2024-05-01 12:00:00'),
            ('四方坪站', 'A1', 7.0, 5.0, 'o4', '2025-01-02 08:00:00'),
            ('四方坪站', 'A3', -3.0, 0.0, 'o5', '2024-06-01 18:00:00'),
        ],
    )
    conn.executemany(
        "INSERT INTO [能科] VALUES (?, ?, ?)",
        [
            (20.0, 15.0, '2024-02-01 08:00:00'),
            (None, 2.0, '2024-02-02 08:00:00'),
            (5.25, 4.0, '2024-05-31 23:00:00'),
        ],
    )
    conn.commit()


def make_system(client=None, adapter=None):
    cfg = SystemConfig()
    cfg.llm = LLMConfig(enabled=client is not None)
    if adapter is None:
        adapter = DatabaseAdapter(':memory:')
        setup_store(adapter)
    llm = LLMFallback(client=client, llm_cfg=cfg.llm)
    return QuerySystem(adapter=adapter, llm=llm, config=cfg)


def test_multi_source_total_is_sum_of_per_source_sums():
    outcome = make_system().plan_and_query("2024年四方坪充电电量是多少", TODAY)
    assert outcome.kind == 'rows'
    assert outcome.method == 'rules'
    assert outcome.rows == [{'总计': 35.75}]
    assert outcome.message == '总计: 35.75'
    assert outcome.plan.sources == ['特来电', '能科']


def test_single_source_count():
    outcome = make_system().plan_and_query("特来电2024年订单数量", TODAY)
    assert outcome.rows == [{'次数': 4}]


def test_per_gun_average_executes():
    outcome = make_system().plan_and_query("2024年四方坪平均每把枪的充电电量是多少", TODAY)
    assert outcome.method == 'formula'
    assert outcome.plan.formula_params['unit_count'] == 136
    value = next(iter(outcome.rows[0].values()))
    assert value == pytest.approx(10.5 / 366 / 136)


def test_model_only_question_without_model_uses_last_resort():
    outcome = make_system().plan_and_query("2024年四方坪充电电量占比", TODAY)
    assert outcome.kind == 'rows'
    assert outcome.method == 'last_resort'
    assert outcome.plan.metadata['last_resort'] is True
    assert outcome.rows == [{'总计': 35.75}]


def test_model_sql_is_sanitized_before_execution():
    reply = "```sql\nSELECT COUNT(*) AS [次数] FROM [特来电表];\n```"
    completions = SimpleNamespace(
        create=lambda **kw: SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=reply))], usage=None,
        )
    )
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    outcome = make_system(client=client).plan_and_query("2024年四方坪充电电量占比", TODAY)
    assert outcome.method == 'llm'
    assert outcome.sql == "SELECT COUNT(*) AS [次数] FROM [特来电]"
    assert outcome.rows == [{'次数': 5}]


def test_model_sql_that_writes_is_never_executed():
    reply = "SELECT COUNT(*) AS [次数] FROM [特来电] DROP TABLE [特来电]"
    completions = SimpleNamespace(
        create=lambda **kw: SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=reply))], usage=None,
        )
    )
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    system = make_system(client=client)
    outcome = system.plan_and_query("2024年四方坪充电电量占比", TODAY)
    assert outcome.kind == 'error'
    assert outcome.error == 'store_execution_failed'
    assert system.adapter.execute_query("SELECT COUNT(*) AS [n] FROM [特来电]") == [{'n': 5}]


def test_general_question():
    outcome = make_system().plan_and_query("今天天气怎么样", TODAY)
    assert outcome.kind == 'general'
    assert outcome.message == GENERAL_MESSAGE
    assert outcome.sql is None


def test_data_question_without_source():
    outcome = make_system().plan_and_query("收入多少", TODAY)
    assert outcome.kind == 'error'
    assert outcome.error == 'no_source_resolved'
    assert outcome.message == FRIENDLY_ERRORS['no_source_resolved']


def test_store_error_is_not_reported_as_no_data():
    outcome = make_system().plan_and_query("2025年12月滴滴充电电量", TODAY)
    assert outcome.kind == 'error'
    assert outcome.error == 'store_execution_failed'
    assert outcome.message != NO_DATA_MESSAGE
    assert 'no such table' in outcome.message
    assert outcome.sql.startswith("SELECT COALESCE(SUM(")


class ExplodingAdapter:
    def execute_query(self, sql, params=None):
        raise RuntimeError('driver crashed')


def test_unexpected_errors_become_unknown_error():
    outcome = make_system(adapter=ExplodingAdapter()).plan_and_query("特来电2024年充电电量", TODAY)
    assert outcome.kind == 'error'
    assert outcome.error == 'unknown_error'


class RecordingAdapter:
    def __init__(self):
        self.calls = 0

    def execute_query(self, sql, params=None):
        self.calls += 1
        raise StoreExecutionFailed('query timed out', stage='execute', sql=sql, timed_out=True)


def test_store_errors_are_not_retried():
    adapter = RecordingAdapter()
    outcome = make_system(adapter=adapter).plan_and_query("特来电2024年充电电量", TODAY)
    assert outcome.error == 'store_execution_failed'
    assert adapter.calls == 1


def test_prepare_records_planning_state():
    state = {}
    prepared = make_system().prepare("2025年四方坪平均每把枪的充电服务费是多少", TODAY, state)
    assert prepared.method == 'formula'
    assert state['time'] == ['2025-01-01', '2025-12-31']
    assert state['resolved'] == ['特来电', '滴滴']
    assert state['sources'] == ['特来电', '滴滴']
    assert state['formula'] == 'per_unit_average'
    assert state['sql'] == prepared.sql


def test_outcome_serialises():
    data = make_system().plan_and_query("2024年四方坪充电电量是多少", TODAY).to_dict()
    assert data['kind'] == 'rows'
    assert data['plan']['sources'] == ['特来电', '能科']
