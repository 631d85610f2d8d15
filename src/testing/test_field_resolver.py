import pytest

from catalog_models import FieldMapping, SourceDefinition
from errors import NoFieldResolved
from field_resolver import (
    field_for,
    guard_predicates,
    question_metric_keyword,
    resolve_field,
    value_expression,
)
from source_catalog import get_catalog


def source(fields, default_metric='收入'):
    return SourceDefinition(id='t', category='c', time_field='ts', fields=fields, default_metric=default_metric)


def test_longest_keyword_wins():
    s = source({
        '电费': {'expression': '[X]'},
        '充电电费': {'expression': '[Y]'},
        '收入': {'expression': '[Z]'},
    })
    keyword, mapping = resolve_field(s, "上个月充电电费是多少")
    assert keyword == '充电电费'
    assert mapping.expression == '[Y]'
    assert resolve_field(s, "上个月电费是多少")[1].expression == '[X]'


def test_catalog_specificity():
    tld = get_catalog().get('特来电')
    assert resolve_field(tld, "充电电费")[1].expression == '[充电电费(元)]'
    assert resolve_field(tld, "充电费用")[1].expression == '[充电费用(元)]'
    assert resolve_field(tld, "服务费")[1].expression == '[充电服务费(元)]'


def test_default_metric_when_no_keyword():
    keyword, mapping = resolve_field(get_catalog().get('电力局'), "2024年四方坪")
    assert keyword == '电费'
    assert mapping.kind == 'computed'


def test_no_field_is_a_hard_error():
    s = source({'抄见电量': {'expression': '[m]'}}, default_metric='不存在')
    with pytest.raises(NoFieldResolved) as exc:
        resolve_field(s, "收入")
    assert exc.value.payload['error'] == 'no_field_resolved'
    with pytest.raises(NoFieldResolved):
        field_for(s, '充电电量', strict=True)


def test_question_metric_keyword_across_sources():
    cat = get_catalog()
    defs = [cat.get('特来电'), cat.get('滴滴')]
    assert question_metric_keyword(defs, "订单总额多少") == '订单总额'
    assert question_metric_keyword(defs, "天气") is None


def test_numeric_string_is_trimmed_validated_and_cast():
    m = FieldMapping(expression='[充电量（度）]', kind='numericString')
    rendered = value_expression(m).render()
    assert rendered == (
        "CASE WHEN ISNUMERIC(LTRIM(RTRIM([充电量（度）]))) = 1 "
        "THEN CAST(LTRIM(RTRIM([充电量（度）])) AS FLOAT) END"
    )
    guards = [g.render() for g in guard_predicates(m)]
    assert guards[0] == '[充电量（度）] IS NOT NULL'
    assert guards[1].endswith('> 0')


def test_guards_by_kind():
    raw = [g.render() for g in guard_predicates(FieldMapping(expression='[a]'))]
    assert raw == ['[a] IS NOT NULL', '[a] > 0']
    count = [g.render() for g in guard_predicates(FieldMapping(expression='[id]', kind='count'))]
    assert count == ['[id] IS NOT NULL']
    computed = FieldMapping(expression='[a] - [b]', kind='computed')
    assert value_expression(computed).render() == '([a] - [b])'
    assert [g.render() for g in guard_predicates(computed)] == ['([a] - [b]) > 0']
    signed = FieldMapping(expression='[a] - [b]', kind='computed', positive_only=False)
    assert guard_predicates(signed) == ()
