"""Unit tests for condition operators, scope paths and template rendering."""

from __future__ import annotations

import pytest

from nodeflow.core.models.execution import TriggerContext
from nodeflow.core.models.graph import ConditionOperator, ConditionSpec
from nodeflow.core.nodes.conditions import evaluate, evaluate_all
from nodeflow.core.nodes.context import MISSING, Scope
from nodeflow.core.nodes.templates import render_template, render_value


def _scope(data: dict | None = None, old: dict | None = None, nodes: dict | None = None) -> Scope:
    trigger = TriggerContext(
        tenant_id='t1',
        entity_type='deal',
        entity_id='deal-7',
        data=data or {},
        old_data=old,
    )
    return Scope(trigger=trigger, nodes=nodes or {})


def _matches(field: str, operator: str, value: object, scope: Scope) -> bool:
    return evaluate(ConditionSpec(field=field, operator=operator, value=value), scope).matched


@pytest.mark.unit
class TestScopeResolve:
    def test_bare_path_reads_record(self) -> None:
        scope = _scope({'owner': {'email': 'a@example.com'}})
        assert scope.resolve('owner.email') == 'a@example.com'

    def test_trigger_attribute(self) -> None:
        assert _scope().resolve('trigger.entity_id') == 'deal-7'
        assert _scope().resolve('trigger.unknown') is MISSING

    def test_node_output(self) -> None:
        scope = _scope(nodes={'score': {'value': 42, 'tags': ['a', 'b']}})
        assert scope.resolve('nodes.score.value') == 42
        assert scope.resolve('nodes.score.tags.1') == 'b'
        assert scope.resolve('nodes.missing.value') is MISSING


@pytest.mark.unit
class TestOperators:
    """Each operator against present, absent and mistyped values."""

    @pytest.mark.parametrize(
        ('operator', 'value', 'expected'),
        [
            ('equals', 1500, True),
            ('==', '1500', True),
            ('not_equals', 10, True),
            ('gt', 1000, True),
            ('>=', 1500, True),
            ('lt', 1000, False),
            ('<=', 1499, False),
            ('in', [1, 1500], True),
            ('not_in', [1, 2], True),
            ('is_not_null', None, True),
            ('is_null', None, False),
        ],
    )
    def test_numeric_field(self, operator: str, value: object, expected: bool) -> None:
        assert _matches('amount', operator, value, _scope({'amount': 1500})) is expected

    def test_string_operators(self) -> None:
        scope = _scope({'email': 'ops@example.com', 'tags': ['vip', 'eu']})
        assert _matches('email', 'contains', '@example', scope)
        assert _matches('email', 'starts_with', 'ops', scope)
        assert _matches('email', 'ends_with', '.com', scope)
        assert _matches('tags', 'contains', 'vip', scope)
        assert not _matches('email', 'starts_with', 5, scope)

    def test_missing_field(self) -> None:
        scope = _scope({})
        assert _matches('amount', 'is_null', None, scope)
        assert not _matches('amount', 'equals', None, scope)
        assert _matches('amount', 'not_equals', 3, scope)
        assert not _matches('amount', 'gt', 0, scope)
        assert not _matches('amount', 'in', [None], scope)

    def test_booleans_are_not_numbers(self) -> None:
        assert not _matches('flag', 'gt', 0, _scope({'flag': True}))

    def test_change_operators_use_old_data(self) -> None:
        scope = _scope({'stage': 'won'}, old={'stage': 'open'})
        assert _matches('stage', 'changed', None, scope)
        assert _matches('stage', 'changed_to', 'won', scope)
        assert _matches('stage', 'changed_from', 'open', scope)
        assert not _matches('stage', 'changed_from', 'lost', scope)

    def test_change_operators_without_old_data(self) -> None:
        assert not _matches('stage', 'changed', None, _scope({'stage': 'won'}))

    def test_result_json(self) -> None:
        spec = ConditionSpec(field='amount', operator=ConditionOperator.GT, value=10)
        result = evaluate(spec, _scope({}))
        assert result.to_json(spec) == {
            'condition': False,
            'field': 'amount',
            'operator': 'gt',
            'expected': 10,
            'actual': None,
        }

    def test_evaluate_all(self) -> None:
        scope = _scope({'amount': 5, 'region': 'eu'})
        specs = (
            ConditionSpec(field='amount', operator='gt', value=1),
            ConditionSpec(field='region', value='eu'),
        )
        assert evaluate_all(specs, scope) is True
        assert evaluate_all((), scope) is True
        assert evaluate_all((*specs, ConditionSpec(field='region', value='us')), scope) is False


@pytest.mark.unit
class TestTemplates:
    def test_variables_then_scope(self) -> None:
        scope = _scope({'name': 'Record Name'})
        rendered = render_template(
            'Hi {{ name }}, deal {{trigger.entity_id}}', {'name': 'Ada'}, scope
        )
        assert rendered == 'Hi Ada, deal deal-7'

    def test_unknown_placeholder_left_in_place(self) -> None:
        assert render_template('Hello {{who}}') == 'Hello {{who}}'

    def test_non_string_values(self) -> None:
        rendered = render_template('{{n}} {{none}} {{obj}}', {'n': 3, 'none': None, 'obj': {'a': 1}})
        assert rendered == '3  {"a":1}'

    def test_render_value_keeps_type_of_whole_placeholder(self) -> None:
        scope = _scope({'amount': 1500}, nodes={'score': {'value': 0.9}})
        rendered = render_value(
            {'amount': '{{amount}}', 'label': 'score={{nodes.score.value}}', 'items': ['{{amount}}', 7]},
            scope=scope,
        )
        assert rendered == {'amount': 1500, 'label': 'score=0.9', 'items': [1500, 7]}
