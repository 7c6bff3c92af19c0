"""End-to-end tests for the Rules Engine facade."""

import pytest

from campaign_rules.graph.graph import UnknownNodeError
from campaign_rules.models.config import EngineConfig
from campaign_rules.models.execution import EncounterResolutionResult
from campaign_rules.models.rules import Condition, Effect, EffectTiming
from campaign_rules.models.world import EntityState
from campaign_rules.resolution.pipeline import AlreadyResolvedError
from campaign_rules.service.engine import NotFoundError, RulesEngine


def _make_settlement(branch_id: str = "main") -> EntityState:
    return EntityState(
        entity_type="settlement",
        entity_id="set_1",
        campaign_id="camp_1",
        branch_id=branch_id,
        variables={"settlement": {"tags": ["trade_hub"], "population": 1200}, "gold": 80},
        attributes={"name": "Riverwatch", "campaignId": "camp_1"},
    )


def _make_encounter() -> EntityState:
    return EntityState(
        entity_type="encounter",
        entity_id="enc_1",
        campaign_id="camp_1",
        variables={"loot": 0},
        attributes={"name": "Bandit Ambush", "campaignId": "camp_1"},
    )


def _make_trade_hub_condition() -> Condition:
    return Condition(
        id="trade_hub",
        entity_type="settlement",
        entity_id="set_1",
        field="is_trade_hub",
        expression={"==": [{"var": "settlement.tags"}, "trade_hub"]},
    )


def _make_prosperity_condition(is_active: bool = True) -> Condition:
    return Condition(
        id="prosperous",
        entity_type="settlement",
        field="is_prosperous",
        expression={"and": [
            {">": [{"var": "settlement.population"}, 1000]},
            {">=": [{"var": "gold"}, 50]},
        ]},
        is_active=is_active,
    )


def _make_tax_effect() -> Effect:
    return Effect(
        id="tax",
        entity_type="settlement",
        entity_id="set_1",
        payload=[{"op": "replace", "path": "/variables/gold", "value": 100}],
        condition_id="prosperous",
    )


class TestConditions:
    def setup_method(self):
        self.engine = RulesEngine()
        self.engine.store.upsert_condition(_make_trade_hub_condition())
        self.engine.store.upsert_condition(_make_prosperity_condition())

    def test_array_against_scalar_is_a_type_mismatch(self):
        result = self.engine.evaluate_condition(
            "trade_hub", {"settlement": {"tags": ["trade_hub"]}}
        )
        assert result.success is False
        assert result.error_type == "TypeMismatchError"
        assert result.condition_id == "trade_hub"
        assert result.trace
        condition = self.engine.store.get_condition("trade_hub")
        assert self.engine.extractor.extract_reads(condition.expression) == {"settlement"}

    def test_membership_is_the_way_to_test_tags(self):
        result = self.engine.evaluate_expression(
            {"in": ["trade_hub", {"var": "settlement.tags"}]},
            {"settlement": {"tags": ["trade_hub"]}},
        )
        assert result.success is True
        assert result.value is True

    def test_evaluate_condition_with_trace(self):
        result = self.engine.evaluate_condition(
            "prosperous", {"settlement": {"population": 1500}, "gold": 75}
        )
        assert result.success is True
        assert result.value is True
        assert result.trace[0].operation == "and"
        assert result.trace[0].step == 1

    def test_unknown_condition(self):
        with pytest.raises(NotFoundError):
            self.engine.evaluate_condition("nope", {})

    def test_inactive_condition_is_not_evaluated(self):
        self.engine.store.upsert_condition(_make_prosperity_condition(is_active=False))
        result = self.engine.evaluate_condition("prosperous", {})
        assert result.success is False
        assert result.error_type == "InactiveCondition"

    def test_custom_operator(self):
        self.engine.register_operator(
            "settlement.level", lambda population: 2 if population > 1000 else 1
        )
        result = self.engine.evaluate_expression(
            {"settlement.level": [{"var": "settlement.population"}]},
            {"settlement": {"population": 1500}},
        )
        assert result.value == 2
        assert self.engine.validate_expression({"settlement.level": [1]}).valid is True

    def test_unknown_operator_is_structured(self):
        result = self.engine.evaluate_expression({"summon": []}, {})
        assert result.success is False
        assert result.error_type == "UnknownOperatorError"


def _make_field_condition(
    condition_id: str,
    field: str,
    expression,
    priority: int = 0,
    entity_id: str = "set_1",
    is_active: bool = True,
) -> Condition:
    return Condition(
        id=condition_id,
        entity_type="settlement",
        entity_id=entity_id,
        field=field,
        expression=expression,
        priority=priority,
        is_active=is_active,
    )


class TestComputedFields:
    def setup_method(self):
        self.engine = RulesEngine()
        self.engine.store.upsert_entity(_make_settlement())
        self.engine.store.upsert_condition(_make_prosperity_condition())

    def test_type_level_condition_computes_field(self):
        result = self.engine.compute_fields("settlement", "set_1")
        assert result.fields == {"is_prosperous": True}
        assert result.errors == {}

    def test_highest_priority_wins(self):
        self.engine.store.upsert_condition(
            _make_field_condition("rank_low", "rank", {"var": "settlement.population"}, priority=1)
        )
        self.engine.store.upsert_condition(
            _make_field_condition("rank_high", "rank", {"+": [{"var": "gold"}, 1]}, priority=10)
        )
        result = self.engine.compute_fields("settlement", "set_1")
        assert result.fields["rank"] == 81

    def test_priority_ties_keep_registration_order(self):
        self.engine.store.upsert_condition(_make_field_condition("first", "rank", "a"))
        self.engine.store.upsert_condition(_make_field_condition("second", "rank", "b"))
        assert self.engine.compute_fields("settlement", "set_1").fields["rank"] == "a"

    def test_failing_condition_falls_through(self):
        self.engine.store.upsert_condition(
            _make_field_condition("broken", "rank", {"summon": [1]}, priority=20)
        )
        self.engine.store.upsert_condition(
            _make_field_condition("fallback", "rank", {"var": "gold"}, priority=5)
        )
        result = self.engine.compute_fields("settlement", "set_1")
        assert result.fields["rank"] == 80
        assert result.errors == {"broken": "Unknown operator: summon"}

    def test_inactive_and_foreign_conditions_are_excluded(self):
        self.engine.store.upsert_condition(
            _make_field_condition("stale", "morale", 9, priority=50, is_active=False)
        )
        self.engine.store.upsert_condition(
            _make_field_condition("elsewhere", "morale", 3, entity_id="set_2")
        )
        result = self.engine.compute_fields("settlement", "set_1")
        assert "morale" not in result.fields

    def test_branch_and_unknown_entity(self):
        with pytest.raises(NotFoundError):
            self.engine.compute_fields("settlement", "set_1", branch_id="alt")
        self.engine.store.upsert_entity(_make_settlement(branch_id="alt"))
        assert self.engine.compute_fields("settlement", "set_1", branch_id="alt").fields == {
            "is_prosperous": True,
        }


class TestResolution:
    def setup_method(self):
        self.engine = RulesEngine()
        self.engine.store.upsert_entity(_make_encounter())

    def _add_effect(self, effect_id, payload, timing):
        self.engine.store.upsert_effect(Effect(
            id=effect_id,
            entity_type="encounter",
            entity_id="enc_1",
            timing=timing,
            payload=payload,
        ))

    def test_failed_pre_effect_does_not_block_on_resolve(self):
        self._add_effect("pre_bad", [{"op": "add", "path": "/variables/trap"}], EffectTiming.PRE)
        self._add_effect(
            "on_loot", [{"op": "replace", "path": "/variables/loot", "value": 50}],
            EffectTiming.ON_RESOLVE,
        )

        result = self.engine.resolve_encounter("enc_1")

        assert isinstance(result, EncounterResolutionResult)
        assert result.pre.failed == 1
        assert result.pre.succeeded == 0
        assert result.on_resolve.succeeded == 1
        assert result.entity.variables == {"loot": 50}
        assert result.entity.is_resolved is True

        stored = self.engine.store.get_entity("encounter", "enc_1")
        assert stored.variables == {"loot": 50}
        assert stored.is_resolved is True

    def test_resolving_twice_is_refused(self):
        self.engine.resolve_encounter("enc_1")
        with pytest.raises(AlreadyResolvedError):
            self.engine.resolve_encounter("enc_1")

    def test_unknown_entity(self):
        with pytest.raises(NotFoundError):
            self.engine.resolve_event("evt_404")
        with pytest.raises(NotFoundError):
            self.engine.resolve_encounter("enc_1", branch_id="alternate")

    def test_execution_history(self):
        self._add_effect(
            "on_loot", [{"op": "replace", "path": "/variables/loot", "value": 50}],
            EffectTiming.ON_RESOLVE,
        )
        self.engine.resolve_encounter("enc_1")
        by_effect = self.engine.get_execution_history(effect_id="on_loot")
        by_entity = self.engine.get_execution_history(entity_type="encounter", entity_id="enc_1")
        assert [r.effect_id for r in by_effect] == ["on_loot"]
        assert [r.id for r in by_entity] == [r.id for r in by_effect]
        assert len(self.engine.get_execution_history()) == 1

    def test_preview_does_not_apply(self):
        self._add_effect(
            "on_loot", [{"op": "replace", "path": "/variables/loot", "value": 50}],
            EffectTiming.ON_RESOLVE,
        )
        preview = self.engine.preview_effect("on_loot")
        assert preview.success is True
        assert preview.after["variables"]["loot"] == 50
        assert self.engine.store.get_entity("encounter", "enc_1").variables == {"loot": 0}
        assert self.engine.get_execution_history() == []

    def test_preview_unknown_effect(self):
        with pytest.raises(NotFoundError):
            self.engine.preview_effect("nope")


class TestDependencyGraph:
    def setup_method(self):
        self.engine = RulesEngine()
        self.engine.store.upsert_entity(_make_settlement())
        self.engine.store.upsert_condition(_make_prosperity_condition())
        self.engine.store.upsert_effect(_make_tax_effect())

    def test_graph_for_campaign(self):
        snapshot = self.engine.get_dependency_graph("camp_1")
        ids = {n.id for n in snapshot.nodes}
        assert {"CONDITION:prosperous", "EFFECT:tax", "VARIABLE:gold"} <= ids
        assert snapshot.campaign_id == "camp_1"
        assert snapshot.branch_id == "main"
        assert snapshot.warnings == []

    def test_other_campaigns_and_branches_are_empty(self):
        assert self.engine.get_dependency_graph("camp_2").nodes == []
        assert self.engine.get_dependency_graph("camp_1", "alternate").nodes == []

    def test_graph_is_cached_until_rules_change(self):
        first = self.engine.get_dependency_graph("camp_1")
        assert self.engine.get_dependency_graph("camp_1") is first

        self.engine.store.upsert_condition(_make_trade_hub_condition())
        rebuilt = self.engine.get_dependency_graph("camp_1")
        assert rebuilt is not first
        assert "CONDITION:trade_hub" in {n.id for n in rebuilt.nodes}

    def test_resolution_write_back_keeps_cache(self):
        first = self.engine.get_dependency_graph("camp_1")
        entity = self.engine.store.get_entity("settlement", "set_1")
        self.engine.store.upsert_entity(entity.model_copy(update={"variables": {"gold": 1}}))
        assert self.engine.get_dependency_graph("camp_1") is first

    def test_moving_entity_between_campaigns_rebuilds(self):
        first = self.engine.get_dependency_graph("camp_1")
        entity = self.engine.store.get_entity("settlement", "set_1")
        self.engine.store.upsert_entity(entity.model_copy(update={"campaign_id": "camp_2"}))

        rebuilt = self.engine.get_dependency_graph("camp_1")
        assert rebuilt is not first
        assert rebuilt.nodes == []
        assert "EFFECT:tax" in {n.id for n in self.engine.get_dependency_graph("camp_2").nodes}

    def test_invalidate(self):
        first = self.engine.get_dependency_graph("camp_1")
        self.engine.get_dependency_graph("camp_2")
        assert self.engine.invalidate_graph("camp_1") == 1
        assert self.engine.get_dependency_graph("camp_1") is not first
        assert self.engine.invalidate_graph() == 2

    def test_cache_can_be_disabled(self):
        engine = RulesEngine(config=EngineConfig(graph_cache_enabled=False))
        engine.store.upsert_entity(_make_settlement())
        first = engine.get_dependency_graph("camp_1")
        assert engine.get_dependency_graph("camp_1") is not first
        assert engine.invalidate_graph() == 0

    def test_upstream_and_downstream(self):
        upstream = self.engine.get_upstream("camp_1", "VARIABLE:gold")
        # The type-level condition hangs off the wildcard entity node
        assert set(upstream) == {
            "CONDITION:prosperous",
            "EFFECT:tax",
            "ENTITY:settlement:*",
            "ENTITY:settlement:set_1",
        }
        downstream = self.engine.get_downstream("camp_1", "EFFECT:tax", max_depth=1)
        assert set(downstream) == {"VARIABLE:gold", "VARIABLE:settlement"}

    def test_select(self):
        selection = self.engine.select_nodes("camp_1", ["EFFECT:tax"])
        assert selection.selected == ["EFFECT:tax"]
        assert "ENTITY:settlement:set_1" in selection.upstream

    def test_unknown_node(self):
        with pytest.raises(UnknownNodeError):
            self.engine.get_upstream("camp_1", "VARIABLE:mana")
