"""Tests for the in-memory Campaign State Store."""

from campaign_rules.models.rules import Condition, Effect
from campaign_rules.models.world import EntityState
from campaign_rules.world_model.store import CampaignStateStore


def _make_entity(
    entity_type: str = "settlement",
    entity_id: str = "set_1",
    campaign_id: str = "camp_1",
    branch_id: str = "main",
) -> EntityState:
    return EntityState(
        entity_type=entity_type,
        entity_id=entity_id,
        campaign_id=campaign_id,
        branch_id=branch_id,
        variables={"gold": 10},
    )


def _make_condition(condition_id: str, entity_type: str = "settlement", entity_id=None) -> Condition:
    return Condition(
        id=condition_id,
        entity_type=entity_type,
        entity_id=entity_id,
        field="is_rich",
        expression={">": [{"var": "gold"}, 5]},
    )


def _make_effect(effect_id: str, entity_type: str = "settlement", entity_id: str = "set_1") -> Effect:
    return Effect(
        id=effect_id,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=[{"op": "replace", "path": "/variables/gold", "value": 0}],
    )


class TestCampaignStateStore:
    def setup_method(self):
        self.store = CampaignStateStore()

    def test_entities_are_keyed_by_branch(self):
        self.store.upsert_entity(_make_entity())
        self.store.upsert_entity(_make_entity(branch_id="what_if"))
        assert self.store.get_entity("settlement", "set_1").branch_id == "main"
        assert self.store.get_entity("settlement", "set_1", "what_if").branch_id == "what_if"
        assert self.store.get_entity("settlement", "nope") is None
        assert len(self.store.get_entities(branch_id="main")) == 1

    def test_revision_tracks_rule_changes(self):
        start = self.store.revision
        self.store.upsert_condition(_make_condition("c1"))
        self.store.upsert_effect(_make_effect("e1"))
        assert self.store.revision == start + 2
        self.store.remove_effect("e1")
        assert self.store.revision == start + 3
        assert self.store.remove_effect("e1") is False
        assert self.store.revision == start + 3

    def test_entity_updates_only_bump_revision_when_new(self):
        self.store.upsert_entity(_make_entity())
        after_insert = self.store.revision
        self.store.upsert_entity(_make_entity())
        assert self.store.revision == after_insert
        assert self.store.remove_entity("settlement", "set_1") is True
        assert self.store.revision == after_insert + 1

    def test_campaign_change_bumps_revision(self):
        self.store.upsert_entity(_make_entity())
        before = self.store.revision
        self.store.upsert_entity(_make_entity(campaign_id="camp_2"))
        assert self.store.revision == before + 1
        assert self.store.get_entities(campaign_id="camp_1") == []

    def test_conditions_for_entity_include_type_level(self):
        self.store.upsert_condition(_make_condition("type_level"))
        self.store.upsert_condition(_make_condition("mine", entity_id="set_1"))
        self.store.upsert_condition(_make_condition("theirs", entity_id="set_2"))
        self.store.upsert_condition(_make_condition("kingdom", entity_type="kingdom"))
        ids = [c.id for c in self.store.conditions_for_entity(_make_entity())]
        assert ids == ["type_level", "mine"]

    def test_effects_for_entity(self):
        self.store.upsert_effect(_make_effect("e1"))
        self.store.upsert_effect(_make_effect("e2", entity_id="set_2"))
        self.store.upsert_effect(_make_effect("e3"))
        assert [e.id for e in self.store.effects_for_entity("settlement", "set_1")] == ["e1", "e3"]

    def test_scope(self):
        self.store.upsert_entity(_make_entity())
        self.store.upsert_entity(_make_entity(entity_id="set_9", campaign_id="camp_2"))
        self.store.upsert_condition(_make_condition("type_level"))
        self.store.upsert_condition(_make_condition("kingdom", entity_type="kingdom"))
        self.store.upsert_condition(_make_condition("other_campaign", entity_id="set_9"))
        self.store.upsert_effect(_make_effect("e1"))
        self.store.upsert_effect(_make_effect("e9", entity_id="set_9"))

        entities, conditions, effects = self.store.scope("camp_1")
        assert [e.entity_id for e in entities] == ["set_1"]
        assert [c.id for c in conditions] == ["type_level"]
        assert [e.id for e in effects] == ["e1"]

    def test_state_snapshot(self):
        self.store.upsert_entity(_make_entity())
        self.store.upsert_effect(_make_effect("e1"))
        snapshot = self.store.get_state_snapshot()
        assert len(snapshot["entities"]) == 1
        assert snapshot["effects"][0]["id"] == "e1"
        assert snapshot["revision"] == self.store.revision
