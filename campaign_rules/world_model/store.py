"""
Campaign State Store — entities, conditions and effects for the rules engine.

Updated by: the API layer (rule authoring) + resolution write-back
Queried by: Rules Engine facade + Graph Builder
"""

from typing import Dict, List, Optional, Set, Tuple

from campaign_rules.models.rules import Condition, Effect
from campaign_rules.models.world import EntityState

EntityKey = Tuple[str, str, str]                # (branch_id, entity_type, entity_id)


class CampaignStateStore:
    """
    In-memory campaign state store for the prototype.
    Production would read from the campaign database.
    """

    def __init__(self):
        self._entities: Dict[EntityKey, EntityState] = {}
        self._conditions: Dict[str, Condition] = {}
        self._effects: Dict[str, Effect] = {}
        self._revision = 0

    @property
    def revision(self) -> int:
        """Bumped on every condition or effect change and when an entity enters, leaves or changes campaign."""
        return self._revision

    def _touch(self) -> None:
        self._revision += 1

    # --- Entities ---

    def upsert_entity(self, entity: EntityState) -> None:
        """Insert or update an entity. Adding or re-homing an entity changes graph scope."""
        key = (entity.branch_id, entity.entity_type, entity.entity_id)
        existing = self._entities.get(key)
        if existing is None or existing.campaign_id != entity.campaign_id:
            self._touch()
        self._entities[key] = entity

    def get_entity(
        self, entity_type: str, entity_id: str, branch_id: str = "main"
    ) -> Optional[EntityState]:
        return self._entities.get((branch_id, entity_type, entity_id))

    def remove_entity(self, entity_type: str, entity_id: str, branch_id: str = "main") -> bool:
        key = (branch_id, entity_type, entity_id)
        if key in self._entities:
            del self._entities[key]
            self._touch()
            return True
        return False

    def get_entities(
        self,
        campaign_id: Optional[str] = None,
        branch_id: Optional[str] = None,
        entity_type: Optional[str] = None,
    ) -> List[EntityState]:
        return [
            e for e in self._entities.values()
            if (campaign_id is None or e.campaign_id == campaign_id)
            and (branch_id is None or e.branch_id == branch_id)
            and (entity_type is None or e.entity_type == entity_type)
        ]

    # --- Conditions ---

    def upsert_condition(self, condition: Condition) -> None:
        self._conditions[condition.id] = condition
        self._touch()

    def get_condition(self, condition_id: str) -> Optional[Condition]:
        return self._conditions.get(condition_id)

    def remove_condition(self, condition_id: str) -> bool:
        if condition_id in self._conditions:
            del self._conditions[condition_id]
            self._touch()
            return True
        return False

    def list_conditions(self) -> List[Condition]:
        return list(self._conditions.values())

    def conditions_for_entity(self, entity: EntityState) -> List[Condition]:
        """Instance-level conditions of the entity plus type-level ones for its type."""
        return [
            c for c in self._conditions.values()
            if c.entity_type == entity.entity_type
            and c.entity_id in (None, entity.entity_id)
        ]

    # --- Effects ---

    def upsert_effect(self, effect: Effect) -> None:
        self._effects[effect.id] = effect
        self._touch()

    def get_effect(self, effect_id: str) -> Optional[Effect]:
        return self._effects.get(effect_id)

    def remove_effect(self, effect_id: str) -> bool:
        if effect_id in self._effects:
            del self._effects[effect_id]
            self._touch()
            return True
        return False

    def list_effects(self) -> List[Effect]:
        return list(self._effects.values())

    def effects_for_entity(self, entity_type: str, entity_id: str) -> List[Effect]:
        """Effects owned by one entity, in insertion order."""
        return [
            e for e in self._effects.values()
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]

    # --- Campaign scope ---

    def scope(
        self, campaign_id: str, branch_id: str = "main"
    ) -> Tuple[List[EntityState], List[Condition], List[Effect]]:
        """
        Entities of a campaign branch with the conditions and effects that apply to them.

        Type-level conditions are included when the branch holds at least one
        entity of that type.
        """
        entities = self.get_entities(campaign_id=campaign_id, branch_id=branch_id)
        instances: Set[Tuple[str, str]] = {(e.entity_type, e.entity_id) for e in entities}
        types = {e.entity_type for e in entities}

        conditions = [
            c for c in self._conditions.values()
            if (c.entity_id is None and c.entity_type in types)
            or (c.entity_type, c.entity_id) in instances
        ]
        effects = [
            e for e in self._effects.values()
            if (e.entity_type, e.entity_id) in instances
        ]
        return entities, conditions, effects

    def get_state_snapshot(self) -> dict:
        """Serializable snapshot of everything in the store."""
        return {
            "entities": [e.model_dump(mode="json") for e in self._entities.values()],
            "conditions": [c.model_dump(mode="json") for c in self._conditions.values()],
            "effects": [e.model_dump(mode="json", by_alias=True) for e in self._effects.values()],
            "revision": self._revision,
        }
