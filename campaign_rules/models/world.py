"""Campaign world entities — the snapshots the engine reads and patches."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel


class EntityRef(BaseModel):
    """Reference to an entity instance, or to a whole entity type when entity_id is None."""

    entity_type: str
    entity_id: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.entity_type}:{self.entity_id or '*'}"


class EntityState(BaseModel):
    """A single campaign entity (settlement, encounter, event, ...) and its variables."""

    entity_type: str                        # e.g. "settlement", "encounter", "event"
    entity_id: str
    campaign_id: str
    branch_id: str = "main"
    variables: Dict[str, Any] = {}          # VariableState, mutated only through patches
    attributes: Dict[str, Any] = {}         # Non-variable structured data (name, notes, ...)
    version: int = 1
    is_resolved: bool = False
    resolved_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    @property
    def ref(self) -> EntityRef:
        return EntityRef(entity_type=self.entity_type, entity_id=self.entity_id)

    def document(self) -> Dict[str, Any]:
        """The JSON document effects patch: attributes plus the variables map."""
        doc = dict(self.attributes)
        doc["variables"] = self.variables
        return doc

    def with_document(self, document: Dict[str, Any]) -> "EntityState":
        """Return a copy of this entity carrying the given patched document."""
        doc = dict(document)
        variables = doc.pop("variables", {})
        return self.model_copy(update={
            "variables": variables,
            "attributes": doc,
            "last_updated": datetime.utcnow(),
        })
