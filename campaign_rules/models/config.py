"""Engine configuration."""

from typing import Dict, List

from pydantic import BaseModel, Field


class EngineConfig(BaseModel):
    """Configuration for the rules engine and its collaborators."""

    max_expression_depth: int = Field(default=32, ge=1)
    refuse_cyclic_effects: bool = True
    graph_cache_enabled: bool = True
    default_branch: str = "main"
    audit_db_path: str = ":memory:"
    log_level: str = "INFO"

    # Top-level document fields no effect may patch
    protected_fields: List[str] = ["id", "createdAt", "updatedAt", "deletedAt", "version"]
    entity_protected_fields: Dict[str, List[str]] = {
        "settlement": ["campaignId", "kingdomId", "locationId"],
        "structure": ["settlementId"],
        "kingdom": ["campaignId"],
        "encounter": ["campaignId", "eventId"],
        "event": ["campaignId", "encounterId"],
    }
