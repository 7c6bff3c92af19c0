"""Dependency graph nodes, edges and query results."""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel


class NodeType(str, Enum):
    VARIABLE = "VARIABLE"
    CONDITION = "CONDITION"
    EFFECT = "EFFECT"
    ENTITY = "ENTITY"


class EdgeType(str, Enum):
    READS = "READS"
    WRITES = "WRITES"
    DEPENDS_ON = "DEPENDS_ON"


class DependencyNode(BaseModel):
    id: str                                 # e.g. "CONDITION:cond_1", "VARIABLE:gold"
    type: NodeType
    entity_id: Optional[str] = None
    label: str = ""
    metadata: dict = {}
    in_cycle: bool = False


class DependencyEdge(BaseModel):
    from_id: str
    to_id: str
    type: EdgeType
    metadata: dict = {}


class GraphStats(BaseModel):
    node_counts: Dict[str, int] = {}        # NodeType value -> count
    edge_count: int = 0
    cycle_node_count: int = 0


class DependencyGraphSnapshot(BaseModel):
    """Serializable view of a built graph, as returned to the API layer."""

    campaign_id: Optional[str] = None
    branch_id: Optional[str] = None
    nodes: List[DependencyNode] = []
    edges: List[DependencyEdge] = []
    stats: GraphStats = GraphStats()
    cycles: List[List[str]] = []
    warnings: List[str] = []


class SelectionResult(BaseModel):
    """Aggregated upstream/downstream sets for a multi-node selection."""

    selected: List[str]
    upstream: List[str] = []
    downstream: List[str] = []


class TopologicalOrder(BaseModel):
    """Topological ordering; nodes left over are those on or behind a cycle."""

    success: bool
    order: List[str] = []
    remaining_nodes: List[str] = []
    error: Optional[str] = None
