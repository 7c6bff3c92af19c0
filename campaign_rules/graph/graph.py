"""
Dependency Graph — NetworkX-backed directed multigraph over variables, conditions,
effects and entities.

Each graph node carries its DependencyNode under the "node" attribute and each
edge its DependencyEdge under "edge".
"""

from typing import Dict, Iterable, List, Optional, Set, Tuple

import networkx as nx

from campaign_rules.models.graph import (
    DependencyEdge,
    DependencyNode,
    EdgeType,
    GraphStats,
    NodeType,
    SelectionResult,
    TopologicalOrder,
)


class UnknownNodeError(KeyError):
    """A query referenced a node id that is not in the graph."""


def variable_node_id(name: str) -> str:
    return f"{NodeType.VARIABLE.value}:{name}"


def condition_node_id(condition_id: str) -> str:
    return f"{NodeType.CONDITION.value}:{condition_id}"


def effect_node_id(effect_id: str) -> str:
    return f"{NodeType.EFFECT.value}:{effect_id}"


def entity_node_id(entity_type: str, entity_id: Optional[str]) -> str:
    return f"{NodeType.ENTITY.value}:{entity_type}:{entity_id or '*'}"


class DependencyGraph:
    """
    Directed multigraph of READS / WRITES / DEPENDS_ON edges.

    Parallel edges between the same pair of nodes are kept, so an effect that
    both reads and writes a variable shows both relationships.
    """

    def __init__(self):
        self._graph: nx.MultiDiGraph = nx.MultiDiGraph()

    @property
    def graph(self) -> nx.MultiDiGraph:
        """Access the underlying NetworkX graph."""
        return self._graph

    # --- Construction ---

    def add_node(self, node: DependencyNode) -> DependencyNode:
        """Add a node. Adding an id that already exists returns the existing node."""
        if node.id in self._graph:
            return self._graph.nodes[node.id]["node"]
        self._graph.add_node(node.id, node=node, node_type=node.type.value)
        return node

    def add_edge(self, edge: DependencyEdge) -> DependencyEdge:
        """Add an edge between two existing nodes."""
        if edge.from_id not in self._graph:
            raise UnknownNodeError(f"Cannot add edge: source node '{edge.from_id}' does not exist")
        if edge.to_id not in self._graph:
            raise UnknownNodeError(f"Cannot add edge: target node '{edge.to_id}' does not exist")
        self._graph.add_edge(edge.from_id, edge.to_id, edge=edge, edge_type=edge.type.value)
        return edge

    def connect(self, from_id: str, to_id: str, edge_type: EdgeType, **metadata) -> DependencyEdge:
        """Add a typed edge; keyword arguments become edge metadata."""
        return self.add_edge(
            DependencyEdge(from_id=from_id, to_id=to_id, type=edge_type, metadata=metadata)
        )

    # --- Accessors ---

    def has_node(self, node_id: str) -> bool:
        """Check if a node exists."""
        return node_id in self._graph

    def get_node(self, node_id: str) -> DependencyNode:
        """Get a node by id. Raises UnknownNodeError."""
        self._require(node_id)
        return self._graph.nodes[node_id]["node"]

    @property
    def nodes(self) -> List[DependencyNode]:
        """All nodes in insertion order."""
        return [data["node"] for _, data in self._graph.nodes(data=True)]

    @property
    def edges(self) -> List[DependencyEdge]:
        """All edges, grouped by source node."""
        return [data["edge"] for _, _, data in self._graph.edges(data=True)]

    @property
    def node_count(self) -> int:
        """Number of nodes."""
        return self._graph.number_of_nodes()

    @property
    def edge_count(self) -> int:
        """Number of edges, parallel edges counted separately."""
        return self._graph.number_of_edges()

    def out_edges(self, node_id: str) -> List[DependencyEdge]:
        """Edges leaving a node."""
        self._require(node_id)
        return [data["edge"] for _, _, data in self._graph.out_edges(node_id, data=True)]

    def in_edges(self, node_id: str) -> List[DependencyEdge]:
        """Edges entering a node."""
        self._require(node_id)
        return [data["edge"] for _, _, data in self._graph.in_edges(node_id, data=True)]

    def dependencies_of(self, node_id: str) -> List[str]:
        """Direct successors (what this node reads, writes or owns)."""
        self._require(node_id)
        return list(self._graph.successors(node_id))

    def dependents_of(self, node_id: str) -> List[str]:
        """Direct predecessors."""
        self._require(node_id)
        return list(self._graph.predecessors(node_id))

    def _require(self, node_id: str) -> None:
        if node_id not in self._graph:
            raise UnknownNodeError(f"Unknown node: {node_id}")

    # --- Traversal ---

    def upstream(self, node_id: str, max_depth: Optional[int] = None) -> List[str]:
        """Everything that reaches node_id, nearest first. The origin is excluded."""
        self._require(node_id)
        return _reached(self._graph.reverse(copy=False), node_id, max_depth)

    def downstream(self, node_id: str, max_depth: Optional[int] = None) -> List[str]:
        """Everything node_id reaches, nearest first. The origin is excluded."""
        self._require(node_id)
        return _reached(self._graph, node_id, max_depth)

    def select(self, node_ids: Iterable[str], max_depth: Optional[int] = None) -> SelectionResult:
        """Union of upstream/downstream sets for a multi-node selection."""
        selected = _unique(node_ids)
        upstream: List[str] = []
        downstream: List[str] = []
        for node_id in selected:
            upstream.extend(self.upstream(node_id, max_depth))
            downstream.extend(self.downstream(node_id, max_depth))
        chosen = set(selected)
        return SelectionResult(
            selected=selected,
            upstream=[n for n in _unique(upstream) if n not in chosen],
            downstream=[n for n in _unique(downstream) if n not in chosen],
        )

    def has_path(self, source_id: str, target_id: str) -> bool:
        """True if target_id is reachable from source_id. Unknown ids have no path."""
        if source_id not in self._graph or target_id not in self._graph:
            return False
        return nx.has_path(self._graph, source_id, target_id)

    def would_create_cycle(self, from_id: str, to_id: str) -> bool:
        """True if adding from_id -> to_id closes a loop."""
        return self.has_path(to_id, from_id)

    # --- Cycles ---

    def cycle_members(self) -> Set[str]:
        """Every node in a non-trivial strongly connected component or on a self-loop."""
        members: Set[str] = set(nx.nodes_with_selfloops(self._graph))
        for component in nx.strongly_connected_components(self._graph):
            if len(component) > 1:
                members.update(component)
        return members

    def mark_cycles(self) -> int:
        """Set in_cycle on every node and return how many participate in a cycle."""
        members = self.cycle_members()
        for node_id, data in self._graph.nodes(data=True):
            data["node"].in_cycle = node_id in members
        return len(members)

    def has_cycle(self) -> bool:
        """True if any directed cycle exists."""
        return not nx.is_directed_acyclic_graph(self._graph)

    def find_cycles(self) -> List[List[str]]:
        """
        Every elementary cycle as a closed path, e.g. ["A", "B", "C", "A"].

        Each path starts at its earliest-inserted node; paths are ordered by
        that start node, then by length.
        """
        position = self._positions()
        cycles = []
        # parallel edges would repeat the same cycle once per edge
        for cycle in nx.simple_cycles(nx.DiGraph(self._graph)):
            start = min(range(len(cycle)), key=lambda i: position[cycle[i]])
            rotated = cycle[start:] + cycle[:start]
            cycles.append(rotated + [rotated[0]])
        cycles.sort(key=lambda path: (position[path[0]], len(path), [position[n] for n in path]))
        return cycles

    def effect_write_cycles(self) -> List[List[str]]:
        """
        Cycles among effects: E1 -> E2 when E1 writes a variable that E2's guard reads.

        Only components of two or more effects are returned; an effect whose
        guard reads a variable it writes itself runs once and is not a cycle.
        """
        projection = nx.DiGraph()
        writers: Dict[str, List[str]] = {}
        readers: Dict[str, List[str]] = {}
        for node_id, data in self._graph.nodes(data=True):
            if data["node"].type != NodeType.EFFECT:
                continue
            projection.add_node(node_id)
            for _, target, edge_data in self._graph.out_edges(node_id, data=True):
                edge_type = edge_data["edge"].type
                if edge_type == EdgeType.WRITES:
                    writers.setdefault(target, []).append(node_id)
                elif edge_type == EdgeType.READS:
                    readers.setdefault(target, []).append(node_id)

        for variable_id, writing in writers.items():
            for writer in writing:
                for reader in readers.get(variable_id, []):
                    if reader != writer:
                        projection.add_edge(writer, reader)

        condensed = nx.condensation(projection)
        return [
            sorted(members)
            for _, members in condensed.nodes(data="members")
            if len(members) > 1
        ]

    # --- Ordering and views ---

    def topological_sort(self) -> TopologicalOrder:
        """
        Sources first, ties in node insertion order.

        On a cyclic graph the order holds every node with no cycle upstream of
        it; cycle members and everything they reach are left in remaining_nodes.
        """
        position = self._positions()
        blocked: Set[str] = set()
        for member in self.cycle_members():
            blocked.add(member)
            blocked.update(nx.descendants(self._graph, member))

        sortable = self._graph.subgraph(n for n in self._graph if n not in blocked)
        order = list(nx.lexicographical_topological_sort(sortable, key=position.__getitem__))
        remaining = [n for n in self._graph if n in blocked]
        return TopologicalOrder(
            success=not remaining,
            order=order,
            remaining_nodes=remaining,
            error=(
                None if not remaining
                else f"Cycle detected: {len(remaining)} nodes could not be sorted"
            ),
        )

    def filter(
        self,
        node_types: Optional[Iterable[NodeType]] = None,
        edge_types: Optional[Iterable[EdgeType]] = None,
        search: str = "",
        cycles_only: bool = False,
    ) -> Tuple[List[DependencyNode], List[DependencyEdge]]:
        """Visible nodes and the edges whose both ends are visible."""
        nodes = self.nodes
        query = search.strip().lower()
        if query:
            nodes = [n for n in nodes if query in (n.label or n.id).lower()]
        if node_types:
            wanted = set(node_types)
            nodes = [n for n in nodes if n.type in wanted]
        if cycles_only:
            members = self.cycle_members()
            nodes = [n for n in nodes if n.id in members]

        visible = {n.id for n in nodes}
        edges = [
            data["edge"]
            for _, _, data in self._graph.subgraph(visible).edges(data=True)
        ]
        if edge_types:
            wanted_edges = set(edge_types)
            edges = [e for e in edges if e.type in wanted_edges]
        return nodes, edges

    def stats(self) -> GraphStats:
        """Per-type node counts, edge count and cycle participant count."""
        counts = {t.value: 0 for t in NodeType}
        for _, node_type in self._graph.nodes(data="node_type"):
            counts[node_type] += 1
        return GraphStats(
            node_counts=counts,
            edge_count=self.edge_count,
            cycle_node_count=len(self.cycle_members()),
        )

    def _positions(self) -> Dict[str, int]:
        return {node_id: i for i, node_id in enumerate(self._graph)}


def _reached(graph, start: str, max_depth: Optional[int]) -> List[str]:
    # single_source_shortest_path_length yields in breadth-first order
    lengths = nx.single_source_shortest_path_length(graph, start, cutoff=max_depth)
    return [node_id for node_id in lengths if node_id != start]


def _unique(items: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    result: List[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result
