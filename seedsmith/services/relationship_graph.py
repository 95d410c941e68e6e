from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from seedsmith.services.schema_snapshot import SchemaSnapshot, SnapshotRelationship

logger = logging.getLogger(__name__)

BREAK_ALLOW_NULL = "allow_null"
BREAK_DEFER_CONSTRAINT = "defer_constraint"

NODE_ROOT = "root"
NODE_INTERMEDIATE = "intermediate"
NODE_LEAF = "leaf"

STRATEGY_INDEPENDENT = "independent"
STRATEGY_DEPENDENT = "dependent"
STRATEGY_CIRCULAR = "circular"

BASE_PRIORITY = 100
DEPENDENCY_PENALTY = 10
USER_TABLE_BOOST = 20
USER_TABLE_HINTS = ("user", "account", "profile", "member", "person", "customer", "identit")


@dataclass(frozen=True)
class GraphEdge:
    from_table: str
    to_table: str
    from_column: str
    to_column: str
    cardinality: str = "one_to_many"
    nullable: bool = True
    deferrable: bool = False
    constraint_name: str | None = None


@dataclass
class GraphNode:
    table: str
    dependencies: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)
    node_type: str = NODE_ROOT
    priority: int = BASE_PRIORITY
    is_circular: bool = False


@dataclass(frozen=True)
class CycleBreakPoint:
    edge: GraphEdge
    strategy: str


@dataclass(frozen=True)
class DependencyCycle:
    tables: tuple[str, ...]
    edges: tuple[GraphEdge, ...]
    break_point: CycleBreakPoint


@dataclass
class RelationshipGraph:
    nodes: dict[str, GraphNode]
    edges: list[GraphEdge]
    cycles: list[DependencyCycle]
    seeding_order: list[str]
    dependency_levels: dict[str, int]
    warnings: list[str] = field(default_factory=list)

    @property
    def deletion_order(self) -> list[str]:
        return list(reversed(self.seeding_order))

    @property
    def complexity(self) -> str:
        if not self.cycles and len(self.edges) <= len(self.nodes):
            return "simple"
        if len(self.cycles) <= 2:
            return "moderate"
        return "complex"

    def strategy_for(self, table: str) -> str:
        node = self.nodes[table]
        if node.is_circular:
            return STRATEGY_CIRCULAR
        if node.dependencies:
            return STRATEGY_DEPENDENT
        return STRATEGY_INDEPENDENT

    def has_edge_between(self, left: str, right: str) -> bool:
        return any(
            {edge.from_table, edge.to_table} == {left, right} for edge in self.edges
        )

    def can_seed_in_parallel(self, left: str, right: str) -> bool:
        """True when both tables sit on the same dependency level and share no edge."""

        if left == right or left not in self.nodes or right not in self.nodes:
            return False
        if self.dependency_levels.get(left) != self.dependency_levels.get(right):
            return False
        return not self.has_edge_between(left, right)

    def parallel_batches(self) -> list[list[str]]:
        """Group tables into batches whose members can be seeded concurrently.

        Batches follow the seeding order level by level; tables of one level that
        are linked by an edge (cycle partners) end up in separate batches.
        """

        levels: dict[int, list[str]] = defaultdict(list)
        for table in self.seeding_order:
            levels[self.dependency_levels.get(table, 0)].append(table)

        batches: list[list[str]] = []
        for level in sorted(levels):
            level_batches: list[list[str]] = []
            for table in levels[level]:
                for batch in level_batches:
                    if all(not self.has_edge_between(table, other) for other in batch):
                        batch.append(table)
                        break
                else:
                    level_batches.append([table])
            batches.extend(level_batches)
        return batches

    def break_edges(self) -> set[tuple[str, str]]:
        return {(cycle.break_point.edge.from_table, cycle.break_point.edge.to_table) for cycle in self.cycles}

    def cycle_partners(self, table: str) -> set[str]:
        partners: set[str] = set()
        for cycle in self.cycles:
            if table in cycle.tables:
                partners.update(cycle.tables)
        partners.discard(table)
        return partners


class RelationshipGrapher:
    """Build a seeding dependency graph from foreign key relationships.

    Edges point from the referencing table to the referenced table: a table
    depends on every table it holds a foreign key to.
    """

    def build_from_snapshot(self, snapshot: SchemaSnapshot) -> RelationshipGraph:
        return self.build(snapshot.table_names, snapshot.relationships)

    def build(
        self,
        tables: Iterable[str],
        relationships: Iterable[SnapshotRelationship],
    ) -> RelationshipGraph:
        nodes: dict[str, GraphNode] = {}
        for name in tables:
            nodes.setdefault(name, GraphNode(table=name))

        edges: list[GraphEdge] = []
        warnings: list[str] = []
        for rel in relationships:
            if rel.from_table == rel.to_table:
                warnings.append(f"Self-referencing relationship on {rel.from_table}.{rel.from_column} ignored for ordering")
                continue
            if rel.from_table not in nodes or rel.to_table not in nodes:
                # Detached relationship reference; skip to keep the grapher robust
                warnings.append(
                    f"Relationship {rel.from_table}.{rel.from_column} -> {rel.to_table} references an unknown table"
                )
                continue
            edges.append(
                GraphEdge(
                    from_table=rel.from_table,
                    to_table=rel.to_table,
                    from_column=rel.from_column,
                    to_column=rel.to_column,
                    cardinality=rel.cardinality,
                    nullable=rel.nullable,
                    deferrable=rel.deferrable,
                    constraint_name=rel.constraint_name,
                )
            )
            child = nodes[rel.from_table]
            parent = nodes[rel.to_table]
            if rel.to_table not in child.dependencies:
                child.dependencies.append(rel.to_table)
            if rel.from_table not in parent.dependents:
                parent.dependents.append(rel.from_table)

        for node in nodes.values():
            node.node_type = self._classify(node)
            node.priority = self._priority(node)

        cycles = self._detect_cycles(nodes, edges)
        for cycle in cycles:
            for table in cycle.tables:
                nodes[table].is_circular = True
            edge = cycle.break_point.edge
            warnings.append(
                "Circular dependency "
                + " -> ".join(cycle.tables + (cycle.tables[0],))
                + f"; break at {edge.from_table}.{edge.from_column} ({cycle.break_point.strategy})"
            )

        graph = RelationshipGraph(
            nodes=nodes,
            edges=edges,
            cycles=cycles,
            seeding_order=[],
            dependency_levels={},
            warnings=warnings,
        )
        graph.seeding_order = self._seeding_order(graph)
        graph.dependency_levels = self._dependency_levels(graph)
        if cycles:
            logger.info("Relationship graph contains %d cycle(s)", len(cycles))
        logger.debug("Seeding order: %s", graph.seeding_order)
        return graph

    @staticmethod
    def _classify(node: GraphNode) -> str:
        if not node.dependencies:
            return NODE_ROOT
        if node.dependents:
            return NODE_INTERMEDIATE
        return NODE_LEAF

    @staticmethod
    def _priority(node: GraphNode) -> int:
        priority = BASE_PRIORITY - DEPENDENCY_PENALTY * len(node.dependencies)
        lowered = node.table.lower()
        if any(hint in lowered for hint in USER_TABLE_HINTS):
            priority += USER_TABLE_BOOST
        return priority

    def _detect_cycles(
        self, nodes: dict[str, GraphNode], edges: Sequence[GraphEdge]
    ) -> list[DependencyCycle]:
        edges_between: dict[tuple[str, str], list[GraphEdge]] = defaultdict(list)
        for edge in edges:
            edges_between[(edge.from_table, edge.to_table)].append(edge)

        visited: set[str] = set()
        seen: set[frozenset[str]] = set()
        cycles: list[DependencyCycle] = []

        for start in nodes:
            if start in visited:
                continue
            # Iterative DFS: each frame is (table, iterator over its dependencies)
            stack: list[str] = [start]
            on_stack: set[str] = {start}
            iterators = [iter(nodes[start].dependencies)]
            visited.add(start)
            while stack:
                try:
                    dependency = next(iterators[-1])
                except StopIteration:
                    on_stack.discard(stack.pop())
                    iterators.pop()
                    continue
                if dependency in on_stack:
                    path = tuple(stack[stack.index(dependency):])
                    key = frozenset(path)
                    if key not in seen:
                        seen.add(key)
                        cycles.append(self._build_cycle(path, edges_between))
                    continue
                if dependency in visited:
                    continue
                visited.add(dependency)
                stack.append(dependency)
                on_stack.add(dependency)
                iterators.append(iter(nodes[dependency].dependencies))
        return cycles

    @staticmethod
    def _build_cycle(
        path: tuple[str, ...], edges_between: dict[tuple[str, str], list[GraphEdge]]
    ) -> DependencyCycle:
        cycle_edges: list[GraphEdge] = []
        for index, table in enumerate(path):
            target = path[(index + 1) % len(path)]
            candidates = edges_between[(table, target)]
            nullable = [edge for edge in candidates if edge.nullable]
            cycle_edges.append(nullable[0] if nullable else candidates[0])

        for edge in cycle_edges:
            if edge.nullable:
                break_point = CycleBreakPoint(edge=edge, strategy=BREAK_ALLOW_NULL)
                break
        else:
            break_point = CycleBreakPoint(edge=cycle_edges[0], strategy=BREAK_DEFER_CONSTRAINT)

        return DependencyCycle(tables=path, edges=tuple(cycle_edges), break_point=break_point)

    @staticmethod
    def _seeding_order(graph: RelationshipGraph) -> list[str]:
        nodes = graph.nodes
        discovery = {name: index for index, name in enumerate(nodes)}
        broken = graph.break_edges()

        roots = [name for name, node in nodes.items() if not node.dependencies]
        order: list[str] = sorted(roots, key=lambda name: (-nodes[name].priority, discovery[name]))
        emitted = set(order)

        def ready(name: str, relaxed: bool) -> bool:
            partners = graph.cycle_partners(name) if relaxed else set()
            for dependency in nodes[name].dependencies:
                if dependency in emitted or (name, dependency) in broken:
                    continue
                if dependency in partners:
                    continue
                return False
            return True

        relaxed = False
        while len(emitted) < len(nodes):
            progressed = False
            for name in nodes:
                if name not in emitted and ready(name, relaxed):
                    order.append(name)
                    emitted.add(name)
                    progressed = True
            if progressed:
                relaxed = False
                continue
            if relaxed:
                break
            relaxed = True

        leftovers = [name for name in nodes if name not in emitted]
        if leftovers:
            graph.warnings.append(f"Unresolved dependencies appended to seeding order: {', '.join(leftovers)}")
            order.extend(leftovers)
        return order

    @staticmethod
    def _dependency_levels(graph: RelationshipGraph) -> dict[str, int]:
        levels: dict[str, int] = {}
        in_progress: set[str] = set()

        def level_of(name: str) -> int:
            if name in levels:
                return levels[name]
            if name in in_progress:
                return 0
            in_progress.add(name)
            partners = graph.cycle_partners(name)
            dependencies = [dep for dep in graph.nodes[name].dependencies if dep not in partners]
            level = 1 + max((level_of(dep) for dep in dependencies), default=-1)
            in_progress.discard(name)
            levels[name] = level
            return level

        for name in graph.nodes:
            level_of(name)
        return levels
