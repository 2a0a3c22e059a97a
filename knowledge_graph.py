"""Curriculum knowledge graph: concepts, prerequisite edges, goals and branches."""

from __future__ import annotations

import heapq
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import yaml

from engines.errors import DataIntegrityError, NotFoundError


def _load_curriculum_payload(path: Path) -> Dict[str, Any]:
    suffix = path.suffix.lower()
    text = Path(path).read_text(encoding="utf-8")
    if suffix in {".json", ".jsonc"}:
        return json.loads(text)
    if suffix in {".yml", ".yaml"}:
        return yaml.safe_load(text) or {}
    raise ValueError(f"Unsupported curriculum format: {path}")


def _as_id_tuple(values: Optional[Iterable[Any]]) -> Tuple[str, ...]:
    if not values:
        return ()
    if isinstance(values, str):
        values = [values]
    return tuple(str(value).strip() for value in values if str(value).strip())


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConceptNode:
    """Atomic curriculum unit. Immutable after authoring."""

    id: str
    code: str
    title: str
    difficulty: int
    domain: str
    grade_level: str
    prerequisites: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "title": self.title,
            "difficulty": self.difficulty,
            "domain": self.domain,
            "grade_level": self.grade_level,
            "prerequisites": list(self.prerequisites),
        }


@dataclass(frozen=True)
class Goal:
    """Named bundle of required concepts."""

    id: str
    name: str
    concept_ids: Tuple[str, ...]
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "concept_ids": list(self.concept_ids),
            "description": self.description,
        }


@dataclass(frozen=True)
class TopicBranch:
    """Curated group of concepts with its own branch-level prerequisites."""

    id: str
    name: str
    domain: str
    grade_level: str
    concept_ids: Tuple[str, ...]
    prerequisite_branch_ids: Tuple[str, ...] = ()
    is_advanced: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "domain": self.domain,
            "grade_level": self.grade_level,
            "concept_ids": list(self.concept_ids),
            "prerequisite_branch_ids": list(self.prerequisite_branch_ids),
            "is_advanced": self.is_advanced,
        }


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


class KnowledgeGraph:
    """Read-only catalog of concepts and their prerequisite DAG."""

    def __init__(self) -> None:
        self._nodes: Dict[str, ConceptNode] = {}
        self._goals: Dict[str, Goal] = {}
        self._branches: Dict[str, TopicBranch] = {}
        self._branch_order: List[str] = []

    # ------------------------------------------------------------------
    def add_node(self, node: ConceptNode) -> None:
        if not node.id:
            raise ValueError("concept id must be non-empty")
        if node.id in node.prerequisites:
            raise DataIntegrityError(
                f"Concept {node.code} lists itself as a prerequisite",
                details={"concepts": [node.id]},
            )
        self._nodes[node.id] = node

    def add_goal(self, goal: Goal) -> None:
        if not goal.id:
            raise ValueError("goal id must be non-empty")
        self._goals[goal.id] = goal

    def add_branch(self, branch: TopicBranch) -> None:
        if not branch.id:
            raise ValueError("branch id must be non-empty")
        if branch.id not in self._branches:
            self._branch_order.append(branch.id)
        self._branches[branch.id] = branch

    # ------------------------------------------------------------------
    def get_node(self, node_id: str) -> Optional[ConceptNode]:
        return self._nodes.get(node_id)

    def require_node(self, node_id: str) -> ConceptNode:
        node = self._nodes.get(node_id)
        if node is None:
            raise NotFoundError("concept", node_id)
        return node

    def nodes(self) -> List[ConceptNode]:
        return list(self._nodes.values())

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get_goal(self, goal_id: str) -> Goal:
        goal = self._goals.get(goal_id)
        if goal is None:
            raise NotFoundError("goal", goal_id)
        return goal

    def goals(self) -> List[Goal]:
        return list(self._goals.values())

    def get_branch(self, branch_id: str) -> TopicBranch:
        branch = self._branches.get(branch_id)
        if branch is None:
            raise NotFoundError("branch", branch_id)
        return branch

    def branches(self) -> List[TopicBranch]:
        """Branches in authoring order."""

        return [self._branches[branch_id] for branch_id in self._branch_order]

    # ------------------------------------------------------------------
    def prerequisites_of(self, node_id: str) -> Tuple[str, ...]:
        return self.require_node(node_id).prerequisites

    def topological_order(
        self,
        node_ids: Iterable[str],
        sort_key: Optional[Callable[[ConceptNode], Tuple[Any, ...]]] = None,
    ) -> List[str]:
        """Order ``node_ids`` so every prerequisite precedes its dependents.

        Only edges between members of ``node_ids`` are considered. Ties among
        ready concepts are broken by ``sort_key`` (defaults to the concept code)
        so the result is deterministic. A cycle raises ``DataIntegrityError``.
        """

        members = {node_id: self.require_node(node_id) for node_id in node_ids}
        key = sort_key or (lambda node: (node.code,))

        in_degree: Dict[str, int] = {node_id: 0 for node_id in members}
        adjacency: Dict[str, List[str]] = {node_id: [] for node_id in members}
        for node_id, node in members.items():
            for prereq in node.prerequisites:
                if prereq in members:
                    adjacency[prereq].append(node_id)
                    in_degree[node_id] += 1

        ready: List[Tuple[Tuple[Any, ...], str]] = [
            (key(members[node_id]), node_id)
            for node_id, degree in in_degree.items()
            if degree == 0
        ]
        heapq.heapify(ready)

        ordered: List[str] = []
        while ready:
            _, current = heapq.heappop(ready)
            ordered.append(current)
            for dependent in adjacency[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, (key(members[dependent]), dependent))

        if len(ordered) != len(members):
            stuck = sorted(node_id for node_id, degree in in_degree.items() if degree > 0)
            cycle = self.find_cycle(stuck) or stuck
            codes = [members[node_id].code for node_id in cycle]
            raise DataIntegrityError(
                "Prerequisite cycle detected among concepts: " + " -> ".join(codes),
                details={"concepts": cycle},
            )
        return ordered

    def find_cycle(self, node_ids: Optional[Iterable[str]] = None) -> Optional[List[str]]:
        """Return one prerequisite cycle as a list of ids, or ``None``."""

        scope = set(node_ids) if node_ids is not None else set(self._nodes)
        WHITE, GREY, BLACK = 0, 1, 2
        colour = {node_id: WHITE for node_id in scope}

        for start in sorted(scope):
            if colour[start] != WHITE:
                continue
            path: List[str] = []
            stack: List[Tuple[str, Iterable[str]]] = []
            colour[start] = GREY
            path.append(start)
            stack.append((start, iter(sorted(self._prereqs_in(start, scope)))))
            while stack:
                current, children = stack[-1]
                advanced = False
                for child in children:
                    if colour[child] == GREY:
                        return path[path.index(child):] + [child]
                    if colour[child] == WHITE:
                        colour[child] = GREY
                        path.append(child)
                        stack.append((child, iter(sorted(self._prereqs_in(child, scope)))))
                        advanced = True
                        break
                if not advanced:
                    colour[current] = BLACK
                    path.pop()
                    stack.pop()
        return None

    def _prereqs_in(self, node_id: str, scope: Set[str]) -> List[str]:
        node = self._nodes.get(node_id)
        if node is None:
            return []
        return [prereq for prereq in node.prerequisites if prereq in scope]

    def validate(self) -> None:
        """Check references and acyclicity of the whole catalog."""

        for node in self._nodes.values():
            missing = [prereq for prereq in node.prerequisites if prereq not in self._nodes]
            if missing:
                raise DataIntegrityError(
                    f"Concept {node.code} references unknown prerequisites: {', '.join(missing)}",
                    details={"concept": node.id, "missing": missing},
                )
        cycle = self.find_cycle()
        if cycle:
            raise DataIntegrityError(
                "Prerequisite cycle detected among concepts: " + " -> ".join(cycle),
                details={"concepts": cycle},
            )
        for branch in self._branches.values():
            unknown = [
                branch_id
                for branch_id in branch.prerequisite_branch_ids
                if branch_id not in self._branches
            ]
            if unknown:
                raise DataIntegrityError(
                    f"Branch {branch.name} references unknown branches: {', '.join(unknown)}",
                    details={"branch": branch.id, "missing": unknown},
                )

    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "concepts": [node.to_dict() for node in self._nodes.values()],
            "goals": [goal.to_dict() for goal in self._goals.values()],
            "branches": [branch.to_dict() for branch in self.branches()],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "KnowledgeGraph":
        graph = cls()
        for entry in payload.get("concepts", []) or []:
            graph.add_node(concept_from_mapping(entry))
        for entry in payload.get("goals", []) or []:
            graph.add_goal(
                Goal(
                    id=str(entry["id"]),
                    name=str(entry.get("name") or entry["id"]),
                    concept_ids=_as_id_tuple(entry.get("concept_ids")),
                    description=str(entry.get("description") or ""),
                )
            )
        for entry in payload.get("branches", []) or []:
            graph.add_branch(
                TopicBranch(
                    id=str(entry["id"]),
                    name=str(entry.get("name") or entry["id"]),
                    domain=str(entry.get("domain") or ""),
                    grade_level=str(entry.get("grade_level") or ""),
                    concept_ids=_as_id_tuple(entry.get("concept_ids")),
                    prerequisite_branch_ids=_as_id_tuple(entry.get("prerequisite_branch_ids")),
                    is_advanced=bool(entry.get("is_advanced", False)),
                )
            )
        return graph

    @classmethod
    def load(cls, path: Path) -> "KnowledgeGraph":
        """Load a curriculum file (JSON or YAML) and validate it."""

        graph = cls.from_dict(_load_curriculum_payload(Path(path)))
        graph.validate()
        return graph


def concept_from_mapping(entry: Mapping[str, Any]) -> ConceptNode:
    """Build a ``ConceptNode`` from a curriculum file or database row."""

    try:
        difficulty = int(entry.get("difficulty", 5))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Concept {entry.get('id')} has a non-numeric difficulty") from exc
    node_id = str(entry["id"])
    return ConceptNode(
        id=node_id,
        code=str(entry.get("code") or node_id),
        title=str(entry.get("title") or entry.get("code") or node_id),
        difficulty=difficulty,
        domain=str(entry.get("domain") or ""),
        grade_level=str(entry.get("grade_level") or "K"),
        prerequisites=_as_id_tuple(entry.get("prerequisites")),
    )


__all__ = [
    "ConceptNode",
    "Goal",
    "KnowledgeGraph",
    "TopicBranch",
    "concept_from_mapping",
]
