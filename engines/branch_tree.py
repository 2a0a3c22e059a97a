"""Topic tree view: branch unlock and completion derived from mastery."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

import db
from engine_config import MasteryLevel
from knowledge_graph import ConceptNode, KnowledgeGraph, TopicBranch


@dataclass
class BranchNodeView:
    concept_id: str
    code: str
    title: str
    bkt_probability: float
    mastered: bool
    is_current: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "concept_id": self.concept_id,
            "code": self.code,
            "title": self.title,
            "bkt_probability": round(self.bkt_probability, 4),
            "mastered": self.mastered,
            "is_current": self.is_current,
        }


@dataclass
class BranchState:
    """Derived state of one branch for one student."""

    branch: TopicBranch
    unlocked: bool
    completed: bool
    nodes: List[BranchNodeView] = field(default_factory=list)

    @property
    def total_concepts(self) -> int:
        return len(self.nodes)

    @property
    def mastered_count(self) -> int:
        return sum(1 for node in self.nodes if node.mastered)

    @property
    def progress_percent(self) -> int:
        if not self.nodes:
            return 0
        return round(self.mastered_count / len(self.nodes) * 100)

    @property
    def next_concept_id(self) -> Optional[str]:
        for node in self.nodes:
            if not node.mastered:
                return node.concept_id
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.branch.to_dict(),
            "unlocked": self.unlocked,
            "completed": self.completed,
            "progress_percent": self.progress_percent,
            "mastered_count": self.mastered_count,
            "total_concepts": self.total_concepts,
            "next_concept_id": self.next_concept_id,
            "nodes": [node.to_dict() for node in self.nodes],
        }


@dataclass
class TopicTree:
    student_id: str
    branches: List[BranchState]
    active_branch_id: Optional[str] = None

    @property
    def unlocked_branch_ids(self) -> List[str]:
        return [state.branch.id for state in self.branches if state.unlocked]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "student_id": self.student_id,
            "branches": [state.to_dict() for state in self.branches],
            "unlocked_branch_ids": self.unlocked_branch_ids,
            "active_branch_id": self.active_branch_id,
        }


@dataclass
class BranchChoice:
    """Options offered when more than one branch is open: go deeper or broader."""

    deeper: List[BranchState]
    broader: List[BranchState]

    @property
    def requires_choice(self) -> bool:
        return len(self.deeper) + len(self.broader) > 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requires_choice": self.requires_choice,
            "deeper": [state.to_dict() for state in self.deeper],
            "broader": [state.to_dict() for state in self.broader],
        }


def _mastery_snapshot(student_id: str) -> Dict[str, Mapping[str, Any]]:
    return {row["concept_id"]: row for row in db.list_mastery(student_id)}


class BranchTreeEngine:
    """Pure derived view over the knowledge graph and the mastery records.

    Nothing is persisted: unlock and completion are recomputed on every read.
    """

    def __init__(
        self,
        graph: KnowledgeGraph,
        mastery_snapshot: Optional[Callable[[str], Dict[str, Mapping[str, Any]]]] = None,
    ) -> None:
        self.graph = graph
        self._mastery_snapshot = mastery_snapshot or _mastery_snapshot

    # ------------------------------------------------------------------
    @staticmethod
    def is_completed(branch: TopicBranch, mastered: Set[str]) -> bool:
        return bool(branch.concept_ids) and all(concept_id in mastered for concept_id in branch.concept_ids)

    @staticmethod
    def is_unlocked(branch: TopicBranch, completed_branch_ids: Set[str]) -> bool:
        return all(prereq in completed_branch_ids for prereq in branch.prerequisite_branch_ids)

    def branch_states(
        self,
        student_id: str,
        *,
        domain: Optional[str] = None,
        current_concept_id: Optional[str] = None,
    ) -> List[BranchState]:
        snapshot = self._mastery_snapshot(student_id)
        mastered = {
            concept_id
            for concept_id, row in snapshot.items()
            if str(row.get("level")) == MasteryLevel.MASTERED.value
        }
        branches = self.graph.branches()
        completed_ids = {branch.id for branch in branches if self.is_completed(branch, mastered)}

        ordered = sorted(
            (branch for branch in branches if domain is None or branch.domain == domain),
            key=lambda branch: branch.is_advanced,
        )
        states: List[BranchState] = []
        for branch in ordered:
            nodes: List[BranchNodeView] = []
            for concept_id in branch.concept_ids:
                node = self.graph.get_node(concept_id)
                if node is None:
                    continue
                row = snapshot.get(concept_id) or {}
                nodes.append(
                    BranchNodeView(
                        concept_id=node.id,
                        code=node.code,
                        title=node.title,
                        bkt_probability=float(row.get("bkt_probability") or 0.0),
                        mastered=concept_id in mastered,
                        is_current=concept_id == current_concept_id,
                    )
                )
            states.append(
                BranchState(
                    branch=branch,
                    unlocked=self.is_unlocked(branch, completed_ids),
                    completed=branch.id in completed_ids,
                    nodes=nodes,
                )
            )
        return states

    def get_branch_tree(
        self,
        student_id: str,
        *,
        domain: Optional[str] = None,
        current_concept_id: Optional[str] = None,
    ) -> TopicTree:
        states = self.branch_states(student_id, domain=domain, current_concept_id=current_concept_id)
        active = next(
            (state.branch.id for state in states if any(node.is_current for node in state.nodes)),
            None,
        )
        return TopicTree(student_id=student_id, branches=states, active_branch_id=active)

    def get_next_branch_node(
        self,
        student_id: str,
        branch_id: Optional[str] = None,
        *,
        exclude: Iterable[str] = (),
    ) -> Optional[ConceptNode]:
        """First unmastered concept of ``branch_id`` or of the first open branch."""

        excluded = set(exclude)
        states = self.branch_states(student_id)
        if branch_id is not None:
            self.graph.get_branch(branch_id)
            states = [state for state in states if state.branch.id == branch_id]
        for state in states:
            if not state.unlocked or state.completed:
                continue
            for node in state.nodes:
                if not node.mastered and node.concept_id not in excluded:
                    return self.graph.get_node(node.concept_id)
        return None

    def branch_choices(self, student_id: str, completed_branch_id: Optional[str] = None) -> BranchChoice:
        """Split open branches into deeper (advanced or same domain) and broader options."""

        states = [state for state in self.branch_states(student_id) if state.unlocked and not state.completed]
        anchor: Optional[TopicBranch] = None
        if completed_branch_id is not None:
            anchor = self.graph.get_branch(completed_branch_id)

        deeper: List[BranchState] = []
        broader: List[BranchState] = []
        for state in states:
            branch = state.branch
            if anchor is not None:
                is_deeper = anchor.id in branch.prerequisite_branch_ids or (
                    branch.is_advanced and branch.domain == anchor.domain
                )
            else:
                is_deeper = branch.is_advanced
            (deeper if is_deeper else broader).append(state)
        return BranchChoice(deeper=deeper, broader=broader)

    def choose_branch(self, student_id: str, branch_id: str) -> Optional[ConceptNode]:
        """Student picks an open branch; returns where to start in it."""

        branch = self.graph.get_branch(branch_id)
        state = next(state for state in self.branch_states(student_id) if state.branch.id == branch.id)
        if not state.unlocked:
            raise ValueError(f"Branch {branch.name} is still locked")
        return self.get_next_branch_node(student_id, branch_id)


__all__ = [
    "BranchChoice",
    "BranchState",
    "BranchTreeEngine",
    "TopicTree",
]
