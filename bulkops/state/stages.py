"""Operation stages and the stage graph governing transitions."""

from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Set


class OperationStage(str, Enum):
    """Default lifecycle of a bulk operation."""
    VALIDATION = "VALIDATION"
    EXECUTION = "EXECUTION"
    COMPLETION = "COMPLETION"


def stage_name(stage: object) -> str:
    """Plain string name of a stage given as an enum member or string."""
    if isinstance(stage, Enum):
        return str(stage.value)
    return str(stage)


class StageGraph:
    """Fixed forward order of stages for an operation type.

    A graph built from a plain sequence is linear. Explicit ``edges`` allow
    a DAG; every stage must then appear in ``order`` and edges must point
    forward in that order, which keeps stage advancement monotonic.
    """

    def __init__(
        self,
        order: Sequence[str],
        edges: Optional[Dict[str, Iterable[str]]] = None,
        terminal: Optional[Iterable[str]] = None
    ):
        if not order:
            raise ValueError("A stage graph needs at least one stage")
        self._order: List[str] = [stage_name(stage) for stage in order]
        if len(set(self._order)) != len(self._order):
            raise ValueError("Stage names must be unique")
        self._index = {stage: i for i, stage in enumerate(self._order)}

        if edges is None:
            self._edges: Dict[str, Set[str]] = {
                stage: {self._order[i + 1]} if i + 1 < len(self._order) else set()
                for i, stage in enumerate(self._order)
            }
        else:
            self._edges = {stage: set() for stage in self._order}
            for source, targets in edges.items():
                source = stage_name(source)
                self._require(source)
                for target in targets:
                    target = stage_name(target)
                    self._require(target)
                    if self._index[target] <= self._index[source]:
                        raise ValueError(f"Edge {source} -> {target} does not point forward")
                    self._edges[source].add(target)

        if terminal is None:
            self._terminal = {stage for stage, targets in self._edges.items() if not targets}
        else:
            self._terminal = {stage_name(stage) for stage in terminal}

    @property
    def stages(self) -> List[str]:
        return list(self._order)

    @property
    def first(self) -> str:
        return self._order[0]

    def successors(self, stage: str) -> Set[str]:
        self._require(stage)
        return set(self._edges[stage_name(stage)])

    def can_advance(self, current: str, target: str) -> bool:
        return stage_name(target) in self.successors(current)

    def index(self, stage: str) -> int:
        self._require(stage)
        return self._index[stage_name(stage)]

    def precedes(self, earlier: str, later: str) -> bool:
        return self.index(earlier) < self.index(later)

    def is_terminal(self, stage: str) -> bool:
        return stage_name(stage) in self._terminal

    def __contains__(self, stage: object) -> bool:
        return stage_name(stage) in self._index

    def _require(self, stage: str) -> None:
        if stage_name(stage) not in self._index:
            raise ValueError(f"Unknown stage: {stage}")

    def __repr__(self) -> str:
        return f"StageGraph({self._order!r})"


DEFAULT_STAGE_GRAPH = StageGraph([stage.value for stage in OperationStage])
