# backend/zephyr_worker/progress.py
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Set

from .graph import DEFAULT_STAGE, ExecutionGraph, normalize_node_id

logger = logging.getLogger(__name__)

MAX_RUNNING_PROGRESS = 99


@dataclass
class ProgressInfo:
    progress: int
    stage: str
    elapsed_seconds: int
    estimated_total_seconds: int
    estimated_remaining_seconds: int


ProgressCallback = Callable[[ProgressInfo], None]


# --- events coming off the backend socket ---

@dataclass
class ExecutionStarted:
    prompt_id: str


@dataclass
class NodesCached:
    prompt_id: str
    nodes: List[str] = field(default_factory=list)


@dataclass
class NodeExecuting:
    prompt_id: str
    node: str


@dataclass
class NodeExecuted:
    prompt_id: str
    node: str


@dataclass
class StepProgress:
    prompt_id: str
    value: int
    max: int
    node: Optional[str] = None


@dataclass
class ExecutionCompleted:
    prompt_id: str


@dataclass
class ExecutionError:
    prompt_id: str
    message: str


def parse_event(message: Any):
    """
    Map a decoded socket message ({"type": ..., "data": {...}}) to an event.
    Returns None for anything malformed or of no interest.
    """
    if not isinstance(message, dict):
        return None
    kind = message.get("type")
    data = message.get("data")
    if not isinstance(data, dict):
        return None
    prompt_id = data.get("prompt_id")
    if not prompt_id:
        return None

    try:
        if kind == "execution_start":
            return ExecutionStarted(prompt_id)
        if kind == "execution_cached":
            nodes = data.get("nodes") or []
            if not isinstance(nodes, list):
                return None
            return NodesCached(prompt_id, [str(n) for n in nodes])
        if kind == "executing":
            # a null node marks the end of the whole prompt
            if data.get("node") is None:
                return ExecutionCompleted(prompt_id)
            return NodeExecuting(prompt_id, str(data["node"]))
        if kind == "execution_success":
            return ExecutionCompleted(prompt_id)
        if kind == "executed":
            if data.get("node") is None:
                return None
            return NodeExecuted(prompt_id, str(data["node"]))
        if kind == "progress":
            value, maximum = int(data["value"]), int(data["max"])
            node = data.get("node")
            return StepProgress(prompt_id, value, maximum, None if node is None else str(node))
        if kind == "execution_error":
            return ExecutionError(prompt_id, str(data.get("exception_message") or "Unknown error"))
    except (KeyError, TypeError, ValueError):
        return None
    return None


def _round(value: float) -> int:
    # half-up, values here are never negative
    return int(value + 0.5)


def format_progress(info: ProgressInfo) -> str:
    remaining = info.estimated_remaining_seconds
    if remaining > 0:
        return f"{info.stage} (~{remaining // 60}:{remaining % 60:02d} remaining)"
    return info.stage


class ProgressTracker:
    """
    Turns the execution event stream of one submission into a monotonic,
    weighted progress percentage with an ETA.

    Not thread safe: events for one tracker must be delivered sequentially.
    """

    def __init__(
        self,
        graph: ExecutionGraph,
        submission_id: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.graph = graph
        self.submission_id = submission_id
        self.on_progress = on_progress
        self.clock = clock
        self.error: Optional[str] = None
        self.reset()

    def reset(self):
        self.completed_node_ids: Set[str] = set()
        self.completed_weight = 0
        self.progress_floor = 0
        self.current_node: Optional[str] = None
        self.finished = False
        self.start_time = self.clock()

    def handle(self, event) -> Optional[ProgressInfo]:
        if getattr(event, "prompt_id", None) != self.submission_id or self.submission_id is None:
            return None

        if isinstance(event, ExecutionStarted):
            logger.info("Execution started for prompt %s", self.submission_id)
            self.reset()
            self.error = None
            return self._emit(0, "Starting...")

        if self.finished:
            return None

        if isinstance(event, NodesCached):
            for node_id in event.nodes:
                self._mark_completed(node_id)
            return self._emit(self._overall_progress(), DEFAULT_STAGE)

        if isinstance(event, NodeExecuting):
            self.current_node = normalize_node_id(event.node)
            return None

        if isinstance(event, NodeExecuted):
            self._mark_completed(event.node)
            return self._emit(self._overall_progress(), self.graph.stage_label_of(event.node))

        if isinstance(event, StepProgress):
            if event.max <= 0:
                return None
            return self._emit(
                self._step_progress(event),
                f"Generating (step {event.value}/{event.max})",
            )

        if isinstance(event, ExecutionCompleted):
            logger.info("Execution complete for prompt %s", self.submission_id)
            self.finished = True
            return self._emit(100, "Complete", terminal=True)

        if isinstance(event, ExecutionError):
            # terminal, but reported out of band rather than as progress
            logger.error("Execution error for prompt %s: %s", self.submission_id, event.message)
            self.error = event.message
            return None

        return None

    def _mark_completed(self, node_id: str):
        base_id = normalize_node_id(node_id)
        if base_id in self.completed_node_ids:
            return
        self.completed_node_ids.add(base_id)
        self.completed_weight += self.graph.weight_of(base_id)

    def _ratio_to_percent(self, weight: float) -> float:
        if self.graph.total_weight > 0:
            return weight / self.graph.total_weight * 100
        if self.graph.node_count > 0:
            return len(self.completed_node_ids) / self.graph.node_count * 100
        return 0.0

    def _overall_progress(self) -> int:
        return _round(self._ratio_to_percent(self.completed_weight))

    def _sampling_weight(self, node: Optional[str]) -> int:
        node_id = normalize_node_id(node) if node is not None else self.current_node
        if node_id is not None:
            if node_id in self.completed_node_ids:
                return 0
            return self.graph.weight_of(node_id)
        # nothing known to be running, assume the heaviest pending node
        pending = [
            self.graph.weight_of(n)
            for n in self.graph.node_types
            if n not in self.completed_node_ids
        ]
        return max(pending, default=0)

    def _step_progress(self, event: StepProgress) -> int:
        fraction = min(max(event.value / event.max, 0.0), 1.0)
        contribution = self._sampling_weight(event.node) * fraction
        return _round(self._ratio_to_percent(self.completed_weight + contribution))

    def _emit(self, candidate: int, stage: str, terminal: bool = False) -> ProgressInfo:
        if terminal:
            progress = 100
        else:
            progress = min(MAX_RUNNING_PROGRESS, max(0, candidate))
            progress = max(progress, self.progress_floor)
        self.progress_floor = progress

        elapsed = max(0.0, self.clock() - self.start_time)
        elapsed_seconds = _round(elapsed)
        estimated_total = 0
        estimated_remaining = 0
        if 0 < progress < 100:
            estimated_total = _round(elapsed_seconds / progress * 100)
            estimated_remaining = max(0, estimated_total - elapsed_seconds)

        info = ProgressInfo(
            progress=progress,
            stage=stage,
            elapsed_seconds=elapsed_seconds,
            estimated_total_seconds=estimated_total,
            estimated_remaining_seconds=estimated_remaining,
        )
        if self.on_progress is not None:
            self.on_progress(info)
        return info
