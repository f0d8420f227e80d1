"""Wire contracts for governance workflow execution streams."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, GetCoreSchemaHandler, ValidationError
from pydantic_core import core_schema

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TaskId(str):
    """Server-assigned identifier of one workflow run."""

    def __new__(cls, value: Any) -> "TaskId":
        if isinstance(value, TaskId):
            return value
        if value is None:
            raise ValueError("task_id is required")
        text = str(value).strip()
        if not text:
            raise ValueError("task_id is required")
        return super().__new__(cls, text)

    def __repr__(self) -> str:
        return f"TaskId({str.__repr__(self)})"

    @classmethod
    def __get_pydantic_core_schema__(
        cls, source_type: Any, handler: GetCoreSchemaHandler
    ) -> core_schema.CoreSchema:
        return core_schema.no_info_after_validator_function(
            cls,
            core_schema.union_schema(
                [core_schema.str_schema(), core_schema.int_schema()]
            ),
            serialization=core_schema.to_string_ser_schema(),
        )


class ExecutionStatus(str, Enum):
    """Overall status of a workflow execution."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_EXECUTION_STATUSES


TERMINAL_EXECUTION_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.ERROR, ExecutionStatus.CANCELLED}
)


class StepStatus(str, Enum):
    """Status of a single pipeline step."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    PAUSED = "paused"
    SKIPPED = "skipped"

    @classmethod
    def parse(cls, value: Any) -> Optional["StepStatus"]:
        """Map a wire value (name, alias or numeric code) to a status."""
        if isinstance(value, StepStatus):
            return value
        if isinstance(value, bool) or value is None:
            return None
        key = str(value).strip().lower()
        return _STEP_STATUS_ALIASES.get(key)


_STEP_STATUS_ALIASES: Dict[str, StepStatus] = {
    "idle": StepStatus.IDLE,
    "pending": StepStatus.IDLE,
    "waiting": StepStatus.IDLE,
    "0": StepStatus.IDLE,
    "running": StepStatus.RUNNING,
    "1": StepStatus.RUNNING,
    "completed": StepStatus.COMPLETED,
    "complete": StepStatus.COMPLETED,
    "success": StepStatus.COMPLETED,
    "done": StepStatus.COMPLETED,
    "2": StepStatus.COMPLETED,
    "paused": StepStatus.PAUSED,
    "3": StepStatus.PAUSED,
    "skipped": StepStatus.SKIPPED,
    "skip": StepStatus.SKIPPED,
    "4": StepStatus.SKIPPED,
    "error": StepStatus.ERROR,
    "failed": StepStatus.ERROR,
    "failure": StepStatus.ERROR,
    "5": StepStatus.ERROR,
}

START_MARKERS = frozenset({"start", "started"})
END_MARKERS = frozenset({"end", "completed", "finished"})
CANCEL_MARKERS = frozenset({"cancel", "cancelled", "canceled", "stopped"})
ERROR_MARKERS = frozenset({"error", "failed", "fail"})


class NodeInfo(BaseModel):
    """Pipeline node descriptor sent alongside step updates."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: Optional[int] = None
    node_name: Optional[str] = Field(default=None, alias="nodeName")
    node_type: Optional[str] = Field(default=None, alias="nodeType")
    node_step: Optional[int] = Field(default=None, alias="nodeStep")
    enabled: bool = True
    is_auto: bool = Field(default=True, alias="isAuto")
    descript: Optional[str] = None


class _MessageBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    task_id: TaskId
    execution_status: str
    received_at: datetime = Field(default_factory=utc_now)
    raw: Dict[str, Any] = Field(default_factory=dict)


class Started(_MessageBase):
    """The server opened the workflow; the task is now navigable."""

    kind: Literal["started"] = "started"


class _StepMessage(_MessageBase):
    step_id: str
    progress: Optional[int] = None
    processed_records: Optional[int] = None
    total_records: Optional[int] = None
    node: Optional[NodeInfo] = None


class StepProgress(_StepMessage):
    """Counter update for one step."""

    kind: Literal["step_progress"] = "step_progress"


class StepStatusChanged(_StepMessage):
    """A step moved to a new status, optionally with fresh counters."""

    kind: Literal["step_status"] = "step_status"
    status: StepStatus
    error: Optional[str] = None


class WorkflowEnded(_MessageBase):
    """The workflow reached a terminal outcome."""

    kind: Literal["workflow_ended"] = "workflow_ended"
    outcome: ExecutionStatus = ExecutionStatus.COMPLETED
    error: Optional[str] = None


class Unknown(_MessageBase):
    """Well-addressed message whose content is not understood."""

    kind: Literal["unknown"] = "unknown"


ExecutionMessage = Annotated[
    Union[Started, StepProgress, StepStatusChanged, WorkflowEnded, Unknown],
    Field(discriminator="kind"),
]


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _clamp_progress(value: Optional[int]) -> Optional[int]:
    if value is None:
        return None
    return max(0, min(100, value))


def _extract_node(data: Dict[str, Any]) -> Optional[NodeInfo]:
    node = data.get("node")
    if not isinstance(node, dict):
        return None
    return NodeInfo.model_validate(node)


def _extract_step_id(data: Dict[str, Any], node: Optional[NodeInfo]) -> Optional[str]:
    step_id = data.get("stepId")
    if step_id in (None, "") and node is not None:
        step_id = node.node_type or node.id
    if step_id in (None, ""):
        return None
    return str(step_id)


def _extract_counters(data: Dict[str, Any]) -> Dict[str, Optional[int]]:
    processed = data.get("processedRecords", data.get("completedQuantity"))
    total = data.get("totalRecords", data.get("tableQuantity"))
    if isinstance(processed, dict):
        total = processed.get("total", total)
        processed = processed.get("processed")

    processed_records = _as_int(processed)
    total_records = _as_int(total)
    progress = _as_int(data.get("progress"))
    if progress is None and processed_records is not None and total_records:
        progress = round(processed_records / total_records * 100)
    return {
        "progress": _clamp_progress(progress),
        "processed_records": processed_records,
        "total_records": total_records,
    }


def _error_text(data: Dict[str, Any]) -> Optional[str]:
    error = data.get("error") or data.get("errorMessage")
    if error in (None, ""):
        return None
    return str(error)


def parse_message(data: Any) -> Optional[ExecutionMessage]:
    """Classify a decoded payload into an execution message variant.

    Returns ``None`` for anything that is not an object carrying both
    ``taskId`` and ``executionStatus``; such payloads are discarded.
    """
    if not isinstance(data, dict):
        logger.warning(f"Discarding non-object execution payload: {data!r}")
        return None

    task_id = data.get("taskId")
    execution_status = data.get("executionStatus")
    if task_id in (None, "") or execution_status in (None, ""):
        logger.debug(f"Discarding execution payload without taskId/executionStatus: {data}")
        return None

    marker = str(execution_status).strip().lower()
    base: Dict[str, Any] = {
        "task_id": task_id,
        "execution_status": str(execution_status),
        "raw": data,
    }

    try:
        node = _extract_node(data)
        step_id = _extract_step_id(data, node)
        error = _error_text(data)

        if marker in START_MARKERS:
            return Started(**base)

        if marker in END_MARKERS:
            outcome = ExecutionStatus.COMPLETED
            if error or StepStatus.parse(data.get("status")) is StepStatus.ERROR:
                outcome = ExecutionStatus.ERROR
            return WorkflowEnded(**base, outcome=outcome, error=error)

        if marker in CANCEL_MARKERS:
            return WorkflowEnded(**base, outcome=ExecutionStatus.CANCELLED, error=error)

        if marker in ERROR_MARKERS:
            if step_id is None:
                return WorkflowEnded(**base, outcome=ExecutionStatus.ERROR, error=error)
            return StepStatusChanged(
                **base,
                step_id=step_id,
                node=node,
                status=StepStatus.ERROR,
                error=error,
                **_extract_counters(data),
            )

        if step_id is not None:
            status = StepStatus.parse(data.get("status"))
            counters = _extract_counters(data)
            if status is not None:
                return StepStatusChanged(
                    **base,
                    step_id=step_id,
                    node=node,
                    status=status,
                    error=error,
                    **counters,
                )
            if any(value is not None for value in counters.values()):
                return StepProgress(**base, step_id=step_id, node=node, **counters)

        return Unknown(**base)
    except (ValidationError, ValueError) as exc:
        logger.warning(f"Discarding malformed execution payload for task {task_id}: {exc}")
        return None


def decode_event(data: str) -> Optional[ExecutionMessage]:
    """Decode the JSON ``data`` field of one SSE event."""
    try:
        payload = json.loads(data)
    except (TypeError, ValueError) as exc:
        logger.warning(f"Discarding non-JSON execution event: {exc}")
        return None
    return parse_message(payload)
