from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

JobState = Literal["scheduled", "running", "waiting_on_external", "completed", "failed"]
TaskStatus = Literal[
    "blocked",
    "pending",
    "ready",
    "running",
    "waiting_human",
    "completed",
    "cancelled",
    "failed",
]

TERMINAL_TASK_STATUSES = frozenset({"completed", "cancelled", "failed"})


class Task(BaseModel):
    id: str
    name: str
    resource: Optional[str] = None  # None -> human-in-the-loop
    depends_on: Optional[str] = None
    undoable: bool = False
    output_key: str
    status: TaskStatus = "pending"
    params: Dict[str, Any] = {}
    attempts: int = 0
    not_before: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES

    @property
    def is_human(self) -> bool:
        return self.resource is None


class Job(BaseModel):
    id: str
    prompt: str
    created_at: datetime
    scheduled_for: datetime
    state: JobState = "scheduled"
    tasks: List[Task] = []
    context: Dict[str, Any] = {}
    error: Optional[str] = None

    def task(self, task_id: str) -> Optional[Task]:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None


class CreateJobRequest(BaseModel):
    prompt: str
    schedule_hhmm: str


class CreateJobResponse(BaseModel):
    success: bool = True
    jobId: str
    scheduledFor: datetime
    statusUrl: str


class TaskView(BaseModel):
    id: str
    status: TaskStatus


class JobStatus(BaseModel):
    state: JobState
    tasks: List[TaskView] = []
    context: Dict[str, Any] = {}
    error: Optional[str] = None


class CompleteTaskRequest(BaseModel):
    result: Any = None


class SuccessResponse(BaseModel):
    success: bool = True


class PaymentRequirements(BaseModel):
    scheme: Literal["exact"] = "exact"
    network: str
    asset: str
    maxAmountRequired: str  # integer minor units
    payTo: str
    resource: str
    mimeType: str = "application/json"
    maxTimeoutSeconds: int = 60
    description: str = ""
    outputSchema: Optional[Dict[str, Any]] = None
    extra: Optional[Dict[str, Any]] = None


class Challenge(BaseModel):
    x402Version: int = 1
    accepts: List[PaymentRequirements] = Field(default_factory=list)
