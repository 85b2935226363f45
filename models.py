from typing import Literal, Optional

from pydantic import BaseModel, Field


JobState = Literal["pending", "processing", "completed", "failed"]

TERMINAL_STATES = ("completed", "failed")


# --- Engine-side models ---

class ProgressSample(BaseModel):
    value: int   # discrete units of work done
    max: int     # units of work in this phase


class HistoryStatus(BaseModel):
    status_str: str = ""
    completed: bool = False
    messages: list = []


class HistoryEntry(BaseModel):
    """One job's entry in the engine's /history response."""
    outputs: dict = {}
    status: HistoryStatus = HistoryStatus()


class OutputImage(BaseModel):
    filename: str
    subfolder: str = ""
    type: str = "output"


# --- Job records (owned by the job store) ---

class JobStatus(BaseModel):
    status: JobState
    total_steps: int
    error_message: Optional[str] = None


class JobRecord(BaseModel):
    job_id: str
    status: JobState = "pending"
    total_steps: int
    error_message: Optional[str] = None
    images: list[OutputImage] = []
    created_at: str
    updated_at: str


class JobPage(BaseModel):
    items: list[JobRecord]
    total: int
    page: int
    page_size: int
    has_more: bool


class GenerateRequest(BaseModel):
    workflow: dict
    steps: Optional[int] = Field(default=None, ge=1)


# --- Push-stream notifications (one JSON object per SSE frame) ---

class ConnectedEvent(BaseModel):
    type: Literal["connected"] = "connected"


class ProgressEvent(BaseModel):
    type: Literal["progress"] = "progress"
    currentStep: int
    totalSteps: int
    percentage: int   # 0 - 100
    status: str       # "Step N of M"


class CompleteEvent(BaseModel):
    type: Literal["complete"] = "complete"
    percentage: int = 100


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str
