"""API request and response models."""

from pydantic import BaseModel


class RunNowResponse(BaseModel):
    task_id: str
    status: str


class TaskCounts(BaseModel):
    total: int
    active: int
    failing: int
