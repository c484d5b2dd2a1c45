"""
Pydantic models for status API responses.
"""

from typing import Dict, Optional

from pydantic import BaseModel, Field


class InformerState(BaseModel):
    """Sync state of one informer cache."""

    synced: bool = Field(..., description="Initial list completed")
    objects: int = Field(0, description="Number of cached objects", ge=0)


class ControllerState(BaseModel):
    """Snapshot of the running controller."""

    started: bool
    ready: bool
    informers: Dict[str, InformerState] = Field(default_factory=dict)
    queues: Dict[str, int] = Field(default_factory=dict, description="Pending items per work queue")
    workers: int = Field(0, description="Live worker and loop threads", ge=0)


class StatusData(BaseModel):
    controller: ControllerState


class StatusResponse(BaseModel):
    """Response model for GET /v1/status."""

    request_id: str
    status: str
    data: StatusData


class HealthResponse(BaseModel):
    """Response model for probes."""

    status: str
    detail: Optional[str] = None
