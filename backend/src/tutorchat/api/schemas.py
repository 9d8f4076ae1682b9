"""
API schemas for TutorChat.

Pydantic models for request/response validation.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

# ===== Threads =====


class ThreadCreate(BaseModel):
    """Request body for creating a thread."""

    title: str = ""
    path_id: Optional[UUID] = None


class ThreadResponse(BaseModel):
    """Response schema for ChatThread."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    title: str
    path_id: Optional[UUID] = None
    job_id: Optional[UUID] = None
    status: str
    next_seq: int
    last_message_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ThreadListResponse(BaseModel):
    """A page of the user's threads."""

    items: list[ThreadResponse]


class MessageResponse(BaseModel):
    """Response schema for ChatMessage."""

    id: UUID
    thread_id: UUID
    user_id: UUID
    seq: int
    role: str
    content: str
    status: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ThreadDetail(ThreadResponse):
    """Thread with its messages in seq order."""

    messages: list[MessageResponse] = Field(default_factory=list)


# ===== Messages =====


class MessageCreate(BaseModel):
    """Request body for posting a user message."""

    content: str
    metadata: Optional[dict[str, Any]] = None


class PostMessageResponse(BaseModel):
    """Rows created by posting a message."""

    turn_id: UUID
    user_message: MessageResponse
    assistant_message: MessageResponse
    job_id: UUID


# ===== Jobs =====


class JobResponse(BaseModel):
    """Response schema for JobRun."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_type: str
    entity_type: str
    entity_id: Optional[UUID] = None
    status: str
    stage: str = ""
    attempt: int
    max_attempts: int
    error: Optional[str] = None
    result: dict[str, Any] = Field(default_factory=dict)
    run_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class EnqueueResponse(BaseModel):
    """A job enqueued (or already runnable) for an entity."""

    job_id: UUID
    job_type: str
    status: str
    created: bool = True


class QueueStatsResponse(BaseModel):
    """Job counts by status."""

    queued: int = 0
    running: int = 0
    waiting_user: int = 0
    succeeded: int = 0
    failed: int = 0
    canceled: int = 0
    total: int = 0
    active: int = 0
    worker: dict[str, Any] = Field(default_factory=dict)
