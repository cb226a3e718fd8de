"""
Pydantic schemas for API request/response validation.
Defines the structure of data exchanged between client and server.
"""

from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, ConfigDict


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str = Field(..., examples=["healthy"])
    version: str = Field(..., examples=["1.0.0"])
    queue_running: bool = Field(..., examples=[True])


# ============================================================================
# Error Schemas
# ============================================================================

class ErrorResponse(BaseModel):
    """Standard error response format."""
    error: str = Field(..., examples=["Bad Request"])
    detail: Optional[str] = Field(None, examples=["Invalid input data"])


# ============================================================================
# Queue Schemas
# ============================================================================

class EnqueueRequest(BaseModel):
    """Schema for adding emails to the unsubscribe queue."""
    email_ids: List[str] = Field(..., min_length=1, examples=[["7f8d0c1e-..."]])
    priority: int = Field(0, examples=[0])


class JobResponse(BaseModel):
    """Response model for an unsubscribe job."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    email_id: str
    user_id: str
    status: str = Field(..., examples=["PENDING"])
    priority: int
    attempts: int
    max_attempts: int
    scheduled_for: datetime
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class EnqueueResponse(BaseModel):
    """Response model for an enqueue request."""
    success: bool = True
    jobs: List[JobResponse]
    message: str = Field(..., examples=["Enqueued 3 email(s) for unsubscribe"])


class QueueStats(BaseModel):
    """Job counts per status and scheduler state."""
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    needs_confirmation: int = 0
    cancelled: int = 0
    active_jobs: int = 0
    escalated_jobs: int = 0
    concurrency: int = 0
    is_running: bool = False


class QueueStatusResponse(BaseModel):
    """Response model for queue status."""
    stats: QueueStats
    jobs: List[JobResponse]


class QueueControlResponse(BaseModel):
    """Response model for start/stop/cancel actions."""
    success: bool
    message: str = Field(..., examples=["Queue started"])


# ============================================================================
# Email Schemas
# ============================================================================

class UnsubscribeStatusUpdate(BaseModel):
    """User override of an email's unsubscribe badge."""
    status: str = Field(..., pattern="^(SUCCEEDED|FAILED)$", examples=["SUCCEEDED"])


class EmailResponse(BaseModel):
    """Response model for a stored email."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    gmail_id: str
    subject: Optional[str] = None
    sender: Optional[str] = None
    unsubscribe_url: Optional[str] = None
    unsubscribe_status: Optional[str] = None
    archived: bool = False
    received_at: Optional[datetime] = None


class IngestRequest(BaseModel):
    """Request to load Gmail messages into the unsubscribe pipeline."""
    gmail_ids: List[str] = Field(..., min_length=1, examples=[["18c2f0a9b1d4e5f6"]])


class IngestResponse(BaseModel):
    """Response model for ingested emails."""
    success: bool = True
    emails: List[EmailResponse]
    message: str = Field(..., examples=["Loaded 3 email(s)"])
