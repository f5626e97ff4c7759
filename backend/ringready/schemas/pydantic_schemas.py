from pydantic import BaseModel, Field
from typing import Optional, Dict


class CallRead(BaseModel):
    id: Optional[int] = None
    call_id: str
    caller_id: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration_seconds: Optional[int] = None
    workflow_id: Optional[str] = None
    transcription: Optional[str] = None
    summary: Optional[str] = None
    status: Optional[str] = None
    tenant_id: Optional[int] = None
    created_at: Optional[str] = None


class CallStatsRead(BaseModel):
    total_calls: int = Field(serialization_alias="totalCalls", validation_alias="totalCalls")
    total_minutes: int = Field(serialization_alias="totalMinutes", validation_alias="totalMinutes")
    workflow_counts: Dict[str, int] = Field(default_factory=dict, serialization_alias="workflowCounts", validation_alias="workflowCounts")


class WebhookResponse(BaseModel):
    success: bool
    message: str
    stored: Optional[bool] = None
