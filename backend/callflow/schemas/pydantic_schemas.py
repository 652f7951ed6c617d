from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Dict, Any


class TranscriptEntry(BaseModel):
    role: str
    content: str = ""


class CallAnalysis(BaseModel):
    call_summary: Optional[str] = None
    user_sentiment: Optional[str] = None
    call_successful: Optional[bool] = None
    custom_analysis_data: Optional[Dict[str, Any]] = Field(default_factory=dict)


class CallMetadata(BaseModel):
    lead_id: Optional[str] = None
    campaign_id: Optional[str] = None
    user_id: Optional[str] = None
    caller_id: Optional[str] = None

    @field_validator("lead_id", "campaign_id", "user_id", "caller_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        # metadata is free-form JSON set by whoever placed the call
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class RetellCall(BaseModel):
    call_id: str
    call_status: Optional[str] = None
    start_timestamp: Optional[int] = None
    end_timestamp: Optional[int] = None
    transcript: Optional[str] = None
    transcript_object: Optional[List[TranscriptEntry]] = None
    call_analysis: Optional[CallAnalysis] = None
    recording_url: Optional[str] = None
    metadata: Optional[CallMetadata] = None
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    direction: Optional[str] = None
    disconnection_reason: Optional[str] = None
    agent_id: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[int]:
        """Whole seconds between start and end, or None when either is missing."""
        if self.start_timestamp is None or self.end_timestamp is None:
            return None
        return round((self.end_timestamp - self.start_timestamp) / 1000)


class RetellWebhookPayload(BaseModel):
    event: str
    call: Optional[RetellCall] = None


class CallLogRead(BaseModel):
    id: str
    retell_call_id: str
    user_id: Optional[str] = None
    lead_id: Optional[str] = None
    campaign_id: Optional[str] = None
    phone_number: Optional[str] = None
    caller_id: Optional[str] = None
    status: Optional[str] = None
    outcome: Optional[str] = None
    duration_seconds: Optional[int] = None
    notes: Optional[str] = None
    answered_at: Optional[str] = None
    ended_at: Optional[str] = None


class CallLogListResponse(BaseModel):
    items: List[CallLogRead]
    total: int
    page: int
    page_size: int
