from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RubricRecord:
    id: str
    name: str
    created_at: datetime
    updated_at: datetime
    user_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    is_template: bool = False
    rubric_json: Optional[dict] = None
    criteria: List[dict] = field(default_factory=list)
    target_duration_seconds: Optional[int] = None
    max_duration_seconds: Optional[int] = None


@dataclass
class RunRecord:
    id: str
    session_id: str
    created_at: datetime
    status: str = "uploading"
    user_id: Optional[str] = None
    title: Optional[str] = None
    audio_path: Optional[str] = None
    audio_seconds: Optional[float] = None
    duration_ms: Optional[int] = None
    transcript: Optional[str] = None
    word_count: Optional[int] = None
    words_per_minute: Optional[int] = None
    delivery_metrics: Optional[dict] = None
    rubric_id: Optional[str] = None
    rubric_snapshot_json: Optional[dict] = None
    pitch_context: Optional[str] = None
    analysis_json: Optional[dict] = None
    plan_at_time: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class ChunkRecord:
    id: str
    run_id: str
    chunk_index: int
    start_ms: int
    end_ms: int
    audio_path: str
    created_at: datetime
    status: str = "uploaded"
    transcript: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class EntitlementRecord:
    id: str
    plan: str
    stripe_checkout_session_id: str
    created_at: datetime
    updated_at: datetime
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    expires_at: Optional[datetime] = None


class Criterion(BaseModel):
    id: Optional[str] = None
    name: str
    description: Optional[str] = None
    weight: Optional[float] = None
    scoring_guide: Optional[str] = None


class Rubric(BaseModel):
    name: str
    description: Optional[str] = None
    criteria: List[Criterion]
    target_duration_seconds: Optional[int] = None
    max_duration_seconds: Optional[int] = None
    guiding_questions: List[str] = Field(default_factory=list)
    context_summary: Optional[str] = None


@dataclass
class ParsedRubric:
    rubric: Rubric
    warnings: List[str] = field(default_factory=list)


class ParseRubricRequest(BaseModel):
    text: Optional[str] = None
    use_ai: bool = True


class ParseRubricResponse(BaseModel):
    ok: bool = True
    rubric: Rubric
    warnings: List[str]
    source: str


class CreateRubricRequest(BaseModel):
    title: str
    description: Optional[str] = None
    rubric_json: Dict[str, Any]
    target_duration_seconds: Optional[int] = None
    max_duration_seconds: Optional[int] = None


class UpdateRubricRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    rubric_json: Optional[Dict[str, Any]] = None
    target_duration_seconds: Optional[int] = None
    max_duration_seconds: Optional[int] = None


class ChatMessage(BaseModel):
    role: str
    content: str


class GenerateRubricRequest(BaseModel):
    messages: List[ChatMessage]
    current_draft: Optional[Dict[str, Any]] = None


class CopilotRequest(BaseModel):
    context_text: str
    target_length_seconds: Optional[int] = None
    rubric_type: Optional[str] = None
    user_edits: Optional[str] = None
    current_rubric: Optional[Dict[str, Any]] = None


class PromptRubricItem(BaseModel):
    id: str
    label: str
    weight: float = 1.0
    optional: bool = False


class AnalyzeRequest(BaseModel):
    rubric_id: Optional[str] = None
    prompt_rubric: Optional[List[PromptRubricItem]] = None
    pitch_context: Optional[str] = None


class CreateRunResponse(BaseModel):
    ok: bool = True
    id: str
    status: str
    audio_path: str


class ClaimRunsRequest(BaseModel):
    session_id: str


class UploadSignRequest(BaseModel):
    session_id: str
    run_id: str
    content_type: str = "audio/webm"
    chunk_index: Optional[int] = None


class UploadCompleteRequest(BaseModel):
    run_id: str
    path: str
    chunk_index: Optional[int] = None
    start_ms: Optional[int] = None
    end_ms: Optional[int] = None
    duration_ms: Optional[int] = None


class CreateChunkRequest(BaseModel):
    chunk_index: int
    start_ms: int
    end_ms: int
    audio_path: str


class CheckoutRequest(BaseModel):
    plan: str
    session_id: Optional[str] = None


class SyncCheckoutRequest(BaseModel):
    checkout_session_id: str
    session_id: Optional[str] = None


class CheckEmailRequest(BaseModel):
    email: str


class CheckEmailResponse(BaseModel):
    exists: bool
