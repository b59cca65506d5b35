"""Request bodies for the public function endpoints."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class FunctionRequest(BaseModel):
    # Chained phases pass extra keys (resume, checkpoints) straight through
    model_config = ConfigDict(extra="allow")

    workspace_id: str | None = None


class StartEmailImportRequest(FunctionRequest):
    workspace_id: str
    config_id: str


class StartImportRequest(FunctionRequest):
    workspace_id: str
    config_id: str
    cap: int | None = None
    mode: str = "onboarding"


class ClassifyRequest(FunctionRequest):
    workspace_id: str
    job_id: str | None = None


class BootstrapRulesRequest(FunctionRequest):
    workspace_id: str
    min_email_count: int | None = Field(default=None, ge=1)


class VoiceLearningRequest(FunctionRequest):
    workspace_id: str
    job_id: str | None = None
    force_refresh: bool = False


class DriftRequest(FunctionRequest):
    workspace_id: str


class CorrectionRequest(FunctionRequest):
    workspace_id: str
    conversation_id: int
    classification: str
    bucket: str
    requires_reply: bool = False
    scope: str = "conversation"


class DraftRequest(FunctionRequest):
    workspace_id: str
    conversation_id: int
    verify: bool = False


class VerifyDraftRequest(FunctionRequest):
    workspace_id: str
    conversation_id: int | None = None
    draft_id: int | None = None
    draft: str | None = None
    customer_message: str | None = None


class LearnFromEditRequest(FunctionRequest):
    workspace_id: str
    final_sent: str = Field(min_length=1)
    inbound_message: str = Field(min_length=1)
    original_draft: str = ""
    conversation_id: int | None = None
    draft_id: int | None = None


class StartResearchRequest(FunctionRequest):
    workspace_id: str
    niche_query: str = Field(min_length=1)
    service_area: str | None = None
    target_count: int | None = Field(default=None, ge=1, le=200)


class CancelJobRequest(FunctionRequest):
    job_id: str
    kind: str = "import"


REQUEST_MODELS: dict[str, type[FunctionRequest]] = {
    "start-email-import": StartEmailImportRequest,
    "start-import": StartImportRequest,
    "email-classify": ClassifyRequest,
    "bootstrap-sender-rules": BootstrapRulesRequest,
    "voice-learning": VoiceLearningRequest,
    "detect-style-drift": DriftRequest,
    "save-classification-correction": CorrectionRequest,
    "ai-draft": DraftRequest,
    "draft-verify": VerifyDraftRequest,
    "learn-from-edit": LearnFromEditRequest,
    "start-competitor-research": StartResearchRequest,
    "cancel-job": CancelJobRequest,
}
