"""
AI service contracts - structured output of analyze and analyze-followup calls,
plus the vision service result. Unknown keys from the service are ignored.
"""
from typing import Any, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class Intent(BaseModel):
    label: str = "unknown"
    confidence: float = 0.0


class DesireScore(BaseModel):
    value: float = 0.0
    reasons: list[str] = Field(default_factory=list)


class AiAnalysis(BaseModel):
    """analyze-and-draft-reply output."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    intent: Intent = Field(default_factory=Intent)
    extraction: dict[str, Any] = Field(default_factory=dict)
    desire_score: Optional[DesireScore] = Field(default=None, alias="desireScore")
    reply_draft: str = Field(default="", alias="replyDraft")
    should_handoff: bool = Field(default=False, alias="shouldHandoff")
    handoff_reason: Optional[str] = Field(default=None, alias="handoffReason")
    ready_for_doctor: bool = Field(default=False, alias="readyForDoctor")
    consent_response: Optional[Literal["approved", "declined"]] = Field(
        default=None, alias="consentResponse"
    )
    flow_selection: Optional[Literal["form", "chat"]] = Field(default=None, alias="flowSelection")
    sentiment: Optional[str] = None
    is_toxic: bool = Field(default=False, alias="isToxic")
    agent_name: Optional[str] = Field(default=None, alias="agentName")
    is_greeting: bool = Field(default=False, alias="isGreeting")
    model: Optional[str] = None
    tokens_used: Optional[int] = Field(default=None, alias="tokensUsed")
    latency_ms: Optional[int] = Field(default=None, alias="latencyMs")

    @field_validator("desire_score", mode="before")
    @classmethod
    def _coerce_desire_score(cls, value):
        if isinstance(value, (int, float)):
            return {"value": float(value), "reasons": []}
        return value

    @property
    def is_callback(self) -> bool:
        return self.consent_response is not None or self.flow_selection is not None


class FollowupAnalysis(BaseModel):
    """analyze-followup output."""
    model_config = ConfigDict(extra="ignore")

    should_followup: bool = True
    followup_strategy: Literal["immediate", "wait", "give_up", "escalate"] = "wait"
    wait_hours: float = 24.0
    followup_tone: Optional[
        Literal["gentle_reminder", "value_add", "urgency", "final_goodbye"]
    ] = None
    suggested_message: Optional[str] = None
    reasoning: Optional[str] = None
    confidence: float = 0.0
    escalation_reason: Optional[str] = None


class VisionResult(BaseModel):
    """Photo slot/quality analysis. The neutral default means 'unknown slot, usable'."""
    model_config = ConfigDict(extra="ignore")

    slot: str = "unknown"
    confidence: float = 0.0
    quality_score: Optional[float] = None
    quality_issues: list[str] = Field(default_factory=list)
    is_usable: bool = True
    error: Optional[str] = None
