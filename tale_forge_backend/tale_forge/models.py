import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Set, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ArtifactKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"
    VIDEO = "video"


MEDIA_KINDS = (ArtifactKind.IMAGE, ArtifactKind.AUDIO, ArtifactKind.VIDEO)

# Segment field holding the stored reference for each media kind
REFERENCE_FIELDS = {
    ArtifactKind.IMAGE: "image_url",
    ArtifactKind.AUDIO: "audio_url",
    ArtifactKind.VIDEO: "video_url",
}


class ArtifactState(str, Enum):
    NOT_REQUESTED = "not_requested"
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATES = (ArtifactState.SUCCEEDED, ArtifactState.FAILED)


class SegmentStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    PARTIAL = "partial"
    COMPLETE = "complete"
    FAILED = "failed"


class ErrorKind(str, Enum):
    INSUFFICIENT_CREDITS = "insufficient_credits"
    CONFLICTING_REQUEST = "conflicting_request"
    MISSING_PREREQUISITE = "missing_prerequisite"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    UNKNOWN = "unknown"
    INVALID_INPUT = "invalid_input"
    STORAGE_WRITE_FAILED = "storage_write_failed"
    CANCELLED = "cancelled"
    ABANDONED = "abandoned"


RETRYABLE_ERRORS = frozenset({
    ErrorKind.TIMEOUT,
    ErrorKind.RATE_LIMITED,
    ErrorKind.PROVIDER_UNAVAILABLE,
    ErrorKind.UNKNOWN,
})


class SkipReason(str, Enum):
    MISSING_PREREQUISITE = "missing_prerequisite"
    PREREQUISITE_FAILED = "prerequisite_failed"
    TEXT_ALREADY_PRESENT = "text_already_present"
    CANCELLED = "cancelled"


class Character(BaseModel):
    name: str
    description: str = ""
    role: str = ""


class StoryContext(BaseModel):
    title: str = ""
    description: str = ""
    age_group: str = "4-6"
    genre: str = "adventure"
    language: str = "en"
    characters: List[Character] = Field(default_factory=list)


class StoryChoice(BaseModel):
    id: int
    text: str
    impact: str = ""


class ArtifactRecord(BaseModel):
    state: ArtifactState = ArtifactState.NOT_REQUESTED
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    reservation_id: Optional[str] = None
    request_id: Optional[str] = None
    attempts: int = 0
    updated_at: Optional[float] = None


class StorySegment(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    story_id: str
    sequence: int
    story_context: StoryContext = Field(default_factory=StoryContext)
    text: Optional[str] = None
    text_url: Optional[str] = None
    choices: List[StoryChoice] = Field(default_factory=list)
    is_ending: bool = False
    image_url: Optional[str] = None
    audio_url: Optional[str] = None
    video_url: Optional[str] = None
    artifacts: Dict[ArtifactKind, ArtifactRecord] = Field(default_factory=dict)
    requested_kinds: List[ArtifactKind] = Field(default_factory=list)
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    def record(self, kind: ArtifactKind) -> ArtifactRecord:
        if kind not in self.artifacts:
            self.artifacts[kind] = ArtifactRecord()
        return self.artifacts[kind]

    def state_of(self, kind: ArtifactKind) -> ArtifactState:
        rec = self.artifacts.get(kind)
        return rec.state if rec else ArtifactState.NOT_REQUESTED


class GenerationParameters(BaseModel):
    voice: Optional[str] = None
    language: Optional[str] = None
    include_narration: bool = False
    choice_text: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class GenerationRequest(BaseModel):
    request_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    segment_id: str
    kinds: Set[ArtifactKind]
    user_id: str
    idempotency_token: Optional[str] = None
    parameters: GenerationParameters = Field(default_factory=GenerationParameters)
    submitted_at: float = Field(default_factory=time.time)

    @field_validator("kinds")
    @classmethod
    def _kinds_not_empty(cls, v):
        if not v:
            raise ValueError("at least one artifact kind must be requested")
        return v

    @property
    def token(self) -> str:
        if self.idempotency_token:
            return self.idempotency_token
        kinds = ",".join(sorted(k.value for k in self.kinds))
        return f"{self.segment_id}:{kinds}:{self.request_id}"


class ChargeState(str, Enum):
    RESERVED = "reserved"
    COMMITTED = "committed"
    RELEASED = "released"


class CreditCharge(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    amount: int = Field(gt=0)
    request_id: Optional[str] = None
    segment_id: Optional[str] = None
    kind: Optional[ArtifactKind] = None
    state: ChargeState = ChargeState.RESERVED
    created_at: float = Field(default_factory=time.time)
    finalized_at: Optional[float] = None


class CreditAccount(BaseModel):
    user_id: str
    balance: int = 0
    # open reservations only; finalized charges live under charge:{id}
    reserved: Dict[str, CreditCharge] = Field(default_factory=dict)


@dataclass(frozen=True)
class SegmentContext:
    """Minimum context a provider needs to produce one artifact."""

    segment_id: str
    story: StoryContext
    text: Optional[str] = None
    previous_text: Optional[str] = None
    image_url: Optional[str] = None
    audio_url: Optional[str] = None
    sequence: int = 1


@dataclass(frozen=True)
class ProviderSuccess:
    payload: Union[bytes, str]
    content_type: str
    reported_cost: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    ok: bool = True


@dataclass(frozen=True)
class ProviderFailure:
    kind: ErrorKind
    message: str = ""
    retry_after: Optional[float] = None
    ok: bool = False

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_ERRORS


ProviderResult = Union[ProviderSuccess, ProviderFailure]


class ArtifactOutcome(BaseModel):
    kind: ArtifactKind
    outcome: Literal["succeeded", "failed", "skipped"]
    reference: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None
    skip_reason: Optional[SkipReason] = None
    attempts: int = 0
    charged: int = 0

    @classmethod
    def succeeded(cls, kind: ArtifactKind, reference: str, attempts: int, charged: int) -> "ArtifactOutcome":
        return cls(kind=kind, outcome="succeeded", reference=reference, attempts=attempts, charged=charged)

    @classmethod
    def failed(cls, kind: ArtifactKind, error_kind: ErrorKind, message: str = "", attempts: int = 0) -> "ArtifactOutcome":
        return cls(kind=kind, outcome="failed", error_kind=error_kind, message=message, attempts=attempts)

    @classmethod
    def skipped(cls, kind: ArtifactKind, reason: SkipReason) -> "ArtifactOutcome":
        return cls(kind=kind, outcome="skipped", skip_reason=reason)


class SegmentResult(BaseModel):
    request_id: str
    segment_id: str
    status: SegmentStatus
    outcomes: Dict[ArtifactKind, ArtifactOutcome]
    charged: int = 0
    balance: Optional[int] = None


class JobRecord(BaseModel):
    job_id: str
    request_id: str
    segment_id: str
    status: Literal["queued", "running", "succeeded", "failed", "cancelled"] = "queued"
    error: Optional[str] = None
    result: Optional[SegmentResult] = None
    created_at: float = Field(default_factory=time.time)


class CreateSegmentRequest(BaseModel):
    story_id: str
    story_context: StoryContext = Field(default_factory=StoryContext)
    text: Optional[str] = None


class GenerateSegmentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    kinds: List[ArtifactKind]
    idempotency_token: Optional[str] = None
    parameters: GenerationParameters = Field(default_factory=GenerationParameters)
    run_async: bool = Field(False, alias="async")


class GrantCreditsRequest(BaseModel):
    amount: int = Field(gt=0)
