"""
Lifecycle of each artifact kind on a segment.

Per kind: not_requested -> pending -> succeeded | failed. A kind only leaves a
terminal state when a new GenerationRequest begins it again. The overall
segment status is derived from the per-kind states of the kinds that were
requested, never stored.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from .errors import ConflictingRequest, InvalidTransition, MissingPrerequisite
from .models import (
    MEDIA_KINDS,
    REFERENCE_FIELDS,
    ArtifactKind,
    ArtifactState,
    TERMINAL_STATES,
    ErrorKind,
    GenerationParameters,
    GenerationRequest,
    SegmentStatus,
    SkipReason,
    StoryChoice,
    StorySegment,
)

DependencyRule = Callable[[GenerationParameters], Mapping[ArtifactKind, Set[ArtifactKind]]]


def default_dependencies(parameters: GenerationParameters) -> Dict[ArtifactKind, Set[ArtifactKind]]:
    """Media-on-media prerequisites. Text is always a prerequisite and is not listed."""
    if parameters.include_narration:
        return {ArtifactKind.VIDEO: {ArtifactKind.AUDIO}}
    return {}


@dataclass
class GenerationPlan:
    run_text: bool = False
    media: List[ArtifactKind] = field(default_factory=list)
    # in-request prerequisites that must succeed before the kind may start
    waits_on: Dict[ArtifactKind, Set[ArtifactKind]] = field(default_factory=dict)
    skipped: Dict[ArtifactKind, SkipReason] = field(default_factory=dict)


class SegmentStateMachine:
    def __init__(self, dependencies: DependencyRule = default_dependencies,
                 clock: Callable[[], float] = time.time):
        self.dependencies = dependencies
        self._clock = clock

    def plan(self, segment: StorySegment, request: GenerationRequest) -> GenerationPlan:
        plan = GenerationPlan()
        kinds = request.kinds

        if ArtifactKind.TEXT in kinds:
            if segment.text:
                plan.skipped[ArtifactKind.TEXT] = SkipReason.TEXT_ALREADY_PRESENT
            else:
                plan.run_text = True
        text_available = bool(segment.text) or plan.run_text

        for kind in MEDIA_KINDS:
            if kind not in kinds:
                continue
            if not text_available:
                plan.skipped[kind] = SkipReason.MISSING_PREREQUISITE
            else:
                plan.media.append(kind)

        rules = self.dependencies(request.parameters)
        changed = True
        while changed:
            changed = False
            # rebuilt every pass: a kind removed below must not stay a wait target
            plan.waits_on = {}
            for kind in list(plan.media):
                for dep in rules.get(kind, set()):
                    if dep in plan.media:
                        plan.waits_on.setdefault(kind, set()).add(dep)
                    elif segment.state_of(dep) != ArtifactState.SUCCEEDED:
                        plan.media.remove(kind)
                        plan.waits_on.pop(kind, None)
                        plan.skipped[kind] = SkipReason.MISSING_PREREQUISITE
                        changed = True
                        break
        return plan

    def begin(self, segment: StorySegment, kind: ArtifactKind, reservation_id: str, request_id: str) -> None:
        if not reservation_id:
            raise InvalidTransition(f"{kind.value} cannot enter pending without a credit reservation")
        if kind == ArtifactKind.TEXT and segment.text:
            raise InvalidTransition(f"segment {segment.id} text is immutable once set")
        if kind != ArtifactKind.TEXT and not segment.text:
            raise MissingPrerequisite(f"segment {segment.id} has no text for {kind.value}")
        rec = segment.record(kind)
        if rec.state == ArtifactState.PENDING:
            raise ConflictingRequest(segment.id, {kind})
        if rec.state == ArtifactState.FAILED and rec.request_id == request_id:
            raise InvalidTransition(f"{kind.value} failed for request {request_id}; a new request is required")
        rec.state = ArtifactState.PENDING
        rec.reservation_id = reservation_id
        rec.request_id = request_id
        rec.error_kind = None
        rec.error_message = None
        rec.attempts = 0
        rec.updated_at = self._clock()
        if kind not in segment.requested_kinds:
            segment.requested_kinds.append(kind)

    def succeed(self, segment: StorySegment, kind: ArtifactKind, reference: str,
                attempts: int, metadata: Optional[Dict[str, Any]] = None) -> None:
        rec = self._pending(segment, kind)
        metadata = metadata or {}
        if kind == ArtifactKind.TEXT:
            segment.text = metadata["text"]
            segment.text_url = reference
            segment.choices = [StoryChoice.model_validate(c) for c in metadata.get("choices", [])]
            segment.is_ending = bool(metadata.get("is_ending", False))
        else:
            setattr(segment, REFERENCE_FIELDS[kind], reference)
        rec.state = ArtifactState.SUCCEEDED
        rec.attempts = attempts
        rec.updated_at = self._clock()

    def fail(self, segment: StorySegment, kind: ArtifactKind, error_kind: ErrorKind,
             message: str = "", attempts: int = 0) -> None:
        rec = self._pending(segment, kind)
        self._record_failure(segment, kind, error_kind, message)
        rec.attempts = attempts

    def reject(self, segment: StorySegment, kind: ArtifactKind, error_kind: ErrorKind, message: str = "") -> None:
        """Record a failure for a kind that never reached pending (e.g. reservation refused)."""
        if segment.state_of(kind) == ArtifactState.PENDING:
            raise InvalidTransition(f"{kind.value} is pending; use fail()")
        self._record_failure(segment, kind, error_kind, message)
        if kind not in segment.requested_kinds:
            segment.requested_kinds.append(kind)

    def abandon(self, segment: StorySegment, kind: ArtifactKind, reservation_id: str) -> bool:
        """Fail a pending kind whose owner vanished. Returns False if the reservation no longer owns it."""
        rec = segment.artifacts.get(kind)
        if not rec or rec.state != ArtifactState.PENDING or rec.reservation_id != reservation_id:
            return False
        self._record_failure(segment, kind, ErrorKind.ABANDONED, "reservation expired without a terminal record")
        return True

    def _pending(self, segment: StorySegment, kind: ArtifactKind):
        rec = segment.artifacts.get(kind)
        if not rec or rec.state != ArtifactState.PENDING:
            raise InvalidTransition(f"{kind.value} is not pending on segment {segment.id}")
        return rec

    def _record_failure(self, segment: StorySegment, kind: ArtifactKind, error_kind: ErrorKind, message: str) -> None:
        rec = segment.record(kind)
        rec.state = ArtifactState.FAILED
        rec.error_kind = error_kind
        rec.error_message = message
        rec.updated_at = self._clock()
        if kind in REFERENCE_FIELDS:
            setattr(segment, REFERENCE_FIELDS[kind], None)


def derive_status(segment: StorySegment) -> SegmentStatus:
    states = [segment.state_of(kind) for kind in segment.requested_kinds]
    if not states:
        return SegmentStatus.NOT_STARTED
    if any(s not in TERMINAL_STATES for s in states):
        return SegmentStatus.IN_PROGRESS
    succeeded = ArtifactState.SUCCEEDED in states
    failed = ArtifactState.FAILED in states
    if succeeded and failed:
        return SegmentStatus.PARTIAL
    if failed:
        return SegmentStatus.FAILED
    return SegmentStatus.COMPLETE
