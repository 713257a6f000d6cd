"""
Per-segment generation pipeline.

``PipelineOrchestrator.process`` takes one GenerationRequest through a small
langgraph graph (plan -> text -> media -> aggregate). Text is produced first;
image, audio and video then run concurrently under a per-request semaphore,
each with its own reserve -> generate -> store -> commit loop. Partial
success is a valid terminal outcome: kinds never roll one another back.
"""
import asyncio, dataclasses, logging, random, time
from typing import Awaitable, Callable, Dict, Mapping, Optional, Set

from langgraph.graph import StateGraph, END
from pydantic import BaseModel, Field

from .adapters import ProviderAdapter
from .circuit_breaker import CircuitBreaker
from .errors import (
    ConflictingRequest,
    InsufficientCredits,
    SegmentNotFound,
    StorageWriteFailed,
    TaleForgeError,
)
from .kv_storage import KVStorage, KeyedLocks
from .ledger import CreditLedger
from .models import (
    ArtifactKind,
    ArtifactOutcome,
    ArtifactState,
    CreditCharge,
    ErrorKind,
    GenerationRequest,
    ProviderFailure,
    ProviderSuccess,
    SegmentContext,
    SegmentResult,
    SkipReason,
    StorySegment,
)
from .pricing import price_for
from .segments import SegmentRepository
from .settings import (
    BACKOFF_BASE_S,
    BACKOFF_CAP_S,
    MAX_ATTEMPTS,
    MAX_CONCURRENT_PROVIDER_CALLS,
    STORAGE_WRITE_ATTEMPTS,
    TIMEOUTS_S,
)
from .state_machine import GenerationPlan, SegmentStateMachine, derive_status
from .storage import ArtifactStore

logger = logging.getLogger(__name__)

KIND_ORDER = list(ArtifactKind)


class PipelineState(BaseModel):
    request: GenerationRequest
    plan: Optional[GenerationPlan] = None
    outcomes: Dict[ArtifactKind, ArtifactOutcome] = Field(default_factory=dict)
    result: Optional[SegmentResult] = None


class _Cancelled(Exception):
    pass


class PipelineOrchestrator:
    def __init__(
        self,
        *,
        kv: KVStorage,
        ledger: CreditLedger,
        segments: SegmentRepository,
        store: ArtifactStore,
        adapters: Mapping[ArtifactKind, ProviderAdapter],
        state_machine: Optional[SegmentStateMachine] = None,
        timeouts: Optional[Mapping[str, float]] = None,
        max_attempts: Optional[Mapping[str, int]] = None,
        backoff_base: float = BACKOFF_BASE_S,
        backoff_cap: float = BACKOFF_CAP_S,
        storage_attempts: int = STORAGE_WRITE_ATTEMPTS,
        max_concurrency: int = MAX_CONCURRENT_PROVIDER_CALLS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        circuit_breakers: Optional[Mapping[ArtifactKind, CircuitBreaker]] = None,
    ):
        self.kv = kv
        self.ledger = ledger
        self.segments = segments
        self.store = store
        self.adapters = dict(adapters)
        self.sm = state_machine or SegmentStateMachine()
        self.timeouts = {**TIMEOUTS_S, **(timeouts or {})}
        self.max_attempts = {**MAX_ATTEMPTS, **(max_attempts or {})}
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.storage_attempts = storage_attempts
        self.max_concurrency = max_concurrency
        self._sleep = sleep
        self._rng = rng
        self.breakers = {kind: CircuitBreaker(kind.value) for kind in ArtifactKind}
        self.breakers.update(circuit_breakers or {})
        self._in_flight: Dict[str, Set[ArtifactKind]] = {}
        self._claim_locks = KeyedLocks()
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self.graph = self._build_graph()

    def _build_graph(self):
        g = StateGraph(PipelineState)
        g.add_node("plan_kinds", self._node_plan)
        g.add_node("generate_text", self._node_text)
        g.add_node("generate_media", self._node_media)
        g.add_node("aggregate", self._node_aggregate)
        g.set_entry_point("plan_kinds")
        g.add_edge("plan_kinds", "generate_text")
        g.add_edge("generate_text", "generate_media")
        g.add_edge("generate_media", "aggregate")
        g.add_edge("aggregate", END)
        return g.compile()

    # --- entry points ---

    async def process(self, request: GenerationRequest, cancel_event: Optional[asyncio.Event] = None) -> SegmentResult:
        idempotency_key = f"idempotency:{request.user_id}:{request.segment_id}:{request.token}"
        cached = await self.kv.get(idempotency_key)
        if cached is not None:
            logger.info(f"Request {request.request_id} matches idempotency token {request.token}, returning stored result")
            return SegmentResult.model_validate_json(cached)

        await self.segments.get(request.segment_id)
        await self._claim(request)
        self._cancel_events[request.request_id] = cancel_event or asyncio.Event()
        try:
            logger.info(f"Starting request {request.request_id} for segment {request.segment_id}: "
                        f"{sorted(k.value for k in request.kinds)}")
            final_state = await self.graph.ainvoke(PipelineState(request=request))
            result = final_state["result"]
            await self.kv.set(idempotency_key, result.model_dump_json())
            logger.info(f"Request {request.request_id} finished: {result.status.value}, charged {result.charged}")
            return result
        finally:
            self._cancel_events.pop(request.request_id, None)
            await self._release_claim(request)

    def cancel(self, request_id: str) -> bool:
        """Ask a running request to stop. In-flight provider calls finish but their results are discarded."""
        event = self._cancel_events.get(request_id)
        if event is None:
            return False
        event.set()
        logger.info(f"Cancellation requested for {request_id}")
        return True

    def breaker_statuses(self) -> Dict[str, dict]:
        return {kind.value: breaker.status() for kind, breaker in self.breakers.items()}

    def reset_breaker(self, kind: ArtifactKind) -> None:
        self.breakers[kind].reset()
        logger.info(f"Circuit for {kind.value} reset by operator")

    async def sweep(self, now: Optional[float] = None) -> list:
        """Release abandoned reservations and fail the segment kinds they were holding."""
        released = await self.ledger.sweep_expired(now)
        for charge in released:
            if charge.segment_id and charge.kind:
                await self._abandon(charge)
        return released

    async def _abandon(self, charge: CreditCharge) -> None:
        try:
            _, changed = await self.segments.mutate(
                charge.segment_id, lambda s: self.sm.abandon(s, charge.kind, charge.id))
        except SegmentNotFound:
            logger.warning(f"Abandoned reservation {charge.id} points at missing segment {charge.segment_id}")
            return
        if changed:
            logger.warning(f"Marked {charge.kind.value} on segment {charge.segment_id} as abandoned")

    # --- in-flight registry ---

    async def _claim(self, request: GenerationRequest) -> None:
        async with self._claim_locks(request.segment_id):
            busy = set(self._in_flight.get(request.segment_id, set()))
            segment = await self.segments.get(request.segment_id)
            busy |= {k for k in request.kinds if segment.state_of(k) == ArtifactState.PENDING}
            conflict = request.kinds & busy
            if conflict:
                logger.warning(f"Rejecting request {request.request_id}: {sorted(k.value for k in conflict)} "
                               f"already in flight on segment {request.segment_id}")
                raise ConflictingRequest(request.segment_id, conflict)
            self._in_flight.setdefault(request.segment_id, set()).update(request.kinds)

    async def _release_claim(self, request: GenerationRequest) -> None:
        async with self._claim_locks(request.segment_id):
            kinds = self._in_flight.get(request.segment_id, set())
            kinds -= request.kinds
            if not kinds:
                self._in_flight.pop(request.segment_id, None)

    # --- graph nodes ---

    async def _node_plan(self, state: PipelineState) -> dict:
        segment = await self.segments.get(state.request.segment_id)
        plan = self.sm.plan(segment, state.request)
        outcomes = {kind: ArtifactOutcome.skipped(kind, reason) for kind, reason in plan.skipped.items()}
        for kind, reason in plan.skipped.items():
            logger.info(f"Skipping {kind.value} on segment {segment.id}: {reason.value}")
        return {"plan": plan, "outcomes": outcomes}

    async def _node_text(self, state: PipelineState) -> dict:
        plan = state.plan
        if not plan.run_text:
            return {"outcomes": state.outcomes}
        outcomes = dict(state.outcomes)
        outcome = await self._run_kind(state.request, ArtifactKind.TEXT)
        outcomes[ArtifactKind.TEXT] = outcome
        if outcome.outcome != "succeeded":
            reason = SkipReason.CANCELLED if self._is_cancelled(state.request) else SkipReason.PREREQUISITE_FAILED
            for kind in plan.media:
                outcomes[kind] = ArtifactOutcome.skipped(kind, reason)
            plan = dataclasses.replace(plan, media=[], waits_on={})
        return {"plan": plan, "outcomes": outcomes}

    async def _node_media(self, state: PipelineState) -> dict:
        plan = state.plan
        if not plan.media:
            return {"outcomes": state.outcomes}
        request = state.request
        semaphore = asyncio.Semaphore(self.max_concurrency)
        tasks: Dict[ArtifactKind, asyncio.Task] = {}

        async def run(kind: ArtifactKind) -> ArtifactOutcome:
            for dep in plan.waits_on.get(kind, ()):
                dep_outcome = await tasks[dep]
                if dep_outcome.outcome != "succeeded":
                    logger.info(f"Skipping {kind.value}: prerequisite {dep.value} did not succeed")
                    return ArtifactOutcome.skipped(kind, SkipReason.PREREQUISITE_FAILED)
            async with semaphore:
                return await self._run_kind(request, kind)

        for kind in plan.media:
            tasks[kind] = asyncio.create_task(run(kind))
        await asyncio.gather(*tasks.values())
        outcomes = dict(state.outcomes)
        outcomes.update({kind: task.result() for kind, task in tasks.items()})
        return {"outcomes": outcomes}

    async def _node_aggregate(self, state: PipelineState) -> dict:
        request = state.request
        segment = await self.segments.get(request.segment_id)
        outcomes = {kind: state.outcomes[kind] for kind in KIND_ORDER if kind in state.outcomes}
        result = SegmentResult(
            request_id=request.request_id,
            segment_id=request.segment_id,
            status=derive_status(segment),
            outcomes=outcomes,
            charged=sum(o.charged for o in outcomes.values()),
            balance=await self.ledger.balance(request.user_id),
        )
        return {"result": result}

    # --- per-kind attempt loop ---

    def _is_cancelled(self, request: GenerationRequest) -> bool:
        event = self._cancel_events.get(request.request_id)
        return event is not None and event.is_set()

    async def _context(self, segment: StorySegment) -> SegmentContext:
        previous = await self.segments.previous(segment)
        return SegmentContext(
            segment_id=segment.id,
            story=segment.story_context,
            text=segment.text,
            previous_text=previous.text if previous else None,
            image_url=segment.image_url,
            audio_url=segment.audio_url,
            sequence=segment.sequence,
        )

    def backoff_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Full jitter: uniform in [0, min(cap, base * 2^(attempt-1))], at least the provider's hint."""
        ceiling = min(self.backoff_cap, self.backoff_base * (2 ** (attempt - 1)))
        delay = self._rng() * ceiling
        if retry_after:
            delay = max(delay, min(retry_after, self.backoff_cap))
        return delay

    async def _run_kind(self, request: GenerationRequest, kind: ArtifactKind) -> ArtifactOutcome:
        if self._is_cancelled(request):
            return ArtifactOutcome.skipped(kind, SkipReason.CANCELLED)
        segment_id = request.segment_id
        reservation_id = None
        attempts = 0
        try:
            segment = await self.segments.get(segment_id)
            context = await self._context(segment)
            adapter = self.adapters[kind]
            amount = price_for(kind, narration=segment.text, quoted=adapter.quote(context, request.parameters))

            try:
                reservation_id = await self.ledger.reserve(
                    request.user_id, amount, request_id=request.request_id, segment_id=segment_id, kind=kind)
            except InsufficientCredits as e:
                logger.info(f"{kind.value} on segment {segment_id} refused: {e.message}")
                await self.segments.mutate(
                    segment_id, lambda s: self.sm.reject(s, kind, ErrorKind.INSUFFICIENT_CREDITS, e.message))
                return ArtifactOutcome.failed(kind, ErrorKind.INSUFFICIENT_CREDITS, e.message)

            await self.segments.mutate(
                segment_id, lambda s: self.sm.begin(s, kind, reservation_id, request.request_id))

            breaker = self.breakers[kind]
            while True:
                if breaker.is_open():
                    failure = ProviderFailure(kind=ErrorKind.PROVIDER_UNAVAILABLE,
                                              message=f"{kind.value} provider circuit is open")
                    break
                attempts += 1
                deadline = time.monotonic() + self.timeouts[kind.value]
                result = await adapter.generate(context, request.parameters, deadline)
                if isinstance(result, ProviderSuccess):
                    breaker.record_success()
                elif result.retryable:
                    breaker.record_failure()
                if self._is_cancelled(request):
                    raise _Cancelled()
                if isinstance(result, ProviderSuccess):
                    try:
                        reference = await self._store(segment_id, kind, result)
                    except StorageWriteFailed as e:
                        failure = ProviderFailure(kind=ErrorKind.STORAGE_WRITE_FAILED, message=e.message)
                        break
                    metadata = {**result.metadata}
                    if kind == ArtifactKind.TEXT:
                        metadata.setdefault("text", result.payload)
                    await self.segments.mutate(
                        segment_id, lambda s: self.sm.succeed(s, kind, reference, attempts, metadata))
                    charge = await self.ledger.commit(reservation_id, result.reported_cost)
                    charged = charge.amount if charge else amount
                    logger.info(f"{kind.value} for segment {segment_id} succeeded after {attempts} attempt(s)")
                    return ArtifactOutcome.succeeded(kind, reference, attempts, charged)

                failure = result
                cap = self.max_attempts[kind.value]
                if not failure.retryable or attempts >= cap:
                    break
                delay = self.backoff_delay(attempts, failure.retry_after)
                logger.info(f"{kind.value} attempt {attempts}/{cap} failed ({failure.kind.value}), "
                            f"retrying in {delay:.2f}s")
                await self._sleep(delay)
                if self._is_cancelled(request):
                    raise _Cancelled()

            logger.warning(f"{kind.value} for segment {segment_id} failed after {attempts} attempt(s): "
                           f"{failure.kind.value} {failure.message}")
            await self._finish_failed(segment_id, kind, reservation_id, failure.kind, failure.message, attempts)
            return ArtifactOutcome.failed(kind, failure.kind, failure.message, attempts)

        except _Cancelled:
            logger.info(f"{kind.value} for segment {segment_id} cancelled, discarding result")
            await self._finish_failed(segment_id, kind, reservation_id, ErrorKind.CANCELLED, "request cancelled", attempts)
            return ArtifactOutcome.failed(kind, ErrorKind.CANCELLED, "request cancelled", attempts)
        except Exception as e:
            error_kind = e.kind if isinstance(e, TaleForgeError) and e.kind else ErrorKind.UNKNOWN
            logger.error(f"{kind.value} for segment {segment_id} aborted: {type(e).__name__}: {e}")
            if reservation_id:
                await self._finish_failed(segment_id, kind, reservation_id, error_kind, str(e), attempts)
            return ArtifactOutcome.failed(kind, error_kind, str(e), attempts)

    async def _finish_failed(self, segment_id: str, kind: ArtifactKind, reservation_id: Optional[str],
                             error_kind: ErrorKind, message: str, attempts: int) -> None:
        """Record the failure on the segment, then release the reservation."""

        def owned(segment: StorySegment) -> bool:
            rec = segment.artifacts.get(kind)
            return bool(rec and rec.state == ArtifactState.PENDING and rec.reservation_id == reservation_id)

        def fail_if_owned(segment: StorySegment) -> None:
            if owned(segment):
                self.sm.fail(segment, kind, error_kind, message, attempts)

        try:
            if owned(await self.segments.get(segment_id)):
                await self.segments.mutate(segment_id, fail_if_owned)
        except Exception as e:
            # the sweep fails the kind once the reservation expires
            logger.error(f"Could not record {kind.value} failure on segment {segment_id}: {e}")
        if reservation_id:
            await self.ledger.release(reservation_id)

    async def _store(self, segment_id: str, kind: ArtifactKind, result: ProviderSuccess) -> str:
        for attempt in range(1, self.storage_attempts + 1):
            try:
                return await self.store.put(segment_id, kind, result.payload, result.content_type)
            except StorageWriteFailed as e:
                if attempt >= self.storage_attempts:
                    raise
                delay = self.backoff_delay(attempt)
                logger.warning(f"Storing {kind.value} for {segment_id} failed ({e.message}), "
                               f"retrying in {delay:.2f}s ({attempt}/{self.storage_attempts})")
                await self._sleep(delay)
