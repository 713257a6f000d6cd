"""
StorySegment rows keyed by id, with optimistic concurrency on ``updated_at``.

The ``updated_at`` check and the write happen in one compare-and-set, so
orchestrator instances sharing the KV cannot overwrite each other's updates.
"""
import time
import uuid
import logging
from typing import Callable, List, Optional, Tuple, TypeVar

from .errors import SegmentNotFound, StaleSegment
from .kv_storage import KVStorage
from .models import StoryContext, StorySegment

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SegmentRepository:
    def __init__(self, kv: KVStorage, *, clock: Callable[[], float] = time.time, max_update_attempts: int = 5):
        self.kv = kv
        self._clock = clock
        self.max_update_attempts = max_update_attempts

    async def create(self, story_id: str, story_context: Optional[StoryContext] = None,
                     text: Optional[str] = None) -> StorySegment:
        """Append a segment to a story with the next dense sequence number."""
        segment_id = str(uuid.uuid4())
        # the list length after the push is the sequence; RPUSH is atomic on the server
        sequence = await self.kv.rpush(f"story:{story_id}:segments", segment_id)
        now = self._clock()
        segment = StorySegment(
            id=segment_id,
            story_id=story_id,
            sequence=sequence,
            story_context=story_context or StoryContext(),
            text=text,
            created_at=now,
            updated_at=now,
        )
        await self.kv.set(f"segment:{segment.id}", segment.model_dump_json())
        logger.info(f"Created segment {segment.id} (story {story_id}, #{segment.sequence})")
        return segment

    async def _load(self, segment_id: str) -> Tuple[str, StorySegment]:
        raw = await self.kv.get(f"segment:{segment_id}")
        if raw is None:
            raise SegmentNotFound(segment_id)
        return raw, StorySegment.model_validate_json(raw)

    async def get(self, segment_id: str) -> StorySegment:
        _, segment = await self._load(segment_id)
        return segment

    async def list_for_story(self, story_id: str) -> List[StorySegment]:
        ids = await self.kv.lrange(f"story:{story_id}:segments")
        return [await self.get(segment_id) for segment_id in ids]

    async def previous(self, segment: StorySegment) -> Optional[StorySegment]:
        if segment.sequence <= 1:
            return None
        ids = await self.kv.lrange(f"story:{segment.story_id}:segments")
        if len(ids) < segment.sequence - 1:
            return None
        return await self.get(ids[segment.sequence - 2])

    async def save(self, segment: StorySegment, expected_updated_at: float) -> StorySegment:
        """Write the segment only if nobody else wrote it since ``expected_updated_at``."""
        raw, current = await self._load(segment.id)
        if current.updated_at != expected_updated_at:
            raise StaleSegment(segment.id, expected_updated_at, current.updated_at)
        # strictly increasing so two writes in the same clock tick stay distinguishable
        updated_at = max(self._clock(), expected_updated_at + 1e-6)
        candidate = segment.model_copy(update={"updated_at": updated_at})
        if not await self.kv.compare_and_set(f"segment:{segment.id}", raw, candidate.model_dump_json()):
            latest = await self.get(segment.id)
            raise StaleSegment(segment.id, expected_updated_at, latest.updated_at)
        segment.updated_at = updated_at
        return segment

    async def mutate(self, segment_id: str, fn: Callable[[StorySegment], T]) -> Tuple[StorySegment, T]:
        """Read-modify-write with retry on concurrent updates. ``fn`` must be safe to re-run."""
        for attempt in range(1, self.max_update_attempts + 1):
            segment = await self.get(segment_id)
            expected = segment.updated_at
            result = fn(segment)
            try:
                return await self.save(segment, expected), result
            except StaleSegment:
                logger.info(f"Segment {segment_id} changed underneath us, retrying ({attempt}/{self.max_update_attempts})")
        raise StaleSegment(segment_id, expected, -1.0)
