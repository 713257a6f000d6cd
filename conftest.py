"""
Shared fixtures: an in-memory KV store, the ledger and segment repository on
top of it, local-directory artifact storage, and scripted provider adapters.
"""
import asyncio
from typing import Any, List

import pytest

from tale_forge.adapters import ProviderAdapter
from tale_forge.errors import StorageWriteFailed
from tale_forge.kv_storage import KVStorage
from tale_forge.ledger import CreditLedger
from tale_forge.models import ArtifactKind, ErrorKind, ProviderFailure, ProviderSuccess
from tale_forge.orchestrator import PipelineOrchestrator
from tale_forge.segments import SegmentRepository
from tale_forge.storage import ArtifactStore


def text_success(text: str, is_ending: bool = False) -> ProviderSuccess:
    return ProviderSuccess(
        payload=text,
        content_type="text/plain; charset=utf-8",
        metadata={
            "text": text,
            "choices": [
                {"id": 1, "text": "Follow the fox", "impact": "leads into the forest"},
                {"id": 2, "text": "Go home", "impact": "ends the adventure"},
            ],
            "is_ending": is_ending,
        },
    )


def media_success(kind: ArtifactKind, reported_cost=None) -> ProviderSuccess:
    content_type = {
        ArtifactKind.IMAGE: "image/png",
        ArtifactKind.AUDIO: "audio/mpeg",
        ArtifactKind.VIDEO: "video/mp4",
    }[kind]
    return ProviderSuccess(payload=f"{kind.value}-bytes".encode(), content_type=content_type,
                           reported_cost=reported_cost)


def failure(kind: ErrorKind, retry_after=None) -> ProviderFailure:
    return ProviderFailure(kind=kind, message=f"simulated {kind.value}", retry_after=retry_after)


class ScriptedAdapter(ProviderAdapter):
    """Plays back a script of results; the last entry repeats once the script runs out.

    Entries may be a ProviderResult, an exception to raise, or a callable taking
    the SegmentContext and returning a ProviderResult.
    """

    def __init__(self, kind: ArtifactKind, *script: Any, quote=None, delay: float = 0.0):
        self.kind = kind
        self.script = list(script)
        self._quote = quote
        self.delay = delay
        self.calls = 0
        self.contexts: List[Any] = []

    async def _generate(self, context, parameters):
        self.calls += 1
        self.contexts.append(context)
        if self.delay:
            await asyncio.sleep(self.delay)
        entry = self.script[min(self.calls - 1, len(self.script) - 1)]
        if isinstance(entry, BaseException):
            raise entry
        if callable(entry):
            return entry(context)
        return entry

    def quote(self, context, parameters):
        return self._quote


class SlowKV(KVStorage):
    """In-memory KV whose reads and writes yield, so two app instances sharing it interleave."""

    def __init__(self, delay: float = 0.01):
        super().__init__(url="", token="")
        self.delay = delay

    async def get(self, key):
        await asyncio.sleep(self.delay)
        return await super().get(key)

    async def set(self, key, value):
        await asyncio.sleep(self.delay)
        await super().set(key, value)

    async def compare_and_set(self, key, expected, value):
        await asyncio.sleep(self.delay)
        return await super().compare_and_set(key, expected, value)


class FailingStore:
    def __init__(self):
        self.calls = 0

    async def put(self, segment_id, kind, payload, content_type):
        self.calls += 1
        raise StorageWriteFailed("bucket unavailable")


def default_adapters(words: int = 50):
    text = " ".join(["word"] * words)
    return {
        ArtifactKind.TEXT: ScriptedAdapter(ArtifactKind.TEXT, text_success(text)),
        ArtifactKind.IMAGE: ScriptedAdapter(ArtifactKind.IMAGE, media_success(ArtifactKind.IMAGE)),
        ArtifactKind.AUDIO: ScriptedAdapter(ArtifactKind.AUDIO, media_success(ArtifactKind.AUDIO)),
        ArtifactKind.VIDEO: ScriptedAdapter(ArtifactKind.VIDEO, media_success(ArtifactKind.VIDEO), quote=30),
    }


class Harness:
    def __init__(self, tmp_path):
        self.kv = KVStorage(url="", token="")
        self.ledger = CreditLedger(self.kv)
        self.segments = SegmentRepository(self.kv)
        self.store = ArtifactStore(base_url="", service_key="", local_dir=str(tmp_path / "artifacts"))
        self.sleeps: List[float] = []

    async def _record_sleep(self, delay: float) -> None:
        self.sleeps.append(delay)

    def build(self, adapters=None, **kwargs) -> PipelineOrchestrator:
        kwargs.setdefault("sleep", self._record_sleep)
        kwargs.setdefault("rng", lambda: 0.0)
        kwargs.setdefault("store", self.store)
        return PipelineOrchestrator(
            kv=self.kv,
            ledger=self.ledger,
            segments=self.segments,
            adapters=adapters or default_adapters(),
            **kwargs,
        )


@pytest.fixture
def harness(tmp_path):
    return Harness(tmp_path)


@pytest.fixture
def kv():
    return KVStorage(url="", token="")
