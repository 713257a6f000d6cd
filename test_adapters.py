import asyncio
import io
import json
import time
from types import SimpleNamespace

import httpx
import pytest
from PIL import Image

from tale_forge.adapters import ProviderError, classify_exception, classify_status
from tale_forge.elevenlabs_client import ElevenLabsAudioAdapter
from tale_forge.errors import KVError, StorageWriteFailed
from tale_forge.kv_storage import COMPARE_AND_SET_SCRIPT, KVStorage, KeyedLocks
from tale_forge.ledger import CreditLedger
from tale_forge.llm import OpenAITextAdapter, build_messages, parse_segment
from tale_forge.models import (
    ArtifactKind,
    Character,
    ErrorKind,
    GenerationParameters,
    JobRecord,
    ProviderFailure,
    ProviderSuccess,
    SegmentContext,
    StoryContext,
)
from tale_forge.replicate_client import ReplicateImageAdapter, ReplicateVideoAdapter
from tale_forge.storage import ArtifactStore, object_key

STORY = StoryContext(title="The Brave Fox", genre="adventure", characters=[Character(name="Rusty", description="a fox")])


def context(text="Rusty found a glowing acorn.", **kwargs) -> SegmentContext:
    return SegmentContext(segment_id="seg-1", story=STORY, text=text, **kwargs)


def soon() -> float:
    return time.monotonic() + 5


# --- classification ---

@pytest.mark.parametrize("status, kind", [
    (429, ErrorKind.RATE_LIMITED),
    (408, ErrorKind.TIMEOUT),
    (504, ErrorKind.TIMEOUT),
    (422, ErrorKind.INVALID_INPUT),
    (500, ErrorKind.PROVIDER_UNAVAILABLE),
    (503, ErrorKind.PROVIDER_UNAVAILABLE),
    (418, ErrorKind.UNKNOWN),
])
def test_classify_status(status, kind):
    assert classify_status(status, "oops").kind == kind


def test_safety_message_is_invalid_input():
    assert classify_status(500, "output flagged as NSFW").kind == ErrorKind.INVALID_INPUT


def test_retry_after_is_parsed():
    assert classify_status(429, "", "12").retry_after == 12.0
    assert classify_status(429, "", "soon").retry_after is None


def test_classify_exception():
    assert classify_exception(asyncio.TimeoutError()).kind == ErrorKind.TIMEOUT
    assert classify_exception(httpx.ConnectTimeout("slow")).kind == ErrorKind.TIMEOUT
    assert classify_exception(httpx.ConnectError("down")).kind == ErrorKind.PROVIDER_UNAVAILABLE
    assert classify_exception(ValueError("weird")).kind == ErrorKind.UNKNOWN
    assert classify_exception(ValueError("weird")).retryable


def test_passed_deadline_is_timeout():
    adapter = ElevenLabsAudioAdapter(api_key="k", voice_id="v")
    result = asyncio.run(adapter.generate(context(), GenerationParameters(), time.monotonic() - 1))
    assert isinstance(result, ProviderFailure)
    assert result.kind == ErrorKind.TIMEOUT


# --- text ---

def test_parse_segment():
    parsed = parse_segment(json.dumps({
        "content": "Rusty ran home.",
        "choices": [{"id": 1, "text": "Open the door", "impact": "meets a friend"}, {"text": ""}],
        "is_ending": False,
    }))
    assert parsed["text"] == "Rusty ran home."
    assert parsed["choices"] == [{"id": 1, "text": "Open the door", "impact": "meets a friend"}]
    assert parsed["is_ending"] is False


@pytest.mark.parametrize("content", ["not json", "{}", None, '{"content": "  "}'])
def test_parse_segment_rejects_bad_content(content):
    with pytest.raises(ProviderError):
        parse_segment(content)


def test_build_messages_mentions_previous_text_and_choice():
    messages = build_messages(context(previous_text="Earlier, Rusty slept."),
                              GenerationParameters(choice_text="Climb the tree"))
    user = messages[1]["content"]
    assert "Earlier, Rusty slept." in user
    assert "Climb the tree" in user
    assert "Rusty" in user


class FakeCompletions:
    def __init__(self, content, finish_reason="stop"):
        self.content = content
        self.finish_reason = finish_reason
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason=self.finish_reason)])


def fake_openai(completions):
    return SimpleNamespace(chat=SimpleNamespace(completions=completions))


def test_openai_text_adapter_success():
    completions = FakeCompletions(json.dumps({"content": "Rusty waved.", "choices": [], "is_ending": True}))
    adapter = OpenAITextAdapter(client=fake_openai(completions), model="test-model")
    result = asyncio.run(adapter.generate(context(text=None), GenerationParameters(), soon()))
    assert isinstance(result, ProviderSuccess)
    assert result.payload == "Rusty waved."
    assert result.metadata["is_ending"] is True
    assert completions.kwargs["model"] == "test-model"
    assert completions.kwargs["response_format"] == {"type": "json_object"}


def test_openai_content_filter_is_invalid_input():
    adapter = OpenAITextAdapter(client=fake_openai(FakeCompletions(None, finish_reason="content_filter")))
    result = asyncio.run(adapter.generate(context(text=None), GenerationParameters(), soon()))
    assert result.kind == ErrorKind.INVALID_INPUT
    assert not result.retryable


# --- audio ---

def test_elevenlabs_success():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        seen["key"] = request.headers["xi-api-key"]
        return httpx.Response(200, content=b"ID3-mp3", headers={"content-type": "audio/mpeg"})

    adapter = ElevenLabsAudioAdapter(api_key="k", voice_id="voice-1", transport=httpx.MockTransport(handler))
    result = asyncio.run(adapter.generate(context(), GenerationParameters(language="es"), soon()))
    assert result.payload == b"ID3-mp3"
    assert result.content_type == "audio/mpeg"
    assert seen["url"].endswith("/v1/text-to-speech/voice-1")
    assert seen["body"]["text"] == "Rusty found a glowing acorn."
    assert seen["body"]["language_code"] == "es"
    assert seen["key"] == "k"


def test_elevenlabs_rate_limited():
    def handler(request):
        return httpx.Response(429, text="too many", headers={"retry-after": "3"})

    adapter = ElevenLabsAudioAdapter(api_key="k", voice_id="v", transport=httpx.MockTransport(handler))
    result = asyncio.run(adapter.generate(context(), GenerationParameters(), soon()))
    assert result.kind == ErrorKind.RATE_LIMITED
    assert result.retry_after == 3.0


def test_elevenlabs_requires_text():
    adapter = ElevenLabsAudioAdapter(api_key="k", voice_id="v")
    result = asyncio.run(adapter.generate(context(text="  "), GenerationParameters(), soon()))
    assert result.kind == ErrorKind.INVALID_INPUT


# --- image / video ---

def image_bytes(fmt: str) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (4, 4), (200, 100, 50)).save(buf, format=fmt)
    return buf.getvalue()


def replicate_handler(final_status="succeeded", output="https://replicate.delivery/out.webp",
                      error=None, file_bytes=b"", file_type="image/webp", created=None):
    polls = {"count": 0}

    def handler(request: httpx.Request):
        path = request.url.path
        if request.method == "POST" and path.endswith("/predictions"):
            if created is not None:
                created.append(json.loads(request.content))
            return httpx.Response(201, json={"id": "p1", "status": "starting"})
        if path == "/v1/predictions/p1":
            polls["count"] += 1
            if polls["count"] == 1:
                return httpx.Response(200, json={"id": "p1", "status": "processing"})
            return httpx.Response(200, json={"id": "p1", "status": final_status, "output": [output], "error": error})
        if request.url.host == "replicate.delivery":
            return httpx.Response(200, content=file_bytes, headers={"content-type": file_type})
        return httpx.Response(404)

    return handler


def test_replicate_image_converts_webp_to_png():
    handler = replicate_handler(file_bytes=image_bytes("WEBP"))
    adapter = ReplicateImageAdapter("owner/model", api_token="t", poll_interval_s=0,
                                    transport=httpx.MockTransport(handler))
    result = asyncio.run(adapter.generate(context(), GenerationParameters(), soon()))
    assert isinstance(result, ProviderSuccess)
    assert result.content_type == "image/png"
    assert result.payload.startswith(b"\x89PNG")
    assert result.metadata["source_url"] == "https://replicate.delivery/out.webp"


def test_replicate_safety_failure_is_invalid_input():
    handler = replicate_handler(final_status="failed", error="NSFW content detected")
    adapter = ReplicateImageAdapter("owner/model", api_token="t", poll_interval_s=0,
                                    transport=httpx.MockTransport(handler))
    result = asyncio.run(adapter.generate(context(), GenerationParameters(), soon()))
    assert result.kind == ErrorKind.INVALID_INPUT


def test_replicate_create_outage_is_retryable():
    adapter = ReplicateImageAdapter("owner/model", api_token="t", poll_interval_s=0,
                                    transport=httpx.MockTransport(lambda r: httpx.Response(503, text="busy")))
    result = asyncio.run(adapter.generate(context(), GenerationParameters(), soon()))
    assert result.kind == ErrorKind.PROVIDER_UNAVAILABLE
    assert result.retryable


def test_replicate_video_input_and_quote():
    created = []
    handler = replicate_handler(output="https://replicate.delivery/out.mp4", file_bytes=b"mp4",
                                file_type="video/mp4", created=created)
    adapter = ReplicateVideoAdapter("owner/video", api_token="t", poll_interval_s=0, credit_cost=25,
                                    transport=httpx.MockTransport(handler))
    ctx = context(image_url="https://cdn/img.png", audio_url="https://cdn/a.mp3")
    params = GenerationParameters(include_narration=True)
    result = asyncio.run(adapter.generate(ctx, params, soon()))
    assert adapter.quote(ctx, params) == 25
    assert result.reported_cost == 25
    assert result.content_type == "video/mp4"
    model_input = created[0]["input"]
    assert model_input["image"] == "https://cdn/img.png"
    assert model_input["audio"] == "https://cdn/a.mp3"


# --- storage ---

def test_object_key_layout():
    assert object_key("seg-1", ArtifactKind.AUDIO, "audio/mpeg", stamp=42) == "seg-1/audio_42.mp3"
    assert object_key("seg-1", ArtifactKind.TEXT, "text/plain; charset=utf-8", stamp=1) == "seg-1/text_1.txt"


def test_remote_store_returns_public_url():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers["authorization"]
        return httpx.Response(200, json={"Key": "ok"})

    store = ArtifactStore(base_url="https://proj.supabase.co", service_key="sk",
                          transport=httpx.MockTransport(handler))
    url = asyncio.run(store.put("seg-1", ArtifactKind.IMAGE, b"png", "image/png"))
    assert url.startswith("https://proj.supabase.co/storage/v1/object/public/story-images/seg-1/image_")
    assert seen["path"].startswith("/storage/v1/object/story-images/seg-1/")
    assert seen["auth"] == "Bearer sk"


def test_remote_store_failure_raises():
    store = ArtifactStore(base_url="https://proj.supabase.co", service_key="sk",
                          transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    with pytest.raises(StorageWriteFailed):
        asyncio.run(store.put("seg-1", ArtifactKind.IMAGE, b"png", "image/png"))


def test_local_store_writes_file(tmp_path):
    store = ArtifactStore(base_url="", service_key="", local_dir=str(tmp_path))
    url = asyncio.run(store.put("seg-1", ArtifactKind.TEXT, "hello", "text/plain; charset=utf-8"))
    assert url.startswith("file://")
    written = list((tmp_path / "story-text" / "seg-1").iterdir())
    assert [p.read_text() for p in written] == ["hello"]


# --- kv ---

def kv_backend():
    data = {}
    scripts = []

    def handler(request):
        command = request.url.path.rsplit("/", 1)[-1]
        args = json.loads(request.content)
        if command == "set":
            data[args[0]] = args[1]
            return httpx.Response(200, json={"result": "OK"})
        if command == "get":
            return httpx.Response(200, json={"result": data.get(args[0])})
        if command == "del":
            return httpx.Response(200, json={"result": int(data.pop(args[0], None) is not None)})
        if command == "eval":
            script, numkeys, key, expect_absent, expected, value = args
            scripts.append((script, numkeys))
            current = data.get(key)
            matches = current is None if expect_absent == "1" else current == expected
            if matches:
                data[key] = value
            return httpx.Response(200, json={"result": int(matches)})
        if command == "rpush":
            data.setdefault(args[0], []).append(args[1])
            return httpx.Response(200, json={"result": len(data[args[0]])})
        if command == "lrange":
            return httpx.Response(200, json={"result": list(data.get(args[0], []))})
        if command == "sadd":
            data.setdefault(args[0], set()).add(args[1])
            return httpx.Response(200, json={"result": 1})
        if command == "smembers":
            return httpx.Response(200, json={"result": sorted(data.get(args[0], set()))})
        return httpx.Response(400)

    return data, scripts, httpx.MockTransport(handler)


def test_kv_rest_roundtrip_for_jobs():
    data, _, transport = kv_backend()
    store = KVStorage(url="https://kv.example", token="t", transport=transport)

    async def scenario():
        await store.set_job(JobRecord(job_id="j1", request_id="r1", segment_id="s1"))
        updated = await store.update_job_status("j1", "failed", error="boom")
        return updated, await store.get_job("j1"), await store.get_job("missing")

    updated, fetched, missing = asyncio.run(scenario())
    assert store.enabled
    assert "job:j1" in data
    assert fetched.status == "failed" and fetched.error == "boom"
    assert updated == fetched
    assert missing is None


def test_kv_http_error_raises():
    store = KVStorage(url="https://kv.example", token="t",
                      transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    with pytest.raises(KVError):
        asyncio.run(store.get("anything"))


def test_kv_falls_back_to_memory():
    store = KVStorage(url="", token="")

    async def scenario():
        await store.set_json("k", {"a": 1})
        value = await store.get_json("k")
        await store.delete("k")
        return value, await store.get("k")

    assert not store.enabled
    assert asyncio.run(scenario()) == ({"a": 1}, None)


def test_kv_compare_and_set_runs_as_one_script():
    data, scripts, transport = kv_backend()
    store = KVStorage(url="https://kv.example", token="t", transport=transport)

    async def scenario():
        created = await store.compare_and_set("k", None, "v1")
        again = await store.compare_and_set("k", None, "v2")
        stale = await store.compare_and_set("k", "v0", "v2")
        swapped = await store.compare_and_set("k", "v1", "v2")
        return created, again, stale, swapped

    assert asyncio.run(scenario()) == (True, False, False, True)
    assert data["k"] == "v2"
    assert scripts == [(COMPARE_AND_SET_SCRIPT, 1)] * 4


def test_ledger_over_kv_rest_api():
    data, _, transport = kv_backend()
    ledger = CreditLedger(KVStorage(url="https://kv.example", token="t", transport=transport))

    async def scenario():
        await ledger.grant("u1", 5)
        rid = await ledger.reserve("u1", 2)
        await ledger.commit(rid)
        return rid, await ledger.balance("u1"), await ledger.charges("u1")

    rid, balance, charges = asyncio.run(scenario())
    assert balance == 3
    assert [c.id for c in charges] == [rid]
    assert data["ledger:users"] == {"u1"}
    assert data["ledger:u1:charges"] == [rid]


def test_eval_needs_a_backend():
    with pytest.raises(KVError):
        asyncio.run(KVStorage(url="", token="").eval("return 1", ["k"], []))


def test_keyed_locks_serialize_per_key_and_are_dropped():
    locks = KeyedLocks()
    order = []

    async def hold(key, label):
        async with locks(key):
            order.append(f"{label}-in")
            await asyncio.sleep(0.01)
            order.append(f"{label}-out")

    async def scenario():
        first = asyncio.create_task(hold("a", "first"))
        second = asyncio.create_task(hold("a", "second"))
        other = asyncio.create_task(hold("b", "other"))
        await asyncio.sleep(0)
        held = len(locks)
        await asyncio.gather(first, second, other)
        return held

    held = asyncio.run(scenario())
    assert held == 2
    assert order.index("first-out") < order.index("second-in")
    assert len(locks) == 0
