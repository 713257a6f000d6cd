import io, os, asyncio, logging
from typing import Any, Dict, Optional, Tuple

import httpx
from PIL import Image

from .adapters import ProviderAdapter, ProviderError, classify_status, looks_like_safety_rejection
from .models import ArtifactKind, ErrorKind, GenerationParameters, ProviderSuccess, SegmentContext
from .prompts import IMAGE_STYLE_SUFFIX, VIDEO_PROMPT_TEMPLATE, scene_summary
from .settings import (
    REPLICATE_IMAGE_MODEL,
    REPLICATE_POLL_INTERVAL_MS,
    REPLICATE_VIDEO_MODEL,
    VIDEO_CREDIT_COST,
)

logger = logging.getLogger(__name__)

API_BASE = "https://api.replicate.com/v1"


def _parse_selector(selector: str):
    # Returns a tuple (mode, data)
    # mode == "version": data={"version": <hash>}
    # mode == "model": data={"owner": <owner>, "name": <name>}
    if "/" in selector:
        # Could be owner/name or owner/name:versionAlias
        owner_name, _, _version_alias = selector.partition(":")
        if "/" in owner_name:
            owner, name = owner_name.split("/", 1)
            return "model", {"owner": owner, "name": name}
    # Fallback assume it's a version hash
    return "version", {"version": selector}


def _first_output(output: Any) -> Optional[str]:
    if isinstance(output, list) and output:
        return output[0]
    if isinstance(output, str) and output:
        return output
    return None


class ReplicatePredictionAdapter(ProviderAdapter):
    """Create a Replicate prediction, poll it to completion and download the output file."""

    def __init__(self, model: str, *, api_token: Optional[str] = None,
                 poll_interval_s: float = REPLICATE_POLL_INTERVAL_MS / 1000.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.model = model
        self._api_token = api_token
        self.poll_interval_s = poll_interval_s
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        token = self._api_token or os.getenv("REPLICATE_API_TOKEN", "")
        if not token:
            raise RuntimeError("REPLICATE_API_TOKEN is not set; please configure your .env")
        return {"Authorization": f"Token {token}"}

    async def _create(self, client: httpx.AsyncClient, json_body: dict) -> dict:
        mode, data = _parse_selector(self.model)
        if mode == "version":
            json_body = {**json_body, "version": data["version"]}
            url = f"{API_BASE}/predictions"
        else:
            url = f"{API_BASE}/models/{data['owner']}/{data['name']}/predictions"

        headers = {**self._headers(), "Content-Type": "application/json"}
        r = await client.post(url, headers=headers, json=json_body)
        if r.status_code == 404 and mode == "model":
            # Model endpoint can 404 due to aliasing/visibility; resolve the latest version instead.
            logger.info(f"Falling back to latest version resolution for {self.model}")
            model_resp = await client.get(f"{API_BASE}/models/{data['owner']}/{data['name']}", headers=self._headers())
            model_resp.raise_for_status()
            version_id = (model_resp.json().get("latest_version") or {}).get("id")
            if not version_id:
                raise ProviderError(ErrorKind.PROVIDER_UNAVAILABLE, f"Could not resolve latest version for {self.model}")
            r = await client.post(f"{API_BASE}/predictions", headers=headers, json={**json_body, "version": version_id})
        if r.status_code >= 400:
            logger.error(f"Replicate create failed {r.status_code}: {r.text}")
            raise classify_status(r.status_code, r.text, r.headers.get("retry-after"))
        return r.json()

    async def run_prediction(self, client: httpx.AsyncClient, model_input: dict) -> str:
        pred = await self._create(client, {"input": model_input})
        pred_id = pred["id"]
        logger.info(f"Replicate prediction created with ID: {pred_id}")

        while True:
            s = await client.get(f"{API_BASE}/predictions/{pred_id}", headers=self._headers())
            if s.status_code >= 400:
                logger.error(f"Replicate status failed {s.status_code}: {s.text}")
                raise classify_status(s.status_code, s.text, s.headers.get("retry-after"))
            body = s.json()
            status = body.get("status")
            logger.info(f"Replicate prediction {pred_id} status: {status}")

            if status in ("succeeded", "failed", "canceled"):
                if status != "succeeded":
                    error_detail = str(body.get("error") or "")
                    logger.error(f"Replicate failed: {status}. error={error_detail}")
                    kind = ErrorKind.INVALID_INPUT if looks_like_safety_rejection(error_detail) else ErrorKind.UNKNOWN
                    raise ProviderError(kind, f"Replicate prediction {status}: {error_detail}")
                url = _first_output(body.get("output"))
                if not url:
                    raise ProviderError(ErrorKind.UNKNOWN, "Replicate succeeded but no output URL")
                return url
            await asyncio.sleep(self.poll_interval_s)

    async def download(self, client: httpx.AsyncClient, url: str) -> Tuple[bytes, str]:
        resp = await client.get(url)
        resp.raise_for_status()
        content_type = resp.headers.get("content-type", "application/octet-stream").split(";")[0]
        return resp.content, content_type

    def build_input(self, context: SegmentContext, parameters: GenerationParameters) -> dict:
        raise NotImplementedError

    def postprocess(self, data: bytes, content_type: str, context: SegmentContext) -> Tuple[bytes, str]:
        return data, content_type

    async def _generate(self, context: SegmentContext, parameters: GenerationParameters) -> ProviderSuccess:
        model_input = {**self.build_input(context, parameters), **parameters.extra.get(self.kind.value, {})}
        async with httpx.AsyncClient(timeout=30, transport=self._transport) as client:
            url = await self.run_prediction(client, model_input)
            logger.info(f"Got {self.kind.value} output for segment {context.segment_id}: {url}")
            data, content_type = await self.download(client, url)
        data, content_type = self.postprocess(data, content_type, context)
        return ProviderSuccess(
            payload=data,
            content_type=content_type,
            reported_cost=self.quote(context, parameters),
            metadata={"source_url": url, "model": self.model},
        )


class ReplicateImageAdapter(ReplicatePredictionAdapter):
    kind = ArtifactKind.IMAGE

    def __init__(self, model: str = REPLICATE_IMAGE_MODEL, **kwargs):
        super().__init__(model, **kwargs)

    def build_input(self, context: SegmentContext, parameters: GenerationParameters) -> dict:
        return {
            "prompt": f"{scene_summary(context.text)}, {IMAGE_STYLE_SUFFIX}",
            "num_outputs": 1,
        }

    def postprocess(self, data: bytes, content_type: str, context: SegmentContext) -> Tuple[bytes, str]:
        # Normalize WebP output to PNG so every stored illustration has the same format
        try:
            with Image.open(io.BytesIO(data)) as pil_img:
                if pil_img.format != "WEBP":
                    return data, content_type
                logger.info(f"Converting WebP to PNG for segment {context.segment_id}")
                if pil_img.mode in ("RGBA", "LA"):
                    background = Image.new("RGB", pil_img.size, (255, 255, 255))
                    if pil_img.mode == "LA":
                        pil_img = pil_img.convert("RGBA")
                    background.paste(pil_img, mask=pil_img.split()[-1])
                    pil_img = background
                elif pil_img.mode != "RGB":
                    pil_img = pil_img.convert("RGB")
                png_buffer = io.BytesIO()
                pil_img.save(png_buffer, format="PNG")
                return png_buffer.getvalue(), "image/png"
        except Exception as e:
            logger.warning(f"Image conversion failed: {e}, storing as-is")
            return data, content_type


class ReplicateVideoAdapter(ReplicatePredictionAdapter):
    kind = ArtifactKind.VIDEO

    def __init__(self, model: str = REPLICATE_VIDEO_MODEL, *, credit_cost: int = VIDEO_CREDIT_COST, **kwargs):
        super().__init__(model, **kwargs)
        self.credit_cost = credit_cost

    def quote(self, context: SegmentContext, parameters: GenerationParameters) -> Optional[int]:
        return self.credit_cost

    def build_input(self, context: SegmentContext, parameters: GenerationParameters) -> dict:
        model_input = {"prompt": VIDEO_PROMPT_TEMPLATE.format(scene=scene_summary(context.text, 300))}
        if context.image_url:
            model_input["image"] = context.image_url
        if parameters.include_narration and context.audio_url:
            model_input["audio"] = context.audio_url
        return model_input
