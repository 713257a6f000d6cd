import os, httpx, logging
from typing import Optional

from .adapters import ProviderAdapter, ProviderError, classify_status
from .models import ArtifactKind, ErrorKind, GenerationParameters, ProviderSuccess, SegmentContext

logger = logging.getLogger(__name__)


class ElevenLabsAudioAdapter(ProviderAdapter):
    kind = ArtifactKind.AUDIO

    def __init__(self, *, api_key: Optional[str] = None, voice_id: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self._api_key = api_key
        self._voice_id = voice_id
        self._transport = transport

    def _voice(self, parameters: GenerationParameters) -> str:
        vid = parameters.voice or self._voice_id or os.getenv("ELEVENLABS_VOICE_ID", "")
        if not vid:
            raise RuntimeError("ELEVENLABS_VOICE_ID is not set; please configure your .env")
        return vid

    def _headers(self):
        api_key = self._api_key or os.getenv("ELEVENLABS_API_KEY", "")
        if not api_key:
            raise RuntimeError("ELEVENLABS_API_KEY is not set; please configure your .env")
        return {
            "xi-api-key": api_key,
            "Content-Type": "application/json"
        }

    async def _generate(self, context: SegmentContext, parameters: GenerationParameters) -> ProviderSuccess:
        if not context.text or not context.text.strip():
            raise ProviderError(ErrorKind.INVALID_INPUT, "Text is required for audio generation")
        payload = {
            "text": context.text,
            "model_id": "eleven_multilingual_v2",
            "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
            "output_format": "mp3_44100_128",
        }
        language = parameters.language or context.story.language
        if language:
            payload["language_code"] = language
        url = f"https://api.elevenlabs.io/v1/text-to-speech/{self._voice(parameters)}"

        logger.info(f"Requesting narration from ElevenLabs for segment {context.segment_id}")
        async with httpx.AsyncClient(timeout=None, transport=self._transport) as client:
            r = await client.post(url, headers=self._headers(), json=payload)
        if r.status_code >= 400:
            raise classify_status(r.status_code, r.text, r.headers.get("retry-after"))
        if not r.content:
            raise ProviderError(ErrorKind.UNKNOWN, "ElevenLabs returned an empty audio body")
        return ProviderSuccess(payload=r.content, content_type="audio/mpeg",
                               metadata={"voice": self._voice(parameters)})
