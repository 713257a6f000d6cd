import os, json, logging
from typing import Optional

from .adapters import ProviderAdapter, ProviderError
from .models import ArtifactKind, ErrorKind, GenerationParameters, ProviderSuccess, SegmentContext
from .prompts import SEGMENT_SCHEMA, SEGMENT_SYSTEM_PROMPT, SEGMENT_USER_PROMPT_TEMPLATE, describe_characters
from .settings import OPENAI_TEXT_MODEL

logger = logging.getLogger(__name__)


def build_messages(context: SegmentContext, parameters: GenerationParameters) -> list:
    story = context.story
    language = parameters.language or story.language
    system = SEGMENT_SYSTEM_PROMPT.format(age_group=story.age_group, language=language)
    user = SEGMENT_USER_PROMPT_TEMPLATE.format(
        genre=story.genre,
        age_group=story.age_group,
        title=story.title,
        description=story.description,
        characters=describe_characters(story.characters),
        previous=context.previous_text or "(this is the opening segment)",
        choice=parameters.choice_text or "(none - begin the story)",
        sequence=context.sequence,
        schema=SEGMENT_SCHEMA,
    )
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]


def parse_segment(content: Optional[str]) -> dict:
    try:
        data = json.loads(content or "")
    except json.JSONDecodeError as e:
        raise ProviderError(ErrorKind.UNKNOWN, f"model returned invalid JSON: {e}") from e
    text = str(data.get("content", "")).strip() if isinstance(data, dict) else ""
    if not text:
        raise ProviderError(ErrorKind.UNKNOWN, "model response did not contain segment content")
    choices = []
    for i, choice in enumerate(data.get("choices") or [], start=1):
        if isinstance(choice, dict) and choice.get("text"):
            choices.append({"id": int(choice.get("id", i)), "text": str(choice["text"]), "impact": str(choice.get("impact", ""))})
    return {"text": text, "choices": choices, "is_ending": bool(data.get("is_ending", False))}


class OpenAITextAdapter(ProviderAdapter):
    kind = ArtifactKind.TEXT

    def __init__(self, client=None, model: str = OPENAI_TEXT_MODEL):
        self._client = client
        self.model = model

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            api_key = os.getenv("OPENAI_API_KEY", "")
            if not api_key:
                raise RuntimeError("OPENAI_API_KEY is not set; please configure your .env")
            self._client = AsyncOpenAI(api_key=api_key, max_retries=0)
        return self._client

    async def _generate(self, context: SegmentContext, parameters: GenerationParameters) -> ProviderSuccess:
        logger.info(f"Calling OpenAI to write segment {context.segment_id}")
        resp = await self._get_client().chat.completions.create(
            model=self.model,
            messages=build_messages(context, parameters),
            temperature=0.8,
            response_format={"type": "json_object"},
        )
        choice = resp.choices[0]
        if choice.finish_reason == "content_filter":
            raise ProviderError(ErrorKind.INVALID_INPUT, "segment request was blocked by the content filter")
        segment = parse_segment(choice.message.content)
        logger.info(f"Received segment text for {context.segment_id} ({len(segment['text'].split())} words)")
        return ProviderSuccess(
            payload=segment["text"],
            content_type="text/plain; charset=utf-8",
            metadata={**segment, "model": self.model},
        )
