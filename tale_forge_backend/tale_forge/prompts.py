SEGMENT_SYSTEM_PROMPT = """You are a master storyteller writing an interactive story for children.
- Age-appropriate for the {age_group} audience; warm, nonjudgmental tone.
- Build naturally from the previous segment and the chosen path.
- Keep characters consistent with their descriptions.
- Write in language: {language}.
Output ONLY valid JSON matching the provided schema."""


SEGMENT_SCHEMA = r"""{
  "content": "<the narrative for this segment>",
  "choices": [
    {"id": <int>, "text": "<what the reader can choose next>", "impact": "<short hint of where it leads>"}
  ],
  "is_ending": <true|false>
}"""


SEGMENT_USER_PROMPT_TEMPLATE = """Continue this {genre} story for the {age_group} age group.

STORY CONTEXT:
Title: {title}
Description: {description}

Characters:
{characters}

PREVIOUS SEGMENT:
{previous}

READER'S CHOICE: {choice}

Segment number: {sequence}

Schema:
{schema}

Constraints:
- Content must be 150-300 words.
- Provide exactly 3 meaningful choices unless this is the ending.
Return ONLY valid JSON for the schema above."""


IMAGE_STYLE_SUFFIX = (
    "children's storybook illustration, soft colors, friendly characters, "
    "clean background, no text, no watermark"
)


VIDEO_PROMPT_TEMPLATE = "Gently animate this storybook scene: {scene}. Calm camera motion, child-friendly."


def describe_characters(characters) -> str:
    if not characters:
        return "No specific characters - create engaging characters appropriate for the age group."
    return "\n".join(f"{c.name} ({c.role}): {c.description}" for c in characters)


def scene_summary(text: str, limit: int = 600) -> str:
    text = " ".join((text or "").split())
    return text if len(text) <= limit else text[:limit].rsplit(" ", 1)[0]
