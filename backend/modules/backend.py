from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Callable

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from modules.categorize import palette_hint
from modules.episode_types import (
    HOST_VOICES,
    HOSTS,
    GenerationConfig,
    Notebook,
    Outline,
    OutlineSegment,
    ScriptSegment,
    SearchResult,
    Speaker,
    TranscriptSegment,
)
from modules.errors import (
    MalformedResponseError,
    ProviderError,
    ProviderTimeoutError,
    RetryPolicy,
    classify,
    retry_transient,
)
from modules.grounding import format_source_blocks, select_grounding
from modules.llm import (
    GeminiClient,
    extract_grounding_links,
    extract_inline_data,
    extract_text,
    get_client,
    resolve_model_name,
)

logger = logging.getLogger(__name__)

OnWait = Callable[[BaseException, int, float], None]

MAX_TTS_CHARS = 20_000
MIN_OUTLINE_SEGMENTS = 3
MAX_OUTLINE_SEGMENTS = 6
MAX_TOPICS_PER_SEGMENT = 3

SUMMARY_PLACEHOLDER = "A summary for this notebook is being prepared."
CHAT_PLACEHOLDER = "Still working through the sources for that question. Try asking again in a moment."

HOUSE_RULES = """
You write for an audio-first product. Never mention errors, quotas or failures.
Stay grounded in the provided sources; when they do not cover something, say so plainly.
""".strip()

HOST_IDENTITY = """
The episode has exactly two hosts: Alex (narrator) and Jordan (analyst).
Keep turns short and conversational. Only these two speakers may appear.
""".strip()

PERSONALITY_BLOCKS: dict[str, str] = {
    "neutral": "Alex and Jordan keep an even, professional tone.",
    "curious": "Jordan keeps asking why and how; Alex answers with concrete detail.",
    "analytical": "Jordan leans on numbers, evidence and step-by-step reasoning.",
    "warm": "The hosts are friendly with each other and dwell on the human side of each topic.",
    "debate": "Alex and Jordan take different positions and argue them respectfully.",
    "visionary": "Jordan looks ahead to long-term consequences; Alex ties them back to present facts.",
}

OUTLINE_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "outline": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "part": {"type": "INTEGER"},
                    "topics": {"type": "ARRAY", "items": {"type": "STRING"}},
                },
                "required": ["part", "topics"],
            },
        }
    },
    "required": ["outline"],
}

SCRIPT_SCHEMA: dict[str, Any] = {
    "type": "OBJECT",
    "properties": {
        "script": {"type": "STRING"},
        "transcript": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "speaker": {"type": "STRING", "enum": list(HOSTS)},
                    "text": {"type": "STRING"},
                    "startMs": {"type": "INTEGER"},
                    "endMs": {"type": "INTEGER"},
                },
                "required": ["speaker", "text", "startMs", "endMs"],
            },
        },
    },
    "required": ["script", "transcript"],
}


class OutlinePart(BaseModel):
    part: int | None = None
    topics: list[str] = Field(default_factory=list)


class OutlinePayload(BaseModel):
    outline: list[OutlinePart]


class TranscriptLine(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    speaker: Speaker
    text: str = Field(min_length=1)
    start_ms: int = Field(default=0, alias="startMs", ge=0)
    end_ms: int = Field(default=0, alias="endMs", ge=0)


class ScriptPayload(BaseModel):
    script: str = ""
    transcript: list[TranscriptLine] = Field(min_length=1)


def _extract_json_object(text: str) -> dict[str, Any]:
    raw = (text or "").strip()
    try:
        parsed = json.loads(raw)
        if isinstance(parsed, dict):
            return parsed
    except Exception:
        pass

    match = re.search(r"\{[\s\S]*\}", raw)
    if not match:
        raise MalformedResponseError("No JSON object found in model response.")
    try:
        parsed = json.loads(match.group(0))
    except ValueError as exc:
        raise MalformedResponseError("Model response JSON could not be parsed.") from exc
    if not isinstance(parsed, dict):
        raise MalformedResponseError("Model response JSON is not an object.")
    return parsed


def _truncate(value: str, max_len: int) -> str:
    s = (value or "").strip()
    if len(s) <= max_len:
        return s
    return s[:max_len].rstrip()


def parse_outline(payload: dict[str, Any]) -> Outline:
    try:
        parsed = OutlinePayload.model_validate(payload)
    except ValidationError as exc:
        raise MalformedResponseError(f"Outline does not match schema: {exc}") from exc

    segments: list[OutlineSegment] = []
    for part in parsed.outline:
        topics = [t.strip() for t in part.topics if t and t.strip()]
        if not topics:
            continue
        segments.append(
            OutlineSegment(index=len(segments), topics=topics[:MAX_TOPICS_PER_SEGMENT])
        )
        if len(segments) >= MAX_OUTLINE_SEGMENTS:
            break
    if len(segments) < MIN_OUTLINE_SEGMENTS:
        raise MalformedResponseError(
            f"Outline has {len(segments)} usable segments, expected at least {MIN_OUTLINE_SEGMENTS}."
        )
    return Outline(segments=segments, origin="remote")


def parse_script(payload: dict[str, Any]) -> ScriptSegment:
    try:
        parsed = ScriptPayload.model_validate(payload)
    except ValidationError as exc:
        raise MalformedResponseError(f"Script does not match schema: {exc}") from exc

    transcript = [
        TranscriptSegment(
            speaker=line.speaker,
            text=line.text.strip(),
            start_ms=line.start_ms,
            end_ms=max(line.start_ms, line.end_ms),
        )
        for line in parsed.transcript
    ]
    script = parsed.script.strip()
    if not script:
        script = "\n".join(f"{seg.speaker}: {seg.text}" for seg in transcript)
    return ScriptSegment(script=script, transcript=transcript)


def personality_block(personality: str) -> str:
    return PERSONALITY_BLOCKS.get(personality, PERSONALITY_BLOCKS["neutral"])


class GenerationBackend:
    """
    Async facade over the blocking Gemini client.

    Every operation runs the HTTP call in a worker thread under a caller-side
    timeout and goes through the shared transient-error backoff loop.
    """

    def __init__(
        self,
        client: GeminiClient | Any | None = None,
        config: GenerationConfig | None = None,
    ) -> None:
        self._client = client
        self.config = config or GenerationConfig.from_env()
        self.policy = RetryPolicy(
            base_delay_seconds=self.config.retry_base_delay_seconds,
            max_attempts=self.config.retry_max_attempts,
            jitter_seconds=self.config.retry_jitter_seconds,
        )

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = get_client()
        return self._client

    async def _request(
        self,
        label: str,
        *,
        model_kind: str,
        contents: Any,
        generation_config: dict[str, Any] | None = None,
        tools: list[dict[str, Any]] | None = None,
        on_wait: OnWait | None = None,
    ) -> dict[str, Any]:
        timeout = self.config.request_timeout_seconds

        def _blocking() -> dict[str, Any]:
            return self._get_client().generate_content(
                model=resolve_model_name(model_kind),
                contents=contents,
                generation_config=generation_config,
                tools=tools,
            )

        async def _attempt() -> dict[str, Any]:
            try:
                return await asyncio.wait_for(asyncio.to_thread(_blocking), timeout=timeout)
            except asyncio.TimeoutError as exc:
                raise ProviderTimeoutError(f"{label} timed out after {timeout}s") from exc
            except requests.RequestException as exc:
                raise ProviderError(f"{label} request failed: {exc}") from exc

        return await retry_transient(_attempt, policy=self.policy, on_wait=on_wait, label=label)

    async def generate_outline(
        self,
        notebook: Notebook,
        grounding: str,
        *,
        on_wait: OnWait | None = None,
    ) -> Outline:
        prompt = (
            f"{HOUSE_RULES}\n\n"
            f"Plan a podcast episode about the notebook \"{notebook.title}\".\n"
            f"Split it into {MIN_OUTLINE_SEGMENTS} to {MAX_OUTLINE_SEGMENTS} parts, "
            f"each with 1 to {MAX_TOPICS_PER_SEGMENT} short topic phrases.\n"
            "Return JSON: {\"outline\": [{\"part\": 1, \"topics\": [\"...\"]}]}\n\n"
            f"SOURCES:\n{grounding}"
        )
        payload = await self._request(
            "outline",
            model_kind="text",
            contents=prompt,
            generation_config={
                "responseMimeType": "application/json",
                "responseSchema": OUTLINE_SCHEMA,
                "temperature": 0.4,
            },
            on_wait=on_wait,
        )
        return parse_outline(_extract_json_object(extract_text(payload)))

    async def generate_script_segment(
        self,
        notebook: Notebook,
        outline: Outline,
        index: int,
        personality: str,
        grounding: str,
        *,
        on_wait: OnWait | None = None,
    ) -> ScriptSegment:
        total = len(outline.segments)
        topics = outline.segments[index].topics if 0 <= index < total else []
        prompt = (
            f"{HOUSE_RULES}\n{HOST_IDENTITY}\n{personality_block(personality)}\n\n"
            f"Episode: \"{notebook.title}\". Write ONLY the dialogue for part {index + 1} of {total}.\n"
            f"Topics for this part: {json.dumps(topics, ensure_ascii=False)}\n"
            "Offsets in startMs/endMs are relative to the start of this part.\n"
            "Return JSON: {\"script\": \"Alex: ...\\nJordan: ...\", "
            "\"transcript\": [{\"speaker\": \"Alex\", \"text\": \"...\", \"startMs\": 0, \"endMs\": 4000}]}\n\n"
            f"SOURCES:\n{grounding}"
        )
        payload = await self._request(
            f"script[{index}]",
            model_kind="script",
            contents=prompt,
            generation_config={
                "responseMimeType": "application/json",
                "responseSchema": SCRIPT_SCHEMA,
                "temperature": 0.7,
            },
            on_wait=on_wait,
        )
        return parse_script(_extract_json_object(extract_text(payload)))

    async def synthesize_speech(self, script: str, *, on_wait: OnWait | None = None) -> str:
        text = (script or "")[:MAX_TTS_CHARS]
        speaker_configs = [
            {
                "speaker": host,
                "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": voice}},
            }
            for host, voice in HOST_VOICES.items()
        ]
        payload = await self._request(
            "speech",
            model_kind="tts",
            contents=[{"role": "user", "parts": [{"text": text}]}],
            generation_config={
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "multiSpeakerVoiceConfig": {"speakerVoiceConfigs": speaker_configs}
                },
            },
            on_wait=on_wait,
        )
        inline = extract_inline_data(payload)
        if inline is None:
            raise MalformedResponseError("Speech response carried no audio data.")
        return inline[1]

    async def generate_artwork(self, notebook: Notebook) -> str | None:
        prompt = (
            f"Minimal square podcast cover art for \"{notebook.title}\". "
            f"Dark cinematic background, dominant {palette_hint(notebook.category)} accents, no text."
        )
        try:
            payload = await self._request(
                "artwork",
                model_kind="image",
                contents=[{"role": "user", "parts": [{"text": prompt}]}],
                generation_config={
                    "responseModalities": ["IMAGE"],
                    "imageConfig": {"aspectRatio": "1:1"},
                },
            )
            inline = extract_inline_data(payload)
        except Exception as exc:
            logger.warning("[backend] artwork=skipped notebook=%s reason=%s", notebook.id, exc)
            return None
        if inline is None:
            return None
        mime, data = inline
        return f"data:{mime or 'image/png'};base64,{data}"

    async def generate_summary(self, notebook: Notebook) -> str:
        context = format_source_blocks(notebook.sources[:10], max_chars=3000)
        prompt = (
            f"{HOUSE_RULES}\n\n"
            "Summarize this notebook using ONLY the sources below. "
            "One paragraph, three or four sentences, no markdown.\n\n"
            f"SOURCES:\n{context}"
        )
        try:
            payload = await self._request("summary", model_kind="text", contents=prompt)
            return extract_text(payload).strip() or SUMMARY_PLACEHOLDER
        except ProviderError as exc:
            logger.warning(
                "[backend] summary=placeholder notebook=%s reason=%s",
                notebook.id,
                classify(exc).reason,
            )
            return SUMMARY_PLACEHOLDER

    async def generate_chat_answer(self, notebook: Notebook, question: str) -> str:
        grounding = select_grounding(notebook, question, k=5, max_chars_per_source=4000)
        prompt = (
            f"{HOUSE_RULES}\n\n"
            f"SOURCES:\n{grounding}\n\n"
            f"QUESTION: {question}\n\n"
            "Answer with short paragraphs and headers where they help."
        )
        try:
            payload = await self._request("chat", model_kind="text", contents=prompt)
            return extract_text(payload).strip() or CHAT_PLACEHOLDER
        except ProviderError as exc:
            logger.warning(
                "[backend] chat=placeholder notebook=%s reason=%s",
                notebook.id,
                classify(exc).reason,
            )
            return CHAT_PLACEHOLDER

    async def perform_web_search(self, query: str) -> list[SearchResult]:
        try:
            payload = await self._request(
                "search",
                model_kind="text",
                contents=f"{HOUSE_RULES}\n\nFind reliable web sources about: {query}",
                tools=[{"google_search": {}}],
            )
        except ProviderError as exc:
            logger.warning("[backend] search=empty query=%r reason=%s", query, classify(exc).reason)
            return []
        return [SearchResult(title=link["title"], url=link["url"]) for link in extract_grounding_links(payload)]
