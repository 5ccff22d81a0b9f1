from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal
from uuid import uuid4

JobState = Literal[
    "QUEUED",
    "PREFLIGHT",
    "OUTLINING",
    "SCRIPTING",
    "SYNTHESIZING",
    "OPTIMIZING",
    "QUOTA_PAUSED",
    "QUOTA_BLOCKED",
    "FINALIZING",
    "READY",
    "FAILED",
]
GenerationMode = Literal["PRIMARY", "OPTIMIZED", "FAILSAFE"]
SourceKind = Literal["text", "url", "document"]
Personality = Literal["neutral", "curious", "analytical", "warm", "debate", "visionary"]
Speaker = Literal["Alex", "Jordan"]

MODE_ORDER: dict[str, int] = {"PRIMARY": 0, "OPTIMIZED": 1, "FAILSAFE": 2}
PERSONALITIES: tuple[str, ...] = ("neutral", "curious", "analytical", "warm", "debate", "visionary")
HOSTS: tuple[str, str] = ("Alex", "Jordan")
HOST_VOICES: dict[str, str] = {"Alex": "Kore", "Jordan": "Puck"}

# Provider speech contract: mono PCM16 little-endian.
SAMPLE_RATE = 24000


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


@dataclass(frozen=True)
class Source:
    id: str
    kind: SourceKind
    title: str
    content: str
    url: str | None = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class GeneratedMedia:
    id: str
    kind: str
    title: str
    source_count: int
    duration_ms: int
    artwork_url: str | None = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class Notebook:
    id: str
    title: str
    sources: list[Source] = field(default_factory=list)
    summary: str = ""
    category: str = "general"
    host_personality: str = "neutral"
    generated_media: list[GeneratedMedia] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class TranscriptSegment:
    speaker: Speaker
    text: str
    start_ms: int
    end_ms: int


@dataclass
class AudioChapter:
    title: str
    start_ms: int
    end_ms: int
    summary: str = ""


@dataclass
class OutlineSegment:
    index: int
    topics: list[str]


@dataclass
class Outline:
    segments: list[OutlineSegment]
    origin: Literal["remote", "local"] = "remote"


@dataclass
class ScriptSegment:
    script: str
    transcript: list[TranscriptSegment]


@dataclass
class AudioResult:
    audio: str
    chapters: list[AudioChapter]
    transcript: list[TranscriptSegment]
    artwork_url: str | None = None
    duration_ms: int = 0
    sample_rate: int = SAMPLE_RATE


@dataclass
class GenerationJob:
    job_id: str
    notebook_id: str
    personality: str = "neutral"
    state: str = "QUEUED"
    mode: str = "PRIMARY"
    progress: float = 0.0
    completed_chunks: int = 0
    total_chunks: int = 0
    partial_audio_buffers: list[str] = field(default_factory=list)
    partial_transcript: list[TranscriptSegment] = field(default_factory=list)
    outline: Outline | None = None
    chapters: list[AudioChapter] = field(default_factory=list)
    audio: AudioResult | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_ready(self) -> bool:
        return self.state == "READY"


@dataclass(frozen=True)
class SearchResult:
    title: str
    url: str


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except Exception:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class GenerationConfig:
    request_timeout_seconds: float = 90.0
    retry_base_delay_seconds: float = 2.0
    retry_max_attempts: int = 6
    retry_jitter_seconds: float = 0.0
    synthesis_max_attempts: int = 3
    synthesis_backoff_seconds: float = 2.0
    grounding_top_k: int = 3
    artwork_enabled: bool = True

    @classmethod
    def from_env(cls) -> "GenerationConfig":
        return cls(
            request_timeout_seconds=max(1.0, _env_float("PROVIDER_TIMEOUT_SECONDS", 90.0)),
            retry_base_delay_seconds=max(0.0, _env_float("PROVIDER_RETRY_BASE_SECONDS", 2.0)),
            retry_max_attempts=max(1, _env_int("PROVIDER_RETRY_MAX_ATTEMPTS", 6)),
            retry_jitter_seconds=max(0.0, _env_float("PROVIDER_RETRY_JITTER_SECONDS", 0.0)),
            synthesis_max_attempts=max(1, _env_int("SYNTHESIS_MAX_ATTEMPTS", 3)),
            synthesis_backoff_seconds=max(0.0, _env_float("SYNTHESIS_BACKOFF_SECONDS", 2.0)),
            grounding_top_k=max(1, _env_int("GROUNDING_TOP_K", 3)),
            artwork_enabled=_env_bool("ARTWORK_ENABLED", True),
        )
