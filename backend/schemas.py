from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

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
]
GenerationMode = Literal["PRIMARY", "OPTIMIZED", "FAILSAFE"]
Personality = Literal["neutral", "curious", "analytical", "warm", "debate", "visionary"]
SourceKind = Literal["text", "url", "document"]


class SourceCreateRequest(BaseModel):
    kind: SourceKind = "text"
    title: str = Field(default="", max_length=200)
    content: str = Field(default="", max_length=500_000)
    url: str | None = Field(default=None, max_length=2048)

    @model_validator(mode="after")
    def _check_payload(self) -> "SourceCreateRequest":
        if self.kind == "url":
            if not self.url:
                raise ValueError("url sources need a url")
            if not self.url.startswith(("http://", "https://")):
                raise ValueError("url must start with http:// or https://")
        elif not self.content.strip():
            raise ValueError(f"{self.kind} sources need content")
        return self


class SourceResponse(BaseModel):
    id: str
    kind: SourceKind
    title: str
    url: str | None = None
    char_count: int
    created_at: datetime


class GeneratedMediaResponse(BaseModel):
    id: str
    kind: str
    title: str
    source_count: int
    duration_ms: int
    artwork_url: str | None = None
    created_at: datetime


class NotebookCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    host_personality: Personality = "neutral"
    sources: list[SourceCreateRequest] = Field(default_factory=list, max_length=50)


class NotebookResponse(BaseModel):
    id: str
    title: str
    category: str
    summary: str = ""
    host_personality: Personality
    sources: list[SourceResponse] = Field(default_factory=list)
    generated_media: list[GeneratedMediaResponse] = Field(default_factory=list)
    created_at: datetime


class JobCreateRequest(BaseModel):
    personality: Personality | None = None


class JobCreateResponse(BaseModel):
    job_id: str
    notebook_id: str
    state: JobState
    created_at: datetime


class TranscriptLineResponse(BaseModel):
    speaker: Literal["Alex", "Jordan"]
    text: str
    start_ms: int
    end_ms: int


class ChapterResponse(BaseModel):
    title: str
    start_ms: int
    end_ms: int
    summary: str = ""


class JobResult(BaseModel):
    audio_url: str | None = None
    duration_ms: int = 0
    sample_rate: int
    artwork_url: str | None = None
    chapters: list[ChapterResponse] = Field(default_factory=list)
    transcript: list[TranscriptLineResponse] = Field(default_factory=list)


class JobStatusResponse(BaseModel):
    job_id: str
    notebook_id: str
    state: JobState
    mode: GenerationMode
    progress: float = Field(ge=0.0, le=1.0)
    personality: Personality
    completed_chunks: int
    total_chunks: int
    chapters: list[ChapterResponse] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    result: JobResult | None = None


class SummaryResponse(BaseModel):
    notebook_id: str
    summary: str


class ChatRequest(BaseModel):
    question: str = Field(min_length=1, max_length=4000)


class ChatResponse(BaseModel):
    notebook_id: str
    answer: str


class SearchResultResponse(BaseModel):
    title: str
    url: str


class SearchResponse(BaseModel):
    query: str
    items: list[SearchResultResponse]


class NotificationResponse(BaseModel):
    title: str
    body: str
    notebook_id: str
