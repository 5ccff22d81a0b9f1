from __future__ import annotations

import copy
import logging
from dataclasses import replace
from threading import Lock
from typing import Iterable

from modules.episode_types import (
    MODE_ORDER,
    AudioChapter,
    AudioResult,
    GeneratedMedia,
    GenerationJob,
    Notebook,
    Outline,
    Source,
    TranscriptSegment,
    new_id,
    utc_now,
)

logger = logging.getLogger(__name__)

_WORKING = {"OUTLINING", "SCRIPTING", "SYNTHESIZING", "OPTIMIZING", "QUOTA_PAUSED", "QUOTA_BLOCKED", "FINALIZING"}

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "QUEUED": {"PREFLIGHT", "FAILED"},
    "PREFLIGHT": {"OUTLINING", "OPTIMIZING", "FAILED"},
    "OUTLINING": {"SCRIPTING", "OPTIMIZING", "QUOTA_PAUSED", "QUOTA_BLOCKED", "FINALIZING", "FAILED"},
    "SCRIPTING": {"SYNTHESIZING", "OPTIMIZING", "QUOTA_PAUSED", "QUOTA_BLOCKED", "FAILED"},
    "SYNTHESIZING": {"SCRIPTING", "OPTIMIZING", "QUOTA_PAUSED", "QUOTA_BLOCKED", "FINALIZING", "FAILED"},
    "OPTIMIZING": _WORKING | {"FAILED"},
    "QUOTA_PAUSED": _WORKING | {"FAILED"},
    "QUOTA_BLOCKED": _WORKING | {"FAILED"},
    "FINALIZING": {"READY", "FAILED"},
    "FAILED": _WORKING | {"READY"},
    "READY": set(),
}

TERMINAL_STATES = {"READY"}


class InvalidTransitionError(RuntimeError):
    pass


class JobFrozenError(RuntimeError):
    pass


class NotebookNotFoundError(LookupError):
    pass


def public_view(job: GenerationJob) -> GenerationJob:
    """Snapshot safe to hand to observers: FAILED is never published."""
    snapshot = copy.deepcopy(job)
    if snapshot.state == "FAILED":
        snapshot.state = "OPTIMIZING"
    return snapshot


class InMemoryJobStore:
    """
    Generation jobs keyed by notebook id.

    At most one current job per notebook; a replaced job moves to the
    notebook's history. Every mutation happens under one lock and touches a
    single entry. A READY job refuses all further mutation.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._jobs: dict[str, GenerationJob] = {}
        self._history: dict[str, list[GenerationJob]] = {}

    def create(self, notebook_id: str, personality: str) -> GenerationJob:
        job = GenerationJob(job_id=new_id(), notebook_id=notebook_id, personality=personality)
        with self._lock:
            previous = self._jobs.get(notebook_id)
            if previous is not None:
                self._history.setdefault(notebook_id, []).append(previous)
            self._jobs[notebook_id] = job
            return public_view(job)

    def put(self, job: GenerationJob) -> None:
        with self._lock:
            self._jobs[job.notebook_id] = copy.deepcopy(job)

    def get(self, notebook_id: str) -> GenerationJob | None:
        with self._lock:
            job = self._jobs.get(notebook_id)
            return public_view(job) if job is not None else None

    def peek(self, notebook_id: str) -> GenerationJob | None:
        """Internal copy, including the FAILED signal."""
        with self._lock:
            job = self._jobs.get(notebook_id)
            return copy.deepcopy(job) if job is not None else None

    def history(self, notebook_id: str) -> list[GenerationJob]:
        with self._lock:
            return [public_view(j) for j in self._history.get(notebook_id, [])]

    def _mutable(self, notebook_id: str, job_id: str | None) -> GenerationJob:
        job = self._jobs.get(notebook_id)
        if job is None:
            raise KeyError(notebook_id)
        if job_id is not None and job.job_id != job_id:
            raise JobFrozenError(f"job {job_id} was superseded by {job.job_id}")
        if job.state in TERMINAL_STATES:
            raise JobFrozenError(f"job {job.job_id} is {job.state}")
        return job

    @staticmethod
    def _advance(job: GenerationJob, progress: float | None) -> None:
        if progress is not None:
            job.progress = min(1.0, max(job.progress, float(progress)))
        job.updated_at = utc_now()

    def transition(
        self,
        notebook_id: str,
        state: str,
        *,
        progress: float | None = None,
        job_id: str | None = None,
    ) -> GenerationJob:
        with self._lock:
            job = self._mutable(notebook_id, job_id)
            if state != job.state:
                if state not in ALLOWED_TRANSITIONS.get(job.state, set()):
                    raise InvalidTransitionError(f"{job.state} -> {state} (job={job.job_id})")
                job.state = state
            self._advance(job, progress)
            return public_view(job)

    def degrade(self, notebook_id: str, mode: str, *, job_id: str | None = None) -> GenerationJob:
        with self._lock:
            job = self._mutable(notebook_id, job_id)
            if MODE_ORDER[mode] > MODE_ORDER[job.mode]:
                job.mode = mode
            self._advance(job, None)
            return public_view(job)

    def set_outline(
        self,
        notebook_id: str,
        outline: Outline,
        chapters: list[AudioChapter],
        *,
        job_id: str | None = None,
    ) -> GenerationJob:
        with self._lock:
            job = self._mutable(notebook_id, job_id)
            if job.outline is not None:
                raise InvalidTransitionError(f"outline already set (job={job.job_id})")
            job.outline = copy.deepcopy(outline)
            job.total_chunks = len(outline.segments)
            job.chapters = copy.deepcopy(chapters)
            self._advance(job, None)
            return public_view(job)

    def commit_chunk(
        self,
        notebook_id: str,
        index: int,
        audio_chunk: str,
        transcript: Iterable[TranscriptSegment],
        *,
        start_ms: int,
        end_ms: int,
        progress: float | None = None,
        job_id: str | None = None,
    ) -> GenerationJob:
        with self._lock:
            job = self._mutable(notebook_id, job_id)
            if index != job.completed_chunks or job.completed_chunks >= job.total_chunks:
                raise InvalidTransitionError(
                    f"commit of segment {index} with {job.completed_chunks}/{job.total_chunks} done"
                )
            job.partial_audio_buffers.append(audio_chunk)
            job.partial_transcript.extend(copy.deepcopy(list(transcript)))
            job.completed_chunks += 1
            if index < len(job.chapters):
                job.chapters[index] = replace(job.chapters[index], start_ms=start_ms, end_ms=end_ms)
            self._advance(job, progress)
            return public_view(job)

    def mark_ready(
        self,
        notebook_id: str,
        audio: AudioResult,
        *,
        job_id: str | None = None,
    ) -> GenerationJob:
        with self._lock:
            job = self._mutable(notebook_id, job_id)
            if "READY" not in ALLOWED_TRANSITIONS.get(job.state, set()):
                raise InvalidTransitionError(f"{job.state} -> READY (job={job.job_id})")
            job.audio = copy.deepcopy(audio)
            job.state = "READY"
            self._advance(job, 1.0)
            return public_view(job)


class InMemoryNotebookStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._notebooks: dict[str, Notebook] = {}

    def create(
        self,
        title: str,
        *,
        sources: Iterable[Source] = (),
        host_personality: str = "neutral",
        category: str = "general",
    ) -> Notebook:
        notebook = Notebook(
            id=new_id(),
            title=title,
            sources=list(sources),
            host_personality=host_personality,
            category=category,
        )
        with self._lock:
            self._notebooks[notebook.id] = notebook
            return copy.deepcopy(notebook)

    def get(self, notebook_id: str) -> Notebook | None:
        with self._lock:
            notebook = self._notebooks.get(notebook_id)
            return copy.deepcopy(notebook) if notebook is not None else None

    def require(self, notebook_id: str) -> Notebook:
        notebook = self.get(notebook_id)
        if notebook is None:
            raise NotebookNotFoundError(notebook_id)
        return notebook

    def list_recent(self) -> list[Notebook]:
        with self._lock:
            notebooks = [copy.deepcopy(n) for n in self._notebooks.values()]
        notebooks.sort(key=lambda n: n.created_at, reverse=True)
        return notebooks

    def _existing(self, notebook_id: str) -> Notebook:
        notebook = self._notebooks.get(notebook_id)
        if notebook is None:
            raise NotebookNotFoundError(notebook_id)
        return notebook

    def add_source(self, notebook_id: str, source: Source) -> Notebook:
        with self._lock:
            notebook = self._existing(notebook_id)
            # Replace the list so snapshots handed out earlier stay untouched.
            notebook.sources = [*notebook.sources, source]
            return copy.deepcopy(notebook)

    def set_category(self, notebook_id: str, category: str) -> Notebook:
        with self._lock:
            notebook = self._existing(notebook_id)
            notebook.category = category
            return copy.deepcopy(notebook)

    def set_summary(self, notebook_id: str, summary: str) -> Notebook:
        with self._lock:
            notebook = self._existing(notebook_id)
            notebook.summary = summary
            return copy.deepcopy(notebook)

    def add_generated_media(self, notebook_id: str, media: GeneratedMedia) -> Notebook:
        with self._lock:
            notebook = self._existing(notebook_id)
            notebook.generated_media = [*notebook.generated_media, media]
            return copy.deepcopy(notebook)


class Storage:
    """
    Primary data access layer.
    - Notebooks and generation jobs live in keyed in-memory stores.
    - A persistent store can replace either one behind the same methods.
    """

    def __init__(self) -> None:
        self.notebooks = InMemoryNotebookStore()
        self.jobs = InMemoryJobStore()
        logger.info("[storage] backend=%s", self.backend)

    @property
    def backend(self) -> str:
        return "in-memory"
