from __future__ import annotations

import asyncio
import logging
import os
from functools import partial
from threading import Lock
from typing import Any, Callable

from job_store import TERMINAL_STATES, Storage
from modules.assembler import export_wav, merge, pcm_duration_ms, silent_chunk, total_duration_ms
from modules.backend import GenerationBackend
from modules.episode_types import (
    PERSONALITIES,
    AudioChapter,
    AudioResult,
    GeneratedMedia,
    GenerationConfig,
    GenerationJob,
    Notebook,
    Outline,
    ScriptSegment,
    TranscriptSegment,
)
from modules.errors import ProviderError, classify, is_transient
from modules.fallback import SEGMENT_WINDOW_MS, generate_local_outline, generate_local_script_chunk
from modules.grounding import NO_RELEVANT_SOURCE, format_source_blocks, select_grounding

logger = logging.getLogger(__name__)

PROGRESS_QUEUED = 0.05
PROGRESS_PREFLIGHT = 0.10
PROGRESS_OUTLINING = 0.15
SEGMENT_BAND = (0.20, 0.90)
PROGRESS_FINALIZING = 0.95

MIN_SILENT_MS = 1_000
OUTLINE_GROUNDING_K = 10
OUTLINE_GROUNDING_CHARS = 2_000
SCRIPT_GROUNDING_CHARS = 8_000

NOTIFICATION_TITLE = "Sync Complete"
NOTIFICATION_BODY = "Audio overview is ready."

JobListener = Callable[[GenerationJob], None]


def audio_filename(job_id: str) -> str:
    return f"{job_id}.wav"


def _segment_band(index: int, total: int) -> tuple[float, float]:
    low, high = SEGMENT_BAND
    width = (high - low) / max(1, total)
    start = low + index * width
    return start, start + width


def _span_ms(transcript: list[TranscriptSegment]) -> int:
    if not transcript:
        return 0
    return max(seg.end_ms for seg in transcript) - min(seg.start_ms for seg in transcript)


def place_on_timeline(
    transcript: list[TranscriptSegment],
    cursor_ms: int,
    duration_ms: int,
) -> list[TranscriptSegment]:
    """
    Map a segment's lines onto [cursor_ms, cursor_ms + duration_ms].

    Offsets are scaled down when the script claims more time than its audio
    lasts. Turns never overlap and never run past the segment's audio.
    """
    if not transcript:
        return []
    base = min(seg.start_ms for seg in transcript)
    span = max(seg.end_ms for seg in transcript) - base
    squeeze = span > duration_ms > 0
    limit = cursor_ms + max(0, duration_ms)
    placed: list[TranscriptSegment] = []
    previous_end = cursor_ms
    for seg in transcript:
        rel_start, rel_end = seg.start_ms - base, seg.end_ms - base
        if squeeze:
            rel_start, rel_end = rel_start * duration_ms // span, rel_end * duration_ms // span
        start = min(max(previous_end, cursor_ms + rel_start), limit)
        end = min(max(start, cursor_ms + rel_end), limit)
        placed.append(TranscriptSegment(speaker=seg.speaker, text=seg.text, start_ms=start, end_ms=end))
        previous_end = end
    return placed


def initial_chapters(outline: Outline) -> list[AudioChapter]:
    chapters: list[AudioChapter] = []
    for segment in outline.segments:
        title = segment.topics[0] if segment.topics else f"Part {segment.index + 1}"
        chapters.append(
            AudioChapter(
                title=title,
                start_ms=segment.index * SEGMENT_WINDOW_MS,
                end_ms=(segment.index + 1) * SEGMENT_WINDOW_MS,
                summary=", ".join(segment.topics),
            )
        )
    return chapters


class GenerationOrchestrator:
    """
    Owns the per-notebook generation job.

    One asyncio task per notebook drives outline -> (script, speech) per
    segment -> assembly. Provider trouble only ever lowers the job's mode;
    every job ends READY.
    """

    def __init__(
        self,
        storage: Storage,
        backend: GenerationBackend | None = None,
        config: GenerationConfig | None = None,
        export_dir: str | None = None,
    ) -> None:
        self.storage = storage
        self.export_dir = export_dir
        if config is None:
            config = backend.config if backend is not None else GenerationConfig.from_env()
        self.config = config
        self.backend = backend or GenerationBackend(config=config)
        self._tasks: dict[str, asyncio.Task[Any]] = {}
        self._listeners: list[JobListener] = []
        self._notifications: list[dict[str, str]] = []
        self._notify_lock = Lock()

    # -- observers -----------------------------------------------------------

    def subscribe(self, listener: JobListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _publish(self, snapshot: GenerationJob) -> GenerationJob:
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("[pipeline] job=%s listener failed", snapshot.job_id)
        return snapshot

    def drain_notifications(self) -> list[dict[str, str]]:
        with self._notify_lock:
            pending = list(self._notifications)
            self._notifications.clear()
        return pending

    # -- public entry points -------------------------------------------------

    def get_job(self, notebook_id: str) -> GenerationJob | None:
        return self.storage.jobs.get(notebook_id)

    def is_running(self, notebook_id: str) -> bool:
        task = self._tasks.get(notebook_id)
        return task is not None and not task.done()

    def start_job(self, notebook_id: str, personality: str | None = None) -> str:
        notebook = self.storage.notebooks.require(notebook_id)
        current = self.storage.jobs.peek(notebook_id)

        if current is not None and self.is_running(notebook_id):
            logger.info("[pipeline] job=%s notebook=%s already_running", current.job_id, notebook_id)
            return current.job_id

        if current is not None and current.state not in TERMINAL_STATES:
            job_id = current.job_id
            logger.info(
                "[pipeline] job=%s notebook=%s resume state=%s completed=%d/%d",
                job_id,
                notebook_id,
                current.state,
                current.completed_chunks,
                current.total_chunks,
            )
        else:
            chosen = personality or notebook.host_personality or "neutral"
            if chosen not in PERSONALITIES:
                raise ValueError(f"unknown personality: {chosen}")
            created = self.storage.jobs.create(notebook_id, chosen)
            job_id = created.job_id
            logger.info("[pipeline] job=%s notebook=%s created personality=%s", job_id, notebook_id, chosen)
            self._publish(created)

        task = asyncio.create_task(self.run_job(notebook_id))
        self._tasks[notebook_id] = task
        task.add_done_callback(partial(self._on_task_done, job_id))
        return job_id

    async def wait_for_job(self, notebook_id: str) -> GenerationJob | None:
        task = self._tasks.get(notebook_id)
        if task is not None:
            await task
        return self.get_job(notebook_id)

    def _on_task_done(self, job_id: str, task: asyncio.Task[Any]) -> None:
        if task.cancelled():
            logger.warning("[pipeline] job=%s task=cancelled", job_id)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[pipeline] job=%s task=crashed error=%r", job_id, exc)

    async def run_job(self, notebook_id: str) -> GenerationJob:
        job = self.storage.jobs.peek(notebook_id)
        if job is None:
            raise KeyError(notebook_id)
        if job.is_ready:
            return self.storage.jobs.get(notebook_id)  # type: ignore[return-value]
        job_id = job.job_id
        try:
            return await self._drive(notebook_id, job_id)
        except Exception:
            logger.exception("[pipeline] job=%s unexpected failure, finalizing with committed segments", job_id)
            await self._recover(notebook_id, job_id)
            raise

    # -- state helpers -------------------------------------------------------

    def _set(self, notebook_id: str, job_id: str, state: str, progress: float | None = None) -> GenerationJob:
        snapshot = self.storage.jobs.transition(notebook_id, state, progress=progress, job_id=job_id)
        logger.debug("[pipeline] job=%s state=%s progress=%.2f", job_id, snapshot.state, snapshot.progress)
        return self._publish(snapshot)

    def _degrade(self, notebook_id: str, job_id: str, mode: str) -> GenerationJob:
        before = self.storage.jobs.peek(notebook_id)
        snapshot = self.storage.jobs.degrade(notebook_id, mode, job_id=job_id)
        if before is not None and before.mode != snapshot.mode:
            logger.info("[pipeline] job=%s mode=%s->%s", job_id, before.mode, snapshot.mode)
        return self._publish(snapshot)

    def _current(self, notebook_id: str) -> GenerationJob:
        job = self.storage.jobs.peek(notebook_id)
        if job is None:
            raise KeyError(notebook_id)
        return job

    def _pause_hook(self, notebook_id: str, job_id: str) -> Callable[[BaseException, int, float], None]:
        def _on_wait(exc: BaseException, attempt: int, delay: float) -> None:
            logger.info("[pipeline] job=%s quota_paused attempt=%d wait=%.2fs", job_id, attempt, delay)
            self._set(notebook_id, job_id, "QUOTA_PAUSED")

        return _on_wait

    def _downgrade(self, notebook_id: str, job_id: str, exc: ProviderError, *, stage: str) -> None:
        verdict = classify(exc)
        logger.warning(
            "[pipeline] job=%s stage=%s provider_failure transient=%s reason=%s fallback=local",
            job_id,
            stage,
            verdict.transient,
            verdict.reason,
        )
        if verdict.transient:
            self._set(notebook_id, job_id, "QUOTA_BLOCKED")
        self._set(notebook_id, job_id, "OPTIMIZING")
        self._degrade(notebook_id, job_id, "OPTIMIZED")

    # -- stages --------------------------------------------------------------

    async def _drive(self, notebook_id: str, job_id: str) -> GenerationJob:
        job = self._current(notebook_id)
        if job.state == "QUEUED":
            self._set(notebook_id, job_id, "QUEUED", PROGRESS_QUEUED)
            self._set(notebook_id, job_id, "PREFLIGHT", PROGRESS_PREFLIGHT)
        else:
            logger.info("[pipeline] job=%s resuming_from=%s", job_id, job.state)

        notebook = self.storage.notebooks.require(notebook_id)
        if not notebook.sources:
            logger.info("[pipeline] job=%s notebook=%s sources=0 using local writer", job_id, notebook_id)
            self._degrade(notebook_id, job_id, "OPTIMIZED")

        outline = self._current(notebook_id).outline
        if outline is None:
            outline = await self._build_outline(notebook, job_id)

        start = self._current(notebook_id).completed_chunks
        for index in range(start, len(outline.segments)):
            await self._run_segment(notebook, outline, index, job_id)

        return await self._finalize(notebook_id, job_id)

    def _outline_grounding(self, notebook: Notebook) -> str:
        query = " ".join([notebook.title, *[s.title for s in notebook.sources]])
        grounding = select_grounding(
            notebook,
            query,
            k=OUTLINE_GROUNDING_K,
            max_chars_per_source=OUTLINE_GROUNDING_CHARS,
        )
        if grounding == NO_RELEVANT_SOURCE and notebook.sources:
            # The outline has to cover the whole notebook even when titles share no terms with content.
            return format_source_blocks(notebook.sources[:OUTLINE_GROUNDING_K], OUTLINE_GROUNDING_CHARS)
        return grounding

    async def _build_outline(self, notebook: Notebook, job_id: str) -> Outline:
        self._set(notebook.id, job_id, "OUTLINING", PROGRESS_OUTLINING)
        outline: Outline | None = None
        if self._current(notebook.id).mode == "PRIMARY":
            try:
                outline = await self.backend.generate_outline(
                    notebook,
                    self._outline_grounding(notebook),
                    on_wait=self._pause_hook(notebook.id, job_id),
                )
            except ProviderError as exc:
                self._downgrade(notebook.id, job_id, exc, stage="outline")
        if outline is None:
            outline = generate_local_outline(notebook)
        snapshot = self.storage.jobs.set_outline(
            notebook.id,
            outline,
            initial_chapters(outline),
            job_id=job_id,
        )
        logger.info(
            "[pipeline] job=%s outline=%s segments=%d",
            job_id,
            outline.origin,
            snapshot.total_chunks,
        )
        self._publish(snapshot)
        return outline

    async def _run_segment(self, notebook: Notebook, outline: Outline, index: int, job_id: str) -> None:
        low, high = _segment_band(index, len(outline.segments))
        self._set(notebook.id, job_id, "SCRIPTING", low)
        segment = await self._write_segment(notebook, outline, index, job_id)

        self._set(notebook.id, job_id, "SYNTHESIZING", low + (high - low) / 2)
        audio = await self._synthesize_segment(notebook.id, job_id, index, segment)

        # Chapter offsets are positions in the merged audio.
        committed = self._current(notebook.id).partial_audio_buffers
        cursor = total_duration_ms(committed)
        end = total_duration_ms([*committed, audio])
        placed = place_on_timeline(segment.transcript, cursor, end - cursor)
        snapshot = self.storage.jobs.commit_chunk(
            notebook.id,
            index,
            audio,
            placed,
            start_ms=cursor,
            end_ms=end,
            progress=high,
            job_id=job_id,
        )
        logger.info(
            "[pipeline] job=%s segment=%d committed=%d/%d mode=%s",
            job_id,
            index,
            snapshot.completed_chunks,
            snapshot.total_chunks,
            snapshot.mode,
        )
        self._publish(snapshot)

    async def _write_segment(self, notebook: Notebook, outline: Outline, index: int, job_id: str) -> ScriptSegment:
        job = self._current(notebook.id)
        if job.mode == "PRIMARY":
            grounding = select_grounding(
                notebook,
                outline.segments[index].topics,
                k=self.config.grounding_top_k,
                max_chars_per_source=SCRIPT_GROUNDING_CHARS,
            )
            try:
                return await self.backend.generate_script_segment(
                    notebook,
                    outline,
                    index,
                    job.personality,
                    grounding,
                    on_wait=self._pause_hook(notebook.id, job_id),
                )
            except ProviderError as exc:
                self._downgrade(notebook.id, job_id, exc, stage=f"script[{index}]")
        return generate_local_script_chunk(notebook, outline, index)

    async def _synthesize_segment(
        self,
        notebook_id: str,
        job_id: str,
        index: int,
        segment: ScriptSegment,
    ) -> str:
        silence_ms = max(MIN_SILENT_MS, _span_ms(segment.transcript))
        if self._current(notebook_id).mode == "FAILSAFE":
            return silent_chunk(silence_ms)

        attempts = self.config.synthesis_max_attempts
        last_error: ProviderError | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await self.backend.synthesize_speech(
                    segment.script,
                    on_wait=self._pause_hook(notebook_id, job_id),
                )
            except ProviderError as exc:
                last_error = exc
                logger.warning(
                    "[pipeline] job=%s segment=%d speech attempt=%d/%d reason=%s",
                    job_id,
                    index,
                    attempt,
                    attempts,
                    classify(exc).reason,
                )
                if attempt < attempts:
                    self._set(notebook_id, job_id, "OPTIMIZING")
                    await asyncio.sleep(self.config.synthesis_backoff_seconds)
                    self._set(notebook_id, job_id, "SYNTHESIZING")

        if last_error is not None and is_transient(last_error):
            self._set(notebook_id, job_id, "QUOTA_BLOCKED")
            self._degrade(notebook_id, job_id, "FAILSAFE")
        else:
            self._set(notebook_id, job_id, "OPTIMIZING")
        logger.warning("[pipeline] job=%s segment=%d speech=silent duration_ms=%d", job_id, index, silence_ms)
        return silent_chunk(silence_ms)

    async def _finalize(self, notebook_id: str, job_id: str) -> GenerationJob:
        self._set(notebook_id, job_id, "FINALIZING", PROGRESS_FINALIZING)
        job = self._current(notebook_id)
        audio = merge(job.partial_audio_buffers)

        artwork_url: str | None = None
        notebook = self.storage.notebooks.get(notebook_id)
        if notebook is not None and job.mode != "FAILSAFE" and self.config.artwork_enabled:
            artwork_url = await self.backend.generate_artwork(notebook)

        result = AudioResult(
            audio=audio,
            chapters=job.chapters[: job.completed_chunks],
            transcript=job.partial_transcript,
            artwork_url=artwork_url,
            duration_ms=pcm_duration_ms(audio),
        )
        if audio and self.export_dir:
            await self._export(job_id, audio)
        ready = self.storage.jobs.mark_ready(notebook_id, result, job_id=job_id)
        logger.info(
            "[pipeline] job=%s state=READY mode=%s segments=%d/%d duration_ms=%d",
            job_id,
            ready.mode,
            ready.completed_chunks,
            ready.total_chunks,
            result.duration_ms,
        )
        self._publish(ready)
        if audio and notebook is not None:
            self._announce(notebook, ready, result)
        return ready

    def audio_path(self, job_id: str) -> str | None:
        if not self.export_dir:
            return None
        return os.path.join(self.export_dir, audio_filename(job_id))

    async def _export(self, job_id: str, audio: str) -> None:
        path = self.audio_path(job_id)
        if path is None:
            return
        try:
            # soundfile writes the whole episode; keep it off the event loop.
            await asyncio.to_thread(export_wav, audio, path)
            logger.info("[pipeline] job=%s audio_exported=%s", job_id, path)
        except Exception as exc:
            logger.warning("[pipeline] job=%s audio_export_failed error=%s", job_id, exc)

    def _announce(self, notebook: Notebook, job: GenerationJob, result: AudioResult) -> None:
        self.storage.notebooks.add_generated_media(
            notebook.id,
            GeneratedMedia(
                id=job.job_id,
                kind="AUDIO",
                title=f"Deep Narrative: {notebook.title}",
                source_count=len(notebook.sources),
                duration_ms=result.duration_ms,
                artwork_url=result.artwork_url,
            ),
        )
        with self._notify_lock:
            self._notifications.append(
                {
                    "title": NOTIFICATION_TITLE,
                    "body": NOTIFICATION_BODY,
                    "notebook_id": notebook.id,
                }
            )

    async def _recover(self, notebook_id: str, job_id: str) -> None:
        current = self.storage.jobs.peek(notebook_id)
        if current is None or current.job_id != job_id or current.state in TERMINAL_STATES:
            return
        try:
            self._set(notebook_id, job_id, "FAILED")
            self._degrade(notebook_id, job_id, "FAILSAFE")
            await self._finalize(notebook_id, job_id)
        except Exception:
            logger.exception("[pipeline] job=%s finalize after failure also failed, closing with empty audio", job_id)
            current = self._current(notebook_id)
            if current.state in TERMINAL_STATES:
                return
            if current.state != "FAILED":
                self._set(notebook_id, job_id, "FAILED")
            empty = AudioResult(
                audio="",
                chapters=current.chapters[: current.completed_chunks],
                transcript=current.partial_transcript,
            )
            self._publish(self.storage.jobs.mark_ready(notebook_id, empty, job_id=job_id))
