from __future__ import annotations

import asyncio
import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

load_dotenv()

from job_store import NotebookNotFoundError, Storage
from modules import extractor
from modules.categorize import classify_notebook
from modules.episode_types import GenerationJob, Notebook, Source, new_id
from pipeline import GenerationOrchestrator, audio_filename
from schemas import (
    ChapterResponse,
    ChatRequest,
    ChatResponse,
    GeneratedMediaResponse,
    JobCreateRequest,
    JobCreateResponse,
    JobResult,
    JobStatusResponse,
    NotebookCreateRequest,
    NotebookResponse,
    NotificationResponse,
    SearchResponse,
    SearchResultResponse,
    SourceCreateRequest,
    SourceResponse,
    SummaryResponse,
    TranscriptLineResponse,
)

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("vaultcast")

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
AUDIO_DIR = os.environ.get("AUDIO_OUTPUT_DIR") or os.path.join(BASE_DIR, "audio_output")
os.makedirs(AUDIO_DIR, exist_ok=True)

app = FastAPI(
    title="Vaultcast API",
    description="Backend for Vaultcast: turning notebooks of sources into two-host audio episodes",
    version="0.1.0",
)

cors_origins_raw = os.environ.get("CORS_ALLOW_ORIGINS", "*").strip()
if cors_origins_raw == "*":
    allow_origins = ["*"]
else:
    allow_origins = [o.strip() for o in cors_origins_raw.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

storage = Storage()
orchestrator = GenerationOrchestrator(storage, export_dir=AUDIO_DIR)

app.mount("/audio", StaticFiles(directory=AUDIO_DIR), name="audio")


@app.exception_handler(NotebookNotFoundError)
async def _notebook_not_found(request: Request, exc: NotebookNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": "Notebook not found"})


async def _build_source(req: SourceCreateRequest) -> Source:
    title = req.title.strip()
    content = req.content
    if req.kind == "url" and req.url and not content.strip():
        page_title, content = await asyncio.to_thread(extractor.extract_full_text, req.url)
        if not content:
            raise HTTPException(status_code=422, detail="No readable content at that URL")
        title = title or page_title or req.url
    return Source(
        id=new_id(),
        kind=req.kind,
        title=title or "Untitled source",
        content=content,
        url=req.url,
    )


def _notebook_response(notebook: Notebook) -> NotebookResponse:
    return NotebookResponse(
        id=notebook.id,
        title=notebook.title,
        category=notebook.category,
        summary=notebook.summary,
        host_personality=notebook.host_personality,  # type: ignore[arg-type]
        sources=[
            SourceResponse(
                id=s.id,
                kind=s.kind,
                title=s.title,
                url=s.url,
                char_count=len(s.content),
                created_at=s.created_at,
            )
            for s in notebook.sources
        ],
        generated_media=[
            GeneratedMediaResponse(
                id=m.id,
                kind=m.kind,
                title=m.title,
                source_count=m.source_count,
                duration_ms=m.duration_ms,
                artwork_url=m.artwork_url,
                created_at=m.created_at,
            )
            for m in notebook.generated_media
        ],
        created_at=notebook.created_at,
    )


def _job_response(job: GenerationJob) -> JobStatusResponse:
    result: JobResult | None = None
    if job.audio is not None:
        filename = audio_filename(job.job_id)
        has_file = bool(job.audio.audio) and os.path.exists(os.path.join(AUDIO_DIR, filename))
        result = JobResult(
            audio_url=f"/audio/{filename}" if has_file else None,
            duration_ms=job.audio.duration_ms,
            sample_rate=job.audio.sample_rate,
            artwork_url=job.audio.artwork_url,
            chapters=[ChapterResponse(**vars(c)) for c in job.audio.chapters],
            transcript=[TranscriptLineResponse(**vars(t)) for t in job.audio.transcript],
        )
    return JobStatusResponse(
        job_id=job.job_id,
        notebook_id=job.notebook_id,
        state=job.state,  # type: ignore[arg-type]
        mode=job.mode,  # type: ignore[arg-type]
        progress=job.progress,
        personality=job.personality,  # type: ignore[arg-type]
        completed_chunks=job.completed_chunks,
        total_chunks=job.total_chunks,
        chapters=[ChapterResponse(**vars(c)) for c in job.chapters],
        created_at=job.created_at,
        updated_at=job.updated_at,
        result=result,
    )


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok", "storage": storage.backend}


@app.post("/notebooks", response_model=NotebookResponse)
async def create_notebook(req: NotebookCreateRequest) -> NotebookResponse:
    sources = [await _build_source(s) for s in req.sources]
    notebook = storage.notebooks.create(
        req.title.strip(),
        sources=sources,
        host_personality=req.host_personality,
        category=classify_notebook(req.title, [s.title for s in sources]),
    )
    logger.info("[api] notebook=%s created sources=%d category=%s", notebook.id, len(sources), notebook.category)
    return _notebook_response(notebook)


@app.get("/notebooks", response_model=list[NotebookResponse])
async def list_notebooks() -> list[NotebookResponse]:
    return [_notebook_response(n) for n in storage.notebooks.list_recent()]


@app.get("/notebooks/{notebook_id}", response_model=NotebookResponse)
async def get_notebook(notebook_id: str) -> NotebookResponse:
    return _notebook_response(storage.notebooks.require(notebook_id))


@app.post("/notebooks/{notebook_id}/sources", response_model=NotebookResponse)
async def add_source(notebook_id: str, req: SourceCreateRequest) -> NotebookResponse:
    storage.notebooks.require(notebook_id)
    source = await _build_source(req)
    notebook = storage.notebooks.add_source(notebook_id, source)
    category = classify_notebook(notebook.title, [s.title for s in notebook.sources])
    if category != notebook.category:
        notebook = storage.notebooks.set_category(notebook_id, category)
    logger.info("[api] notebook=%s source=%s kind=%s", notebook_id, source.id, source.kind)
    return _notebook_response(notebook)


@app.post("/notebooks/{notebook_id}/summary", response_model=SummaryResponse)
async def summarize_notebook(notebook_id: str) -> SummaryResponse:
    notebook = storage.notebooks.require(notebook_id)
    summary = await orchestrator.backend.generate_summary(notebook)
    storage.notebooks.set_summary(notebook_id, summary)
    return SummaryResponse(notebook_id=notebook_id, summary=summary)


@app.post("/notebooks/{notebook_id}/chat", response_model=ChatResponse)
async def chat(notebook_id: str, req: ChatRequest) -> ChatResponse:
    notebook = storage.notebooks.require(notebook_id)
    answer = await orchestrator.backend.generate_chat_answer(notebook, req.question)
    return ChatResponse(notebook_id=notebook_id, answer=answer)


@app.get("/search", response_model=SearchResponse)
async def search(q: str) -> SearchResponse:
    query = q.strip()
    if not query:
        raise HTTPException(status_code=422, detail="Query must not be empty")
    results = await orchestrator.backend.perform_web_search(query)
    return SearchResponse(
        query=query,
        items=[SearchResultResponse(title=r.title, url=r.url) for r in results],
    )


@app.post("/notebooks/{notebook_id}/jobs", response_model=JobCreateResponse)
async def start_job(notebook_id: str, req: JobCreateRequest | None = None) -> JobCreateResponse:
    personality = req.personality if req is not None else None
    job_id = orchestrator.start_job(notebook_id, personality)
    job = orchestrator.get_job(notebook_id)
    if job is None:
        raise HTTPException(status_code=404, detail="No generation job for this notebook")
    return JobCreateResponse(
        job_id=job_id,
        notebook_id=notebook_id,
        state=job.state,  # type: ignore[arg-type]
        created_at=job.created_at,
    )


@app.get("/notebooks/{notebook_id}/job", response_model=JobStatusResponse)
async def get_job(notebook_id: str) -> JobStatusResponse:
    storage.notebooks.require(notebook_id)
    job = orchestrator.get_job(notebook_id)
    if job is None:
        raise HTTPException(status_code=404, detail="No generation job for this notebook")
    return _job_response(job)


@app.get("/notifications", response_model=list[NotificationResponse])
async def notifications() -> list[NotificationResponse]:
    return [NotificationResponse(**n) for n in orchestrator.drain_notifications()]


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=os.environ.get("HOST", "127.0.0.1"),
        port=int(os.environ.get("PORT", "8000")),
    )
