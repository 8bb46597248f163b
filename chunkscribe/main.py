import asyncio
import logging
import os
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

import anyio
import uvicorn
from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse, StreamingResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from starlette.background import BackgroundTask

from chunkscribe import __version__, config
from chunkscribe.errors import PipelineError, ValidationError
from chunkscribe.pipeline import CancelToken, run_transcription
from chunkscribe.progress import ErrorEvent, Event, stream_events
from chunkscribe.sources import accepted_extensions, save_stream, validate_extension
from chunkscribe.transcription import TranscriptionOptions, ensure_transcription_ready
from chunkscribe.workspace import Workspace

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="[chunkscribe] %(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("chunkscribe")

STREAM_MEDIA_TYPE = "text/event-stream"
STREAM_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}

app = FastAPI(title=config.APP_TITLE, version=__version__)
templates = Jinja2Templates(directory=str(config.TEMPLATES_DIR))
app.mount("/assets", StaticFiles(directory=str(config.ASSETS_DIR)), name="assets")


def template_context(request: Request, **kwargs: Any) -> Dict[str, Any]:
    context = {
        "request": request,
        "app_name": config.APP_TITLE,
        "app_version": __version__,
    }
    context.update(kwargs)
    return context


def build_options(
    api_key: Optional[str],
    model: Optional[str],
    language: Optional[str],
    prompt: Optional[str],
) -> TranscriptionOptions:
    overrides: Dict[str, Any] = {"api_key": (api_key or "").strip() or None}
    if model and model.strip():
        overrides["model"] = model.strip()
    if language and language.strip():
        overrides["language"] = language.strip().lower()
    if prompt and prompt.strip():
        overrides["prompt"] = prompt.strip()
    return TranscriptionOptions(**overrides)


async def _single_event(event: Event) -> AsyncIterator[Event]:
    yield event


async def _watch_disconnect(
    request: Request, token: CancelToken, events: AsyncIterator[Event]
) -> AsyncIterator[Event]:
    """Relay pipeline events, flagging cancellation once the client leaves."""

    async def watch() -> None:
        while not token.cancelled:
            if await request.is_disconnected():
                logger.info("Cliente desconectado, cancelando la transcripción")
                token.cancel()
                return
            await asyncio.sleep(config.DISCONNECT_POLL_SECONDS)

    watcher = asyncio.create_task(watch())
    try:
        async for event in events:
            yield event
    finally:
        watcher.cancel()
        with anyio.CancelScope(shield=True):
            await events.aclose()


def event_stream_response(
    events: AsyncIterator[Event], background: Optional[BackgroundTask] = None
) -> StreamingResponse:
    return StreamingResponse(
        stream_events(events),
        media_type=STREAM_MEDIA_TYPE,
        headers=STREAM_HEADERS,
        background=background,
    )


@app.get("/", response_class=HTMLResponse)
async def index(request: Request) -> HTMLResponse:
    return templates.TemplateResponse(
        request,
        "index.html",
        template_context(
            request,
            formats=sorted(accepted_extensions()),
            default_model=config.TRANSCRIPTION_MODEL,
            default_language=config.TRANSCRIPTION_LANGUAGE or "",
            api_key_required=config.TRANSCRIPTION_BACKEND == "openai",
        ),
    )


@app.get("/api/health")
async def health() -> Dict[str, str]:
    return {"status": "ok", "version": __version__, "backend": config.TRANSCRIPTION_BACKEND}


@app.post("/api/transcribe")
@app.post("/transcribe", include_in_schema=False)
async def transcribe_endpoint(
    request: Request,
    file: Optional[UploadFile] = File(None),
    url: Optional[str] = Form(None),
    api_key: Optional[str] = Form(None, alias="apiKey"),
    model: Optional[str] = Form(None),
    language: Optional[str] = Form(None),
    prompt: Optional[str] = Form(None),
) -> StreamingResponse:
    """Transcribe an upload or a URL, streaming one JSON line per chunk.

    Problems are reported inside the stream as ``{"error": ...}`` records;
    the HTTP status is always 200.
    """
    workspace: Optional[Workspace] = None
    source_path: Optional[Path] = None
    url_value = (url or "").strip()
    has_file = file is not None and bool(file.filename)
    try:
        if has_file == bool(url_value):
            raise ValidationError("Incluye un archivo o una URL (solo uno de los dos)")
        options = build_options(api_key, model, language, prompt)
        ensure_transcription_ready(options)
        if has_file:
            extension = validate_extension(file.filename)
        workspace = Workspace()
        if has_file:
            source_path = workspace.file(f"source.{extension}")
            workspace.source_path = source_path
            await run_in_threadpool(save_stream, file.file, source_path)
    except PipelineError as exc:
        logger.info("Solicitud rechazada (%s): %s", exc.code, exc.message)
        if workspace is not None:
            workspace.cleanup()
        return event_stream_response(_single_event(ErrorEvent.from_exception(exc)))
    finally:
        if file is not None:
            await file.close()

    token = CancelToken()
    events = run_transcription(
        workspace,
        options,
        source_path=source_path,
        url=url_value or None,
        cancel_token=token,
    )
    return event_stream_response(
        _watch_disconnect(request, token, events),
        # Covers streams that are dropped before the pipeline starts.
        background=BackgroundTask(workspace.cleanup),
    )


def run() -> None:
    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run()
