import asyncio
import inspect
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Sequence, Union

import anyio
from fastapi.concurrency import run_in_threadpool

from chunkscribe import config
from chunkscribe.errors import (
    PipelineError,
    ProbeError,
    RequestCancelled,
    TranscriptionAPIError,
)
from chunkscribe.media import (
    MediaInfo,
    extract_chunk,
    needs_normalization,
    probe_media,
    transcode_audio,
)
from chunkscribe.planner import ChunkPolicy, ChunkSpec, plan_for_media
from chunkscribe.progress import ErrorEvent, Event, ProgressEvent
from chunkscribe.sources import download_url
from chunkscribe.transcription import (
    TranscriptionOptions,
    ensure_transcription_ready,
    transcribe_file,
)
from chunkscribe.workspace import Workspace

logger = logging.getLogger(__name__)

Transcriber = Callable[[Path, TranscriptionOptions], str]
ChunkSource = Union[Path, Awaitable[Path]]


class CancelToken:
    """Cooperative cancellation flag shared by one request."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass
class TranscriptAccumulator:
    full_text: str = ""
    completed_count: int = 0

    def append(self, text: str) -> None:
        self.full_text += text.strip() + " "
        self.completed_count += 1


def default_policy() -> ChunkPolicy:
    return ChunkPolicy(max_seconds=config.CHUNK_MAX_SECONDS, max_bytes=config.CHUNK_MAX_BYTES)


async def _transcribe_with_retries(
    path: Path,
    options: TranscriptionOptions,
    transcribe: Transcriber,
    chunk_number: int,
) -> str:
    attempts = max(0, options.max_retries) + 1
    for attempt in range(1, attempts + 1):
        try:
            return await run_in_threadpool(transcribe, path, options)
        except TranscriptionAPIError as exc:
            error = exc
        except Exception as exc:
            error = TranscriptionAPIError(str(exc) or exc.__class__.__name__)
            error.__cause__ = exc
        if attempt >= attempts:
            raise error
        logger.warning(
            "Fragmento %s: intento %s de %s fallido (%s), reintentando",
            chunk_number,
            attempt,
            attempts,
            error,
        )
        await asyncio.sleep(options.retry_delay)
    raise TranscriptionAPIError("Sin intentos de transcripción")


async def dispatch_chunks(
    chunk_files: Sequence[ChunkSource],
    options: TranscriptionOptions,
    *,
    cancel_token: Optional[CancelToken] = None,
    transcribe: Optional[Transcriber] = None,
) -> AsyncIterator[Event]:
    """Transcribe chunks strictly in order, yielding one event per chunk.

    Items of ``chunk_files`` may be paths or awaitables resolving to paths
    (extractions still in flight). The sequence ends after the last chunk,
    or right after the first error or cancellation event.
    """
    transcribe = transcribe or transcribe_file
    items = list(chunk_files)
    total = len(items)
    accumulator = TranscriptAccumulator()

    for i, item in enumerate(items):
        number = i + 1
        if cancel_token is not None and cancel_token.cancelled:
            logger.info("Cancelado antes del fragmento %s de %s", number, total)
            yield ErrorEvent(
                message=f"Transcripción cancelada tras {accumulator.completed_count} de {total} fragmentos",
                code=RequestCancelled.code,
            )
            return

        try:
            path = await item if inspect.isawaitable(item) else item
            text = await _transcribe_with_retries(Path(path), options, transcribe, number)
        except TranscriptionAPIError as exc:
            logger.error("Fallo al transcribir el fragmento %s de %s: %s", number, total, exc)
            yield ErrorEvent(
                message=f"Fallo al transcribir el fragmento {number} de {total}: {exc.message}",
                code=exc.code,
                chunk_index=number,
            )
            return
        except PipelineError as exc:
            logger.error("Fragmento %s de %s no disponible: %s", number, total, exc)
            yield ErrorEvent(message=exc.message, code=exc.code, chunk_index=exc.chunk_index or number)
            return

        accumulator.append(text)
        yield ProgressEvent(
            percent=round(100 * number / total),
            cumulative_text=accumulator.full_text.strip(),
            chunk_text=text.strip(),
            chunk_index=number,
            chunk_total=total,
        )


def schedule_extractions(
    source_path: Path,
    plan: Sequence[ChunkSpec],
    workspace: Workspace,
    *,
    info: Optional[MediaInfo] = None,
    normalize: bool = False,
    workers: Optional[int] = None,
    stop: Optional[CancelToken] = None,
) -> List["asyncio.Task[Path]"]:
    """Start one extraction task per chunk, at most ``workers`` at a time.

    Tasks are returned in index order so the dispatcher can await them one
    by one; later chunks are cut while earlier ones are being transcribed.
    """
    limit = max(1, min(workers or config.EXTRACT_WORKERS, len(plan)))
    semaphore = asyncio.Semaphore(limit)
    output_dir = workspace.chunk_dir()

    async def extract(spec: ChunkSpec) -> Path:
        async with semaphore:
            if stop is not None and stop.cancelled:
                raise RequestCancelled("Extracción cancelada", chunk_index=spec.index + 1)
            path = await run_in_threadpool(
                extract_chunk, source_path, spec, output_dir, info=info, normalize=normalize
            )
            return workspace.track_chunk(path)

    return [asyncio.create_task(extract(spec)) for spec in plan]


async def _prepare_source(
    workspace: Workspace, source_path: Optional[Path], url: Optional[str]
) -> Path:
    if url:
        logger.info("[%s] Descargando %s", workspace.request_id, url)
        source_path = await run_in_threadpool(download_url, url, workspace.path)
        workspace.source_path = source_path
    if source_path is None:
        raise ProbeError("No hay archivo de entrada para procesar")

    if needs_normalization(source_path):
        normalized = workspace.file("source_normalized" + config.NORMALIZED_EXTENSION)
        logger.info("[%s] Convirtiendo %s a un formato compatible", workspace.request_id, source_path.name)
        await run_in_threadpool(transcode_audio, source_path, normalized)
        workspace.track_chunk(normalized)
        return normalized
    return source_path


async def run_transcription(
    workspace: Workspace,
    options: TranscriptionOptions,
    *,
    source_path: Optional[Path] = None,
    url: Optional[str] = None,
    policy: Optional[ChunkPolicy] = None,
    cancel_token: Optional[CancelToken] = None,
    transcribe: Optional[Transcriber] = None,
    workers: Optional[int] = None,
) -> AsyncIterator[Event]:
    """Probe, plan, extract and transcribe one source, then clean up.

    Every stage failure becomes a single terminal ``ErrorEvent``. The
    workspace is removed on every exit path.
    """
    policy = policy or default_policy()
    stop = CancelToken()
    tasks: List["asyncio.Task[Path]"] = []
    try:
        ensure_transcription_ready(options)
        media_path = await _prepare_source(workspace, source_path, url)

        info = await run_in_threadpool(probe_media, media_path)
        if info.duration_seconds < config.MIN_DURATION_SECONDS:
            raise ProbeError(
                f"El audio es demasiado corto ({info.duration_seconds:.2f} s) para transcribirlo"
            )

        plan = plan_for_media(info, policy)
        logger.info(
            "[%s] %.1f s, %s bytes, %s fragmento(s)",
            workspace.request_id,
            info.duration_seconds,
            info.size_bytes,
            len(plan),
        )

        chunks: List[ChunkSource]
        if len(plan) == 1:
            chunks = [media_path]
        else:
            tasks = schedule_extractions(
                media_path,
                plan,
                workspace,
                info=info,
                workers=workers,
                stop=stop,
            )
            chunks = list(tasks)

        async for event in dispatch_chunks(
            chunks, options, cancel_token=cancel_token, transcribe=transcribe
        ):
            yield event
    except PipelineError as exc:
        logger.warning("[%s] %s: %s", workspace.request_id, exc.code, exc.message)
        yield ErrorEvent.from_exception(exc)
    except Exception:
        logger.exception("[%s] Error inesperado en la transcripción", workspace.request_id)
        yield ErrorEvent(message="Error interno durante la transcripción", code="internal")
    finally:
        stop.cancel()
        if tasks:
            # In-flight ffmpeg runs finish before their directory is removed.
            with anyio.CancelScope(shield=True):
                await asyncio.gather(*tasks, return_exceptions=True)
        workspace.cleanup()
