import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import requests
from openai import OpenAI

from chunkscribe import config
from chunkscribe.errors import TranscriptionAPIError, ValidationError

logger = logging.getLogger(__name__)

BACKENDS = {"openai", "whisper-asr"}


@dataclass(frozen=True)
class TranscriptionOptions:
    api_key: Optional[str] = None
    model: str = field(default_factory=lambda: config.TRANSCRIPTION_MODEL)
    language: Optional[str] = field(default_factory=lambda: config.TRANSCRIPTION_LANGUAGE)
    prompt: Optional[str] = None
    base_url: str = field(default_factory=lambda: config.TRANSCRIPTION_ENDPOINT)
    timeout: float = field(default_factory=lambda: config.TRANSCRIPTION_TIMEOUT)
    max_retries: int = field(default_factory=lambda: config.TRANSCRIPTION_MAX_RETRIES)
    retry_delay: float = field(default_factory=lambda: config.TRANSCRIPTION_RETRY_DELAY)
    backend: str = field(default_factory=lambda: config.TRANSCRIPTION_BACKEND)


def ensure_transcription_ready(options: TranscriptionOptions) -> None:
    if options.backend not in BACKENDS:
        raise ValidationError(
            f"Backend de transcripción no soportado: {options.backend}"
        )
    if options.backend == "whisper-asr":
        if not config.WHISPER_ASR_URL:
            raise ValidationError("Servicio whisper-asr no configurado (WHISPER_ASR_URL)")
        return
    if not options.api_key:
        raise ValidationError("Incluye una API key para el servicio de transcripción")
    if not options.model:
        raise ValidationError("Configura TRANSCRIPTION_MODEL con un modelo válido")


def _normalize_transcription_payload(payload: Any) -> Dict[str, Any]:
    if hasattr(payload, "model_dump"):
        data = payload.model_dump()
    elif isinstance(payload, dict):
        data = payload
    elif isinstance(payload, str):
        try:
            parsed = json.loads(payload)
            data = parsed if isinstance(parsed, dict) else {"text": payload}
        except json.JSONDecodeError:
            data = {"text": payload}
    else:
        text_value = getattr(payload, "text", None)
        data = {"text": str(text_value if text_value is not None else payload)}

    text_field = data.get("text")
    data["text"] = text_field.strip() if isinstance(text_field, str) else str(text_field or "").strip()
    return data


def _call_openai_transcription(file_path: Path, options: TranscriptionOptions) -> Dict[str, Any]:
    client = OpenAI(
        api_key=options.api_key,
        base_url=options.base_url,
        timeout=options.timeout,
        max_retries=0,
    )
    kwargs: Dict[str, Any] = {"model": options.model}
    if options.language:
        kwargs["language"] = options.language
    if options.prompt:
        kwargs["prompt"] = options.prompt
    with file_path.open("rb") as audio_stream:
        response = client.audio.transcriptions.create(file=audio_stream, **kwargs)
    return _normalize_transcription_payload(response)


def _call_whisper_asr(file_path: Path, options: TranscriptionOptions) -> Dict[str, Any]:
    base = (config.WHISPER_ASR_URL or "").rstrip("/")
    params = {"output": "json", "task": "transcribe", "encode": "true"}
    if options.language:
        params["language"] = options.language
    if options.prompt:
        params["initial_prompt"] = options.prompt
    mime_type = "audio/mpeg" if file_path.suffix.lower() in {".mp3", ".mpeg"} else "application/octet-stream"
    with file_path.open("rb") as audio_stream:
        response = requests.post(
            f"{base}/asr",
            params=params,
            files={"audio_file": (file_path.name, audio_stream, mime_type)},
            timeout=options.timeout,
        )
    if response.status_code >= 400:
        raise TranscriptionAPIError(
            f"whisper-asr respondió con un error HTTP {response.status_code}: {response.text.strip()}"
        )
    content_type = response.headers.get("content-type", "").lower()
    if "application/json" in content_type:
        try:
            payload = response.json()
        except ValueError as exc:
            raise TranscriptionAPIError("whisper-asr devolvió un JSON inválido") from exc
    else:
        payload = {"text": response.text}
    return _normalize_transcription_payload(payload)


def transcribe_file(file_path: Path, options: TranscriptionOptions) -> str:
    """Send one audio file to the configured backend and return its text."""
    file_path = Path(file_path)
    try:
        if options.backend == "whisper-asr":
            payload = _call_whisper_asr(file_path, options)
        else:
            payload = _call_openai_transcription(file_path, options)
    except TranscriptionAPIError:
        raise
    except Exception as exc:
        raise TranscriptionAPIError(f"{options.backend}: {exc}") from exc
    return payload.get("text") or ""
