import logging
import random
import shutil
import time
from pathlib import Path
from typing import Any, BinaryIO, Dict, Optional

import yt_dlp

from chunkscribe import config
from chunkscribe.errors import DownloadError, ValidationError

logger = logging.getLogger(__name__)

READ_BLOCK = 1 << 20


def accepted_extensions() -> set:
    return set(config.SUPPORTED_FORMATS) | set(config.TRANSCODABLE_FORMATS)


def validate_extension(filename: str) -> str:
    extension = Path(filename or "").suffix.lower().lstrip(".")
    if not extension or extension not in accepted_extensions():
        raise ValidationError(
            "Formato de archivo no soportado. Usa uno de: "
            + ", ".join(sorted(accepted_extensions()))
            + "."
        )
    return extension


def save_stream(stream: BinaryIO, destination: Path, max_bytes: Optional[int] = None) -> Path:
    """Copy a readable binary stream to ``destination`` enforcing a size cap."""
    limit = config.MAX_UPLOAD_BYTES if max_bytes is None else max_bytes
    written = 0
    with destination.open("wb") as handle:
        while True:
            block = stream.read(READ_BLOCK)
            if not block:
                break
            written += len(block)
            if limit and written > limit:
                raise ValidationError(
                    f"El archivo supera el máximo permitido de {limit} bytes"
                )
            handle.write(block)
    if written == 0:
        raise ValidationError("El archivo subido está vacío")
    return destination


def build_ydl_options(output_dir: Path, *, force_no_proxy: bool = False) -> Dict[str, Any]:
    js_runtimes: Dict[str, Dict[str, str]] = {}
    for candidate in ("node", "nodejs"):
        path = shutil.which(candidate)
        if path:
            js_runtimes[candidate] = {"executable": path}
            break

    opts: Dict[str, Any] = {
        "quiet": True,
        "noprogress": True,
        "noplaylist": True,
        "ca_certs": config.CERT_BUNDLE,
        "outtmpl": str(output_dir / "source.%(ext)s"),
        "overwrites": True,
        "retries": 3,
        "http_headers": {"User-Agent": config.YTDLP_USER_AGENT},
        "js_runtimes": js_runtimes or None,
        # Keep yt-dlp's own cache inside the request directory.
        "cachedir": str(output_dir / "yt_dlp_cache"),
        "format": config.YTDLP_AUDIO_FORMAT,
        "postprocessors": [
            {
                "key": "FFmpegExtractAudio",
                "preferredcodec": config.YTDLP_AUDIO_CODEC,
                "preferredquality": str(config.YTDLP_AUDIO_QUALITY),
            }
        ],
    }
    if config.FFMPEG_BINARY != "ffmpeg":
        opts["ffmpeg_location"] = config.FFMPEG_BINARY
    if not force_no_proxy and config.YTDLP_PROXY:
        opts["proxy"] = config.YTDLP_PROXY
    if config.YTDLP_COOKIES_FILE:
        opts["cookiefile"] = config.YTDLP_COOKIES_FILE
    return opts


def should_retry_without_proxy(error: Exception) -> bool:
    message = str(error).lower()
    return "proxy" in message or "403" in message or "forbidden" in message


def _should_retry_with_new_user_agent(error: Exception) -> bool:
    message = str(error).lower()
    if "sign in" in message and "not a bot" in message:
        return True
    return "bot" in message and "confirm" in message


def _generate_user_agent() -> str:
    major = random.randint(121, 126)
    build = random.randint(0, 5999)
    patch = random.randint(0, 199)
    return (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        f"Chrome/{major}.0.{build}.{patch} Safari/537.36"
    )


def extract_info_with_user_agent_retries(url: str, *, ydl_opts: Dict[str, Any]) -> Dict[str, Any]:
    attempts = max(1, config.YTDLP_BOT_PROTECTION_RETRIES)
    delay = max(0.0, config.YTDLP_BOT_PROTECTION_DELAY)
    current_agent = ydl_opts.get("http_headers", {}).get("User-Agent", config.YTDLP_USER_AGENT)

    for attempt in range(attempts):
        opts = {**ydl_opts, "http_headers": {**ydl_opts.get("http_headers", {}), "User-Agent": current_agent}}
        try:
            with yt_dlp.YoutubeDL(opts) as ydl:
                return ydl.extract_info(url, download=True)
        except Exception as exc:  # pragma: no cover - yt-dlp errors are direct
            if attempt >= attempts - 1 or not _should_retry_with_new_user_agent(exc):
                raise
            logger.info("yt-dlp pidió verificación anti-bot, reintentando con otro User-Agent")
            current_agent = _generate_user_agent()
            time.sleep(delay)
    raise DownloadError("Fallo inesperado al extraer información")


def _downloaded_path(info: Dict[str, Any], output_dir: Path) -> Path:
    requested = info.get("requested_downloads") or []
    if requested and requested[0].get("filepath"):
        candidate = Path(requested[0]["filepath"])
    elif info.get("_filename"):
        candidate = Path(info["_filename"])
    else:
        matches = sorted(output_dir.glob("source.*"))
        if not matches:
            raise DownloadError("No se pudo localizar el archivo descargado")
        candidate = matches[0]
    if not candidate.exists():
        raise DownloadError("No se pudo localizar el archivo descargado")
    return candidate


def download_url(url: str, output_dir: Path) -> Path:
    """Descargar el audio de una URL (YouTube, Vimeo, enlaces directos...)."""
    url = (url or "").strip()
    if not url.lower().startswith(("http://", "https://")):
        raise ValidationError("Incluye una URL válida (http o https)")

    def extract(force_no_proxy: bool = False) -> Dict[str, Any]:
        ydl_opts = build_ydl_options(output_dir, force_no_proxy=force_no_proxy)
        try:
            return extract_info_with_user_agent_retries(url, ydl_opts=ydl_opts)
        except Exception as exc:  # pragma: no cover - yt-dlp errors are direct
            if not force_no_proxy and config.YTDLP_PROXY and should_retry_without_proxy(exc):
                logger.info("Reintentando la descarga sin proxy: %s", exc)
                return extract(force_no_proxy=True)
            raise DownloadError(f"No se pudo descargar la URL: {exc}") from exc

    info = extract()
    path = _downloaded_path(info, output_dir)
    logger.info("Descargado %s (%s bytes)", info.get("title") or url, path.stat().st_size)
    return path
