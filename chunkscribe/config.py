import os
import tempfile
from pathlib import Path
from typing import List, Optional

import certifi
from dotenv import load_dotenv

# Ensure the runtime always has a CA bundle so the OpenAI SDK, requests and
# yt-dlp keep working in slim containers without OS certificates.
CERT_BUNDLE = certifi.where()
os.environ["SSL_CERT_FILE"] = CERT_BUNDLE
os.environ["REQUESTS_CA_BUNDLE"] = CERT_BUNDLE

# Values from a local .env file take effect unless already exported.
load_dotenv()


def _is_truthy(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _optional(name: str) -> Optional[str]:
    value = (os.getenv(name) or "").strip()
    return value or None


APP_TITLE = "Chunkscribe · Chunked Transcription Service"
PACKAGE_DIR = Path(__file__).resolve().parent
TEMPLATES_DIR = PACKAGE_DIR / "templates"
ASSETS_DIR = PACKAGE_DIR / "assets"

WORK_ROOT = Path(os.getenv("WORK_ROOT", Path(tempfile.gettempdir()) / "chunkscribe"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

FFMPEG_BINARY = os.getenv("FFMPEG_BINARY", "ffmpeg")
FFPROBE_BINARY = os.getenv("FFPROBE_BINARY", "ffprobe")

CHUNK_MAX_SECONDS = float(os.getenv("CHUNK_MAX_SECONDS", "600"))
CHUNK_MAX_BYTES = int(float(os.getenv("CHUNK_MAX_MB", "20")) * 1024 * 1024)
EXTRACT_WORKERS = max(1, int(os.getenv("EXTRACT_WORKERS", "2")))
MIN_DURATION_SECONDS = float(os.getenv("MIN_DURATION_SECONDS", "0.5"))
MAX_UPLOAD_BYTES = int(float(os.getenv("MAX_UPLOAD_MB", "500")) * 1024 * 1024)
DISCONNECT_POLL_SECONDS = float(os.getenv("DISCONNECT_POLL_SECONDS", "0.5"))

# Containers the transcription API accepts as-is.
SUPPORTED_FORMATS: List[str] = [
    "flac",
    "mp3",
    "mp4",
    "mpeg",
    "mpga",
    "m4a",
    "ogg",
    "wav",
    "webm",
]
# Containers ffmpeg can read that the API does not accept directly.
TRANSCODABLE_FORMATS: List[str] = [
    "aac",
    "aif",
    "aiff",
    "amr",
    "avi",
    "mkv",
    "mov",
    "oga",
    "opus",
    "3gp",
    "wma",
    "wmv",
]
NORMALIZED_AUDIO_ARGS: List[str] = [
    "-vn",
    "-ac",
    "1",
    "-ar",
    "16000",
    "-acodec",
    "libmp3lame",
    "-b:a",
    "64k",
]
NORMALIZED_EXTENSION = ".mp3"
# Re-encode every chunk, not only sources in an unsupported container.
ALWAYS_NORMALIZE = _is_truthy(os.getenv("ALWAYS_NORMALIZE", "0"))

TRANSCRIPTION_BACKEND = os.getenv("TRANSCRIPTION_BACKEND", "openai").strip().lower()
TRANSCRIPTION_ENDPOINT = os.getenv("TRANSCRIPTION_ENDPOINT", "https://api.openai.com/v1")
TRANSCRIPTION_MODEL = os.getenv("TRANSCRIPTION_MODEL", "whisper-1")
TRANSCRIPTION_LANGUAGE = _optional("TRANSCRIPTION_LANGUAGE")
TRANSCRIPTION_TIMEOUT = float(os.getenv("TRANSCRIPTION_TIMEOUT", "600"))
TRANSCRIPTION_MAX_RETRIES = max(0, int(os.getenv("TRANSCRIPTION_MAX_RETRIES", "0")))
TRANSCRIPTION_RETRY_DELAY = float(os.getenv("TRANSCRIPTION_RETRY_DELAY", "2"))
WHISPER_ASR_URL = _optional("WHISPER_ASR_URL")

YTDLP_PROXY = _optional("YTDLP_PROXY")
YTDLP_COOKIES_FILE = _optional("YTDLP_COOKIES_FILE")
YTDLP_USER_AGENT = os.getenv(
    "YTDLP_USER_AGENT",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
)
YTDLP_BOT_PROTECTION_RETRIES = int(os.getenv("YTDLP_BOT_PROTECTION_RETRIES", "3"))
YTDLP_BOT_PROTECTION_DELAY = float(os.getenv("YTDLP_BOT_PROTECTION_DELAY", "6"))
YTDLP_AUDIO_FORMAT = os.getenv("YTDLP_AUDIO_FORMAT", "bestaudio/best")
YTDLP_AUDIO_CODEC = os.getenv("YTDLP_AUDIO_CODEC", "mp3")
YTDLP_AUDIO_QUALITY = os.getenv("YTDLP_AUDIO_QUALITY", "96")
