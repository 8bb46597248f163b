import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

from chunkscribe import config
from chunkscribe.errors import ExtractionError, ProbeError

if TYPE_CHECKING:
    from chunkscribe.planner import ChunkSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MediaInfo:
    path: Path
    duration_seconds: float
    size_bytes: int
    format_name: str

    @property
    def bytes_per_second(self) -> float:
        if self.duration_seconds <= 0:
            return 0.0
        return self.size_bytes / self.duration_seconds


class FFmpegError(RuntimeError):
    """ffmpeg is missing or exited with an error."""


def _stderr_tail(process: subprocess.CompletedProcess, fallback: str) -> str:
    message = (process.stderr or process.stdout or "").strip()
    return message.splitlines()[-1] if message else fallback


def run_ffmpeg(source: Path, destination: Path, args: List[str], input_args: Optional[List[str]] = None) -> None:
    command = [
        config.FFMPEG_BINARY,
        "-y",
        "-hide_banner",
        "-loglevel",
        "error",
        *(input_args or []),
        "-i",
        str(source),
        *args,
        str(destination),
    ]
    logger.debug("Ejecutando ffmpeg: %s", command)
    try:
        process = subprocess.run(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            check=False,
            text=True,
        )
    except FileNotFoundError as exc:
        raise FFmpegError(
            "ffmpeg no está instalado o no es accesible en el sistema"
        ) from exc

    if process.returncode != 0:
        tail = _stderr_tail(process, "error desconocido de ffmpeg")
        raise FFmpegError(f"ffmpeg no pudo procesar el archivo: {tail}")


def probe_media(path: Path) -> MediaInfo:
    """Consultar duración, tamaño y contenedor de un archivo con ffprobe."""
    path = Path(path)
    if not path.is_file():
        raise ProbeError("El archivo de entrada no está disponible")

    command = [
        config.FFPROBE_BINARY,
        "-v",
        "error",
        "-show_entries",
        "format=duration,size,format_name",
        "-of",
        "json",
        str(path),
    ]
    try:
        process = subprocess.run(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            check=False,
            text=True,
        )
    except FileNotFoundError as exc:
        raise ProbeError("ffprobe no está instalado o no es accesible en el sistema") from exc

    if process.returncode != 0:
        tail = _stderr_tail(process, "error desconocido de ffprobe")
        raise ProbeError(f"No se pudo analizar el archivo: {tail}")

    try:
        payload = json.loads(process.stdout or "{}")
    except json.JSONDecodeError as exc:
        raise ProbeError("ffprobe devolvió una respuesta ilegible") from exc

    fmt = payload.get("format") or {}
    try:
        duration = float(fmt.get("duration"))
    except (TypeError, ValueError):
        raise ProbeError("El archivo no contiene una pista de audio decodificable")

    try:
        size = int(fmt.get("size"))
    except (TypeError, ValueError):
        size = path.stat().st_size

    return MediaInfo(
        path=path,
        duration_seconds=duration,
        size_bytes=size,
        format_name=str(fmt.get("format_name") or path.suffix.lstrip(".")),
    )


def needs_normalization(path: Path) -> bool:
    extension = Path(path).suffix.lower().lstrip(".")
    return config.ALWAYS_NORMALIZE or extension not in config.SUPPORTED_FORMATS


def transcode_audio(source_path: Path, output_path: Path) -> Path:
    """Re-encode the whole source to mono 16 kHz constant-bitrate MP3."""
    try:
        run_ffmpeg(source_path, output_path, config.NORMALIZED_AUDIO_ARGS)
    except FFmpegError as exc:
        output_path.unlink(missing_ok=True)
        raise ExtractionError(f"No se pudo convertir el audio: {exc}") from exc
    if not output_path.exists() or output_path.stat().st_size == 0:
        output_path.unlink(missing_ok=True)
        raise ExtractionError("ffmpeg no generó salida. Revisa el archivo de entrada.")
    return output_path


def _time_range(spec: "ChunkSpec", info: Optional[MediaInfo]) -> tuple:
    if spec.unit == "seconds":
        return float(spec.start), float(spec.length)
    if spec.unit == "bytes":
        if info is None or info.bytes_per_second <= 0:
            raise ExtractionError(
                "Se necesita la duración de la fuente para cortar por tamaño",
                chunk_index=spec.index + 1,
            )
        rate = info.bytes_per_second
        return spec.start / rate, spec.length / rate
    raise ExtractionError(f"Unidad de fragmento desconocida: {spec.unit}", chunk_index=spec.index + 1)


def extract_chunk(
    source_path: Path,
    spec: "ChunkSpec",
    output_dir: Path,
    *,
    info: Optional[MediaInfo] = None,
    normalize: bool = False,
) -> Path:
    """Cut one planned range out of the source into its own file."""
    source_path = Path(source_path)
    start, length = _time_range(spec, info)
    # ffmpeg has no muxer named after these extensions.
    if source_path.suffix.lower() in {".mpga", ".mpeg"}:
        normalize = True
    if normalize:
        suffix = config.NORMALIZED_EXTENSION
        codec_args = config.NORMALIZED_AUDIO_ARGS
    else:
        suffix = source_path.suffix or config.NORMALIZED_EXTENSION
        codec_args = ["-vn", "-acodec", "copy"]
    output_path = Path(output_dir) / f"chunk_{spec.index:03d}{suffix}"

    # -ss before -i seeks on the input; -t bounds the output duration.
    input_args = ["-ss", f"{start:.3f}"]
    args = ["-t", f"{length:.3f}", *codec_args]
    try:
        run_ffmpeg(source_path, output_path, args, input_args=input_args)
    except FFmpegError as exc:
        output_path.unlink(missing_ok=True)
        raise ExtractionError(
            f"Fallo al extraer el fragmento {spec.index + 1}: {exc}",
            chunk_index=spec.index + 1,
        ) from exc

    if not output_path.exists() or output_path.stat().st_size == 0:
        output_path.unlink(missing_ok=True)
        raise ExtractionError(
            f"El fragmento {spec.index + 1} quedó vacío tras la extracción",
            chunk_index=spec.index + 1,
        )
    logger.debug("Fragmento %s extraído en %s", spec.index + 1, output_path)
    return output_path
