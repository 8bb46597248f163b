import logging
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Iterable, List, Optional

from chunkscribe import config

logger = logging.getLogger(__name__)


def cleanup_path(path: Optional[Path]) -> None:
    if not path:
        return
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("No se pudo eliminar %s: %s", path, exc)


def cleanup_files(source_path: Optional[Path], chunk_files: Iterable[Path]) -> None:
    """Best-effort removal of the source and every chunk. Safe to repeat."""
    cleanup_path(source_path)
    for chunk in chunk_files:
        cleanup_path(chunk)


def cleanup_dir(path: Path) -> None:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("No se pudo eliminar el directorio %s: %s", path, exc)


class Workspace:
    """Working directory owned by a single request.

    Every file the pipeline creates for the request lives here, so names never
    collide across concurrent requests.
    """

    def __init__(self, root: Optional[Path] = None) -> None:
        base = Path(root or config.WORK_ROOT)
        base.mkdir(parents=True, exist_ok=True)
        self.request_id = uuid.uuid4().hex[:12]
        self.path = Path(tempfile.mkdtemp(prefix=f"req_{self.request_id}_", dir=base))
        self.source_path: Optional[Path] = None
        self.chunk_files: List[Path] = []
        self._cleaned = False

    def file(self, name: str) -> Path:
        return self.path / name

    def chunk_dir(self) -> Path:
        directory = self.path / "chunks"
        directory.mkdir(exist_ok=True)
        return directory

    def track_chunk(self, path: Path) -> Path:
        self.chunk_files.append(path)
        return path

    @property
    def cleaned(self) -> bool:
        return self._cleaned

    def cleanup(self) -> None:
        if self._cleaned:
            return
        self._cleaned = True
        cleanup_files(self.source_path, self.chunk_files)
        cleanup_dir(self.path)
        logger.debug("Espacio de trabajo %s eliminado", self.request_id)

    def __enter__(self) -> "Workspace":
        return self

    def __exit__(self, *exc_info) -> None:
        self.cleanup()
