import math
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from chunkscribe.errors import PlanningError
from chunkscribe.media import MediaInfo

Number = Union[int, float]


@dataclass(frozen=True)
class ChunkSpec:
    index: int          # 0-based, processing and re-assembly order
    start: Number       # offset from the beginning of the source
    length: Number
    unit: str = "seconds"  # "seconds" or "bytes"

    @property
    def end(self) -> Number:
        return self.start + self.length


@dataclass(frozen=True)
class ChunkPolicy:
    max_seconds: Optional[float] = None
    max_bytes: Optional[int] = None


def plan_chunks(
    total: Optional[Number], target_limit: Number, unit: str = "seconds"
) -> Tuple[ChunkSpec, ...]:
    """Split ``[0, total)`` into contiguous chunks no longer than ``target_limit``.

    Boundaries are spread evenly, so every chunk has roughly the same length.
    Integer totals (byte counts) are split with integer arithmetic; the last
    chunk always ends exactly at ``total``.
    """
    if total is None:
        raise PlanningError("La duración o el tamaño de la fuente es desconocido")
    if total <= 0:
        raise PlanningError("No se puede planificar una fuente vacía")
    if target_limit is None or target_limit <= 0:
        raise PlanningError("El límite por fragmento debe ser mayor que cero")

    if total <= target_limit:
        return (ChunkSpec(index=0, start=0, length=total, unit=unit),)

    count = math.ceil(total / target_limit)
    integral = isinstance(total, int)
    if integral:
        count = min(count, total)

    starts = []
    for i in range(count):
        if integral:
            starts.append(i * total // count)
        else:
            starts.append(i * total / count)

    specs = []
    for i, start in enumerate(starts):
        end = starts[i + 1] if i + 1 < count else total
        specs.append(ChunkSpec(index=i, start=start, length=end - start, unit=unit))
    return tuple(specs)


def effective_seconds_limit(info: MediaInfo, policy: ChunkPolicy) -> float:
    """Tightest per-chunk duration allowed by a combined duration/size policy."""
    limits = []
    if policy.max_seconds:
        limits.append(float(policy.max_seconds))
    if policy.max_bytes and info.size_bytes > 0:
        limits.append(info.duration_seconds * policy.max_bytes / info.size_bytes)
    if not limits:
        raise PlanningError("La política de fragmentación no define ningún límite")
    return min(limits)


def plan_for_media(info: MediaInfo, policy: ChunkPolicy) -> Tuple[ChunkSpec, ...]:
    if not info.duration_seconds:
        raise PlanningError("La duración de la fuente es desconocida")
    return plan_chunks(info.duration_seconds, effective_seconds_limit(info, policy))
