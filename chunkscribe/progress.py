import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional, Union

from chunkscribe.errors import PipelineError


@dataclass(frozen=True)
class ProgressEvent:
    percent: int
    cumulative_text: str
    chunk_text: str
    chunk_index: int  # 1-based
    chunk_total: int

    def to_wire(self) -> Dict[str, Any]:
        return {
            "progress": self.percent,
            "transcription": self.cumulative_text,
            "chunkTranscription": self.chunk_text,
            "chunkProgress": {"current": self.chunk_index, "total": self.chunk_total},
        }


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    code: str = "internal"
    chunk_index: Optional[int] = None

    @classmethod
    def from_exception(cls, exc: PipelineError) -> "ErrorEvent":
        return cls(message=exc.message, code=exc.code, chunk_index=exc.chunk_index)

    def to_wire(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.chunk_index is not None:
            record["chunk"] = self.chunk_index
        return record


Event = Union[ProgressEvent, ErrorEvent]


def encode_event(event: Event) -> bytes:
    return (json.dumps(event.to_wire(), ensure_ascii=False) + "\n").encode("utf-8")


async def stream_events(events: AsyncIterator[Event]) -> AsyncIterator[bytes]:
    """Serialize events lazily; the consumer pulls one line at a time."""
    async for event in events:
        yield encode_event(event)
