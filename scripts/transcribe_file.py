#!/usr/bin/env python3
"""Transcribe a local file or a URL from the terminal.

Prints the same newline-delimited JSON records the web endpoint streams and
exits with a non-zero status when the run ends with an error record.
"""
import argparse
import asyncio
import os
import shutil
import signal
import sys
from pathlib import Path

from chunkscribe import config
from chunkscribe.errors import PipelineError, ValidationError
from chunkscribe.pipeline import CancelToken, run_transcription
from chunkscribe.planner import ChunkPolicy
from chunkscribe.progress import ErrorEvent, encode_event
from chunkscribe.sources import validate_extension
from chunkscribe.transcription import TranscriptionOptions
from chunkscribe.workspace import Workspace


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Transcribe audio in chunks and print NDJSON progress")
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--file", type=Path, help="Local audio or video file")
    source.add_argument("--url", help="URL to download with yt-dlp")
    parser.add_argument("--api-key", default=os.getenv("OPENAI_API_KEY"), help="Defaults to $OPENAI_API_KEY")
    parser.add_argument("--model", default=config.TRANSCRIPTION_MODEL)
    parser.add_argument("--language", default=config.TRANSCRIPTION_LANGUAGE)
    parser.add_argument("--prompt", default=None)
    parser.add_argument("--max-seconds", type=float, default=config.CHUNK_MAX_SECONDS)
    parser.add_argument("--max-mb", type=float, default=config.CHUNK_MAX_BYTES / (1024 * 1024))
    parser.add_argument("--workers", type=int, default=config.EXTRACT_WORKERS)
    parser.add_argument("--retries", type=int, default=config.TRANSCRIPTION_MAX_RETRIES)
    parser.add_argument("--output", type=Path, help="Write the final transcript to this file")
    return parser.parse_args()


async def run(args: argparse.Namespace) -> int:
    options = TranscriptionOptions(
        api_key=args.api_key,
        model=args.model,
        language=args.language,
        prompt=args.prompt,
        max_retries=max(0, args.retries),
    )
    policy = ChunkPolicy(max_seconds=args.max_seconds, max_bytes=int(args.max_mb * 1024 * 1024))
    token = CancelToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    except NotImplementedError:  # pragma: no cover - Windows
        pass

    workspace = Workspace()
    source_path = None
    if args.file:
        try:
            if not args.file.is_file():
                raise ValidationError(f"No existe el archivo {args.file}")
            extension = validate_extension(args.file.name)
        except PipelineError as exc:
            workspace.cleanup()
            sys.stdout.buffer.write(encode_event(ErrorEvent.from_exception(exc)))
            return 2
        # The pipeline deletes its source, so it works on a copy.
        source_path = workspace.file(f"source.{extension}")
        shutil.copyfile(args.file, source_path)
        workspace.source_path = source_path

    last_event = None
    async for event in run_transcription(
        workspace,
        options,
        source_path=source_path,
        url=args.url,
        policy=policy,
        cancel_token=token,
        workers=args.workers,
    ):
        sys.stdout.buffer.write(encode_event(event))
        sys.stdout.flush()
        last_event = event

    if last_event is None or isinstance(last_event, ErrorEvent):
        return 1
    if args.output:
        args.output.write_text(last_event.cumulative_text + "\n", encoding="utf-8")
    return 0


def main() -> int:
    return asyncio.run(run(parse_args()))


if __name__ == "__main__":
    raise SystemExit(main())
