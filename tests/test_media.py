import json
import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch
import sys

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from chunkscribe import media
from chunkscribe.errors import ExtractionError, ProbeError
from chunkscribe.media import FFmpegError, MediaInfo, extract_chunk, needs_normalization, probe_media
from chunkscribe.planner import ChunkSpec


def completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=["ffprobe"], returncode=returncode, stdout=stdout, stderr=stderr)


class TestProbeMedia(unittest.TestCase):
    def test_reads_duration_size_and_format(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "talk.mp3"
            path.write_bytes(b"fake")
            payload = {"format": {"duration": "720.5", "size": "31457280", "format_name": "mp3"}}

            with patch.object(media.subprocess, "run", return_value=completed(stdout=json.dumps(payload))) as run:
                info = probe_media(path)

            self.assertEqual(info.duration_seconds, 720.5)
            self.assertEqual(info.size_bytes, 31457280)
            self.assertEqual(info.format_name, "mp3")
            command = run.call_args.args[0]
            self.assertIn("-show_entries", command)
            self.assertEqual(command[-1], str(path))

    def test_missing_file(self) -> None:
        with self.assertRaises(ProbeError):
            probe_media(Path("/nonexistent/talk.mp3"))

    def test_nonzero_exit_reports_last_stderr_line(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "broken.wav"
            path.write_bytes(b"fake")

            with patch.object(media.subprocess, "run", return_value=completed(1, stderr="line one\nInvalid data found")):
                with self.assertRaises(ProbeError) as ctx:
                    probe_media(path)

            self.assertIn("Invalid data found", str(ctx.exception))

    def test_no_duration_means_no_audio(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "image.mp4"
            path.write_bytes(b"fake")

            with patch.object(media.subprocess, "run", return_value=completed(stdout='{"format": {}}')):
                with self.assertRaises(ProbeError):
                    probe_media(path)

    def test_missing_binary(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "talk.mp3"
            path.write_bytes(b"fake")

            with patch.object(media.subprocess, "run", side_effect=FileNotFoundError("ffprobe")):
                with self.assertRaises(ProbeError):
                    probe_media(path)


class TestExtractChunk(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.source = self.tmp / "source.mp3"
        self.source.write_bytes(b"fake")
        self.calls = []

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def fake_ffmpeg(self, payload: bytes = b"chunk"):
        def run(source, destination, args, input_args=None):
            self.calls.append({"source": source, "destination": destination, "args": args, "input_args": input_args})
            destination.write_bytes(payload)

        return run

    def test_time_range_is_copied(self) -> None:
        spec = ChunkSpec(index=1, start=360.0, length=360.0)

        with patch.object(media, "run_ffmpeg", side_effect=self.fake_ffmpeg()):
            output = extract_chunk(self.source, spec, self.tmp)

        self.assertEqual(output, self.tmp / "chunk_001.mp3")
        call = self.calls[0]
        self.assertEqual(call["input_args"], ["-ss", "360.000"])
        self.assertEqual(call["args"][:2], ["-t", "360.000"])
        self.assertIn("copy", call["args"])

    def test_normalized_output(self) -> None:
        spec = ChunkSpec(index=0, start=0.0, length=10.0)

        with patch.object(media, "run_ffmpeg", side_effect=self.fake_ffmpeg()):
            output = extract_chunk(self.source, spec, self.tmp, normalize=True)

        self.assertEqual(output.suffix, ".mp3")
        args = self.calls[0]["args"]
        self.assertIn("16000", args)
        self.assertEqual(args[args.index("-ac") + 1], "1")

    def test_byte_range_maps_onto_time(self) -> None:
        info = MediaInfo(path=self.source, duration_seconds=100.0, size_bytes=1000, format_name="mp3")
        spec = ChunkSpec(index=1, start=500, length=500, unit="bytes")

        with patch.object(media, "run_ffmpeg", side_effect=self.fake_ffmpeg()):
            extract_chunk(self.source, spec, self.tmp, info=info)

        self.assertEqual(self.calls[0]["input_args"], ["-ss", "50.000"])
        self.assertEqual(self.calls[0]["args"][:2], ["-t", "50.000"])

    def test_byte_range_without_info_fails(self) -> None:
        spec = ChunkSpec(index=0, start=0, length=500, unit="bytes")

        with self.assertRaises(ExtractionError):
            extract_chunk(self.source, spec, self.tmp)

    def test_empty_output_is_an_error(self) -> None:
        spec = ChunkSpec(index=2, start=0.0, length=10.0)

        with patch.object(media, "run_ffmpeg", side_effect=self.fake_ffmpeg(b"")):
            with self.assertRaises(ExtractionError) as ctx:
                extract_chunk(self.source, spec, self.tmp)

        self.assertEqual(ctx.exception.chunk_index, 3)
        self.assertFalse((self.tmp / "chunk_002.mp3").exists())

    def test_ffmpeg_failure_is_an_error(self) -> None:
        spec = ChunkSpec(index=0, start=0.0, length=10.0)

        with patch.object(media, "run_ffmpeg", side_effect=FFmpegError("ffmpeg no pudo procesar el archivo")):
            with self.assertRaises(ExtractionError) as ctx:
                extract_chunk(self.source, spec, self.tmp)

        self.assertEqual(ctx.exception.chunk_index, 1)


class TestRunFfmpeg(unittest.TestCase):
    def test_nonzero_exit(self) -> None:
        with patch.object(media.subprocess, "run", return_value=completed(1, stderr="a\nb\nConversion failed!")):
            with self.assertRaises(FFmpegError) as ctx:
                media.run_ffmpeg(Path("in.mp3"), Path("out.mp3"), ["-vn"])

        self.assertIn("Conversion failed!", str(ctx.exception))

    def test_command_layout(self) -> None:
        with patch.object(media.subprocess, "run", return_value=completed()) as run:
            media.run_ffmpeg(Path("in.mp3"), Path("out.mp3"), ["-t", "5"], input_args=["-ss", "1"])

        command = run.call_args.args[0]
        self.assertLess(command.index("-ss"), command.index("-i"))
        self.assertEqual(command[-1], "out.mp3")


class TestNeedsNormalization(unittest.TestCase):
    def test_supported_containers_are_kept(self) -> None:
        self.assertFalse(needs_normalization(Path("a.mp3")))
        self.assertFalse(needs_normalization(Path("a.M4A")))
        self.assertTrue(needs_normalization(Path("a.mov")))
        self.assertTrue(needs_normalization(Path("a.opus")))


if __name__ == "__main__":
    unittest.main()
