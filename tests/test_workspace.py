import tempfile
import unittest
from pathlib import Path
import sys

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from chunkscribe.workspace import Workspace, cleanup_files


class TestCleanup(unittest.TestCase):
    def test_cleanup_files_is_idempotent(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            source = Path(tmp) / "source.mp3"
            chunks = [Path(tmp) / f"chunk_{i:03d}.mp3" for i in range(3)]
            for path in [source, *chunks]:
                path.write_bytes(b"fake")

            cleanup_files(source, chunks)
            cleanup_files(source, chunks)

            self.assertEqual(list(Path(tmp).iterdir()), [])

    def test_cleanup_files_ignores_missing_paths(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            cleanup_files(None, [Path(tmp) / "never-created.mp3"])
            cleanup_files(Path(tmp) / "gone.wav", [])


class TestWorkspace(unittest.TestCase):
    def test_each_request_gets_its_own_directory(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            first = Workspace(root=Path(tmp))
            second = Workspace(root=Path(tmp))

            self.assertNotEqual(first.path, second.path)
            self.assertEqual(first.path.parent, Path(tmp))
            self.assertTrue(first.path.is_dir())

            first.cleanup()
            second.cleanup()

    def test_cleanup_removes_tracked_files_and_directory(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            workspace = Workspace(root=Path(tmp))
            workspace.source_path = workspace.file("source.mp3")
            workspace.source_path.write_bytes(b"audio")
            chunk = workspace.track_chunk(workspace.chunk_dir() / "chunk_000.mp3")
            chunk.write_bytes(b"chunk")

            workspace.cleanup()

            self.assertTrue(workspace.cleaned)
            self.assertFalse(workspace.path.exists())
            workspace.cleanup()

    def test_context_manager_cleans_up(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with Workspace(root=Path(tmp)) as workspace:
                workspace.file("note.txt").write_text("x")
                path = workspace.path

            self.assertFalse(path.exists())


if __name__ == "__main__":
    unittest.main()
