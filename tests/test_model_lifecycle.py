import asyncio
import tempfile
import threading
import unittest
from pathlib import Path

from bookmark.capabilities import ModelSpec
from bookmark.downloader import partial_path
from bookmark.errors import ModelDownloadFailed, ModelInitFailed, ModelNotReady, UnknownModel
from bookmark.model_lifecycle import ModelLifecycleManager
from bookmark.records import ModelState


class _Handle:
    def __init__(self, path):
        self.path = path
        self.closed = False

    def close(self):
        self.closed = True


class _FakeDownloader:
    def __init__(self, fail_times=0, gate=None):
        self.calls = 0
        self.fail_times = fail_times
        self.gate = gate
        self._lock = threading.Lock()

    def download(self, url, destination, on_progress=None):
        with self._lock:
            self.calls += 1
            attempt = self.calls
        if self.gate is not None:
            self.gate.wait(timeout=5)
        part = partial_path(Path(destination))
        part.write_bytes(b"half")
        if attempt <= self.fail_times:
            raise ConnectionError("connection reset")
        for written in (25, 50, 100):
            if on_progress:
                on_progress(written, 100)
        part.replace(destination)
        return destination


class _Loader:
    def __init__(self, fail_times=0):
        self.calls = 0
        self.fail_times = fail_times
        self.handles = []

    def __call__(self, path):
        self.calls += 1
        if self.calls <= self.fail_times:
            raise RuntimeError("bad weights")
        handle = _Handle(path)
        self.handles.append(handle)
        return handle


class TestModelLifecycleManager(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.models_dir = Path(self.tmp.name)

    def tearDown(self):
        self.tmp.cleanup()

    def _manager(self, downloader, loader, *, url="http://models.invalid/mistral.gguf"):
        spec = ModelSpec(
            name="mistral-7b",
            kind="generation",
            loader=loader,
            url=url,
            filename="mistral.gguf" if url else None,
            download_weight=0.8,
        )
        return ModelLifecycleManager([spec], models_dir=self.models_dir, downloader=downloader)

    async def test_concurrent_callers_share_one_bring_up(self):
        gate = threading.Event()
        downloader = _FakeDownloader(gate=gate)
        loader = _Loader()
        manager = self._manager(downloader, loader)

        first = asyncio.create_task(manager.ensure_ready("mistral-7b"))
        second = asyncio.create_task(manager.ensure_ready("mistral-7b"))
        await asyncio.sleep(0.05)
        gate.set()
        handles = await asyncio.gather(first, second)

        self.assertEqual(downloader.calls, 1)
        self.assertEqual(loader.calls, 1)
        self.assertIs(handles[0], handles[1])
        self.assertEqual(manager.resource("mistral-7b").ref_count, 2)
        self.assertIs(manager.get("mistral-7b"), handles[0])

    async def test_download_failure_removes_partial_and_next_call_starts_fresh(self):
        downloader = _FakeDownloader(fail_times=1)
        manager = self._manager(downloader, _Loader())
        artifact = self.models_dir / "mistral.gguf"

        with self.assertRaises(ModelDownloadFailed) as ctx:
            await manager.ensure_ready("mistral-7b")
        self.assertIsInstance(ctx.exception.__cause__, ConnectionError)
        self.assertIs(manager.state("mistral-7b"), ModelState.FAILED)
        self.assertFalse(artifact.exists())
        self.assertFalse(partial_path(artifact).exists())

        handle = await manager.ensure_ready("mistral-7b")
        self.assertEqual(downloader.calls, 2)
        self.assertTrue(artifact.exists())
        self.assertEqual(handle.path, artifact)
        self.assertTrue(manager.is_ready("mistral-7b"))

    async def test_joined_waiters_all_receive_the_failure(self):
        gate = threading.Event()
        manager = self._manager(_FakeDownloader(fail_times=1, gate=gate), _Loader())
        waiters = [asyncio.create_task(manager.ensure_ready("mistral-7b")) for _ in range(3)]
        await asyncio.sleep(0.05)
        gate.set()
        results = await asyncio.gather(*waiters, return_exceptions=True)
        for result in results:
            self.assertIsInstance(result, ModelDownloadFailed)

    async def test_init_failure_keeps_artifact_and_retry_resets_to_downloaded(self):
        loader = _Loader(fail_times=1)
        downloader = _FakeDownloader()
        manager = self._manager(downloader, loader)

        with self.assertRaises(ModelInitFailed):
            await manager.ensure_ready("mistral-7b")
        self.assertIs(manager.state("mistral-7b"), ModelState.FAILED)
        self.assertIn("bad weights", manager.resource("mistral-7b").last_error)

        self.assertIs(manager.retry("mistral-7b"), ModelState.DOWNLOADED)
        await manager.ensure_ready("mistral-7b")
        self.assertEqual(downloader.calls, 1)
        self.assertEqual(loader.calls, 2)

    async def test_existing_artifact_skips_download(self):
        (self.models_dir / "mistral.gguf").write_bytes(b"weights")
        downloader = _FakeDownloader()
        manager = self._manager(downloader, _Loader())
        self.assertIs(manager.state("mistral-7b"), ModelState.DOWNLOADED)
        await manager.ensure_ready("mistral-7b")
        self.assertEqual(downloader.calls, 0)

    async def test_model_without_url_starts_downloaded(self):
        downloader = _FakeDownloader()
        manager = self._manager(downloader, _Loader(), url=None)
        self.assertIs(manager.state("mistral-7b"), ModelState.DOWNLOADED)
        handle = await manager.ensure_ready("mistral-7b")
        self.assertIsNone(handle.path)
        self.assertEqual(downloader.calls, 0)

    async def test_progress_is_monotonic_and_completes(self):
        manager = self._manager(_FakeDownloader(), _Loader())
        events = []
        await manager.ensure_ready("mistral-7b", events.append)

        fractions = [event.fraction for event in events]
        self.assertEqual(fractions, sorted(fractions))
        self.assertTrue(all(0.0 <= f <= 1.0 for f in fractions))
        self.assertEqual(events[-1].state, ModelState.READY)
        self.assertEqual(events[-1].fraction, 1.0)
        states = [event.state for event in events]
        self.assertIn(ModelState.DOWNLOADING, states)
        self.assertIn(ModelState.INITIALIZING, states)

    async def test_get_before_ready_raises(self):
        manager = self._manager(_FakeDownloader(), _Loader())
        with self.assertRaises(ModelNotReady) as ctx:
            manager.get("mistral-7b")
        self.assertEqual(ctx.exception.state, "absent")
        with self.assertRaises(UnknownModel):
            manager.get("nope")

    async def test_release_frees_only_at_zero(self):
        loader = _Loader()
        manager = self._manager(_FakeDownloader(), loader)
        handle = await manager.ensure_ready("mistral-7b")
        await manager.ensure_ready("mistral-7b")
        self.assertEqual(loader.calls, 1)

        manager.release("mistral-7b")
        self.assertTrue(manager.is_ready("mistral-7b"))
        self.assertFalse(handle.closed)

        manager.release("mistral-7b")
        self.assertTrue(handle.closed)
        self.assertIs(manager.state("mistral-7b"), ModelState.DOWNLOADED)
        with self.assertRaises(ModelNotReady):
            manager.get("mistral-7b")

        manager.release("mistral-7b")
        manager.release("unknown")
        self.assertEqual(manager.resource("mistral-7b").ref_count, 0)

    async def test_shutdown_closes_loaded_handles(self):
        manager = self._manager(_FakeDownloader(), _Loader())
        handle = await manager.ensure_ready("mistral-7b")
        await manager.shutdown()
        self.assertTrue(handle.closed)
        self.assertIs(manager.state("mistral-7b"), ModelState.DOWNLOADED)


if __name__ == "__main__":
    unittest.main()
