"""
Readiness gate for the heavyweight local models.

Every capability (transcription, embedding, generation, synthesis) moves
through absent -> downloading -> downloaded -> initializing -> ready, with
failed reachable from any stage. Concurrent callers for one model name share
a single in-flight bring-up; different names progress independently.
Blocking download and load work runs in worker threads.
"""
from __future__ import annotations

import asyncio
import threading
from pathlib import Path
from typing import Any, Callable, Iterable

from .capabilities import ModelSpec, close_handle
from .config import MODELS_DIR
from .downloader import Downloader, HttpDownloader, partial_path
from .errors import ModelDownloadFailed, ModelInitFailed, ModelNotReady, UnknownModel
from .observability import get_logger
from .records import ModelResource, ModelState, ProgressEvent

logger = get_logger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]


class ModelLifecycleManager:
    """Reference-counted, single-flight owner of model handles."""

    def __init__(
        self,
        catalogue: Iterable[ModelSpec],
        models_dir: str | Path = MODELS_DIR,
        downloader: Downloader | None = None,
    ):
        self.models_dir = Path(models_dir)
        self.models_dir.mkdir(parents=True, exist_ok=True)
        self._downloader = downloader or HttpDownloader()
        self._specs: dict[str, ModelSpec] = {}
        self._resources: dict[str, ModelResource] = {}
        self._handles: dict[str, Any] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._listeners: dict[str, list[ProgressCallback]] = {}
        self._ref_lock = threading.Lock()

        for spec in catalogue:
            if spec.url and not spec.filename:
                raise ValueError(f"model '{spec.name}' has a download url but no filename")
            path = spec.artifact_path(self.models_dir)
            resource = ModelResource(name=spec.name, path=path, size_bytes=int(spec.size_bytes))
            resource.state = self._resting_state(spec, path)
            self._specs[spec.name] = spec
            self._resources[spec.name] = resource

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def names(self) -> list[str]:
        return list(self._specs)

    def resource(self, name: str) -> ModelResource:
        self._spec(name)
        return self._resources[name]

    def state(self, name: str) -> ModelState:
        return self.resource(name).state

    def is_ready(self, name: str) -> bool:
        return self.state(name) is ModelState.READY

    def get(self, name: str) -> Any:
        """Returns the loaded handle without blocking; raises ModelNotReady otherwise."""
        resource = self.resource(name)
        with self._ref_lock:
            if resource.state is ModelState.READY:
                return self._handles[name]
        raise ModelNotReady(name, resource.state.value)

    # ------------------------------------------------------------------
    # Bring-up
    # ------------------------------------------------------------------
    async def ensure_ready(self, name: str, on_progress: ProgressCallback | None = None) -> Any:
        """
        Returns the ready handle, downloading and initializing it if needed.
        Each successful call takes one reference that ``release`` gives back.
        """
        spec = self._spec(name)
        resource = self._resources[name]
        while True:
            handle = self._acquire(name)
            if handle is not None:
                if on_progress:
                    self._notify(on_progress, ProgressEvent(name, ModelState.READY, 1.0))
                return handle

            task = self._inflight.get(name)
            if task is None or task.done():
                if resource.state is ModelState.FAILED:
                    self._reset_failed(resource, spec)
                task = asyncio.get_running_loop().create_task(self._bring_up(spec, resource))
                self._inflight[name] = task
                self._listeners[name] = []
                task.add_done_callback(lambda done, n=name: self._finish(n, done))
            else:
                logger.info("model_join_inflight", model=name, state=resource.state.value)

            listeners = self._listeners.setdefault(name, [])
            if on_progress:
                listeners.append(on_progress)
                self._notify(on_progress, ProgressEvent(name, resource.state, resource.progress))
            try:
                await asyncio.shield(task)
            finally:
                if on_progress and on_progress in listeners:
                    listeners.remove(on_progress)

    async def _bring_up(self, spec: ModelSpec, resource: ModelResource) -> Any:
        name = spec.name
        loop = asyncio.get_running_loop()
        weight = min(1.0, max(0.0, float(spec.download_weight))) if spec.url else 0.0
        resource.progress = 0.0
        resource.last_error = None

        if resource.state is ModelState.ABSENT:
            self._set_state(resource, ModelState.DOWNLOADING, 0.0)

            def _on_bytes(written: int, total: int):
                fraction = (written / total) if total else 0.0
                loop.call_soon_threadsafe(
                    self._emit, resource, ModelState.DOWNLOADING, weight * min(1.0, fraction)
                )

            try:
                await asyncio.to_thread(self._downloader.download, spec.url, resource.path, _on_bytes)
            except Exception as exc:
                self._fail(resource, exc, stage="download")
                self._discard_artifact(resource.path)
                raise ModelDownloadFailed(name, str(exc)) from exc
            if resource.path is not None and resource.path.exists():
                resource.size_bytes = resource.path.stat().st_size
            self._set_state(resource, ModelState.DOWNLOADED, weight)

        self._set_state(resource, ModelState.INITIALIZING, weight)
        try:
            handle = await asyncio.to_thread(spec.loader, resource.path)
        except Exception as exc:
            self._fail(resource, exc, stage="initialize")
            raise ModelInitFailed(name, str(exc)) from exc

        with self._ref_lock:
            self._handles[name] = handle
        self._set_state(resource, ModelState.READY, 1.0)
        logger.info("model_ready", model=name, size_bytes=resource.size_bytes)
        return handle

    def _finish(self, name: str, task: asyncio.Task):
        if self._inflight.get(name) is task:
            self._inflight.pop(name, None)
            self._listeners.pop(name, None)
        if task.cancelled():
            resource = self._resources[name]
            if resource.state in (ModelState.DOWNLOADING, ModelState.INITIALIZING):
                resource.state = self._resting_state(self._specs[name], resource.path)
            return
        # Marks the exception retrieved when every waiter has gone away.
        task.exception()

    # ------------------------------------------------------------------
    # References
    # ------------------------------------------------------------------
    def _acquire(self, name: str) -> Any:
        resource = self._resources[name]
        with self._ref_lock:
            if resource.state is not ModelState.READY:
                return None
            resource.ref_count += 1
            return self._handles[name]

    def release(self, name: str):
        """Drops one reference; native resources are freed when the count reaches zero."""
        if name not in self._resources:
            return
        resource = self._resources[name]
        with self._ref_lock:
            if resource.ref_count <= 0:
                return
            resource.ref_count -= 1
            if resource.ref_count > 0:
                return
            handle = self._handles.pop(name, None)
            resource.state = ModelState.DOWNLOADED
            resource.progress = 0.0
        logger.info("model_released", model=name)
        self._close(name, handle)

    def retry(self, name: str) -> ModelState:
        """Resets a failed model so the next ``ensure_ready`` starts over."""
        spec = self._spec(name)
        resource = self._resources[name]
        if resource.state is ModelState.FAILED:
            self._reset_failed(resource, spec)
        return resource.state

    async def shutdown(self):
        """Cancels pending bring-ups and closes every loaded handle."""
        pending = list(self._inflight.values())
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        with self._ref_lock:
            loaded = list(self._handles.items())
            self._handles.clear()
            for name, _ in loaded:
                resource = self._resources[name]
                resource.ref_count = 0
                resource.state = ModelState.DOWNLOADED
                resource.progress = 0.0
        for name, handle in loaded:
            self._close(name, handle)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _spec(self, name: str) -> ModelSpec:
        spec = self._specs.get(name)
        if spec is None:
            raise UnknownModel(f"no model named '{name}' in the catalogue")
        return spec

    @staticmethod
    def _resting_state(spec: ModelSpec, path: Path | None) -> ModelState:
        if not spec.url:
            return ModelState.DOWNLOADED
        if path is not None and path.exists():
            return ModelState.DOWNLOADED
        return ModelState.ABSENT

    def _reset_failed(self, resource: ModelResource, spec: ModelSpec):
        resource.state = self._resting_state(spec, resource.path)
        resource.progress = 0.0
        logger.info("model_retry_reset", model=resource.name, state=resource.state.value)

    def _set_state(self, resource: ModelResource, state: ModelState, fraction: float):
        resource.state = state
        self._emit(resource, state, fraction)

    def _emit(self, resource: ModelResource, state: ModelState, fraction: float):
        if resource.state is not state:
            # Late byte callbacks after the stage has moved on.
            return
        resource.progress = max(resource.progress, min(1.0, float(fraction)))
        event = ProgressEvent(resource.name, state, resource.progress)
        for listener in list(self._listeners.get(resource.name, ())):
            self._notify(listener, event)

    def _notify(self, listener: ProgressCallback, event: ProgressEvent):
        try:
            listener(event)
        except Exception as exc:
            logger.warning("model_progress_listener_failed", model=event.name, error=str(exc))

    def _fail(self, resource: ModelResource, exc: Exception, *, stage: str):
        resource.state = ModelState.FAILED
        resource.last_error = str(exc)
        logger.error("model_bring_up_failed", model=resource.name, stage=stage, error=str(exc))

    @staticmethod
    def _discard_artifact(path: Path | None):
        if path is None:
            return
        for candidate in (path, partial_path(path)):
            candidate.unlink(missing_ok=True)

    def _close(self, name: str, handle: Any):
        if handle is None:
            return
        try:
            close_handle(handle)
        except Exception as exc:
            logger.warning("model_close_failed", model=name, error=str(exc))
