"""Background queue of image-analysis tasks with bounded concurrency."""

from __future__ import annotations

import logging
import queue
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

from picturetalk import config
from picturetalk.models import AnalysisResult, Scene, SceneStatus, dedupe_words
from picturetalk.storage.image_store import ImageStore
from picturetalk.storage.scene_store import SceneStore

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    WAITING = "waiting"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStateError(Exception):
    """Raised when an operation does not fit the task's current status."""


@dataclass
class ImageAnalysisTask:
    image: bytes = field(repr=False)
    asset_identifier: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: TaskStatus = TaskStatus.WAITING
    error_message: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "asset_identifier": self.asset_identifier,
            "status": self.status.value,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "image_size": len(self.image),
        }


class Analyzer(Protocol):
    def analyze(self, image: bytes, chat_id=None, on_progress=None, on_step=None) -> AnalysisResult: ...


class TaskManager:
    """Runs analysis tasks, at most ``max_concurrent`` at a time.

    Tasks are listed newest first. Waiting tasks start oldest first whenever
    a slot is free. A successful task becomes a scene and leaves the queue;
    a failed one stays, marked failed, until it is retried or deleted.
    """

    def __init__(
        self,
        pipeline: Analyzer,
        scene_store: SceneStore,
        image_store: ImageStore,
        max_concurrent: int | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._scenes = scene_store
        self._images = image_store
        self._max_concurrent = max_concurrent or config.MAX_CONCURRENT_TASKS
        self._executor = ThreadPoolExecutor(
            max_workers=self._max_concurrent, thread_name_prefix="analysis",
        )
        self._tasks: list[ImageAnalysisTask] = []
        self._subscribers: dict[str, list[queue.Queue]] = {}
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._closed = False

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    # ── Commands ──

    def submit(self, image: bytes, asset_identifier: str = "") -> ImageAnalysisTask:
        """Queue an image for analysis and return a snapshot of the new task."""
        task = ImageAnalysisTask(image=image, asset_identifier=asset_identifier)
        with self._lock:
            if self._closed:
                raise TaskStateError("Task manager is shut down")
            self._tasks.insert(0, task)
            self._subscribers.setdefault(task.id, [])
            snapshot = replace(task)
            self._schedule_locked()
        logger.info("Queued task %s (%d bytes)", task.id, len(image))
        return snapshot

    def retry(self, task_id: str) -> ImageAnalysisTask:
        """Put a failed task back into the waiting state."""
        with self._lock:
            task = self._find_locked(task_id)
            if task.status != TaskStatus.FAILED:
                raise TaskStateError(f"Task {task_id} is {task.status.value}, not failed")
            task.status = TaskStatus.WAITING
            task.error_message = None
            snapshot = replace(task)
            self._schedule_locked()
        logger.info("Retrying task %s", task_id)
        return snapshot

    def delete_task(self, task_id: str) -> None:
        """Remove a waiting or failed task."""
        with self._lock:
            task = self._find_locked(task_id)
            if task.status == TaskStatus.PROCESSING:
                raise TaskStateError(f"Task {task_id} is processing")
            self._tasks.remove(task)
            self._subscribers.pop(task_id, None)
            self._idle.notify_all()

    # ── Queries ──

    def get_task(self, task_id: str) -> ImageAnalysisTask | None:
        with self._lock:
            task = next((t for t in self._tasks if t.id == task_id), None)
            return replace(task) if task else None

    def list_tasks(self) -> list[ImageAnalysisTask]:
        """Snapshots of all queued tasks, newest first."""
        with self._lock:
            return [replace(t) for t in self._tasks]

    def processing_count(self) -> int:
        with self._lock:
            return self._processing_locked()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no task is waiting or processing. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(
                lambda: not any(
                    t.status in (TaskStatus.WAITING, TaskStatus.PROCESSING) for t in self._tasks
                ),
                timeout=timeout,
            )

    # ── Progress streaming ──

    def subscribe(self, task_id: str) -> queue.Queue | None:
        """Subscribe to progress events for a task.

        Returns a Queue that receives event dicts, or None if the task
        doesn't exist.
        """
        with self._lock:
            if not any(t.id == task_id for t in self._tasks):
                return None
            q: queue.Queue = queue.Queue()
            self._subscribers.setdefault(task_id, []).append(q)
            return q

    def push_progress(self, task_id: str, event: dict) -> None:
        self._broadcast(task_id, {"type": "progress", **event})

    def _broadcast(self, task_id: str, event: dict) -> None:
        """Send an event to all subscribers of a task."""
        with self._lock:
            subs = list(self._subscribers.get(task_id, []))
        for q in subs:
            try:
                q.put_nowait(event)
            except queue.Full:
                pass

    # ── Scheduling ──

    def _find_locked(self, task_id: str) -> ImageAnalysisTask:
        for t in self._tasks:
            if t.id == task_id:
                return t
        raise KeyError(task_id)

    def _processing_locked(self) -> int:
        return sum(1 for t in self._tasks if t.status == TaskStatus.PROCESSING)

    def _schedule_locked(self) -> None:
        """Start the oldest waiting tasks while slots are free. Caller holds the lock."""
        if self._closed:
            return
        while self._processing_locked() < self._max_concurrent:
            # The list is newest first, so the oldest waiting task is the last one.
            task = next(
                (t for t in reversed(self._tasks) if t.status == TaskStatus.WAITING), None,
            )
            if task is None:
                return
            task.status = TaskStatus.PROCESSING
            logger.debug("Starting task %s", task.id)
            self._executor.submit(self._run, task.id, task.image, task.asset_identifier)

    def _run(self, task_id: str, image: bytes, asset_identifier: str) -> None:
        try:
            result = self._pipeline.analyze(
                image,
                on_progress=lambda text: self.push_progress(
                    task_id, {"step": "analyze", "chars": len(text)},
                ),
                on_step=lambda name: self.push_progress(task_id, {"step": name}),
            )
            scene = self._store_result(result, image, asset_identifier)
        except Exception as e:
            logger.exception("Task %s failed", task_id)
            with self._lock:
                task = next((t for t in self._tasks if t.id == task_id), None)
                if task is not None:
                    task.status = TaskStatus.FAILED
                    task.error_message = str(e) or type(e).__name__
            self._broadcast(task_id, {"type": "error", "error": str(e)})
        else:
            with self._lock:
                self._tasks = [t for t in self._tasks if t.id != task_id]
            self._broadcast(task_id, {"type": "done", "scene_id": scene.id})
            with self._lock:
                self._subscribers.pop(task_id, None)
            logger.info("Task %s completed as scene %s", task_id, scene.id)
        finally:
            with self._lock:
                self._schedule_locked()
                self._idle.notify_all()

    def _store_result(self, result: AnalysisResult, image: bytes, asset_identifier: str) -> Scene:
        scene = Scene(
            sentence=result.sentence,
            words=dedupe_words(result.words),
            asset_identifier=asset_identifier,
            status=SceneStatus.COMPLETED,
        )
        path = self._images.save(scene.id, image)
        if path is not None:
            scene = replace(scene, image_path=str(path))
        try:
            self._scenes.upsert_scene(scene)
        except Exception:
            if path is not None:
                self._images.delete(scene.id)
            raise
        return scene

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)
