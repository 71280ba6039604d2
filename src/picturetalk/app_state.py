"""Wires the stores, index, pipeline and queues together."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path

from picturetalk import config
from picturetalk.analysis.client import AnalysisClient
from picturetalk.analysis.pipeline import AnalysisPipeline
from picturetalk.learning.scheduler import LearningScheduler
from picturetalk.settings import SettingsStore
from picturetalk.storage.image_store import ImageStore
from picturetalk.storage.kv_store import KeyValueStore
from picturetalk.storage.scene_store import SceneStore
from picturetalk.tasks.task_manager import Analyzer, TaskManager
from picturetalk.words.word_index import WordIndex

logger = logging.getLogger(__name__)


@dataclass
class AppState:
    kv: KeyValueStore
    settings: SettingsStore
    scenes: SceneStore
    images: ImageStore
    words: WordIndex
    learning: LearningScheduler
    pipeline: Analyzer
    tasks: TaskManager

    def delete_scene(self, scene_id: str) -> bool:
        """Delete a scene with its image file. The word index follows via the store."""
        scene = self.scenes.get_scene(scene_id)
        if scene is None:
            return False
        self.scenes.delete_scene(scene)
        self.images.delete(scene_id)
        return True

    def shutdown(self) -> None:
        """Let in-flight analyses finish, then flush pending saves."""
        self.tasks.shutdown(wait=True)
        self.scenes.flush_now()
        self.kv.close()


def create_app_state(
    data_dir: Path | None = None,
    client: AnalysisClient | None = None,
    pipeline: Analyzer | None = None,
    debounce_secs: float | None = None,
    max_concurrent: int | None = None,
) -> AppState:
    """Build and load every component.

    Args:
        data_dir: Root for the database and images (defaults to config).
        client: Analysis client override; otherwise chosen from settings.
        pipeline: Full pipeline override, mainly for tests.
    """
    t0 = time.perf_counter()
    if data_dir is None:
        db_path, images_dir = config.SQLITE_PATH, config.IMAGES_DIR
    else:
        db_path, images_dir = data_dir / "picturetalk.db", data_dir / "images"

    kv = KeyValueStore(db_path)
    kv.init_db()
    settings = SettingsStore(kv)
    scenes = SceneStore(kv, debounce_secs=debounce_secs)
    images = ImageStore(images_dir)
    words = WordIndex(kv)
    learning = LearningScheduler(kv, words)
    words.set_status_lookup(learning.status_for_word)
    scenes.subscribe(words.on_scene_event)
    scenes.load()

    if pipeline is None:
        pipeline = AnalysisPipeline(kv, settings, client=client)
    tasks = TaskManager(pipeline, scenes, images, max_concurrent=max_concurrent)

    logger.info(
        "App state ready: %d scenes, %d words (%.2fs)",
        len(scenes), len(words), time.perf_counter() - t0,
    )
    return AppState(
        kv=kv,
        settings=settings,
        scenes=scenes,
        images=images,
        words=words,
        learning=learning,
        pipeline=pipeline,
        tasks=tasks,
    )
