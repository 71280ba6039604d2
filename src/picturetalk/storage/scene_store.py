"""Durable scene collection with debounced persistence.

All mutations go through one re-entrant lock. Writes to the blob store are
coalesced by a timer so a burst of changes (e.g. a word being dragged)
results in a single save; ``flush_now`` forces the write when the host is
about to suspend or exit.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import replace
from typing import Callable

from picturetalk import config
from picturetalk.models import Point, Scene, decode_scenes, encode_scenes
from picturetalk.storage.kv_store import SCENES_KEY, KeyValueStore

logger = logging.getLogger(__name__)

# Subscriber signature: (event, scene or None, snapshot of all scenes)
SceneListener = Callable[[str, "Scene | None", "list[Scene]"], None]


class SceneStore:
    def __init__(
        self,
        kv: KeyValueStore,
        debounce_secs: float | None = None,
    ) -> None:
        self._kv = kv
        self._debounce = config.SAVE_DEBOUNCE_SECS if debounce_secs is None else debounce_secs
        self._scenes: list[Scene] = []
        self._lock = threading.RLock()
        # Deliveries run one at a time so the last listener call sees the latest scenes
        self._notify_lock = threading.RLock()
        self._timer: threading.Timer | None = None
        self._dirty = False
        self._listeners: list[SceneListener] = []

    # ── Subscription ──

    def subscribe(self, listener: SceneListener) -> Callable[[], None]:
        """Register a change listener. Returns a function that removes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, event: str, scene: Scene | None) -> None:
        with self._notify_lock:
            with self._lock:
                listeners = list(self._listeners)
                snapshot = list(self._scenes)
            for listener in listeners:
                try:
                    listener(event, scene, snapshot)
                except Exception:
                    logger.exception("Scene listener failed on %r", event)

    # ── Queries ──

    def list_scenes(self) -> list[Scene]:
        """All scenes, newest first."""
        with self._lock:
            return list(self._scenes)

    def get_scene(self, scene_id: str) -> Scene | None:
        with self._lock:
            return next((s for s in self._scenes if s.id == scene_id), None)

    def find_scene_for_word(self, word_text: str) -> Scene | None:
        """First scene (in stored order) that contains ``word_text``."""
        with self._lock:
            return next((s for s in self._scenes if s.has_word(word_text)), None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._scenes)

    # ── Mutations ──

    def upsert_scene(self, scene: Scene) -> None:
        """Replace the scene with the same id, or insert it as the newest."""
        with self._lock:
            for i, existing in enumerate(self._scenes):
                if existing.id == scene.id:
                    logger.debug(
                        "Replacing scene %s (%d -> %d words)",
                        scene.id, len(existing.words), len(scene.words),
                    )
                    self._scenes[i] = scene
                    break
            else:
                logger.debug("Inserting scene %s", scene.id)
                self._scenes.insert(0, scene)
            self.schedule_save()
        self._notify("upserted", scene)

    def delete_scene(self, scene: Scene) -> bool:
        """Remove a scene by id. Returns False if it was not stored."""
        with self._lock:
            before = len(self._scenes)
            self._scenes = [s for s in self._scenes if s.id != scene.id]
            if len(self._scenes) == before:
                return False
            self.schedule_save()
        logger.info("Deleted scene %s", scene.id)
        self._notify("deleted", scene)
        return True

    def update_word_position(self, word_text: str, position: Point) -> Scene | None:
        """Set the custom position of a word, matched by text in the first scene holding it.

        Only the first matching scene is touched even when other scenes
        contain the same word text. The save is debounced.
        """
        with self._lock:
            for i, scene in enumerate(self._scenes):
                if not scene.has_word(word_text):
                    continue
                words = [
                    w.with_custom_position(position) if w.word == word_text else w
                    for w in scene.words
                ]
                updated = replace(scene, words=words)
                self._scenes[i] = updated
                self.schedule_save()
                break
            else:
                return None
        self._notify("position", updated)
        return updated

    # ── Persistence ──

    def load(self) -> int:
        """Replace the in-memory collection with the stored one.

        A missing or unreadable blob leaves the store empty. Image bytes are
        not restored. Returns the number of scenes loaded.
        """
        t0 = time.perf_counter()
        rows = self._kv.get_json(SCENES_KEY)
        scenes: list[Scene] = []
        if rows is None:
            logger.info("No saved scenes found")
        else:
            try:
                scenes = decode_scenes(rows)
            except (KeyError, TypeError, ValueError):
                logger.exception("Error decoding saved scenes; starting empty")
                scenes = []
        with self._lock:
            self._scenes = scenes
            self._dirty = False
        logger.info("Loaded %d scenes (%.0fms)", len(scenes), (time.perf_counter() - t0) * 1000)
        self._notify("loaded", None)
        return len(scenes)

    def persist(self) -> bool:
        """Write the whole collection. Failures are logged and leave the store dirty."""
        with self._lock:
            try:
                payload = encode_scenes(self._scenes)
                self._kv.set_json(SCENES_KEY, payload)
            except Exception:
                self._dirty = True
                logger.exception("Failed to persist %d scenes; will retry on next save", len(self._scenes))
                return False
            self._dirty = False
            logger.debug("Persisted %d scenes", len(payload))
            return True

    def schedule_save(self) -> None:
        """Coalesce saves: restart the debounce timer."""
        with self._lock:
            self._dirty = True
            if self._timer is not None:
                self._timer.cancel()
            if self._debounce <= 0:
                self._timer = None
                self.persist()
                return
            timer = threading.Timer(self._debounce, self._on_timer)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _on_timer(self) -> None:
        with self._lock:
            if self._timer is threading.current_thread():
                self._timer = None
            if not self._dirty:
                return
            self.persist()

    def flush_now(self) -> bool:
        """Cancel any pending save and write immediately."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            return self.persist()

    @property
    def has_pending_save(self) -> bool:
        with self._lock:
            return self._dirty
