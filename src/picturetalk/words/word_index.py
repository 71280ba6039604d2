"""Unique-word index derived from the scene collection.

The index is a cache: it is recomputed from the scenes whenever the scene
store changes and never written back. Only the set of favorited word texts
is persisted, separately, and re-applied after every rebuild.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from typing import Callable, Iterable

from picturetalk.models import Scene, WordStatus
from picturetalk.storage.kv_store import FAVORITES_KEY, KeyValueStore

logger = logging.getLogger(__name__)

StatusLookup = Callable[[str], "WordStatus | None"]


@dataclass(frozen=True)
class UniqueWord:
    """Every occurrence of one word text across all scenes.

    Phonetics and explanation come from the first occurrence. ``scene_ids``
    keeps owning scenes in the order they were encountered.
    """

    id: str
    word: str
    phoneticsymbols: str
    explanation: str
    scene_ids: tuple[str, ...]
    is_favorite: bool = False
    learning_status: WordStatus | None = None

    @property
    def first_scene_id(self) -> str | None:
        return self.scene_ids[0] if self.scene_ids else None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "word": self.word,
            "phoneticsymbols": self.phoneticsymbols,
            "explanation": self.explanation,
            "scene_ids": list(self.scene_ids),
            "is_favorite": self.is_favorite,
            "learning_status": self.learning_status.value if self.learning_status else None,
        }


def build_unique_words(scenes: Iterable[Scene]) -> list[UniqueWord]:
    """Aggregate scene words by text, sorted by word text.

    Pure function: ids are freshly generated and no favorite or learning
    state is applied.
    """
    by_text: dict[str, UniqueWord] = {}
    for scene in scenes:
        for item in scene.words:
            existing = by_text.get(item.word)
            if existing is None:
                by_text[item.word] = UniqueWord(
                    id=str(uuid.uuid4()),
                    word=item.word,
                    phoneticsymbols=item.phoneticsymbols,
                    explanation=item.explanation,
                    scene_ids=(scene.id,),
                )
            elif scene.id not in existing.scene_ids:
                by_text[item.word] = replace(existing, scene_ids=existing.scene_ids + (scene.id,))
    return sorted(by_text.values(), key=lambda w: w.word)


class WordIndex:
    def __init__(
        self,
        kv: KeyValueStore,
        status_lookup: StatusLookup | None = None,
    ) -> None:
        self._kv = kv
        self._lock = threading.RLock()
        self._words: list[UniqueWord] = []
        self._status_lookup = status_lookup
        self._favorites: set[str] = set(self._load_favorites())

    def set_status_lookup(self, lookup: StatusLookup | None) -> None:
        with self._lock:
            self._status_lookup = lookup

    # ── Derivation ──

    def rebuild(self, scenes: Iterable[Scene]) -> list[UniqueWord]:
        """Recompute every unique word from ``scenes``.

        Words that already existed keep their id across rebuilds.
        """
        fresh = build_unique_words(scenes)
        with self._lock:
            previous_ids = {w.word: w.id for w in self._words}
            self._words = [
                self._decorate(replace(w, id=previous_ids.get(w.word, w.id)))
                for w in fresh
            ]
            logger.debug("Word index rebuilt: %d unique words", len(self._words))
            return list(self._words)

    def remove_scene(self, scene: Scene | str) -> list[UniqueWord]:
        """Drop a scene from every word; words left without scenes disappear."""
        scene_id = scene if isinstance(scene, str) else scene.id
        with self._lock:
            kept: list[UniqueWord] = []
            for w in self._words:
                if scene_id in w.scene_ids:
                    remaining = tuple(s for s in w.scene_ids if s != scene_id)
                    if not remaining:
                        continue
                    w = replace(w, scene_ids=remaining)
                kept.append(w)
            removed = len(self._words) - len(kept)
            self._words = kept
            if removed:
                logger.debug("Removed %d words with scene %s", removed, scene_id)
            return list(self._words)

    def refresh_learning_status(self) -> None:
        with self._lock:
            self._words = [self._decorate(w) for w in self._words]

    def _decorate(self, word: UniqueWord) -> UniqueWord:
        status = self._status_lookup(word.word) if self._status_lookup else None
        return replace(
            word,
            is_favorite=word.word in self._favorites,
            learning_status=status or WordStatus.NOT_LEARNED,
        )

    def on_scene_event(self, event: str, scene: Scene | None, scenes: list[Scene]) -> None:
        """Scene store listener keeping the index in step with the scenes.

        ``scenes`` is the store's contents at delivery time, so every
        structural change rebuilds from it rather than patching the index.
        """
        if event in ("upserted", "deleted", "loaded"):
            self.rebuild(scenes)

    # ── Queries ──

    def all_words(self) -> list[UniqueWord]:
        with self._lock:
            return list(self._words)

    def get(self, word_text: str) -> UniqueWord | None:
        with self._lock:
            return next((w for w in self._words if w.word == word_text), None)

    def words_for_scene(self, scene_id: str) -> list[UniqueWord]:
        with self._lock:
            return [w for w in self._words if scene_id in w.scene_ids]

    def __len__(self) -> int:
        with self._lock:
            return len(self._words)

    # ── Favorites ──

    def favorites(self) -> list[UniqueWord]:
        with self._lock:
            return [w for w in self._words if w.is_favorite]

    def toggle_favorite(self, word_text: str) -> UniqueWord | None:
        """Flip the favorite flag of a word and persist the favorites set."""
        with self._lock:
            for i, w in enumerate(self._words):
                if w.word != word_text:
                    continue
                if w.is_favorite:
                    self._favorites.discard(word_text)
                else:
                    self._favorites.add(word_text)
                updated = replace(w, is_favorite=not w.is_favorite)
                self._words[i] = updated
                self._save_favorites()
                return updated
        return None

    def _load_favorites(self) -> list[str]:
        value = self._kv.get_json(FAVORITES_KEY, default=[])
        if not isinstance(value, list):
            logger.warning("Ignoring malformed favorites list")
            return []
        return [str(v) for v in value]

    def _save_favorites(self) -> None:
        favorites = sorted(self._favorites)
        try:
            self._kv.set_json(FAVORITES_KEY, favorites)
        except Exception:
            logger.exception("Failed to save %d favorites", len(favorites))
