"""Daily review lessons sampled from the word index."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Callable

from picturetalk.models import WordStatus, parse_datetime
from picturetalk.storage.kv_store import (
    LEARNING_RECORDS_KEY,
    LEARNING_SETTINGS_KEY,
    LEARNING_TASKS_KEY,
    KeyValueStore,
)
from picturetalk.words.word_index import WordIndex

logger = logging.getLogger(__name__)

MIN_WORDS_PER_LESSON = 5
MAX_WORDS_PER_LESSON = 100
DEFAULT_WORDS_PER_LESSON = 10


class RecordExistsError(Exception):
    """Raised when a lesson already has its learning record."""


class LearningStatus(str, Enum):
    NOT_STARTED = "notStarted"
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class LearningWord:
    word: str
    phoneticsymbols: str
    explanation: str
    scene_id: str
    status: WordStatus = WordStatus.NOT_LEARNED
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "word": self.word,
            "phoneticsymbols": self.phoneticsymbols,
            "explanation": self.explanation,
            "scene_id": self.scene_id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> LearningWord:
        return cls(
            id=data["id"],
            word=data["word"],
            phoneticsymbols=data.get("phoneticsymbols", ""),
            explanation=data.get("explanation", ""),
            scene_id=data.get("scene_id", ""),
            status=WordStatus(data.get("status", WordStatus.NOT_LEARNED.value)),
            created_at=parse_datetime(data.get("created_at")),
        )


@dataclass
class LearningTask:
    date: datetime
    words: list[LearningWord]
    status: LearningStatus = LearningStatus.NOT_STARTED
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "words": [w.to_dict() for w in self.words],
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> LearningTask:
        return cls(
            id=data["id"],
            date=parse_datetime(data["date"]),
            words=[LearningWord.from_dict(w) for w in data.get("words", [])],
            status=LearningStatus(data.get("status", LearningStatus.NOT_STARTED.value)),
            created_at=parse_datetime(data.get("created_at")),
        )


@dataclass(frozen=True)
class LearningRecord:
    date: datetime
    completed_words: int
    total_words: int
    task_id: str = ""
    id: str = field(default_factory=_new_id)

    @property
    def completion_rate(self) -> float:
        if self.total_words <= 0:
            return 0.0
        return self.completed_words / self.total_words

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "completed_words": self.completed_words,
            "total_words": self.total_words,
            "task_id": self.task_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> LearningRecord:
        return cls(
            id=data["id"],
            date=parse_datetime(data["date"]),
            completed_words=int(data["completed_words"]),
            total_words=int(data["total_words"]),
            task_id=data.get("task_id", ""),
        )


@dataclass(frozen=True)
class LearningSettings:
    words_per_lesson: int = DEFAULT_WORDS_PER_LESSON

    def clamped(self) -> LearningSettings:
        return LearningSettings(
            max(MIN_WORDS_PER_LESSON, min(self.words_per_lesson, MAX_WORDS_PER_LESSON))
        )


class LearningScheduler:
    """Creates one review lesson per calendar day and tracks its progress."""

    def __init__(
        self,
        kv: KeyValueStore,
        word_index: WordIndex,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._kv = kv
        self._index = word_index
        self._clock = clock or (lambda: datetime.now().astimezone())
        self._lock = threading.RLock()
        self._tasks: list[LearningTask] = self._load(LEARNING_TASKS_KEY, LearningTask.from_dict)
        self._records: list[LearningRecord] = self._load(LEARNING_RECORDS_KEY, LearningRecord.from_dict)
        self._settings = self._load_settings()

    def _load_settings(self) -> LearningSettings:
        raw = self._kv.get_json(LEARNING_SETTINGS_KEY, default={}) or {}
        try:
            words_per_lesson = int(raw.get("words_per_lesson", DEFAULT_WORDS_PER_LESSON))
        except (AttributeError, TypeError, ValueError):
            logger.warning("Ignoring malformed learning settings %r", raw)
            return LearningSettings()
        return LearningSettings(words_per_lesson).clamped()

    def _load(self, key: str, decode: Callable[[dict], object]) -> list:
        rows = self._kv.get_json(key, default=[])
        try:
            return [decode(r) for r in rows]
        except (KeyError, TypeError, ValueError):
            logger.exception("Error decoding %s; starting empty", key)
            return []

    def _today(self) -> date:
        return self._clock().date()

    def _local_date(self, value: datetime) -> date:
        now = self._clock()
        if now.tzinfo is not None:
            value = value.astimezone(now.tzinfo)
        return value.date()

    # ── Persistence ──

    def _save_tasks(self) -> None:
        try:
            self._kv.set_json(LEARNING_TASKS_KEY, [t.to_dict() for t in self._tasks])
        except Exception:
            logger.exception("Failed to save learning tasks")

    def _save_records(self) -> None:
        try:
            self._kv.set_json(LEARNING_RECORDS_KEY, [r.to_dict() for r in self._records])
        except Exception:
            logger.exception("Failed to save learning records")

    # ── Settings ──

    @property
    def settings(self) -> LearningSettings:
        with self._lock:
            return self._settings

    def update_settings(self, words_per_lesson: int) -> LearningSettings:
        """Store a new lesson size, clamped to the allowed range."""
        with self._lock:
            self._settings = LearningSettings(words_per_lesson).clamped()
            self._kv.set_json(LEARNING_SETTINGS_KEY, {"words_per_lesson": self._settings.words_per_lesson})
            return self._settings

    # ── Tasks ──

    def list_tasks(self) -> list[LearningTask]:
        with self._lock:
            return list(self._tasks)

    def get_task(self, task_id: str) -> LearningTask | None:
        with self._lock:
            return next((t for t in self._tasks if t.id == task_id), None)

    def has_today_task(self) -> bool:
        return self.today_task() is not None

    def today_task(self) -> LearningTask | None:
        today = self._today()
        with self._lock:
            return next((t for t in self._tasks if self._local_date(t.date) == today), None)

    def generate_daily_task(self) -> LearningTask | None:
        """Create today's lesson from the first words of the index.

        Does nothing and returns None if today already has a lesson or the
        index has no words yet.
        """
        # Lock order is index -> scheduler (see status_for_word); never call
        # into the index while holding self._lock.
        words = self._index.all_words()
        with self._lock:
            if self.has_today_task():
                logger.info("Today's learning task already exists")
                return None
            if not words:
                logger.info("No words available for a learning task")
                return None
            now = self._clock()
            selected = [
                LearningWord(
                    word=w.word,
                    phoneticsymbols=w.phoneticsymbols,
                    explanation=w.explanation,
                    scene_id=w.first_scene_id or "",
                    created_at=now,
                )
                for w in words[: self._settings.words_per_lesson]
            ]
            task = LearningTask(date=now, words=selected, created_at=now)
            self._tasks.append(task)
            self._save_tasks()
        logger.info("Created learning task %s with %d words", task.id, len(selected))
        self._index.refresh_learning_status()
        return task

    def update_task(self, task: LearningTask) -> bool:
        with self._lock:
            for i, existing in enumerate(self._tasks):
                if existing.id == task.id:
                    self._tasks[i] = task
                    self._save_tasks()
                    break
            else:
                return False
        self._index.refresh_learning_status()
        return True

    def update_word_status(self, task_id: str, word_id: str, status: WordStatus) -> LearningTask | None:
        """Set one word's status and recompute the task status."""
        with self._lock:
            task = self.get_task(task_id)
            if task is None or not any(w.id == word_id for w in task.words):
                return None
            words = [replace(w, status=status) if w.id == word_id else w for w in task.words]
            all_learned = all(w.status != WordStatus.NOT_LEARNED for w in words)
            updated = replace(
                task,
                words=words,
                status=LearningStatus.COMPLETED if all_learned else LearningStatus.IN_PROGRESS,
            )
            self._tasks = [updated if t.id == task_id else t for t in self._tasks]
            self._save_tasks()
        self._index.refresh_learning_status()
        return updated

    def delete_task(self, task_id: str) -> bool:
        with self._lock:
            before = len(self._tasks)
            self._tasks = [t for t in self._tasks if t.id != task_id]
            if len(self._tasks) == before:
                return False
            self._save_tasks()
        self._index.refresh_learning_status()
        return True

    def status_for_word(self, word_text: str) -> WordStatus | None:
        """Status of ``word_text`` in the most recent lesson, if it is in it."""
        with self._lock:
            if not self._tasks:
                return None
            latest = self._tasks[-1]
        return next((w.status for w in latest.words if w.word == word_text), None)

    # ── Records ──

    def record_learning(self, task: LearningTask) -> LearningRecord:
        """Append a completion snapshot for a finished or abandoned lesson.

        Each lesson is recorded once; a second call raises RecordExistsError.
        """
        completed = sum(1 for w in task.words if w.status != WordStatus.NOT_LEARNED)
        record = LearningRecord(
            date=task.date,
            completed_words=completed,
            total_words=len(task.words),
            task_id=task.id,
        )
        with self._lock:
            if any(r.task_id == task.id for r in self._records):
                raise RecordExistsError(f"Lesson {task.id} is already recorded")
            self._records.append(record)
            self._save_records()
        logger.info("Recorded learning: %d/%d words", completed, len(task.words))
        return record

    def list_records(self) -> list[LearningRecord]:
        with self._lock:
            return list(self._records)

    def records_between(self, start: date, end: date) -> list[LearningRecord]:
        """Records whose date falls within [start, end], for calendar views."""
        with self._lock:
            return [r for r in self._records if start <= self._local_date(r.date) <= end]
