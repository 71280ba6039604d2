"""Scene, word and sentence records plus their JSON codec."""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

DEFAULT_POSITION = (0.5, 0.5)


def _clamp_unit(value: float) -> float:
    return max(0.0, min(value, 1.0))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: str | None) -> datetime:
    """Parse an ISO-8601 timestamp, assuming UTC when no offset is stored."""
    if not value:
        return _utcnow()
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class Point:
    x: float
    y: float

    def clamped(self) -> Point:
        """Return this point with both coordinates clamped to [0, 1]."""
        return Point(_clamp_unit(self.x), _clamp_unit(self.y))

    def to_list(self) -> list[float]:
        return [self.x, self.y]

    @classmethod
    def from_list(cls, value: Any) -> Point:
        x, y = value
        return cls(float(x), float(y))


def parse_location(location: str) -> Point:
    """Parse an ``"x, y"`` location string into a normalized point.

    Anything that is not exactly two finite numbers falls back to the
    image centre. Parsed values are clamped to [0, 1].
    """
    parts = [p.strip() for p in location.split(",")]
    if len(parts) != 2:
        return Point(*DEFAULT_POSITION)
    try:
        x, y = float(parts[0]), float(parts[1])
    except ValueError:
        return Point(*DEFAULT_POSITION)
    if not (math.isfinite(x) and math.isfinite(y)):
        return Point(*DEFAULT_POSITION)
    return Point(x, y).clamped()


class SceneStatus(str, Enum):
    ANALYZING = "analyzing"
    COMPLETED = "completed"


class WordStatus(str, Enum):
    """Learning progress of a single word."""

    NOT_LEARNED = "notLearned"
    NEED_REVIEW = "needReview"
    MASTERED = "mastered"


@dataclass(frozen=True)
class Sentence:
    text: str
    translation: str

    def to_dict(self) -> dict:
        return {"text": self.text, "translation": self.translation}

    @classmethod
    def from_dict(cls, data: dict) -> Sentence:
        return cls(text=str(data["text"]), translation=str(data.get("translation", "")))


@dataclass(frozen=True)
class WordItem:
    """One vocabulary annotation pinned to a point of a scene image.

    ``location`` is the raw string returned by the analysis service and
    ``custom_position`` the user-dragged override. ``position`` resolves
    which of the two is displayed.
    """

    word: str
    phoneticsymbols: str
    explanation: str
    location: str
    custom_position: Point | None = None

    @property
    def original_position(self) -> Point:
        return parse_location(self.location)

    @property
    def position(self) -> Point:
        if self.custom_position is not None:
            return self.custom_position.clamped()
        return self.original_position

    def with_custom_position(self, position: Point) -> WordItem:
        return replace(self, custom_position=position.clamped())

    def to_dict(self) -> dict:
        data = {
            "word": self.word,
            "phoneticsymbols": self.phoneticsymbols,
            "explanation": self.explanation,
            "location": self.location,
        }
        if self.custom_position is not None:
            data["custom_position"] = self.custom_position.to_list()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> WordItem:
        custom = data.get("custom_position")
        return cls(
            word=str(data["word"]),
            phoneticsymbols=str(data.get("phoneticsymbols", "")),
            explanation=str(data.get("explanation", "")),
            location=str(data.get("location", "")),
            custom_position=Point.from_list(custom) if custom is not None else None,
        )


@dataclass
class Scene:
    """One analyzed photo with its words and descriptive sentence.

    ``image`` holds decoded bytes for the current process only and is never
    serialized; images are reloaded from disk by scene id.
    """

    sentence: Sentence
    words: list[WordItem] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    image_path: str = ""
    asset_identifier: str = ""
    created_at: datetime = field(default_factory=_utcnow)
    status: SceneStatus = SceneStatus.ANALYZING
    error_message: str | None = None
    image: bytes | None = field(default=None, repr=False, compare=False)

    def image_source(self) -> tuple[str, str] | None:
        """Return ``("asset", id)`` or ``("file", path)``, whichever loads the image."""
        if self.asset_identifier:
            return ("asset", self.asset_identifier)
        if self.image_path:
            return ("file", self.image_path)
        return None

    def has_word(self, word_text: str) -> bool:
        return any(w.word == word_text for w in self.words)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "image_path": self.image_path,
            "asset_identifier": self.asset_identifier,
            "words": [w.to_dict() for w in self.words],
            "sentence": self.sentence.to_dict(),
            "created_at": self.created_at.isoformat(),
            "status": self.status.value,
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Scene:
        return cls(
            id=str(data["id"]),
            image_path=data.get("image_path", ""),
            asset_identifier=data.get("asset_identifier", ""),
            words=[WordItem.from_dict(w) for w in data.get("words", [])],
            sentence=Sentence.from_dict(data["sentence"]),
            created_at=parse_datetime(data.get("created_at")),
            status=SceneStatus(data.get("status", SceneStatus.COMPLETED.value)),
            error_message=data.get("error_message"),
        )


@dataclass(frozen=True)
class AnalysisResult:
    """Parsed analysis payload: the extracted words and the sentence."""

    words: list[WordItem]
    sentence: Sentence

    @classmethod
    def from_dict(cls, data: dict) -> AnalysisResult:
        return cls(
            words=[WordItem.from_dict(w) for w in data["words"]],
            sentence=Sentence.from_dict(data["sentence"]),
        )


def dedupe_words(words: list[WordItem]) -> list[WordItem]:
    """Collapse repeated word texts; a later occurrence overwrites an earlier one in place."""
    by_text: dict[str, WordItem] = {}
    for w in words:
        by_text[w.word] = w
    return list(by_text.values())


def encode_scenes(scenes: list[Scene]) -> list[dict]:
    return [s.to_dict() for s in scenes]


def decode_scenes(rows: list[dict]) -> list[Scene]:
    return [Scene.from_dict(r) for r in rows]
