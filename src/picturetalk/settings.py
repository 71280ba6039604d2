"""User-adjustable settings: analysis provider, API keys, English level."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from enum import Enum

from picturetalk import config
from picturetalk.storage.kv_store import AI_CONFIG_KEY, ENGLISH_LEVEL_KEY, KeyValueStore

logger = logging.getLogger(__name__)


class EnglishLevel(str, Enum):
    CET4 = "CET4"
    CET6 = "CET6"
    IELTS = "IELTS"
    TOEFL = "TOEFL"
    GRE = "GRE"

    @property
    def description(self) -> str:
        return {
            EnglishLevel.CET4: "四级",
            EnglishLevel.CET6: "六级",
            EnglishLevel.IELTS: "雅思",
            EnglishLevel.TOEFL: "托福",
            EnglishLevel.GRE: "GRE",
        }[self]


class AIProvider(str, Enum):
    KIMI = "kimi"
    GEMINI = "gemini"


@dataclass(frozen=True)
class AIModelConfig:
    provider: AIProvider = AIProvider.KIMI
    api_keys: dict[str, str] = field(default_factory=dict)

    def api_key(self, provider: AIProvider | None = None) -> str:
        return self.api_keys.get((provider or self.provider).value, "")

    def to_dict(self) -> dict:
        return {"provider": self.provider.value, "api_keys": dict(self.api_keys)}

    @classmethod
    def from_dict(cls, data: dict) -> AIModelConfig:
        return cls(
            provider=AIProvider(data.get("provider", AIProvider.KIMI.value)),
            api_keys={str(k): str(v) for k, v in (data.get("api_keys") or {}).items()},
        )


def _default_ai_config() -> AIModelConfig:
    try:
        provider = AIProvider(config.AI_PROVIDER)
    except ValueError:
        logger.warning("Unknown AI_PROVIDER %r, using kimi", config.AI_PROVIDER)
        provider = AIProvider.KIMI
    keys = {}
    if config.KIMI_API_KEY:
        keys[AIProvider.KIMI.value] = config.KIMI_API_KEY
    if config.GEMINI_API_KEY:
        keys[AIProvider.GEMINI.value] = config.GEMINI_API_KEY
    return AIModelConfig(provider=provider, api_keys=keys)


class SettingsStore:
    """Persisted settings; environment configuration supplies the defaults."""

    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv
        self._lock = threading.Lock()
        self._ai_config = self._load_ai_config()
        self._english_level = self._load_english_level()

    def _load_ai_config(self) -> AIModelConfig:
        data = self._kv.get_json(AI_CONFIG_KEY)
        if data is None:
            return _default_ai_config()
        try:
            return AIModelConfig.from_dict(data)
        except (ValueError, AttributeError, TypeError):
            logger.warning("Stored AI model config is invalid; using defaults")
            return _default_ai_config()

    def _load_english_level(self) -> EnglishLevel:
        raw = self._kv.get(ENGLISH_LEVEL_KEY)
        try:
            return EnglishLevel(raw) if raw else EnglishLevel.CET4
        except ValueError:
            return EnglishLevel.CET4

    @property
    def ai_config(self) -> AIModelConfig:
        with self._lock:
            return self._ai_config

    @property
    def english_level(self) -> EnglishLevel:
        with self._lock:
            return self._english_level

    def set_english_level(self, level: EnglishLevel) -> None:
        with self._lock:
            self._english_level = level
            self._kv.set(ENGLISH_LEVEL_KEY, level.value)

    def set_provider(self, provider: AIProvider) -> AIModelConfig:
        with self._lock:
            self._ai_config = replace(self._ai_config, provider=provider)
            self._kv.set_json(AI_CONFIG_KEY, self._ai_config.to_dict())
            return self._ai_config

    def set_api_key(self, provider: AIProvider, key: str) -> AIModelConfig:
        with self._lock:
            keys = dict(self._ai_config.api_keys)
            keys[provider.value] = key
            self._ai_config = replace(self._ai_config, api_keys=keys)
            self._kv.set_json(AI_CONFIG_KEY, self._ai_config.to_dict())
            return self._ai_config
