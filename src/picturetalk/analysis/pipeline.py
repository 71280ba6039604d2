"""Per-image analysis: session, upload, registration, streamed analysis, parsing."""

from __future__ import annotations

import json
import logging
import time
from typing import Callable

from picturetalk.analysis.client import (
    AnalysisClient,
    AnalysisParseError,
    FileDetail,
    KimiClient,
    NoResponseDataError,
)
from picturetalk.analysis.encoding import encode_for_upload
from picturetalk.models import AnalysisResult
from picturetalk.settings import AIProvider, EnglishLevel, SettingsStore
from picturetalk.storage.kv_store import CHAT_ID_KEY, KeyValueStore

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = """\
我作为一个英语学习者，英语水平为{level}水平，我想通过图片场景化学习新的英语词块，请分析我提供的图片，提供以下信息：
1、词块：
  - 图片场景中我可以学习到相对我英语水平之上的 Top 8 英语词块，信息包括词块、音标和中文解释、词块所在图片大致位置（词块指向物品中的一个点表示，x 和 y 坐标，归一化到0~1的范围，精度为后四位小数点，词块之间的位置不要重叠）
  - 英语词块（chunk）是指作为一个整体来理解和使用的一组词或短语，可以是固定搭配、习惯用语、短语动词、常见的表达方式等。
2、句子
  - 使用一句最简单、准确的英语描述图片内容。
  - 提供地道的中文翻译。
  - 返回格式，请以 标准 JSON 格式 返回结果，示例如下：
    {{
        "words": [
            {{
                "word": "emergency brake",
                "phoneticsymbols": "/iˈmɜːdʒənsi breɪk/",
                "explanation": "紧急刹车",
                "location": "0.55, 0.65"
            }}
        ],
        "sentence": {{
            "text": "The subway car is empty, with handrails, safety strips, and overhead lights clearly visible.",
            "translation": "地铁车厢是空的，扶手、安全条和头顶灯清晰可见。"
        }}
    }}
"""


def build_prompt(level: EnglishLevel) -> str:
    return PROMPT_TEMPLATE.format(level=level.description)


def _strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3]
    return stripped.strip()


def parse_analysis(buffer: str) -> AnalysisResult:
    """Parse accumulated completion text into an AnalysisResult.

    Raises:
        NoResponseDataError: ``buffer`` is empty.
        AnalysisParseError: ``buffer`` is not a valid payload.
    """
    if not buffer:
        raise NoResponseDataError()
    try:
        data = json.loads(_strip_code_fence(buffer))
        return AnalysisResult.from_dict(data)
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise AnalysisParseError(f"Cannot parse analysis payload: {e}") from e


def create_client(settings: SettingsStore) -> AnalysisClient:
    """Build the client for the currently selected provider."""
    ai = settings.ai_config
    if ai.provider == AIProvider.GEMINI:
        from picturetalk.analysis.gemini import GeminiClient

        return GeminiClient(api_key=ai.api_key() or None)
    return KimiClient(api_key=ai.api_key() or None)


class AnalysisPipeline:
    """Runs one image through the remote analysis service.

    The pipeline only does network I/O and remembers the last session id;
    persisting the result is up to the caller.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        settings: SettingsStore,
        client: AnalysisClient | None = None,
        client_factory: Callable[[SettingsStore], AnalysisClient] = create_client,
    ) -> None:
        self._kv = kv
        self._settings = settings
        self._client = client
        self._client_factory = client_factory

    @property
    def client(self) -> AnalysisClient:
        if self._client is not None:
            return self._client
        return self._client_factory(self._settings)

    # ── Sessions ──

    def _create_chat(self, client: AnalysisClient) -> str:
        chat_id = client.create_chat()
        self._kv.set(CHAT_ID_KEY, chat_id)
        logger.info("Created analysis session %s", chat_id)
        return chat_id

    def _get_chat_id(self, client: AnalysisClient) -> str:
        cached = self._kv.get(CHAT_ID_KEY)
        if cached:
            return cached
        return self._create_chat(client)

    # ── Analysis ──

    def _stream_analysis(
        self,
        client: AnalysisClient,
        chat_id: str,
        prompt: str,
        file: FileDetail,
        on_progress: Callable[[str], None] | None,
    ) -> AnalysisResult:
        buffer = ""
        for event in client.stream_completion(chat_id, prompt, file):
            if event.event == "cmpl":
                if event.text:
                    buffer += event.text
                    if on_progress:
                        on_progress(buffer)
            elif event.event == "done":
                break
        return parse_analysis(buffer)

    def analyze(
        self,
        image: bytes,
        chat_id: str | None = None,
        on_progress: Callable[[str], None] | None = None,
        on_step: Callable[[str], None] | None = None,
    ) -> AnalysisResult:
        """Upload ``image`` and return the parsed analysis.

        Args:
            image: Raw encoded image bytes.
            chat_id: Session to use; defaults to the cached one.
            on_progress: Called with the accumulated text after each chunk.
            on_step: Called with the name of each stage as it starts.

        Raises:
            AnalysisError: Any failure after the single retry with a new session.
        """
        client = self.client
        step = on_step or (lambda name: None)
        t0 = time.perf_counter()

        step("session")
        chat_id = chat_id or self._get_chat_id(client)

        step("encode")
        encoded = encode_for_upload(image)

        step("upload")
        target = client.pre_sign(encoded.file_name)
        client.upload(target, encoded.data, encoded.content_type)
        logger.info("Uploaded %s (%d bytes)", encoded.file_name, encoded.size)

        step("register")
        file = client.register_file(
            target, encoded.file_name, encoded.width, encoded.height, encoded.size,
        )

        step("analyze")
        prompt = build_prompt(self._settings.english_level)
        try:
            result = self._stream_analysis(client, chat_id, prompt, file, on_progress)
        except Exception as first:
            # Any failure, transport included, gets one retry on a brand-new session.
            logger.warning("Analysis failed (%s); retrying with a new session", first)
            chat_id = self._create_chat(client)
            result = self._stream_analysis(client, chat_id, prompt, file, on_progress)

        logger.info(
            "Analysis complete: %d words (%.2fs)",
            len(result.words), time.perf_counter() - t0,
        )
        return result
