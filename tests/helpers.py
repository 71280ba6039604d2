"""Shared test helpers: scene factories, image bytes and a scripted analysis client."""

import io
import json
from unittest.mock import MagicMock

import requests
from PIL import Image

from picturetalk.analysis.client import FileDetail, PreSignedUpload, SSEEvent
from picturetalk.models import Scene, SceneStatus, Sentence, WordItem


def make_word(word: str, location: str = "0.5, 0.5", **kwargs) -> WordItem:
    return WordItem(
        word=word,
        phoneticsymbols=kwargs.pop("phoneticsymbols", f"/{word.lower()}/"),
        explanation=kwargs.pop("explanation", f"{word} 解释"),
        location=location,
        **kwargs,
    )


def make_scene(*words: str, scene_id: str | None = None, **kwargs) -> Scene:
    extra = {"id": scene_id} if scene_id else {}
    return Scene(
        sentence=kwargs.pop("sentence", Sentence("A scene.", "一个场景。")),
        words=[make_word(w) for w in words],
        status=SceneStatus.COMPLETED,
        **extra,
        **kwargs,
    )


def make_png(width: int = 32, height: int = 24) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (width, height), (30, 160, 90)).save(buf, format="PNG")
    return buf.getvalue()


ANALYSIS_PAYLOAD = {
    "words": [
        {"word": "Stool", "phoneticsymbols": "/stuːl/", "explanation": "凳子", "location": "0.55, 0.65"},
        {"word": "light switch", "phoneticsymbols": "/laɪt swɪtʃ/", "explanation": "电灯开关", "location": "0.8, 0.3"},
    ],
    "sentence": {
        "text": "A green plastic stool stands on a wooden floor.",
        "translation": "一个绿色的塑料凳子放在木地板上。",
    },
}


def cmpl_events(text: str, chunk: int = 16) -> list[SSEEvent]:
    """Split ``text`` into cmpl events followed by done."""
    events = [SSEEvent("cmpl", text[i:i + chunk]) for i in range(0, len(text), chunk)]
    return events + [SSEEvent("done")]


class ScriptedClient:
    """AnalysisClient double; each stream call pops the next scripted response.

    A scripted response is either a list of SSEEvents or an exception to raise.
    """

    def __init__(self, streams=None, chat_ids=None):
        self.streams = list(streams if streams is not None else [cmpl_events(json.dumps(ANALYSIS_PAYLOAD))])
        self.chat_ids = list(chat_ids or ["chat-1", "chat-2", "chat-3"])
        self.created_chats: list[str] = []
        self.stream_calls: list[str] = []
        self.uploads: list[tuple[str, int, str]] = []
        self.registered: list[tuple[str, int, int]] = []

    def create_chat(self) -> str:
        chat_id = self.chat_ids.pop(0)
        self.created_chats.append(chat_id)
        return chat_id

    def pre_sign(self, file_name: str) -> PreSignedUpload:
        return PreSignedUpload(url=f"https://upload.test/{file_name}", object_name=file_name, file_id="file-1")

    def upload(self, upload: PreSignedUpload, data: bytes, content_type: str) -> None:
        self.uploads.append((upload.object_name, len(data), content_type))

    def register_file(self, upload, file_name, width, height, size) -> FileDetail:
        self.registered.append((file_name, width, height))
        return FileDetail(id=upload.file_id, name=file_name, width=width, height=height, size=size)

    def stream_completion(self, chat_id, prompt, file):
        self.stream_calls.append(chat_id)
        response = self.streams.pop(0)
        if isinstance(response, Exception):
            raise response
        yield from response


def make_http_response(status_code: int = 200, json_data=None, lines=None):
    """Create a mock requests.Response."""
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = json_data
    resp.iter_lines.return_value = iter(lines or [])
    resp.__enter__.return_value = resp
    resp.__exit__.return_value = False
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status_code} Error")
    else:
        resp.raise_for_status.return_value = None
    return resp
