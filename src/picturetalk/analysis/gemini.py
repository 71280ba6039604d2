"""Gemini implementation of the analysis client contract."""

from __future__ import annotations

import io
import logging
import threading
import time
import uuid
from collections.abc import Iterator

from google import genai
from google.genai import types

from picturetalk import config
from picturetalk.analysis.client import (
    FileDetail,
    PreSignedUpload,
    SSEEvent,
    TransportError,
    UploadError,
)

logger = logging.getLogger(__name__)


class GeminiClient:
    """Gemini-backed analysis client.

    Gemini has no server-side chat to create, so sessions are local ids.
    Images go through the Files API and the streamed response chunks are
    re-expressed as ``cmpl`` events closed by a ``done`` event.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        client: genai.Client | None = None,
    ) -> None:
        self._client = client or genai.Client(api_key=api_key or config.GEMINI_API_KEY)
        self._model = model or config.GEMINI_MODEL
        self._uploaded: dict[str, types.File] = {}
        self._lock = threading.Lock()

    def create_chat(self) -> str:
        return f"gemini-{uuid.uuid4()}"

    def pre_sign(self, file_name: str) -> PreSignedUpload:
        return PreSignedUpload(url="", object_name=file_name, file_id=file_name)

    def upload(self, upload: PreSignedUpload, data: bytes, content_type: str) -> None:
        t0 = time.perf_counter()
        try:
            uploaded = self._client.files.upload(
                file=io.BytesIO(data),
                config=types.UploadFileConfig(
                    mime_type=content_type, display_name=upload.object_name,
                ),
            )
        except Exception as e:
            raise UploadError(f"Gemini file upload failed: {e}") from e
        with self._lock:
            self._uploaded[upload.object_name] = uploaded
        logger.debug("Uploaded %s as %s (%.0fms)", upload.object_name, uploaded.name,
                     (time.perf_counter() - t0) * 1000)

    def register_file(
        self, upload: PreSignedUpload, file_name: str, width: int, height: int, size: int,
    ) -> FileDetail:
        with self._lock:
            uploaded = self._uploaded.pop(upload.object_name, None)
        if uploaded is None:
            raise UploadError(f"No uploaded file for {upload.object_name}")
        return FileDetail(
            id=uploaded.name or file_name,
            name=file_name,
            width=width,
            height=height,
            size=size,
            raw={"uri": uploaded.uri, "mime_type": uploaded.mime_type},
        )

    def stream_completion(
        self, chat_id: str, prompt: str, file: FileDetail,
    ) -> Iterator[SSEEvent]:
        contents = [
            types.Part.from_uri(file_uri=file.raw["uri"], mime_type=file.raw["mime_type"]),
            prompt,
        ]
        logger.debug("Streaming analysis via %s (session %s)", self._model, chat_id)
        try:
            stream = self._client.models.generate_content_stream(
                model=self._model,
                contents=contents,
                config=types.GenerateContentConfig(response_mime_type="application/json"),
            )
            for chunk in stream:
                if chunk.text:
                    yield SSEEvent(event="cmpl", text=chunk.text)
        except Exception as e:
            raise TransportError(f"Gemini stream failed: {e}") from e
        yield SSEEvent(event="done")
