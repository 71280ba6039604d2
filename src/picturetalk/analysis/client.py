"""Remote analysis service client interface and the Kimi HTTP implementation."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests

from picturetalk import config

logger = logging.getLogger(__name__)


class AnalysisError(Exception):
    """Base class for analysis pipeline failures."""


class TransportError(AnalysisError):
    """Connectivity problem, timeout or unexpected status from the service."""


class UploadError(TransportError):
    """The image upload was not accepted."""


class NoResponseDataError(AnalysisError):
    """The completion stream ended without any content."""

    def __init__(self, message: str = "No response data received") -> None:
        super().__init__(message)


class AnalysisParseError(AnalysisError):
    """The accumulated completion text is not a valid analysis payload."""


class ImageEncodingError(AnalysisError):
    """The image could not be encoded in any supported format."""


@dataclass(frozen=True)
class SSEEvent:
    event: str
    text: str | None = None


@dataclass(frozen=True)
class PreSignedUpload:
    url: str
    object_name: str
    file_id: str


@dataclass(frozen=True)
class FileDetail:
    """Descriptor of an uploaded file as registered with the service."""

    id: str
    name: str
    width: int = 0
    height: int = 0
    size: int = 0
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


class AnalysisClient(Protocol):
    """Contract of a remote vision/LLM analysis service."""

    def create_chat(self) -> str:
        """Create a remote session and return its id."""
        ...

    def pre_sign(self, file_name: str) -> PreSignedUpload:
        """Request an upload target for ``file_name``."""
        ...

    def upload(self, upload: PreSignedUpload, data: bytes, content_type: str) -> None:
        """Upload encoded image bytes to the pre-signed target."""
        ...

    def register_file(
        self, upload: PreSignedUpload, file_name: str, width: int, height: int, size: int,
    ) -> FileDetail:
        """Register uploaded file metadata, returning its descriptor."""
        ...

    def stream_completion(
        self, chat_id: str, prompt: str, file: FileDetail,
    ) -> Iterator[SSEEvent]:
        """Submit an analysis request and yield the streamed events."""
        ...


def iter_sse_events(lines: Iterable[str | bytes]) -> Iterator[SSEEvent]:
    """Decode ``data: {...}`` lines into events.

    Lines without the ``data: `` prefix are skipped; undecodable payloads
    are logged and skipped. The sequence ends when ``lines`` does.
    """
    for line in lines:
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        if not line.startswith("data: "):
            continue
        payload = line[len("data: "):]
        try:
            data = json.loads(payload)
            event = data["event"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.debug("Skipping undecodable SSE line %r: %s", payload[:80], e)
            continue
        text = data.get("text")
        yield SSEEvent(event=str(event), text=text if isinstance(text, str) else None)


class KimiClient:
    """HTTP client for the Kimi chat service."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else config.KIMI_API_KEY
        self._base_url = (base_url or config.KIMI_BASE_URL).rstrip("/")
        self._timeout = timeout or config.HTTP_TIMEOUT_SECS
        self._http = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def _post_json(self, path: str, body: dict) -> dict:
        url = f"{self._base_url}{path}"
        t0 = time.perf_counter()
        try:
            resp = self._http.post(url, headers=self._headers(), json=body, timeout=self._timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as e:
            raise TransportError(f"POST {path} failed: {e}") from e
        except ValueError as e:
            raise TransportError(f"POST {path} returned invalid JSON") from e
        logger.debug("POST %s complete (%.0fms)", path, (time.perf_counter() - t0) * 1000)
        return data

    def create_chat(self) -> str:
        data = self._post_json("/api/chat", {
            "name": "拍单词",
            "is_example": False,
            "enter_method": "new_chat",
            "kimiplus_id": "kimi",
        })
        try:
            return str(data["id"])
        except KeyError as e:
            raise TransportError("Chat creation response has no id") from e

    def pre_sign(self, file_name: str) -> PreSignedUpload:
        data = self._post_json("/api/pre-sign-url", {"action": "image", "name": file_name})
        try:
            return PreSignedUpload(
                url=data["url"], object_name=data["object_name"], file_id=data["file_id"],
            )
        except KeyError as e:
            raise TransportError(f"Pre-sign response is missing {e}") from e

    def upload(self, upload: PreSignedUpload, data: bytes, content_type: str) -> None:
        try:
            resp = self._http.put(upload.url, data=data, timeout=self._timeout)
        except requests.RequestException as e:
            raise UploadError(f"Upload failed: {e}") from e
        if not 200 <= resp.status_code <= 299:
            raise UploadError(f"Upload rejected with status {resp.status_code}")

    def register_file(
        self, upload: PreSignedUpload, file_name: str, width: int, height: int, size: int,
    ) -> FileDetail:
        data = self._post_json("/api/file", {
            "type": "image",
            "name": file_name,
            "file_id": upload.file_id,
            "meta": {"width": str(width), "height": str(height)},
        })
        extra = data.get("extra_info") or {}
        return FileDetail(
            id=str(data.get("id", upload.file_id)),
            name=str(data.get("name", file_name)),
            width=int(extra.get("width", width)),
            height=int(extra.get("height", height)),
            size=int(data.get("size", size)),
            raw=data,
        )

    def stream_completion(
        self, chat_id: str, prompt: str, file: FileDetail,
    ) -> Iterator[SSEEvent]:
        file_ref = {
            "id": file.id,
            "name": file.name,
            "size": file.size,
            "file": {},
            "upload_progress": 100,
            "upload_status": "success",
            "parse_status": "success",
            "detail": file.raw,
            "file_info": file.raw,
            "done": True,
        }
        body = {
            "messages": [{"role": "user", "content": prompt}],
            "use_search": True,
            "extend": {"sidebar": True},
            "kimiplus_id": "kimi",
            "use_research": False,
            "use_math": False,
            "refs": [file.id],
            "refs_file": [file_ref],
        }
        url = f"{self._base_url}/api/chat/{chat_id}/completion/stream"
        try:
            with self._http.post(
                url, headers=self._headers(), json=body, stream=True, timeout=self._timeout,
            ) as resp:
                resp.raise_for_status()
                yield from iter_sse_events(resp.iter_lines(decode_unicode=True))
        except requests.RequestException as e:
            raise TransportError(f"Completion stream failed: {e}") from e
