"""API router: tasks, SSE progress, scenes, words, learning, settings."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import queue
import time

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel, Field

from picturetalk.app_state import AppState, create_app_state
from picturetalk.layout.placement import Size, layout_cards
from picturetalk.learning.scheduler import RecordExistsError
from picturetalk.models import Point, WordStatus
from picturetalk.settings import AIProvider, EnglishLevel
from picturetalk.tasks.task_manager import TaskStateError, TaskStatus

logger = logging.getLogger(__name__)

router = APIRouter()

# Lazy-initialized app state (created on first request or startup)
_state: AppState | None = None


def _get_state() -> AppState:
    global _state
    if _state is None:
        logger.info("Initializing app state...")
        t0 = time.perf_counter()
        _state = create_app_state()
        logger.info("App state ready (%.2fs)", time.perf_counter() - t0)
    return _state


def shutdown_state() -> None:
    """Flush and release the app state, if one was created."""
    global _state
    if _state is not None:
        _state.shutdown()
        _state = None


# ── Health ──


@router.get("/health")
def health():
    return {"status": "ok"}


# ── Analysis tasks ──


class SubmitTaskRequest(BaseModel):
    image_base64: str
    asset_identifier: str = ""


@router.post("/tasks")
def submit_task(req: SubmitTaskRequest):
    """Queue a photo for analysis."""
    try:
        image = base64.b64decode(req.image_base64, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="image_base64 is not valid base64")
    if not image:
        raise HTTPException(status_code=400, detail="Empty image")
    task = _get_state().tasks.submit(image, asset_identifier=req.asset_identifier)
    return task.to_dict()


@router.get("/tasks")
def list_tasks():
    """List queued and failed tasks, newest first."""
    return [t.to_dict() for t in _get_state().tasks.list_tasks()]


@router.get("/tasks/{task_id}")
def get_task(task_id: str):
    task = _get_state().tasks.get_task(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    return task.to_dict()


@router.post("/tasks/{task_id}/retry")
def retry_task(task_id: str):
    try:
        task = _get_state().tasks.retry(task_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Task not found")
    except TaskStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return task.to_dict()


@router.delete("/tasks/{task_id}")
def delete_task(task_id: str):
    try:
        _get_state().tasks.delete_task(task_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Task not found")
    except TaskStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"deleted": True}


@router.get("/tasks/{task_id}/stream")
def stream_task(task_id: str):
    """SSE stream of progress events for a task."""
    tasks = _get_state().tasks
    task = tasks.get_task(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")

    sub_queue = tasks.subscribe(task_id)
    if sub_queue is None:
        raise HTTPException(status_code=404, detail="Task not found")

    def event_generator():
        # A failed task will not produce more events until it is retried
        if task.status == TaskStatus.FAILED:
            yield f"data: {json.dumps({'type': 'error', 'error': task.error_message or ''})}\n\n"
            return

        while True:
            try:
                event = sub_queue.get(timeout=30)
                yield f"data: {json.dumps(event)}\n\n"
                if event.get("type") in ("done", "error"):
                    break
            except queue.Empty:
                yield ": keepalive\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ── Scenes ──


@router.get("/scenes")
def list_scenes():
    return [s.to_dict() for s in _get_state().scenes.list_scenes()]


@router.get("/scenes/{scene_id}")
def get_scene(scene_id: str):
    scene = _get_state().scenes.get_scene(scene_id)
    if not scene:
        raise HTTPException(status_code=404, detail="Scene not found")
    return scene.to_dict()


@router.get("/scenes/{scene_id}/image")
def get_scene_image(scene_id: str):
    data = _get_state().images.load(scene_id)
    if data is None:
        raise HTTPException(status_code=404, detail="Image not found")
    return Response(content=data, media_type="image/jpeg")


@router.get("/scenes/{scene_id}/layout")
def get_scene_layout(
    scene_id: str,
    width: float = Query(..., gt=0),
    height: float = Query(..., gt=0),
    card_width: float = Query(120, gt=0),
    card_height: float = Query(60, gt=0),
):
    """Card centres (in pixels) for every word of a scene at the given display size."""
    scene = _get_state().scenes.get_scene(scene_id)
    if not scene:
        raise HTTPException(status_code=404, detail="Scene not found")
    centers = layout_cards(
        [w.position for w in scene.words],
        Size(width, height),
        Size(card_width, card_height),
    )
    return [
        {"word": w.word, "x": c.x, "y": c.y}
        for w, c in zip(scene.words, centers)
    ]


@router.delete("/scenes/{scene_id}")
def delete_scene(scene_id: str):
    if not _get_state().delete_scene(scene_id):
        raise HTTPException(status_code=404, detail="Scene not found")
    return {"deleted": True}


@router.post("/flush")
def flush():
    """Persist pending scene changes now (client is going to background)."""
    ok = _get_state().scenes.flush_now()
    if not ok:
        raise HTTPException(status_code=500, detail="Failed to persist scenes")
    return {"flushed": True}


# ── Words ──


class PositionRequest(BaseModel):
    x: float
    y: float


@router.get("/words")
def list_words(favorites: bool = False):
    index = _get_state().words
    words = index.favorites() if favorites else index.all_words()
    return [w.to_dict() for w in words]


@router.put("/words/{word}/position")
def update_word_position(word: str, req: PositionRequest):
    scene = _get_state().scenes.update_word_position(word, Point(req.x, req.y))
    if not scene:
        raise HTTPException(status_code=404, detail="Word not found")
    item = next(w for w in scene.words if w.word == word)
    return {"scene_id": scene.id, "word": word, "position": item.position.to_list()}


@router.post("/words/{word}/favorite")
def toggle_favorite(word: str):
    updated = _get_state().words.toggle_favorite(word)
    if not updated:
        raise HTTPException(status_code=404, detail="Word not found")
    return updated.to_dict()


# ── Learning ──


class WordStatusRequest(BaseModel):
    status: WordStatus


@router.post("/learning/daily")
def generate_daily_task():
    """Create today's lesson if there is none yet; returns today's lesson."""
    learning = _get_state().learning
    learning.generate_daily_task()
    task = learning.today_task()
    if not task:
        raise HTTPException(status_code=409, detail="No words available for a lesson")
    return task.to_dict()


@router.get("/learning/tasks")
def list_learning_tasks():
    return [t.to_dict() for t in _get_state().learning.list_tasks()]


@router.put("/learning/tasks/{task_id}/words/{word_id}")
def update_learning_word(task_id: str, word_id: str, req: WordStatusRequest):
    task = _get_state().learning.update_word_status(task_id, word_id, req.status)
    if not task:
        raise HTTPException(status_code=404, detail="Learning task or word not found")
    return task.to_dict()


@router.post("/learning/tasks/{task_id}/record")
def record_learning(task_id: str):
    learning = _get_state().learning
    task = learning.get_task(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Learning task not found")
    try:
        record = learning.record_learning(task)
    except RecordExistsError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {**record.to_dict(), "completion_rate": record.completion_rate}


@router.delete("/learning/tasks/{task_id}")
def delete_learning_task(task_id: str):
    if not _get_state().learning.delete_task(task_id):
        raise HTTPException(status_code=404, detail="Learning task not found")
    return {"deleted": True}


@router.get("/learning/records")
def list_learning_records():
    return [
        {**r.to_dict(), "completion_rate": r.completion_rate}
        for r in _get_state().learning.list_records()
    ]


# ── Settings ──


class SettingsRequest(BaseModel):
    english_level: EnglishLevel | None = None
    provider: AIProvider | None = None
    api_key: str | None = None
    words_per_lesson: int | None = Field(default=None, ge=1)


def _settings_response(state: AppState) -> dict:
    ai = state.settings.ai_config
    return {
        "english_level": state.settings.english_level.value,
        "provider": ai.provider.value,
        "api_key_set": {p.value: bool(ai.api_key(p)) for p in AIProvider},
        "words_per_lesson": state.learning.settings.words_per_lesson,
    }


@router.get("/settings")
def get_settings():
    return _settings_response(_get_state())


@router.put("/settings")
def update_settings(req: SettingsRequest):
    """Update any subset of settings. ``api_key`` applies to the active provider."""
    state = _get_state()
    if req.english_level is not None:
        state.settings.set_english_level(req.english_level)
    if req.provider is not None:
        state.settings.set_provider(req.provider)
    if req.api_key is not None:
        state.settings.set_api_key(state.settings.ai_config.provider, req.api_key)
    if req.words_per_lesson is not None:
        state.learning.update_settings(req.words_per_lesson)
    return _settings_response(state)
