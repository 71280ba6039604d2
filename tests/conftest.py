"""Shared fixtures: temporary blob store, stores with immediate saves, scripted client."""

import pytest

from picturetalk.analysis.pipeline import AnalysisPipeline
from picturetalk.settings import SettingsStore
from picturetalk.storage.image_store import ImageStore
from picturetalk.storage.kv_store import KeyValueStore
from picturetalk.storage.scene_store import SceneStore
from picturetalk.words.word_index import WordIndex
from tests.helpers import ScriptedClient


@pytest.fixture
def kv(tmp_path):
    """Fresh KeyValueStore with schema initialized."""
    store = KeyValueStore(tmp_path / "test.db")
    store.init_db()
    yield store
    store.close()


@pytest.fixture
def scene_store(kv):
    """SceneStore that saves synchronously (no debounce)."""
    return SceneStore(kv, debounce_secs=0)


@pytest.fixture
def word_index(kv, scene_store):
    """WordIndex attached to the scene_store fixture."""
    index = WordIndex(kv)
    scene_store.subscribe(index.on_scene_event)
    return index


@pytest.fixture
def image_store(tmp_path):
    return ImageStore(tmp_path / "images")


@pytest.fixture
def settings(kv):
    return SettingsStore(kv)


@pytest.fixture
def client():
    return ScriptedClient()


@pytest.fixture
def pipeline(kv, settings, client):
    return AnalysisPipeline(kv, settings, client=client)
