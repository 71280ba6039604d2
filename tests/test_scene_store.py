"""Tests for the blob store and the debounced scene collection."""

import time
from unittest.mock import patch

from picturetalk.models import Point
from picturetalk.storage.kv_store import SCENES_KEY, KeyValueStore
from picturetalk.storage.scene_store import SceneStore
from tests.helpers import make_scene


class TestKeyValueStore:
    def test_set_get_overwrite(self, kv):
        kv.set("a", "1")
        kv.set("a", "2")
        assert kv.get("a") == "2"
        assert kv.keys() == ["a"]

    def test_missing_key(self, kv):
        assert kv.get("nope") is None
        assert kv.get_json("nope", default=[]) == []

    def test_json_round_trip_keeps_unicode(self, kv):
        kv.set_json("k", {"explanation": "凳子"})
        assert "凳子" in kv.get("k")
        assert kv.get_json("k") == {"explanation": "凳子"}

    def test_invalid_json_returns_default(self, kv):
        kv.set("k", "{not json")
        assert kv.get_json("k", default="fallback") == "fallback"

    def test_delete(self, kv):
        kv.set("k", "v")
        kv.delete("k")
        assert kv.get("k") is None

    def test_survives_reopen(self, tmp_path):
        db = tmp_path / "sub" / "reopen.db"
        first = KeyValueStore(db)
        first.init_db()
        first.set_json("k", [1, 2])
        first.close()

        second = KeyValueStore(db)
        second.init_db()
        assert second.get_json("k") == [1, 2]
        second.close()


class TestUpsertAndDelete:
    def test_insert_puts_newest_first(self, scene_store):
        a = make_scene("Stool")
        b = make_scene("Lamp")
        scene_store.upsert_scene(a)
        scene_store.upsert_scene(b)
        assert [s.id for s in scene_store.list_scenes()] == [b.id, a.id]

    def test_replace_keeps_position_and_count(self, scene_store):
        a = make_scene("Stool")
        b = make_scene("Lamp")
        scene_store.upsert_scene(a)
        scene_store.upsert_scene(b)

        replacement = make_scene("Chair", "Table", scene_id=a.id)
        scene_store.upsert_scene(replacement)

        scenes = scene_store.list_scenes()
        assert len(scenes) == 2
        assert scenes[1].id == a.id
        assert [w.word for w in scenes[1].words] == ["Chair", "Table"]

    def test_delete(self, scene_store):
        a = make_scene("Stool")
        scene_store.upsert_scene(a)
        assert scene_store.delete_scene(a) is True
        assert scene_store.get_scene(a.id) is None
        assert len(scene_store) == 0

    def test_delete_unknown_returns_false(self, scene_store):
        assert scene_store.delete_scene(make_scene("Stool")) is False

    def test_mutations_persisted(self, kv, scene_store):
        a = make_scene("Stool")
        scene_store.upsert_scene(a)
        stored = kv.get_json(SCENES_KEY)
        assert [row["id"] for row in stored] == [a.id]


class TestUpdateWordPosition:
    def test_updates_first_scene_holding_word(self, scene_store):
        older = make_scene("Stool")
        newer = make_scene("Stool", "Lamp")
        scene_store.upsert_scene(older)
        scene_store.upsert_scene(newer)

        updated = scene_store.update_word_position("Stool", Point(0.2, 0.3))

        assert updated.id == newer.id
        assert scene_store.get_scene(newer.id).words[0].position == Point(0.2, 0.3)
        assert scene_store.get_scene(older.id).words[0].custom_position is None

    def test_position_clamped(self, scene_store):
        scene_store.upsert_scene(make_scene("Stool"))
        updated = scene_store.update_word_position("Stool", Point(-1, 2))
        assert updated.words[0].custom_position == Point(0.0, 1.0)

    def test_unknown_word_is_noop(self, scene_store):
        scene_store.upsert_scene(make_scene("Stool"))
        assert scene_store.update_word_position("Lamp", Point(0.1, 0.1)) is None

    def test_match_is_case_sensitive(self, scene_store):
        scene_store.upsert_scene(make_scene("Stool"))
        assert scene_store.update_word_position("stool", Point(0.1, 0.1)) is None


class TestDebounce:
    def test_burst_coalesces_into_one_write(self, kv):
        store = SceneStore(kv, debounce_secs=0.2)
        scene = make_scene("Stool")
        with patch.object(kv, "set_json", wraps=kv.set_json) as spy:
            store.upsert_scene(scene)
            for i in range(10):
                store.update_word_position("Stool", Point(i / 10, i / 10))
            assert spy.call_count == 0
            assert store.has_pending_save

            deadline = time.monotonic() + 3
            while store.has_pending_save and time.monotonic() < deadline:
                time.sleep(0.05)

        assert spy.call_count == 1
        saved = kv.get_json(SCENES_KEY)
        assert saved[0]["words"][0]["custom_position"] == [0.9, 0.9]

    def test_flush_now_writes_pending_changes(self, kv):
        store = SceneStore(kv, debounce_secs=60)
        scene = make_scene("Stool")
        store.upsert_scene(scene)
        assert kv.get_json(SCENES_KEY) is None

        assert store.flush_now() is True
        assert not store.has_pending_save
        assert kv.get_json(SCENES_KEY)[0]["id"] == scene.id

    def test_flush_now_without_changes_still_writes(self, kv):
        store = SceneStore(kv, debounce_secs=60)
        assert store.flush_now() is True
        assert kv.get_json(SCENES_KEY) == []


class TestLoadAndPersist:
    def test_load_restores_saved_scenes(self, kv, scene_store):
        a = make_scene("Stool")
        a.image = b"bytes"
        scene_store.upsert_scene(a)

        fresh = SceneStore(kv, debounce_secs=0)
        assert fresh.load() == 1
        restored = fresh.get_scene(a.id)
        assert restored == a
        assert restored.image is None

    def test_missing_blob_gives_empty_store(self, kv):
        store = SceneStore(kv, debounce_secs=0)
        assert store.load() == 0
        assert store.list_scenes() == []

    def test_corrupt_blob_gives_empty_store(self, kv):
        kv.set(SCENES_KEY, "[{\"id\": 1")
        store = SceneStore(kv, debounce_secs=0)
        assert store.load() == 0

    def test_undecodable_rows_give_empty_store(self, kv):
        kv.set_json(SCENES_KEY, [{"id": "x"}])
        store = SceneStore(kv, debounce_secs=0)
        assert store.load() == 0

    def test_persist_failure_leaves_store_dirty(self, kv):
        store = SceneStore(kv, debounce_secs=60)
        store.upsert_scene(make_scene("Stool"))
        with patch.object(kv, "set_json", side_effect=OSError("disk full")):
            assert store.flush_now() is False
        assert store.has_pending_save
        assert store.flush_now() is True
        assert not store.has_pending_save


class TestNotifications:
    def test_events_delivered_with_snapshot(self, scene_store):
        events = []
        scene_store.subscribe(lambda event, scene, snapshot: events.append((event, scene, len(snapshot))))

        a = make_scene("Stool")
        scene_store.upsert_scene(a)
        scene_store.update_word_position("Stool", Point(0.1, 0.1))
        scene_store.delete_scene(a)

        assert [(e, n) for e, _, n in events] == [("upserted", 1), ("position", 1), ("deleted", 0)]
        assert events[0][1] is a

    def test_unsubscribe(self, scene_store):
        events = []
        unsubscribe = scene_store.subscribe(lambda *args: events.append(args))
        unsubscribe()
        scene_store.upsert_scene(make_scene("Stool"))
        assert events == []

    def test_failing_listener_does_not_break_mutation(self, scene_store):
        def boom(*args):
            raise RuntimeError("listener bug")

        scene_store.subscribe(boom)
        scene = make_scene("Stool")
        scene_store.upsert_scene(scene)
        assert scene_store.get_scene(scene.id) is scene


class TestQueries:
    def test_find_scene_for_word(self, scene_store):
        older = make_scene("Stool")
        newer = make_scene("Stool", "Lamp")
        scene_store.upsert_scene(older)
        scene_store.upsert_scene(newer)
        assert scene_store.find_scene_for_word("Stool").id == newer.id
        assert scene_store.find_scene_for_word("Chair") is None
