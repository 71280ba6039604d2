"""Tests for per-scene image files."""

import io

from PIL import Image

from picturetalk.storage.image_store import ImageStore
from tests.helpers import make_png


class TestImageStore:
    def test_save_reencodes_as_jpeg(self, image_store):
        path = image_store.save("scene-1", make_png(40, 30))
        assert path == image_store.path_for("scene-1")
        with Image.open(io.BytesIO(image_store.load("scene-1"))) as img:
            assert img.format == "JPEG"
            assert img.size == (40, 30)

    def test_directory_created_lazily(self, tmp_path):
        store = ImageStore(tmp_path / "nested" / "images")
        assert not (tmp_path / "nested").exists()
        store.save("scene-1", make_png())
        assert (tmp_path / "nested" / "images" / "scene-1.jpg").is_file()

    def test_undecodable_bytes(self, image_store):
        assert image_store.save("scene-1", b"nope") is None
        assert image_store.load("scene-1") is None

    def test_delete(self, image_store):
        image_store.save("scene-1", make_png())
        assert image_store.delete("scene-1") is True
        assert image_store.delete("scene-1") is False
        assert image_store.load("scene-1") is None

    def test_no_temp_files_left(self, image_store):
        image_store.save("scene-1", make_png())
        assert [p.name for p in image_store.directory.iterdir()] == ["scene-1.jpg"]
