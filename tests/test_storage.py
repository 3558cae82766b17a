"""
Storage tests: backends, shared storage areas and change notification.
"""

from __future__ import annotations

import time

import pytest

from contact_sync import FileStorage, MemoryStorage, StorageArea, StorageQuotaExceeded
from contact_sync.storage import StorageChange


class TestMemoryStorage:
    """Test the in-memory backend."""

    def test_set_get_remove(self):
        """Test basic key operations."""
        storage = MemoryStorage()
        storage.set("a", "1")

        assert storage.get("a") == "1"
        assert storage.keys() == ["a"]

        storage.remove("a")
        storage.remove("a")
        assert storage.get("a") is None

    def test_quota_exceeded(self):
        """Test that a write past max_bytes raises and leaves data unchanged."""
        storage = MemoryStorage(max_bytes=10)
        storage.set("k", "12345")

        with pytest.raises(StorageQuotaExceeded):
            storage.set("other", "123456789")

        assert storage.get("other") is None
        assert storage.get("k") == "12345"

    def test_quota_counts_overwrite_once(self):
        """Test that overwriting a key does not count the old value."""
        storage = MemoryStorage(max_bytes=6)
        storage.set("k", "12345")
        storage.set("k", "54321")

        assert storage.get("k") == "54321"


class TestFileStorage:
    """Test the directory-backed backend."""

    def test_persists_across_instances(self, tmp_path):
        """Test that a second instance reads what the first wrote."""
        FileStorage(tmp_path).set("contacts-x-tab-v1::event", '{"x": 1}')

        assert FileStorage(tmp_path).get("contacts-x-tab-v1::event") == '{"x": 1}'

    def test_keys_are_unquoted(self, tmp_path):
        """Test that keys with separators survive the filename encoding."""
        storage = FileStorage(tmp_path)
        storage.set("ch:last:contact:changed", "v")
        storage.set("a/b", "w")

        assert sorted(storage.keys()) == ["a/b", "ch:last:contact:changed"]

    def test_missing_key_and_remove(self, tmp_path):
        """Test that missing keys read as None and removal is idempotent."""
        storage = FileStorage(tmp_path)

        assert storage.get("nope") is None
        storage.remove("nope")

    def test_items_snapshot(self, tmp_path):
        """Test items() returns every key and value."""
        storage = FileStorage(tmp_path)
        storage.set("a", "1")
        storage.set("b", "2")

        assert storage.items() == {"a": "1", "b": "2"}


class TestStorageArea:
    """Test change notification between views."""

    def test_writer_is_not_notified(self):
        """Test that only the other views hear about a write."""
        area = StorageArea(MemoryStorage())
        writer, reader = area.view(), area.view()
        writer_seen: list[StorageChange] = []
        reader_seen: list[StorageChange] = []
        writer.add_listener(writer_seen.append)
        reader.add_listener(reader_seen.append)

        writer.set("k", "v1")

        assert writer_seen == []
        assert reader_seen == [StorageChange(key="k", old_value=None, new_value="v1")]

    def test_remove_notifies_with_none(self):
        """Test that removal is reported with new_value None."""
        area = StorageArea(MemoryStorage())
        writer, reader = area.view(), area.view()
        writer.set("k", "v1")
        seen: list[StorageChange] = []
        reader.add_listener(seen.append)

        writer.remove("k")

        assert seen == [StorageChange(key="k", old_value="v1", new_value=None)]

    def test_listener_removal_is_idempotent(self):
        """Test that the remover can be called twice."""
        area = StorageArea(MemoryStorage())
        writer, reader = area.view(), area.view()
        seen: list[StorageChange] = []
        remove = reader.add_listener(seen.append)

        remove()
        remove()
        writer.set("k", "v")

        assert seen == []

    def test_failing_listener_does_not_block_others(self):
        """Test that one listener's exception is contained."""
        area = StorageArea(MemoryStorage())
        writer, reader = area.view(), area.view()
        seen: list[StorageChange] = []

        def broken(change):
            raise RuntimeError("boom")

        reader.add_listener(broken)
        reader.add_listener(seen.append)
        writer.set("k", "v")

        assert len(seen) == 1

    def test_closed_view_is_not_notified(self):
        """Test that close() detaches the view."""
        area = StorageArea(MemoryStorage())
        writer, reader = area.view(), area.view()
        seen: list[StorageChange] = []
        reader.add_listener(seen.append)

        reader.close()
        writer.set("k", "v")

        assert seen == []

    def test_quota_error_propagates_to_writer(self):
        """Test that backend errors reach the writing view."""
        area = StorageArea(MemoryStorage(max_bytes=4))

        with pytest.raises(StorageQuotaExceeded):
            area.view().set("key", "too long")

    def test_poll_detects_external_writes(self, tmp_path):
        """Test that poll() reports writes made by another process."""
        area = StorageArea(FileStorage(tmp_path))
        view = area.view()
        seen: list[StorageChange] = []
        view.add_listener(seen.append)

        FileStorage(tmp_path).set("k", "from elsewhere")

        assert area.poll() == 1
        assert seen == [StorageChange(key="k", old_value=None, new_value="from elsewhere")]
        assert area.poll() == 0

    def test_background_polling(self, tmp_path):
        """Test that start_polling() notifies views without explicit polls."""
        area = StorageArea(FileStorage(tmp_path))
        view = area.view()
        seen: list[StorageChange] = []
        view.add_listener(seen.append)

        area.start_polling(interval=0.01)
        try:
            FileStorage(tmp_path).set("k", "v")
            deadline = time.time() + 2.0
            while not seen and time.time() < deadline:
                time.sleep(0.01)
        finally:
            area.stop_polling()

        assert seen and seen[0].new_value == "v"
