"""Tests for SyncClient wiring

Tests: construction from config, multi-table pull with shared cursors,
reset, status, push fan-out to other surfaces, two-device convergence
"""
import asyncio
from unittest.mock import Mock

import pytest

from conftest import set_row
from synclayer.bus import SameContextAdapter, SyncBus
from synclayer.client import ETAG_CACHE_FILENAME, SyncClient
from synclayer.config import SyncConfig
from synclayer.cursors import MemoryCursorStore
from synclayer.transport import HttpTransport


def make_client(config, backend, bus=None):
    transport = HttpTransport(config.backend_url, app_key=config.app_key, transport=backend.transport())
    return SyncClient(config, transport, bus=bus, cursors=MemoryCursorStore())


class TestConstruction:
    """Tests for SyncClient.from_config."""

    @pytest.mark.asyncio
    async def test_from_config_builds_components(self, sync_config, backend):
        async with SyncClient.from_config(sync_config, http_transport=backend.transport()) as client:
            assert client.device_id == "dev-test"
            assert client.bus is not None
            assert client.rows.bus is client.bus
            assert client.rows.priority_class == "desktop"
            assert client.documents.etags.path == sync_config.base_path / ETAG_CACHE_FILENAME
        assert sync_config.cursor_db_path.exists()

    def test_invalid_config_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            SyncClient.from_config(SyncConfig(base_path=tmp_path))

    @pytest.mark.asyncio
    async def test_generates_device_id(self, sync_config, backend):
        sync_config.device_id = None
        async with SyncClient.from_config(sync_config, http_transport=backend.transport(),
                                          with_bus=False) as client:
            assert client.bus is None
            assert (sync_config.base_path / "device_id").read_text().strip() == client.device_id


class TestPullAll:
    """Tests for the shared multi-table cursor."""

    @pytest.mark.asyncio
    async def test_pull_all_applies_and_advances(self, sync_config, backend):
        backend.seed_row("demo", "checklist_sets", set_row("s1", 5, "B", "remote"))
        client = make_client(sync_config, backend)
        store = client.new_store()
        try:
            result = await client.pull_all(store.apply_diffs)
            assert store.get("checklist_sets", "s1").data.title == "remote"
            assert client.since() == result.server_time_ms

            await client.pull_all(store.apply_diffs)
            second = backend.requests_to("/api/sync/pull-batch")[1]
            assert second.url.params["since"] == str(result.server_time_ms)
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_since_is_smallest_table_cursor(self, sync_config, backend):
        client = make_client(sync_config, backend)
        try:
            client.advance(50, ["checklist_sets"])
            assert client.since(["checklist_sets"]) == 50
            assert client.since() == 0
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_reset_clears_cursors_and_etags(self, sync_config, backend):
        backend.write_doc("demo", "plan", {})
        client = make_client(sync_config, backend)
        try:
            await client.documents.load("plan")
            client.advance(50)
            client.reset()
            assert client.since() == 0
            assert client.documents.cached_etag("plan") is None
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_status(self, sync_config, backend):
        bus = SyncBus([SameContextAdapter()])
        client = make_client(sync_config, backend, bus=bus)
        try:
            client.advance(7, ["dictionary_entries"])
            bus.mark_sticky_pull(123)
            status = client.status()
        finally:
            await client.close()

        assert status["device_id"] == "dev-test"
        assert status["cursors"]["dictionary_entries"] == 7
        assert status["cursors"]["checklist_sets"] == 0
        assert status["sticky_pull_at"] == 123
        assert status["priority_order"] == ["desktop", "mobile"]


class TestSurfaces:
    """A push on one surface reaches the others through the bus."""

    @pytest.mark.asyncio
    async def test_push_emits_pull_intent(self, sync_config, backend):
        bus = SyncBus([SameContextAdapter()])
        heard = Mock()
        bus.subscribe_pull(heard)
        client = make_client(sync_config, backend, bus=bus)
        try:
            await client.rows.upsert_checklist_set("demo", client.device_id, "s1", "Morning", 0)
        finally:
            await client.close()

        heard.assert_called_once()
        intent = heard.call_args.args[0]
        assert intent.device_id == "dev-test"
        assert bus.sticky_pull_at() is not None

    @pytest.mark.asyncio
    async def test_two_devices_converge(self, tmp_path, backend):
        def config_for(device_id, priority_class):
            return SyncConfig(
                backend_url="http://backend.test",
                app_key="test-app-key",
                device_id=device_id,
                priority_class=priority_class,
                base_path=tmp_path / device_id,
            )

        phone = make_client(config_for("phone", "mobile"), backend)
        laptop = make_client(config_for("laptop", "desktop"), backend)
        phone.rows.clock = laptop.rows.clock = lambda: 100
        phone_store, laptop_store = phone.new_store(), laptop.new_store()
        try:
            await asyncio.gather(
                phone.rows.upsert_checklist_set("demo", "phone", "s1", "From phone", 0),
                laptop.rows.upsert_checklist_set("demo", "laptop", "s1", "From laptop", 0),
            )
            await phone.pull_all(phone_store.apply_diffs)
            await laptop.pull_all(laptop_store.apply_diffs)
        finally:
            await phone.close()
            await laptop.close()

        # Equal updated_at: the higher priority class ("mobile") wins everywhere
        assert phone_store.get("checklist_sets", "s1").data.title == "From phone"
        assert laptop_store.snapshot() == phone_store.snapshot()
