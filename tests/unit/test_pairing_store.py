"""Tests for the SQLite pairing store."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from tgrelay.pairing.store import (
    CODE_ALPHABET,
    CODE_LENGTH,
    SqlitePairingStore,
    generate_pairing_code,
)


@pytest.fixture
def store(tmp_path: Path):
    s = SqlitePairingStore(str(tmp_path / "state" / "pairing.db"))
    yield s
    s.close()


class TestGeneratePairingCode:
    def test_length_and_alphabet(self) -> None:
        for _ in range(50):
            code = generate_pairing_code()
            assert len(code) == CODE_LENGTH
            assert set(code) <= set(CODE_ALPHABET)

    def test_alphabet_has_no_lookalikes(self) -> None:
        assert not set("01IO") & set(CODE_ALPHABET)


class TestUpsertRequest:
    @pytest.mark.asyncio
    async def test_first_request_is_created(self, store: SqlitePairingStore) -> None:
        upsert = await store.upsert_request("tgrelay", "555", {"username": "alice"})
        assert upsert.created is True
        requests = await store.list_requests("tgrelay")
        assert [(r.sender_id, r.code) for r in requests] == [("555", upsert.code)]
        assert requests[0].meta == {"username": "alice"}

    @pytest.mark.asyncio
    async def test_repeat_request_keeps_code_and_updates_meta(
        self, store: SqlitePairingStore,
    ) -> None:
        first = await store.upsert_request("tgrelay", "555", {"username": "alice"})
        second = await store.upsert_request("tgrelay", "555", {"username": "alice2"})
        assert second.created is False
        assert second.code == first.code
        requests = await store.list_requests("tgrelay")
        assert len(requests) == 1
        assert requests[0].meta == {"username": "alice2"}

    @pytest.mark.asyncio
    async def test_channels_are_separate(self, store: SqlitePairingStore) -> None:
        await store.upsert_request("tgrelay", "555", {})
        assert await store.list_requests("other") == []

    @pytest.mark.asyncio
    async def test_expired_request_is_replaced(self, tmp_path: Path) -> None:
        store = SqlitePairingStore(str(tmp_path / "p.db"), pending_ttl=timedelta(seconds=-1))
        try:
            await store.upsert_request("tgrelay", "555", {})
            again = await store.upsert_request("tgrelay", "555", {})
            assert again.created is True
        finally:
            store.close()


class TestApprove:
    @pytest.mark.asyncio
    async def test_moves_sender_to_allow_list(self, store: SqlitePairingStore) -> None:
        upsert = await store.upsert_request("tgrelay", "555", {"name": "Alice"})
        request = await store.approve("tgrelay", upsert.code)
        assert request is not None
        assert request.sender_id == "555"
        assert await store.read_allow_from("tgrelay") == ["555"]
        assert await store.list_requests("tgrelay") == []

    @pytest.mark.asyncio
    async def test_code_is_normalized(self, store: SqlitePairingStore) -> None:
        upsert = await store.upsert_request("tgrelay", "555", {})
        assert await store.approve("tgrelay", f"  {upsert.code.lower()} ") is not None

    @pytest.mark.asyncio
    async def test_unknown_code(self, store: SqlitePairingStore) -> None:
        assert await store.approve("tgrelay", "NOPE2345") is None
        assert await store.read_allow_from("tgrelay") == []

    @pytest.mark.asyncio
    async def test_code_is_single_use(self, store: SqlitePairingStore) -> None:
        upsert = await store.upsert_request("tgrelay", "555", {})
        await store.approve("tgrelay", upsert.code)
        assert await store.approve("tgrelay", upsert.code) is None

    @pytest.mark.asyncio
    async def test_allow_list_survives_reopen(self, tmp_path: Path) -> None:
        path = str(tmp_path / "p.db")
        first = SqlitePairingStore(path)
        upsert = await first.upsert_request("tgrelay", "555", {})
        await first.approve("tgrelay", upsert.code)
        first.close()
        second = SqlitePairingStore(path)
        try:
            assert await second.read_allow_from("tgrelay") == ["555"]
        finally:
            second.close()

    @pytest.mark.asyncio
    async def test_in_memory_database(self) -> None:
        store = SqlitePairingStore(":memory:")
        try:
            upsert = await store.upsert_request("tgrelay", "1", {})
            assert (await store.approve("tgrelay", upsert.code)) is not None
        finally:
            store.close()
