#!/usr/bin/env python3
"""
Unit tests for AvatarRepository.

Tests the ID list and cache files, the sequential full refresh and the
add/remove operations.
"""

import json
import logging

import pytest
from unittest.mock import AsyncMock

from gallery_client.avatar_repository import AvatarRepository
from gallery_shared.exceptions import ErrorCode
from gallery_shared.models import AvatarRecord, OutcomeKind

ID_X = "avtr_5f2a3b4c-1d2e-3f4a-5b6c-7d8e9f0a1b2c"
ID_Y = "avtr_22222222-2222-4222-8222-222222222222"
ID_Z = "avtr_33333333-3333-4333-8333-333333333333"


def record(avatar_id, name="Avatar"):
    return AvatarRecord(avatar_id, name, f"https://img/{avatar_id}.png", "Alice")


def fetch_returning(*failing_ids):
    """Create a fetch function that fails for the given IDs."""
    async def fetch(avatar_id):
        if avatar_id in failing_ids:
            return None
        return record(avatar_id)
    return AsyncMock(side_effect=fetch)


@pytest.fixture
def repository(tmp_path):
    return AvatarRepository(tmp_path / "avatars.txt", tmp_path / "avatars.json")


class TestTrackedIds:
    """Test the ID list file."""

    def test_missing_file_gives_empty_list(self, repository):
        assert repository.load_tracked_ids() == []

    def test_lines_are_trimmed_and_filtered_in_order(self, repository):
        repository.ids_file.write_text(
            f"  {ID_Z}  \n\nnot-an-id\n{ID_X}\r\navtr_bad\n{ID_Y}",
            encoding="utf-8"
        )

        assert repository.load_tracked_ids() == [ID_Z, ID_X, ID_Y]

    def test_save_then_load(self, repository):
        assert repository.save_tracked_ids([ID_Y, ID_X])

        assert repository.ids_file.read_text(encoding="utf-8") == f"{ID_Y}\n{ID_X}\n"
        assert repository.load_tracked_ids() == [ID_Y, ID_X]

    def test_save_of_load_is_idempotent(self, repository):
        repository.ids_file.write_text(f"{ID_Z}\n{ID_X}\n{ID_Y}", encoding="utf-8")

        first = repository.load_tracked_ids()
        repository.save_tracked_ids(first)
        second = repository.load_tracked_ids()
        repository.save_tracked_ids(second)

        assert first == second == repository.load_tracked_ids() == [ID_Z, ID_X, ID_Y]

    def test_undecodable_line_drops_only_that_line(self, repository):
        repository.ids_file.write_bytes(
            f"{ID_X}\n".encode() + b"\xff\xfe junk\n" + f"{ID_Y}\n".encode()
        )

        assert repository.load_tracked_ids() == [ID_X, ID_Y]

    @pytest.mark.asyncio
    async def test_undecodable_line_does_not_lose_tracked_ids(self, repository):
        repository.ids_file.write_bytes(
            f"{ID_X}\n".encode() + b"\xff\xfe junk\n" + f"{ID_Y}\n".encode()
        )

        await repository.load_cache_or_refresh(fetch_returning())
        await repository.add(ID_Z, fetch_returning())

        assert repository.load_tracked_ids() == [ID_X, ID_Y, ID_Z]


class TestCache:
    """Test the JSON metadata cache."""

    def test_round_trip(self, repository):
        records = [record(ID_X, "Fox"), record(ID_Y, "Cat")]

        assert repository.save_cache(records)
        assert repository.load_cache() == records

    def test_cache_is_indented_json(self, repository):
        repository.save_cache([record(ID_X)])

        text = repository.cache_file.read_text(encoding="utf-8")
        assert "\n  " in text
        assert json.loads(text)[0]["imageUrl"] == f"https://img/{ID_X}.png"

    def test_missing_cache_is_none(self, repository):
        assert repository.load_cache() is None

    @pytest.mark.parametrize("content", ["{not json", '{"id": "x"}', '"text"'])
    def test_unusable_cache_is_none(self, repository, content):
        repository.cache_file.write_text(content, encoding="utf-8")
        assert repository.load_cache() is None

    def test_empty_array_is_empty_list(self, repository):
        repository.cache_file.write_text("[]", encoding="utf-8")
        assert repository.load_cache() == []

    @pytest.mark.parametrize("content", ["{not json", '"text"'])
    def test_corrupt_cache_is_logged_with_code(self, repository, caplog, content):
        repository.cache_file.write_text(content, encoding="utf-8")

        with caplog.at_level(logging.WARNING, logger="gallery_client.avatar_repository"):
            repository.load_cache()

        codes = [r.error_info.error_code for r in caplog.records if hasattr(r, "error_info")]
        assert codes == [ErrorCode.PERSISTENCE_CORRUPT_DATA]

    def test_entries_with_invalid_ids_are_dropped(self, repository):
        repository.cache_file.write_text(json.dumps([
            {"id": "avtr_nope", "name": "Bad"},
            {"ID": ID_X, "Name": "Fox"},
            {"name": "no id"},
            "not an object",
        ]), encoding="utf-8")

        assert repository.load_cache() == [AvatarRecord(ID_X, "Fox")]


class TestRefreshAll:
    """Test the sequential full refresh."""

    @pytest.mark.asyncio
    async def test_empty_list(self, repository):
        fetch = fetch_returning()

        records, ok_count, fail_count = await repository.refresh_all([], fetch)

        assert (records, ok_count, fail_count) == ([], 0, 0)
        fetch.assert_not_awaited()
        assert repository.load_cache() == []

    @pytest.mark.asyncio
    async def test_failures_are_counted_and_dropped(self, repository):
        """Test X, Y, Z where Y fails gives [X, Z] with counts 2 and 1."""
        fetch = fetch_returning(ID_Y)
        calls = []

        summary = await repository.refresh_all(
            [ID_X, ID_Y, ID_Z], fetch, progress=lambda *args: calls.append(args)
        )

        assert [r.id for r in summary.records] == [ID_X, ID_Z]
        assert summary.ok_count == 2
        assert summary.fail_count == 1
        assert summary.message == "Refresh complete - 2 OK, 1 failed."
        assert [r.id for r in repository.load_cache()] == [ID_X, ID_Z]
        assert repository.tracked_ids == [ID_X, ID_Z]
        assert calls == [(1, 3, ID_X, True), (2, 3, ID_Y, False), (3, 3, ID_Z, True)]

    @pytest.mark.asyncio
    async def test_first_failure_keeps_order_of_rest(self, repository):
        records, ok_count, fail_count = await repository.refresh_all(
            [ID_X, ID_Y, ID_Z], fetch_returning(ID_X)
        )

        assert [r.id for r in records] == [ID_Y, ID_Z]
        assert (ok_count, fail_count) == (2, 1)

    @pytest.mark.asyncio
    async def test_fetches_in_order(self, repository):
        fetch = fetch_returning()

        await repository.refresh_all([ID_Z, ID_X, ID_Y], fetch)

        assert [call.args[0] for call in fetch.await_args_list] == [ID_Z, ID_X, ID_Y]

    @pytest.mark.asyncio
    async def test_raising_fetch_counts_as_failure(self, repository):
        fetch = AsyncMock(side_effect=RuntimeError("boom"))

        summary = await repository.refresh_all([ID_X], fetch)
        assert (summary.ok_count, summary.fail_count) == (0, 1)

    @pytest.mark.asyncio
    async def test_ids_file_is_not_rewritten(self, repository):
        repository.save_tracked_ids([ID_X, ID_Y])

        await repository.refresh_all([ID_X, ID_Y], fetch_returning(ID_Y))

        assert repository.load_tracked_ids() == [ID_X, ID_Y]


class TestLoadCacheOrRefresh:
    """Test the start-up path."""

    @pytest.mark.asyncio
    async def test_uses_cache_when_readable(self, repository):
        repository.save_cache([record(ID_X)])
        fetch = fetch_returning()

        summary = await repository.load_cache_or_refresh(fetch)

        assert summary.from_cache
        assert repository.tracked_ids == [ID_X]
        fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refreshes_from_ids_without_cache(self, repository):
        repository.save_tracked_ids([ID_X, ID_Y])
        fetch = fetch_returning()

        summary = await repository.load_cache_or_refresh(fetch)

        assert not summary.from_cache
        assert summary.ok_count == 2
        assert repository.load_cache() == [record(ID_X), record(ID_Y)]


class TestAddRemove:
    """Test add and remove."""

    @pytest.mark.asyncio
    async def test_add_persists_ids_and_cache(self, repository):
        outcome = await repository.add(f"  {ID_X} ", fetch_returning())

        assert outcome.ok
        assert outcome.record == record(ID_X)
        assert repository.load_tracked_ids() == [ID_X]
        assert repository.load_cache() == [record(ID_X)]

    @pytest.mark.asyncio
    async def test_add_invalid_id(self, repository):
        fetch = fetch_returning()

        outcome = await repository.add("avtr_nope", fetch)

        assert outcome.kind == OutcomeKind.VALIDATION_ERROR
        assert outcome.error_code == ErrorCode.VALIDATION_INVALID_FORMAT
        fetch.assert_not_awaited()
        assert not repository.ids_file.exists()

    @pytest.mark.asyncio
    async def test_add_duplicate_is_case_insensitive(self, repository):
        await repository.add(ID_X, fetch_returning())
        fetch = fetch_returning()

        outcome = await repository.add(ID_X.upper(), fetch)

        assert outcome.kind == OutcomeKind.VALIDATION_ERROR
        assert outcome.error_code == ErrorCode.VALIDATION_DUPLICATE_VALUE
        fetch.assert_not_awaited()
        assert repository.tracked_ids == [ID_X]

    @pytest.mark.asyncio
    async def test_add_fetch_failure(self, repository):
        outcome = await repository.add(ID_X, fetch_returning(ID_X))

        assert outcome.kind == OutcomeKind.TRANSPORT_ERROR
        assert repository.records == []
        assert not repository.ids_file.exists()

    @pytest.mark.asyncio
    async def test_add_with_raising_fetch_is_audited(self, repository, caplog):
        with caplog.at_level(logging.INFO, logger="audit"):
            outcome = await repository.add(ID_X, AsyncMock(side_effect=RuntimeError("boom")))

        assert outcome.kind == OutcomeKind.TRANSPORT_ERROR
        events = [r.audit_info["event_type"] for r in caplog.records if hasattr(r, "audit_info")]
        assert events == ["error_event", "avatar_list_change"]

    @pytest.mark.asyncio
    async def test_remove_is_case_insensitive(self, repository):
        await repository.refresh_all([ID_X, ID_Y], fetch_returning())

        assert repository.remove(ID_X.upper())

        assert repository.tracked_ids == [ID_Y]
        assert repository.load_tracked_ids() == [ID_Y]
        assert repository.load_cache() == [record(ID_Y)]

    @pytest.mark.asyncio
    async def test_remove_unknown_writes_nothing(self, repository):
        await repository.refresh_all([ID_X], fetch_returning())
        repository.ids_file.write_text("sentinel\n", encoding="utf-8")
        before = repository.cache_file.read_text(encoding="utf-8")

        assert not repository.remove(ID_Y)

        assert repository.ids_file.read_text(encoding="utf-8") == "sentinel\n"
        assert repository.cache_file.read_text(encoding="utf-8") == before

    def test_records_is_a_copy(self, repository):
        repository.records.append(record(ID_X))
        assert repository.records == []
