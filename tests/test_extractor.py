"""Tests for edge extraction."""

import asyncio
import sqlite3

import pytest

from filedeps.engine import EdgeExtractor, KeyedLocks
from filedeps.exceptions import ExtractionInProgress, InvalidParameter, PartialRebuildPrevented

from conftest import DEF, OWNER, REF, REPO, doc


async def stored_pairs(store, owner_id=OWNER, repo_url=REPO):
    return sorted(e.key for e in await store.all_edges_for(owner_id, repo_url))


class TestEdgeExtraction:
    @pytest.mark.asyncio
    async def test_extracts_reference_to_definition_edges(self, store, sample_documents):
        await store.load_index(OWNER, REPO, sample_documents)

        count = await EdgeExtractor(store).extract_edges(OWNER, REPO)

        assert count == 3
        assert await stored_pairs(store) == [
            ("src/main.py", "src/config.py"),
            ("src/main.py", "src/utils.py"),
            ("src/utils.py", "src/config.py"),
        ]

    @pytest.mark.asyncio
    async def test_many_symbols_collapse_to_one_edge(self, store):
        await store.load_index(OWNER, REPO, [
            doc("a.py", ("pkg/b#one().", REF), ("pkg/b#two().", REF), ("pkg/b#one().", REF)),
            doc("b.py", ("pkg/b#one().", DEF), ("pkg/b#two().", DEF)),
        ])

        assert await EdgeExtractor(store).extract_edges(OWNER, REPO) == 1
        assert await stored_pairs(store) == [("a.py", "b.py")]

    @pytest.mark.asyncio
    async def test_no_self_loops(self, store):
        await store.load_index(OWNER, REPO, [
            doc("a.py", ("pkg/a#f().", DEF), ("pkg/a#f().", REF), ("pkg/a#g().", DEF | REF)),
        ])

        assert await EdgeExtractor(store).extract_edges(OWNER, REPO) == 0
        assert await stored_pairs(store) == []

    @pytest.mark.asyncio
    async def test_symbol_defined_in_several_files(self, store):
        await store.load_index(OWNER, REPO, [
            doc("use.py", ("pkg#shared.", REF)),
            doc("one.py", ("pkg#shared.", DEF)),
            doc("two.py", ("pkg#shared.", DEF)),
        ])

        await EdgeExtractor(store).extract_edges(OWNER, REPO)

        assert await stored_pairs(store) == [("use.py", "one.py"), ("use.py", "two.py")]

    @pytest.mark.asyncio
    async def test_reserved_role_bits_are_ignored(self, store):
        await store.load_index(OWNER, REPO, [
            doc("a.py", ("pkg/b#f().", REF | 0x40), ("pkg/c#g().", 0x40)),
            doc("b.py", ("pkg/b#f().", DEF | 0x100)),
            doc("c.py", ("pkg/c#g().", DEF)),
        ])

        await EdgeExtractor(store).extract_edges(OWNER, REPO)

        assert await stored_pairs(store) == [("a.py", "b.py")]

    @pytest.mark.asyncio
    async def test_extraction_is_idempotent(self, store, sample_documents):
        await store.load_index(OWNER, REPO, sample_documents)
        extractor = EdgeExtractor(store)

        first = await extractor.extract_edges(OWNER, REPO)
        before = await stored_pairs(store)
        second = await extractor.extract_edges(OWNER, REPO)

        assert first == second
        assert await stored_pairs(store) == before

    @pytest.mark.asyncio
    async def test_reextraction_drops_stale_edges(self, store, sample_documents):
        await store.load_index(OWNER, REPO, sample_documents)
        extractor = EdgeExtractor(store)
        await extractor.extract_edges(OWNER, REPO)

        await store.load_index(OWNER, REPO, [doc("x.py", ("pkg#y.", REF)), doc("y.py", ("pkg#y.", DEF))])
        await extractor.extract_edges(OWNER, REPO)

        assert await stored_pairs(store) == [("x.py", "y.py")]

    @pytest.mark.asyncio
    async def test_empty_index_yields_empty_edge_set(self, store):
        assert await EdgeExtractor(store).extract_edges(OWNER, REPO) == 0

    @pytest.mark.asyncio
    async def test_blank_identifiers_rejected(self, store):
        extractor = EdgeExtractor(store)

        with pytest.raises(InvalidParameter):
            await extractor.extract_edges("", REPO)
        with pytest.raises(InvalidParameter):
            await extractor.extract_edges(OWNER, "   ")

    @pytest.mark.asyncio
    async def test_failed_rebuild_keeps_previous_edges(self, store, sample_documents, monkeypatch):
        await store.load_index(OWNER, REPO, sample_documents)
        extractor = EdgeExtractor(store)
        await extractor.extract_edges(OWNER, REPO)
        before = await stored_pairs(store)

        await store.load_index(OWNER, REPO, [doc("x.py", ("pkg#y.", REF)), doc("y.py", ("pkg#y.", DEF))])

        def fail_insert(conn, owner_id, repo_url, staged):
            raise sqlite3.OperationalError("database disk image is malformed")

        monkeypatch.setattr(store, "_insert_edges", fail_insert)

        with pytest.raises(PartialRebuildPrevented):
            await extractor.extract_edges(OWNER, REPO)

        assert await stored_pairs(store) == before


class TestExtractionLocking:
    @pytest.mark.asyncio
    async def test_non_waiting_caller_rejected_while_key_busy(self, store):
        locks = KeyedLocks()
        extractor = EdgeExtractor(store, locks=locks)

        async with locks.hold((OWNER, REPO)):
            with pytest.raises(ExtractionInProgress):
                await extractor.extract_edges(OWNER, REPO, wait=False)

        assert not locks.locked((OWNER, REPO))

    @pytest.mark.asyncio
    async def test_other_keys_are_not_blocked(self, store):
        locks = KeyedLocks()
        extractor = EdgeExtractor(store, locks=locks)

        async with locks.hold((OWNER, REPO)):
            assert await extractor.extract_edges(OWNER, "https://github.com/acme/other", wait=False) == 0

    @pytest.mark.asyncio
    async def test_configured_default_rejects(self, store):
        locks = KeyedLocks()
        extractor = EdgeExtractor(store, wait_for_lock=False, locks=locks)

        async with locks.hold((OWNER, REPO)):
            with pytest.raises(ExtractionInProgress):
                await extractor.extract_edges(OWNER, REPO)

    @pytest.mark.asyncio
    async def test_waiting_caller_runs_after_holder(self, store, sample_documents):
        await store.load_index(OWNER, REPO, sample_documents)
        locks = KeyedLocks()
        extractor = EdgeExtractor(store, locks=locks)
        order = []

        async def holder():
            async with locks.hold((OWNER, REPO)):
                order.append("holder-start")
                await asyncio.sleep(0.05)
                order.append("holder-end")

        async def waiter():
            await asyncio.sleep(0.01)
            await extractor.extract_edges(OWNER, REPO)
            order.append("extracted")

        await asyncio.gather(holder(), waiter())

        assert order == ["holder-start", "holder-end", "extracted"]
        assert len(await stored_pairs(store)) == 3

    @pytest.mark.asyncio
    async def test_concurrent_extractions_serialize(self, store, sample_documents):
        await store.load_index(OWNER, REPO, sample_documents)
        extractor = EdgeExtractor(store)

        counts = await asyncio.gather(*(extractor.extract_edges(OWNER, REPO) for _ in range(5)))

        assert counts == [3] * 5
        assert len(await stored_pairs(store)) == 3
        assert not extractor.locks.locked((OWNER, REPO))
