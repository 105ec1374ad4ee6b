"""Tests for imgdocs.core.dedup — fingerprints and in-flight registries.

Async behaviour is driven with ``asyncio.run`` from synchronous tests.
"""

from __future__ import annotations

import asyncio
import gc

import pytest

from imgdocs.core.dedup import CreatedDocument, RequestDedupStore, Role, fingerprint
from imgdocs.core.documents import ImageDocument
from imgdocs.core.models import GenerationOptions


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestFingerprint:
    def test_deterministic(self):
        assert fingerprint("a cat", {"width": 512}) == fingerprint("a cat", {"width": 512})

    def test_whitespace_is_normalized(self):
        assert fingerprint("  a   cat\n") == fingerprint("a cat")

    def test_case_is_preserved(self):
        assert fingerprint("A cat") != fingerprint("a cat")

    def test_options_model_and_dict_agree(self):
        model = GenerationOptions(width=512, seed=7)
        assert fingerprint("x", model) == fingerprint("x", {"seed": 7, "width": 512})

    def test_unset_options_ignored(self):
        assert fingerprint("x", GenerationOptions()) == fingerprint("x", None)
        assert fingerprint("x", {"seed": None}) == fingerprint("x", {})

    def test_options_change_fingerprint(self):
        assert fingerprint("x", {"seed": 1}) != fingerprint("x", {"seed": 2})

    def test_document_id_changes_fingerprint(self):
        assert fingerprint("x") != fingerprint("x", document_id="doc-1")
        assert fingerprint("x", document_id="a") != fingerprint("x", document_id="b")


class TestAcquireOrJoin:
    """Leader/follower registration for generation calls."""

    def test_first_caller_leads_second_follows(self):
        async def scenario():
            store = RequestDedupStore()
            first = store.acquire_or_join("k")
            second = store.acquire_or_join("k")
            return store, first, second

        store, first, second = asyncio.run(scenario())
        assert first.role is Role.LEADER
        assert first.is_leader
        assert second.role is Role.FOLLOWER
        assert second.future is first.future
        assert "k" in store.processing_requests
        assert "k" in store.request_timestamps

    def test_different_keys_are_independent(self):
        async def scenario():
            store = RequestDedupStore()
            return store.acquire_or_join("a"), store.acquire_or_join("b")

        a, b = asyncio.run(scenario())
        assert a.is_leader and b.is_leader
        assert a.future is not b.future

    def test_resolve_delivers_value_and_clears_entry(self):
        async def scenario():
            store = RequestDedupStore()
            leader = store.acquire_or_join("k")
            follower = store.acquire_or_join("k")
            store.resolve("k", "value")
            return store, await leader.future, await follower.future

        store, leader_value, follower_value = asyncio.run(scenario())
        assert leader_value == follower_value == "value"
        assert store.pending_calls == {}
        assert store.processing_requests == set()
        assert not store.is_pending("k")

    def test_reject_propagates_and_allows_retry(self):
        async def scenario():
            store = RequestDedupStore()
            leader = store.acquire_or_join("k")
            follower = store.acquire_or_join("k")
            store.reject("k", RuntimeError("boom"))
            with pytest.raises(RuntimeError, match="boom"):
                await follower.future
            with pytest.raises(RuntimeError, match="boom"):
                await leader.future
            return store, store.acquire_or_join("k")

        store, retry = asyncio.run(scenario())
        assert retry.is_leader

    def test_rejection_without_listeners_is_not_reported(self):
        reported = []

        async def scenario():
            loop = asyncio.get_running_loop()
            loop.set_exception_handler(lambda _loop, context: reported.append(context))
            store = RequestDedupStore()
            store.acquire_or_join("k")
            store.reject("k", RuntimeError("nobody is waiting"))
            await asyncio.sleep(0)
            gc.collect()

        asyncio.run(scenario())
        assert reported == []

    def test_abandon_cancels_followers(self):
        async def scenario():
            store = RequestDedupStore()
            store.acquire_or_join("k")
            follower = store.acquire_or_join("k")
            store.abandon("k")
            return store, follower.future

        store, future = asyncio.run(scenario())
        assert future.cancelled()
        assert store.pending_calls == {}


class TestDocumentCreation:
    """Single-flight document creation."""

    def test_concurrent_creations_call_create_once(self):
        calls = []

        async def create():
            calls.append(1)
            await asyncio.sleep(0)
            return ImageDocument(id="doc-new")

        async def scenario():
            store = RequestDedupStore()
            results = await asyncio.gather(
                *(store.acquire_or_join_document_creation("k", create) for _ in range(4))
            )
            return store, results

        store, results = asyncio.run(scenario())
        assert len(calls) == 1
        assert all(r.id == "doc-new" for r in results)
        assert store.created_documents == {"k": "doc-new"}
        assert store.pending_document_creations == {}
        assert store.pending_prompts == set()

    def test_existing_document_short_circuits(self):
        async def create():
            raise AssertionError("create_fn must not be called")

        async def scenario():
            store = RequestDedupStore()
            store.created_documents["k"] = "doc-old"
            return await store.acquire_or_join_document_creation("k", create)

        result = asyncio.run(scenario())
        assert result == CreatedDocument("doc-old")
        assert result.document is None

    def test_failed_creation_leaves_no_trace(self):
        attempts = []

        async def create():
            attempts.append(1)
            if len(attempts) == 1:
                raise OSError("disk full")
            return ImageDocument(id="doc-2")

        async def scenario():
            store = RequestDedupStore()
            with pytest.raises(OSError, match="disk full"):
                await store.acquire_or_join_document_creation("k", create)
            assert store.created_documents == {}
            assert store.pending_document_creations == {}
            return await store.acquire_or_join_document_creation("k", create)

        result = asyncio.run(scenario())
        assert result.id == "doc-2"
        assert len(attempts) == 2

    def test_unsaved_document_is_rejected(self):
        async def create():
            return ImageDocument()

        async def scenario():
            store = RequestDedupStore()
            with pytest.raises(ValueError, match="saved document"):
                await store.acquire_or_join_document_creation("k", create)
            return store

        store = asyncio.run(scenario())
        assert store.created_documents == {}

    def test_forget_document(self):
        store = RequestDedupStore()
        store.created_documents.update({"a": "doc-1", "b": "doc-1", "c": "doc-2"})

        assert store.forget_document("doc-1") == 2
        assert store.created_documents == {"c": "doc-2"}
        assert store.forget_document("missing") == 0


class TestDocumentWriter:
    def test_writers_on_one_document_are_serialized(self):
        events = []

        async def writer(store, name):
            async with store.document_writer("doc"):
                events.append(f"{name}-start")
                await asyncio.sleep(0)
                await asyncio.sleep(0)
                events.append(f"{name}-end")

        async def scenario():
            store = RequestDedupStore()
            await asyncio.gather(writer(store, "a"), writer(store, "b"))
            return store

        store = asyncio.run(scenario())
        assert events == ["a-start", "a-end", "b-start", "b-end"]
        assert store.active_writers == 0

    def test_writers_on_different_documents_overlap(self):
        events = []

        async def writer(store, doc):
            async with store.document_writer(doc):
                events.append(f"{doc}-start")
                await asyncio.sleep(0)
                events.append(f"{doc}-end")

        async def scenario():
            store = RequestDedupStore()
            await asyncio.gather(writer(store, "x"), writer(store, "y"))

        asyncio.run(scenario())
        assert events.index("y-start") < events.index("x-end")

    def test_writer_slot_released_on_error(self):
        async def scenario():
            store = RequestDedupStore()
            with pytest.raises(RuntimeError):
                async with store.document_writer("doc"):
                    raise RuntimeError("write failed")
            return store

        assert asyncio.run(scenario()).active_writers == 0


class TestBookkeeping:
    def test_request_ids_are_unique(self):
        store = RequestDedupStore()
        assert [store.next_request_id() for _ in range(3)] == ["req-1", "req-2", "req-3"]
        assert store.request_counter == 3

    def test_prune_stale_skips_in_flight(self):
        clock = FakeClock()

        async def scenario():
            store = RequestDedupStore(clock=clock)
            store.acquire_or_join("settled")
            store.resolve("settled", None)
            store.acquire_or_join("running")
            clock.now += 60
            assert store.seconds_since_dispatch("settled") == 60
            removed = store.prune_stale(30)
            return store, removed

        store, removed = asyncio.run(scenario())
        assert removed == 1
        assert "settled" not in store.request_timestamps
        assert "running" in store.request_timestamps
        assert store.seconds_since_dispatch("settled") is None

    def test_prune_keeps_recent(self):
        clock = FakeClock()

        async def scenario():
            store = RequestDedupStore(clock=clock)
            store.acquire_or_join("k")
            store.resolve("k", None)
            clock.now += 5
            return store, store.prune_stale(30)

        store, removed = asyncio.run(scenario())
        assert removed == 0
        assert "k" in store.request_timestamps
