"""Property-based tests for the cache protocol invariants."""

from __future__ import annotations

import asyncio

import pytest
from hypothesis import given, settings, strategies as st

from buildcache.gateway.errors import EntryTooLarge
from buildcache.gateway.ingest import guard_size, read_bounded
from buildcache.storage import RedisArtifactStorage, iter_bytes
from tests.utils.fakes import FakeRedis


async def _stream(chunks):
    for chunk in chunks:
        yield chunk


chunk_lists = st.lists(st.binary(min_size=0, max_size=64), max_size=16)


@given(chunks=chunk_lists, limit=st.integers(min_value=0, max_value=512))
def test_read_bounded_accepts_iff_within_limit(chunks, limit) -> None:
    payload = b"".join(chunks)
    if len(payload) <= limit:
        assert asyncio.run(read_bounded(_stream(chunks), limit)) == payload
    else:
        with pytest.raises(EntryTooLarge):
            asyncio.run(read_bounded(_stream(chunks), limit))


@given(chunks=chunk_lists, limit=st.integers(min_value=0, max_value=512))
def test_guard_size_never_yields_past_limit(chunks, limit) -> None:
    async def drain() -> int:
        seen = 0
        try:
            async for chunk in guard_size(_stream(chunks), limit):
                seen += len(chunk)
        except EntryTooLarge:
            pass
        return seen

    assert asyncio.run(drain()) <= limit


@settings(max_examples=50)
@given(
    entries=st.dictionaries(
        keys=st.text(min_size=1, max_size=32),
        values=st.binary(max_size=2048),
        max_size=8,
    ),
    namespace=st.one_of(st.none(), st.text(alphabet="abcdefghij-", min_size=1, max_size=8)),
)
def test_last_write_wins_per_key(entries, namespace) -> None:
    async def scenario() -> None:
        storage = RedisArtifactStorage(FakeRedis(), namespace)
        for key, value in entries.items():
            await storage.put(key, iter_bytes(b"stale"), 5)
            await storage.put(key, iter_bytes(value, chunk_size=97), len(value))
        for key, value in entries.items():
            stream, size = await storage.get(key)
            assert size == len(value)
            assert b"".join([chunk async for chunk in stream]) == value

    asyncio.run(scenario())
