"""Ledger of Slack messages already posted per destination and thread key.

Looking up a reference, deciding what to do, sending and recording the new
reference must not interleave for the same ``(destination, key)``. Callers
hold ``store.lock(destination, key)`` across the whole cycle.
"""

from __future__ import annotations

import abc
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterator, Optional, Tuple

import diskcache
from sanic.log import logger

from pipebot.reconcile.types import MessageReference, PostAction

RefKey = Tuple[str, str]


def decide_action(
    existing: Optional[MessageReference], create_if_missing: bool
) -> PostAction:
    if existing is not None:
        return PostAction.update
    if create_if_missing:
        return PostAction.create
    return PostAction.skip


class ReferenceStore(abc.ABC):
    def __init__(self):
        self._locks: Dict[RefKey, asyncio.Lock] = {}
        self._waiters: Dict[RefKey, int] = {}
        self._guard = asyncio.Lock()

    @asynccontextmanager
    async def lock(self, destination: str, key: str) -> AsyncIterator[None]:
        ref_key = (destination, key)
        async with self._guard:
            lock = self._locks.setdefault(ref_key, asyncio.Lock())
            self._waiters[ref_key] = self._waiters.get(ref_key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            async with self._guard:
                self._waiters[ref_key] -= 1
                if self._waiters[ref_key] == 0:
                    self._waiters.pop(ref_key, None)
                    self._locks.pop(ref_key, None)

    @abc.abstractmethod
    def lookup(self, destination: str, key: str) -> Optional[MessageReference]: ...

    @abc.abstractmethod
    def record(
        self, destination: str, key: str, reference: MessageReference
    ) -> None: ...

    @abc.abstractmethod
    def items(self) -> Iterator[Tuple[RefKey, MessageReference]]: ...


class MemoryReferenceStore(ReferenceStore):
    def __init__(self):
        super().__init__()
        self._references: Dict[RefKey, MessageReference] = {}

    def lookup(self, destination: str, key: str) -> Optional[MessageReference]:
        return self._references.get((destination, key))

    def record(self, destination: str, key: str, reference: MessageReference) -> None:
        self._references[(destination, key)] = reference

    def items(self) -> Iterator[Tuple[RefKey, MessageReference]]:
        yield from list(self._references.items())

    def __len__(self) -> int:
        return len(self._references)


class DiskReferenceStore(ReferenceStore):
    """References persisted in a diskcache directory, surviving restarts."""

    prefix: str = "ref"

    def __init__(self, directory: str):
        super().__init__()
        self.cache = diskcache.Cache(directory)

    def _key(self, destination: str, key: str) -> Tuple[str, str, str]:
        return (self.prefix, destination, key)

    def lookup(self, destination: str, key: str) -> Optional[MessageReference]:
        value = self.cache.get(self._key(destination, key))
        if value is None:
            return None
        channel_id, timestamp = value
        return MessageReference(channel_id=channel_id, timestamp=timestamp)

    def record(self, destination: str, key: str, reference: MessageReference) -> None:
        logger.debug(
            "Persisting reference destination=%s key=%s channel=%s ts=%s",
            destination,
            key,
            reference.channel_id,
            reference.timestamp,
        )
        self.cache.set(
            self._key(destination, key), (reference.channel_id, reference.timestamp)
        )

    def items(self) -> Iterator[Tuple[RefKey, MessageReference]]:
        for cache_key in self.cache.iterkeys():
            if not isinstance(cache_key, tuple) or cache_key[0] != self.prefix:
                continue
            _, destination, key = cache_key
            reference = self.lookup(destination, key)
            if reference is not None:
                yield (destination, key), reference

    def __len__(self) -> int:
        return sum(1 for _ in self.items())

    def close(self) -> None:
        self.cache.close()

    def __enter__(self) -> "DiskReferenceStore":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
