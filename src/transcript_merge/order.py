"""Assign order keys and merge batches into the transcript."""

from __future__ import annotations

from typing import Iterable

from .store import TranscriptStore
from .transcripts import NormalizedMessage, OrderKey


def _intra_batch_order(batch: list[NormalizedMessage]) -> list[NormalizedMessage]:
    """Order a batch by the strongest key every record in it carries.

    Native sequence first, then row id. Without either, the order the source
    gave is kept: wall-clock timestamps collide and are not authoritative.
    ``sorted`` is stable, so ties fall back to insertion order.
    """
    if batch and all(m.sequence is not None for m in batch):
        return sorted(batch, key=lambda m: m.sequence)
    if batch and all(m.rowid is not None for m in batch):
        return sorted(batch, key=lambda m: m.rowid)
    return batch


def _fresh(messages: Iterable[NormalizedMessage]) -> list[NormalizedMessage]:
    batch = list(messages)
    for message in batch:
        if message.message_id is not None:
            raise ValueError(f"message {message.message_id} is already in the transcript")
    return batch


class TranscriptOrderer:
    """Append live batches at the tail and backfilled pages at the head.

    Existing messages are never moved or re-keyed: appended keys start after
    the current maximum and prepended keys end before the current minimum.
    """

    def __init__(self, store: TranscriptStore) -> None:
        self._store = store
        self._head = 0  # smallest position handed out
        self._tail = 0  # next position for an append

    def _key(self, message: NormalizedMessage, position: int) -> OrderKey:
        return OrderKey(
            position=position,
            sequence=message.sequence,
            rowid=message.rowid,
            timestamp=message.timestamp,
        )

    def merge_append(self, messages: Iterable[NormalizedMessage]) -> list[NormalizedMessage]:
        batch = _intra_batch_order(_fresh(messages))
        for message in batch:
            message.order_key = self._key(message, self._tail)
            self._tail += 1
        self._store.push_tail(batch)
        return batch

    def merge_prepend(self, messages: Iterable[NormalizedMessage]) -> list[NormalizedMessage]:
        batch = _intra_batch_order(_fresh(messages))
        start = self._head - len(batch)
        for offset, message in enumerate(batch):
            message.order_key = self._key(message, start + offset)
        self._head = start
        self._store.push_head(batch)
        return batch

    def reset(self) -> None:
        self._store.clear()
        self._head = 0
        self._tail = 0
