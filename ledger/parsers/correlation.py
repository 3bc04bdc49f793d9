"""Attach tool results and progress events to conversational turns.

Transcripts do not link a tool result or hook event back to the user turn
that caused it, so the grouping here is approximate. The default strategy
buckets everything by UTC minute and hands a turn whatever landed in the
minute of its own timestamp. Results produced in a later minute are not
attached, and two turns sharing a minute see the same items.
"""
from __future__ import annotations

from collections import defaultdict
from typing import Generic, Protocol, TypeVar

from ledger.date_utils import minute_key

T = TypeVar("T")


class TurnCorrelator(Protocol[T]):
    def add(self, timestamp: str, item: T) -> None: ...

    def for_turn(self, turn_timestamp: str) -> list[T]: ...


class MinuteBucketCorrelator(Generic[T]):
    def __init__(self) -> None:
        self._buckets: dict[str, list[T]] = defaultdict(list)

    def add(self, timestamp: str, item: T) -> None:
        key = minute_key(timestamp)
        if key:
            self._buckets[key].append(item)

    def for_turn(self, turn_timestamp: str) -> list[T]:
        key = minute_key(turn_timestamp)
        if not key:
            return []
        return list(self._buckets.get(key, []))
