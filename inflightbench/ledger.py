"""
Delivery ledger: which subscriber identity received which fingerprint.

Written from protocol-client callback threads, read by the verdict engine
once the drain window has passed.
"""

import threading
from collections import defaultdict
from typing import Iterable, Mapping


class DeliveryLedger:
    """
    Thread-safe record of received fingerprints.

    * per subscriber: the set of fingerprints seen (presence, not position)
      and the raw delivery count, so redeliveries stay visible in stats
    * per shared group: fingerprint -> list of receiving identities, in
      arrival order; a list longer than one is a duplicate delivery
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._received: dict[str, set[str]] = defaultdict(set)
        self._deliveries: dict[str, int] = defaultdict(int)
        self._groups: dict[str, dict[str, list[str]]] = defaultdict(dict)
        self._member_of: dict[str, str] = {}
        self._anomalies: dict[str, list[str]] = defaultdict(list)

    # ── setup ──────────────────────────────────────────────────────── #
    def register(self, subscriber: str, group: str | None = None):
        """Create empty buckets so silent subscribers still show up."""
        with self._lock:
            self._received.setdefault(subscriber, set())
            self._deliveries.setdefault(subscriber, 0)
            if group is not None:
                self._member_of[subscriber] = group
                self._groups.setdefault(group, {})

    # ── called from client callback threads ────────────────────────── #
    def record(self, subscriber: str, fingerprint: str, group: str | None = None):
        """Record one delivery; repeats are kept for groups, collapsed per subscriber."""
        with self._lock:
            self._received[subscriber].add(fingerprint)
            self._deliveries[subscriber] += 1
            if group is not None:
                self._member_of.setdefault(subscriber, group)
                self._groups[group].setdefault(fingerprint, []).append(subscriber)

    def record_anomaly(self, subscriber: str, text: str):
        with self._lock:
            self._anomalies[subscriber].append(text)

    # ── reads ──────────────────────────────────────────────────────── #
    def received(self, subscriber: str) -> frozenset[str]:
        with self._lock:
            return frozenset(self._received.get(subscriber, ()))

    def delivery_count(self, subscriber: str) -> int:
        with self._lock:
            return self._deliveries.get(subscriber, 0)

    def anomalies(self, subscriber: str) -> list[str]:
        with self._lock:
            return list(self._anomalies.get(subscriber, ()))

    def missing_for(self, subscriber: str, expected: Iterable[str]) -> set[str]:
        """Fingerprints of *expected* absent from the subscriber's set."""
        seen = self.received(subscriber)
        return {key for key in expected if key not in seen}

    def group_receivers(self, group: str) -> dict[str, list[str]]:
        """Snapshot copy of ``fingerprint -> [receiving identities]`` for *group*."""
        with self._lock:
            return {k: list(v) for k, v in self._groups.get(group, {}).items()}

    def group_of(self, subscriber: str) -> str | None:
        with self._lock:
            return self._member_of.get(subscriber)

    @property
    def subscribers(self) -> list[str]:
        with self._lock:
            return list(self._received)

    @staticmethod
    def duplicates_in_group(receiver_map: Mapping[str, list[str]]) -> dict[str, list[str]]:
        """Fingerprints whose receiver list does not hold exactly one identity."""
        return {k: list(v) for k, v in receiver_map.items() if len(v) != 1}
