"""
Chronologically sortable unique keys for collection children.

A push id is 20 characters: 8 encode the millisecond timestamp, 12 are
random. The alphabet is in ASCII order so plain string comparison sorts
ids by creation time. Two ids generated in the same millisecond by the
same generator increment the random part instead of re-rolling it, so
they still sort in generation order.
"""

import secrets
import threading
import time

PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"

_TIMESTAMP_LENGTH = 8
_RANDOM_LENGTH = 12


class PushIdGenerator:
    """
    Generates push ids.

    Usage:
        ids = PushIdGenerator()
        key = ids.generate()  # "-NxQ3vB0a1b2c3d4e5f6"
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._last_ms = 0
        self._last_random = [0] * _RANDOM_LENGTH

    def generate(self, now_ms: int | None = None) -> str:
        """
        Generate the next id.

        Args:
            now_ms: Timestamp override in epoch milliseconds (tests only)
        """
        if now_ms is None:
            now_ms = time.time_ns() // 1_000_000

        with self._lock:
            # A clock that moves backwards is treated like a repeat of the last
            # millisecond so ids from one generator never go out of order.
            if now_ms <= self._last_ms:
                now_ms = self._last_ms
                self._increment_random()
            else:
                self._last_random = [secrets.randbelow(64) for _ in range(_RANDOM_LENGTH)]
            self._last_ms = now_ms

            timestamp_chars = []
            remaining = now_ms
            for _ in range(_TIMESTAMP_LENGTH):
                timestamp_chars.append(PUSH_CHARS[remaining % 64])
                remaining //= 64
            if remaining:
                raise ValueError(f"Timestamp {now_ms} does not fit in a push id")

            random_chars = [PUSH_CHARS[i] for i in self._last_random]
            return "".join(reversed(timestamp_chars)) + "".join(random_chars)

    def _increment_random(self) -> None:
        i = _RANDOM_LENGTH - 1
        while i >= 0 and self._last_random[i] == 63:
            self._last_random[i] = 0
            i -= 1
        if i < 0:
            # 64^12 ids in one millisecond; wrap rather than fail
            self._last_random = [0] * _RANDOM_LENGTH
            return
        self._last_random[i] += 1


def push_id_timestamp(push_id: str) -> int:
    """Recover the epoch-millisecond timestamp encoded in a push id."""
    if len(push_id) != _TIMESTAMP_LENGTH + _RANDOM_LENGTH:
        raise ValueError(f"Not a push id: {push_id!r}")
    value = 0
    for char in push_id[:_TIMESTAMP_LENGTH]:
        index = PUSH_CHARS.find(char)
        if index < 0:
            raise ValueError(f"Not a push id: {push_id!r}")
        value = value * 64 + index
    return value
