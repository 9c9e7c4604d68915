"""Helpers shared by the objectfs tests."""

from __future__ import annotations

import hashlib
from datetime import datetime, timedelta

START = datetime(2024, 3, 1, 12, 0, 0)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def sha1(content: bytes) -> str:
    return hashlib.sha1(content).hexdigest()


def make_content(size: int, seed: int = 0) -> bytes:
    """Deterministic content of an exact size, distinct per seed."""
    pattern = f"object-{seed}-".encode()
    return (pattern * (size // len(pattern) + 1))[:size]
