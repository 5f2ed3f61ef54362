from __future__ import annotations

import random


def compute_backoff(attempt: int, base_ms: int = 1000, jitter_ms: int = 0) -> int:
    """Exponential backoff in milliseconds before delivery attempt ``attempt + 1``.

    ``attempt`` is the attempt that just failed (1-based), so the first retry
    waits ``base_ms``.
    """
    delay = base_ms * 2 ** max(0, attempt - 1)
    if jitter_ms > 0:
        delay += random.randint(0, jitter_ms)
    return int(delay)
