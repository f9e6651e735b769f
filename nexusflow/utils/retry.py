from __future__ import annotations

import random


def compute_backoff(
    attempt: int, delay_ms: int = 2000, kind: str = "exponential", jitter: float = 0.0
) -> int:
    """Compute the retry delay in milliseconds for the given attempt number.

    ``attempt`` is 1-based: the first retry waits ``delay_ms`` for both
    policies, later retries double it under the exponential policy.
    """
    attempt = max(1, attempt)
    if kind == "fixed":
        delay = float(delay_ms)
    else:
        delay = delay_ms * (2 ** (attempt - 1))
    if jitter:
        delay += random.uniform(0, jitter * delay)
    return int(delay)
