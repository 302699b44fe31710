"""
Sale number allocation.

Format: V{YYYYMMDD}-{epoch millis}{4 random base36 chars}, e.g. V20261019-1792396800123k3f9.

The retry policy (`allocate_unique`) is a pure function over two callables so
it can be exercised without a database; `allocate_sale_number` binds the
uniqueness check to the caller's cursor so the check runs inside the same
transaction that will insert the sale. A number that is allocated and then
rolled back is never persisted, so it cannot collide with anything later.
"""
import secrets
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from .config import settings
from .errors import AllocatorExhausted
from .logs import json_log

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _random_suffix(n: int = 4) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(n))


def generate_sale_number(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    millis = int(now.timestamp() * 1000)
    return f"V{now.strftime('%Y%m%d')}-{millis}{_random_suffix()}"


def _default_pause(attempt: int) -> None:
    # 1-5ms jitter between attempts.
    time.sleep((1 + secrets.randbelow(5)) / 1000.0)


def allocate_unique(
    is_taken: Callable[[str], bool],
    generate: Callable[[], str] = generate_sale_number,
    *,
    max_attempts: Optional[int] = None,
    pause: Callable[[int], None] = _default_pause,
) -> str:
    max_attempts = max_attempts or settings.sale_number_max_attempts
    last = None
    for attempt in range(1, max_attempts + 1):
        candidate = generate()
        if not is_taken(candidate):
            return candidate
        last = candidate
        json_log("warning", "sale_number.collision", candidate=candidate, attempt=attempt, max_attempts=max_attempts)
        if attempt < max_attempts:
            pause(attempt)
    json_log("error", "sale_number.exhausted", last_candidate=last, max_attempts=max_attempts)
    raise AllocatorExhausted(
        f"could not allocate a unique sale number after {max_attempts} attempts",
        attempts=max_attempts,
    )


def sale_number_taken(cur, candidate: str) -> bool:
    cur.execute("SELECT 1 FROM sales WHERE sale_no = %s LIMIT 1", (candidate,))
    return cur.fetchone() is not None


def allocate_sale_number(cur, *, max_attempts: Optional[int] = None, generate: Callable[[], str] = generate_sale_number) -> str:
    return allocate_unique(lambda c: sale_number_taken(cur, c), generate, max_attempts=max_attempts)
