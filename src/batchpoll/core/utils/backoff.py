from datetime import datetime, timedelta
from typing import Optional, Sequence


def retry_delay(retry_count: int, delays: Sequence[float]) -> float:
    """Seconds to wait before the next attempt after `retry_count` failures.

    The schedule is a step list; its last value repeats once the list runs out.
    No failures (or an empty schedule) means no wait.
    """
    if retry_count <= 0 or not delays:
        return 0.0
    return float(delays[min(retry_count, len(delays)) - 1])


def is_due(
    last_attempt: Optional[datetime],
    retry_count: int,
    delays: Sequence[float],
    now: datetime,
) -> bool:
    if last_attempt is None:
        return True
    return last_attempt + timedelta(seconds=retry_delay(retry_count, delays)) <= now
