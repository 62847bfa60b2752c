"""
Hourly rate limiting of IP changes.

The window is the wall-clock hour (timestamps truncated to the top of the
hour), not a rolling 60 minutes. A change at 10:59:59 and a check at
11:00:00 fall into different windows.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Final

    from ddns_service.models import Mapping


MAX_CHANGES_PER_HOUR: Final[int] = 2

_ONE_HOUR: Final[timedelta] = timedelta(hours=1)


@dataclass(frozen=True)
class RateLimitResult:
    """
    Result of a rate limit check.

    Attributes
    ----------
    allowed : bool
        Whether the IP change may proceed.
    retry_after : timedelta
        Time until the window resets; zero when allowed.
    """

    allowed: bool
    retry_after: timedelta = timedelta(0)

    @property
    def retry_after_seconds(self) -> int:
        """Retry delay rounded up to whole seconds."""
        seconds = self.retry_after.total_seconds()
        whole = int(seconds)
        return whole + 1 if seconds > whole else whole


def truncate_to_hour(moment: datetime) -> datetime:
    """Return the top of the hour containing `moment`."""
    return moment.replace(minute=0, second=0, microsecond=0)


def check(
    mapping: Mapping | None,
    now: datetime,
    max_changes_per_hour: int = MAX_CHANGES_PER_HOUR,
) -> RateLimitResult:
    """
    Decide whether an IP change is allowed for a mapping.

    Parameters
    ----------
    mapping : Mapping | None
        The existing mapping, or None for a first write.
    now : datetime
        Current time.
    max_changes_per_hour : int, optional
        Maximum number of IP changes inside one clock hour.

    Returns
    -------
    RateLimitResult
        Whether the change is allowed and, if not, how long to wait.
    """
    if mapping is None:
        return RateLimitResult(allowed=True)

    current_hour = truncate_to_hour(now)
    if truncate_to_hour(mapping.last_ip_change_at) != current_hour:
        # Window rolled over, the stored count belongs to an older hour
        return RateLimitResult(allowed=True)

    if mapping.hourly_change_count >= max_changes_per_hour:
        return RateLimitResult(
            allowed=False,
            retry_after=current_hour + _ONE_HOUR - now,
        )

    return RateLimitResult(allowed=True)


def update_counters(mapping: Mapping, now: datetime) -> Mapping:
    """
    Record an accepted IP change on a mapping.

    Only call this after an actual change; unchanged polls must not consume
    budget.

    Parameters
    ----------
    mapping : Mapping
        The mapping being written.
    now : datetime
        Time of the change.

    Returns
    -------
    Mapping
        A copy with `hourly_change_count` and `last_ip_change_at` updated.
    """
    if truncate_to_hour(mapping.last_ip_change_at) == truncate_to_hour(now):
        count = mapping.hourly_change_count + 1
    else:
        count = 1

    return mapping.model_copy(
        update={"hourly_change_count": count, "last_ip_change_at": now},
    )
