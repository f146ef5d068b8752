from __future__ import annotations

from typing import Any


MIN_INTERVAL_SECONDS = 60

_MINUTE_DIVISORS = (1, 2, 3, 4, 5, 6, 10, 12, 15, 20, 30)
_HOUR_DIVISORS = (1, 2, 3, 4, 6, 8, 12)


def _closest(value: int, divisors: tuple[int, ...]) -> int:
    # Ties keep the smaller divisor (runs more often, never less).
    best = divisors[0]
    for d in divisors:
        if abs(value - d) < abs(value - best):
            best = d
    return best


def interval_to_cron_expression(interval_seconds: int) -> str:
    """
    Map a check interval onto a 5-field cron schedule.

    Cron can only express steps that divide the enclosing unit evenly, so
    intervals that don't divide 60 minutes (or 24 hours) snap to the nearest
    one that does. Anything of a day or longer runs daily.
    """
    if isinstance(interval_seconds, bool) or not isinstance(interval_seconds, (int, float)):
        raise ValueError("Check interval must be at least 60 seconds")
    if interval_seconds < MIN_INTERVAL_SECONDS:
        raise ValueError("Check interval must be at least 60 seconds")

    minutes = int(interval_seconds // 60)
    if minutes <= 1:
        return "* * * * *"
    if minutes < 60:
        step = minutes if 60 % minutes == 0 else _closest(minutes, _MINUTE_DIVISORS)
        return f"*/{step} * * * *"

    hours = minutes // 60
    if hours == 1:
        return "0 * * * *"
    if hours < 24:
        step = hours if 24 % hours == 0 else _closest(hours, _HOUR_DIVISORS)
        return f"0 */{step} * * *"
    return "0 0 * * *"


def generate_cron_job_name(monitor_id: str) -> str:
    return f"monitor_check_{str(monitor_id).replace('-', '_')}"


def validate_cron_job_config(*, monitor_id: Any, check_interval: Any, user_id: Any) -> list[str]:
    errors: list[str] = []
    if not monitor_id or not isinstance(monitor_id, str):
        errors.append("Invalid monitorId")
    if (
        isinstance(check_interval, bool)
        or not isinstance(check_interval, (int, float))
        or check_interval < MIN_INTERVAL_SECONDS
    ):
        errors.append("checkInterval must be at least 60 seconds")
    if not user_id or not isinstance(user_id, str):
        errors.append("Invalid userId")
    return errors
