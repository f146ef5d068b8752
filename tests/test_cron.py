from __future__ import annotations

import json

import pytest

from page_watch.cli import main
from page_watch.cron import generate_cron_job_name, interval_to_cron_expression, validate_cron_job_config


@pytest.mark.parametrize(
    ("seconds", "expected"),
    [
        (60, "* * * * *"),
        (119, "* * * * *"),
        (300, "*/5 * * * *"),
        (420, "*/6 * * * *"),  # 7 min snaps to the nearest divisor of 60
        (480, "*/6 * * * *"),  # 8 min is equidistant from 6 and 10; keep the tighter schedule
        (1500, "*/20 * * * *"),
        (3600, "0 * * * *"),
        (7200, "0 */2 * * *"),
        (18000, "0 */4 * * *"),
        (36000, "0 */8 * * *"),
        (43200, "0 */12 * * *"),
        (86400, "0 0 * * *"),
        (7 * 86400, "0 0 * * *"),
    ],
)
def test_interval_to_cron_expression(seconds: int, expected: str) -> None:
    assert interval_to_cron_expression(seconds) == expected


def test_minimum_interval_is_sixty_seconds() -> None:
    with pytest.raises(ValueError, match="at least 60 seconds"):
        interval_to_cron_expression(59)


def test_job_name() -> None:
    assert (
        generate_cron_job_name("3f2b8c1e-1d2a-4c55-9a0b-6b1f1f0d2e77")
        == "monitor_check_3f2b8c1e_1d2a_4c55_9a0b_6b1f1f0d2e77"
    )


def test_validate_cron_job_config() -> None:
    assert validate_cron_job_config(monitor_id="m", check_interval=300, user_id="u") == []
    assert validate_cron_job_config(monitor_id="", check_interval=30, user_id=None) == [
        "Invalid monitorId",
        "checkInterval must be at least 60 seconds",
        "Invalid userId",
    ]


def test_cli_cron_command(capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["cron", "900", "--monitor-id", "ab-cd"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out == {"interval_seconds": 900, "cron": "*/15 * * * *", "job_name": "monitor_check_ab_cd"}

    assert main(["cron", "30"]) == 1
