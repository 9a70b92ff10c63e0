from __future__ import annotations

import logging

import pytest


@pytest.fixture(autouse=True)
def _capture_notifier_logs(caplog: pytest.LogCaptureFixture) -> None:
    # Notifier checkpoint lines are logged at INFO.
    caplog.set_level(logging.INFO, logger="jobboard.notifier")
