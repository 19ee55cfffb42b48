from __future__ import annotations

import pytest

from labtracker_dose.metrics import reset_metrics


@pytest.fixture(autouse=True)
def _clean_metrics():
    reset_metrics()
    yield
    reset_metrics()
