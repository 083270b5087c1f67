# conftest.py
import logging
import pytest


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "threaded: runs the real tick scheduler thread"
    )


@pytest.fixture(autouse=True)
def quiet_calibration_logs(caplog):
    # Engine debug output is per tick; keep failures readable
    caplog.set_level(logging.INFO)
    yield
