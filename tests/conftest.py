# tests/conftest.py
import pytest

from calibration.state_machine import (
    CalibrationEngine,
    CalibrationListener,
    CalibrationState,
)
from cv_output.manager import CVOutputManager
from cv_output.voltage import midi_to_frequency
from tuner.measurement import Measurement, MeasurementSource


# ---------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------
class FakeScheduler:
    """Stands in for TickScheduler; tests call engine.tick() themselves."""

    def __init__(self):
        self.running = False
        self.starts = 0
        self.stops = 0

    def start(self):
        self.running = True
        self.starts += 1

    def stop(self):
        self.running = False
        self.stops += 1


class FakeTuner(MeasurementSource):
    """
    Records requested notes. With `respond` set, answers every request
    immediately with respond(note) -> Measurement.
    """

    def __init__(self, respond=None):
        super().__init__()
        self.respond = respond
        self.requests = []
        self.stop_calls = 0

    def start_single_measurement(self, target_note):
        self.requests.append(target_note)
        if self.respond is not None:
            self._publish_measurement(self.respond(target_note))

    def stop(self):
        self.stop_calls += 1

    def deliver(self, measurement):
        self._publish_measurement(measurement)

    def fail(self):
        self._publish_stopped()


class RecordingListener(CalibrationListener):
    def __init__(self):
        self.events = []

    def calibration_started(self):
        self.events.append(("started",))

    def calibration_point_completed(self, point):
        self.events.append(("point", point))

    def calibration_progress(self, percent, status):
        self.events.append(("progress", percent, status))

    def calibration_completed(self, table):
        self.events.append(("completed", table))

    def calibration_error(self, message):
        self.events.append(("error", message))

    def calibration_cancelled(self):
        self.events.append(("cancelled",))

    def of(self, kind):
        return [e for e in self.events if e[0] == kind]


def ideal_measurement(note):
    return Measurement(frequency=midi_to_frequency(note))


def run_until(engine, predicate, max_ticks=500):
    """Tick until predicate(engine) holds; returns the number of ticks used."""
    for n in range(max_ticks):
        if predicate(engine):
            return n
        engine.tick()
    raise AssertionError(f"condition not reached in {max_ticks} ticks "
                         f"(state={engine.state.value})")


def run_to_end(engine, max_ticks=500):
    return run_until(
        engine,
        lambda e: e.state in (CalibrationState.COMPLETED,
                              CalibrationState.ERROR,
                              CalibrationState.IDLE),
        max_ticks,
    )


# ---------------------------------------------------------
# Fixtures
# ---------------------------------------------------------
@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
def cv_output():
    return CVOutputManager()


@pytest.fixture
def listener():
    return RecordingListener()


@pytest.fixture
def make_engine(scheduler, cv_output, listener):
    def _make(tuner):
        engine = CalibrationEngine(tuner, cv_output, scheduler=scheduler)
        engine.add_listener(listener)
        return engine
    return _make
