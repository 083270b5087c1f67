import threading

import pytest

from calibration.state_machine import CalibrationEngine, CalibrationSettings, CalibrationState
from cv_output.manager import CVOutputManager
from tests.conftest import FakeTuner, RecordingListener, ideal_measurement, run_to_end, run_until


def sweep(start, end, **kwargs):
    kwargs.setdefault("settle_time_ms", 20)
    return CalibrationSettings(start_note=start, end_note=end, **kwargs)


class FlakyPointListener(RecordingListener):
    """Blows up on the first completed point only."""

    def __init__(self):
        super().__init__()
        self.raised = False

    def calibration_point_completed(self, point):
        super().calibration_point_completed(point)
        if not self.raised:
            self.raised = True
            raise RuntimeError("display went away")


class BrokenStartListener(RecordingListener):
    def calibration_started(self):
        raise RuntimeError("no window")


class DeadTuner(FakeTuner):
    def __init__(self, dead=True):
        super().__init__()
        self.dead = dead

    def start_single_measurement(self, target_note):
        if not self.dead:
            return super().start_single_measurement(target_note)
        self.requests.append(target_note)
        raise OSError("input device unplugged")


class StubbornTuner(FakeTuner):
    def stop(self):
        self.stop_calls += 1
        raise OSError("already closed")


def assert_shut_down(engine, cv_output, scheduler):
    assert engine.state is CalibrationState.ERROR
    assert cv_output.is_active is False
    assert cv_output.calibration_locked is False
    assert scheduler.running is False


def test_listener_failure_on_point_stops_sweep_without_duplicates(scheduler, cv_output):
    listener = FlakyPointListener()
    engine = CalibrationEngine(FakeTuner(respond=ideal_measurement), cv_output, scheduler=scheduler)
    engine.add_listener(listener)
    engine.start_calibration(sweep(60, 61))

    run_to_end(engine)
    for _ in range(20):
        engine.tick()

    assert_shut_down(engine, cv_output, scheduler)
    assert [p.target_midi_note for p in engine.calibration_data] == [60]
    errors = listener.of("error")
    assert len(errors) == 1
    assert "display went away" in errors[0][1]
    assert listener.of("completed") == []


def test_measurement_request_failure_is_an_error(make_engine, listener, cv_output, scheduler):
    tuner = DeadTuner()
    engine = make_engine(tuner)
    engine.start_calibration(sweep(60, 62))

    run_to_end(engine)

    assert_shut_down(engine, cv_output, scheduler)
    assert tuner.requests == [60]
    errors = listener.of("error")
    assert len(errors) == 1
    assert "input device unplugged" in errors[0][1]


def test_listener_failure_on_start_is_an_error(scheduler, cv_output):
    listener = BrokenStartListener()
    engine = CalibrationEngine(FakeTuner(), cv_output, scheduler=scheduler)
    engine.add_listener(listener)

    assert engine.start_calibration(sweep(60, 62)) is False

    assert_shut_down(engine, cv_output, scheduler)
    assert scheduler.starts == 0
    assert len(listener.of("error")) == 1


def test_manual_measurement_request_failure_is_an_error(make_engine, listener, cv_output, scheduler):
    tuner = DeadTuner(dead=False)
    engine = make_engine(tuner)
    engine.start_calibration(sweep(60, 61, use_external_cv_source=True))
    run_until(engine, lambda e: e.state is CalibrationState.WAITING_FOR_MEASUREMENT)

    tuner.dead = True
    assert engine.trigger_manual_measurement(1.0 / 12.0) is False

    assert_shut_down(engine, cv_output, scheduler)
    assert "note 61" in listener.of("error")[0][1]


def test_tuner_stop_failure_does_not_block_cancel(make_engine, listener, cv_output):
    tuner = StubbornTuner()
    engine = make_engine(tuner)
    engine.start_calibration(sweep(60, 62))
    run_until(engine, lambda e: e.state is CalibrationState.WAITING_FOR_MEASUREMENT)

    assert engine.cancel_calibration() is True

    assert engine.state is CalibrationState.IDLE
    assert tuner.stop_calls == 1
    assert cv_output.calibration_locked is False
    assert listener.of("cancelled") == [("cancelled",)]


def test_tick_from_a_retired_worker_is_ignored(make_engine, scheduler):
    engine = make_engine(FakeTuner())
    engine.start_calibration(sweep(60, 62))
    scheduler.is_current = lambda: False

    engine.tick()

    assert engine.state is CalibrationState.STARTING


@pytest.mark.threaded
def test_listener_failure_on_real_scheduler():
    cv = CVOutputManager()
    engine = CalibrationEngine(FakeTuner(respond=ideal_measurement), cv)
    listener = FlakyPointListener()
    engine.add_listener(listener)

    failed = threading.Event()
    listener.calibration_error = lambda message: failed.set()

    engine.start_calibration(sweep(60, 61, settle_time_ms=10))
    try:
        assert failed.wait(5.0)
    finally:
        engine.close()
        engine.scheduler.join(2.0)

    assert engine.state is CalibrationState.ERROR
    assert [p.target_midi_note for p in engine.calibration_data] == [60]
    assert cv.calibration_locked is False
