import pytest

from calibration.state_machine import CalibrationSettings, CalibrationState
from tests.conftest import FakeTuner, ideal_measurement, run_to_end, run_until


def waiting(engine):
    return engine.state is CalibrationState.WAITING_FOR_MEASUREMENT


def sweep(start, end, **kwargs):
    kwargs.setdefault("settle_time_ms", 20)
    return CalibrationSettings(start_note=start, end_note=end, **kwargs)


# ---------------------------------------------------------
# Pause / resume
# ---------------------------------------------------------
def test_pause_and_resume_resettles_current_note(make_engine, scheduler, cv_output, listener):
    tuner = FakeTuner()
    engine = make_engine(tuner)
    engine.start_calibration(sweep(60, 61))
    run_until(engine, waiting)

    assert engine.pause_calibration() is True
    assert engine.is_paused()
    assert engine.is_running()
    assert scheduler.running is False
    assert cv_output.is_active is False
    assert tuner.stop_calls == 1
    # Still mid-sweep, so the interface calibration stays locked
    assert cv_output.calibration_locked is True

    assert engine.resume_calibration() is True
    assert engine.state is CalibrationState.SETTLING_VOLTAGE
    assert engine.settle_counter == 0
    assert engine.current_measurement_count == 0
    assert scheduler.running is True
    assert cv_output.is_active is True

    tuner.respond = ideal_measurement
    run_to_end(engine)

    assert engine.state is CalibrationState.COMPLETED
    assert tuner.requests == [60, 60, 61]
    assert len(listener.of("completed")) == 1


def test_measurement_arriving_while_paused_is_dropped(make_engine):
    tuner = FakeTuner()
    engine = make_engine(tuner)
    engine.start_calibration(sweep(60, 60))
    run_until(engine, waiting)
    engine.pause_calibration()

    tuner.deliver(ideal_measurement(60))
    engine.tick()

    assert engine.state is CalibrationState.PAUSED
    assert engine.get_completed_points() == 0

    engine.resume_calibration()
    run_until(engine, waiting)
    assert engine.get_completed_points() == 0


def test_pause_before_first_note_resumes_from_start(make_engine):
    tuner = FakeTuner(respond=ideal_measurement)
    engine = make_engine(tuner)
    engine.start_calibration(sweep(60, 61))

    engine.pause_calibration()
    engine.resume_calibration()

    assert engine.state is CalibrationState.STARTING
    run_to_end(engine)
    assert tuner.requests == [60, 61]


def test_pause_between_notes_does_not_repeat_a_note(make_engine):
    tuner = FakeTuner(respond=ideal_measurement)
    engine = make_engine(tuner)
    engine.start_calibration(sweep(60, 62))
    run_until(engine, lambda e: e.state is CalibrationState.MOVING_TO_NEXT)

    engine.pause_calibration()
    engine.resume_calibration()

    assert engine.state is CalibrationState.MOVING_TO_NEXT
    run_to_end(engine)
    assert tuner.requests == [60, 61, 62]
    assert [p.target_midi_note for p in engine.calibration_data] == [60, 61, 62]


def test_pause_and_resume_outside_a_sweep_are_refused(make_engine):
    engine = make_engine(FakeTuner())

    assert engine.pause_calibration() is False
    assert engine.resume_calibration() is False

    engine.start_calibration(sweep(60, 60))
    assert engine.resume_calibration() is False
    engine.pause_calibration()
    assert engine.pause_calibration() is False


# ---------------------------------------------------------
# Cancel
# ---------------------------------------------------------
def test_cancel_mid_sweep(make_engine, listener, cv_output, scheduler):
    tuner = FakeTuner(respond=ideal_measurement)
    engine = make_engine(tuner)
    engine.start_calibration(sweep(60, 62))
    run_until(engine, lambda e: e.get_completed_points() == 1)

    assert engine.cancel_calibration() is True

    assert engine.state is CalibrationState.IDLE
    assert listener.of("cancelled") == [("cancelled",)]
    assert listener.of("completed") == []
    assert scheduler.running is False
    assert cv_output.is_active is False
    assert cv_output.calibration_locked is False
    # Points gathered so far stay readable
    assert [p.target_midi_note for p in engine.calibration_data] == [60]


def test_measurement_after_cancel_changes_nothing(make_engine, listener):
    tuner = FakeTuner()
    engine = make_engine(tuner)
    engine.start_calibration(sweep(60, 62))
    run_until(engine, waiting)
    engine.cancel_calibration()

    tuner.deliver(ideal_measurement(60))
    engine.tick()

    assert engine.state is CalibrationState.IDLE
    assert engine.get_completed_points() == 0
    assert listener.of("point") == []


def test_cancel_while_paused(make_engine, listener):
    engine = make_engine(FakeTuner())
    engine.start_calibration(sweep(60, 62))
    engine.pause_calibration()

    assert engine.cancel_calibration() is True
    assert engine.state is CalibrationState.IDLE
    assert engine.resume_calibration() is False
    assert len(listener.of("cancelled")) == 1


def test_cancel_when_idle_is_refused(make_engine, listener):
    engine = make_engine(FakeTuner())
    assert engine.cancel_calibration() is False
    assert listener.events == []


# ---------------------------------------------------------
# External CV source
# ---------------------------------------------------------
def test_external_source_does_not_drive_output(make_engine, cv_output):
    engine = make_engine(FakeTuner())
    engine.start_calibration(sweep(72, 72, use_external_cv_source=True))
    engine.tick()

    assert engine.state is CalibrationState.SETTLING_VOLTAGE
    assert cv_output.current_voltage == 0.0


def test_manual_measurement_at_known_voltage(make_engine, scheduler, listener):
    tuner = FakeTuner()
    engine = make_engine(tuner)
    engine.start_calibration(sweep(60, 61, use_external_cv_source=True))
    run_until(engine, waiting)
    scheduler.stop()

    assert engine.trigger_manual_measurement(1.0 / 12.0) is True

    assert engine.state is CalibrationState.WAITING_FOR_MEASUREMENT
    assert engine.current_point.target_midi_note == 61
    assert engine.current_point.target_voltage == pytest.approx(1.0 / 12.0)
    assert tuner.requests[-1] == 61
    assert scheduler.running is True

    tuner.deliver(ideal_measurement(61))
    engine.tick()

    point = listener.of("point")[0][1]
    assert point.target_midi_note == 61
    assert point.error_cents == pytest.approx(0.0, abs=1e-6)


def test_manual_measurement_needs_external_mode_and_a_sweep(make_engine):
    engine = make_engine(FakeTuner())
    assert engine.trigger_manual_measurement(0.0) is False

    engine.start_calibration(sweep(60, 61))
    assert engine.trigger_manual_measurement(0.0) is False

    engine.cancel_calibration()
    engine.settings = sweep(60, 61, use_external_cv_source=True)
    assert engine.trigger_manual_measurement(0.0) is False
