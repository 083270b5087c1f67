# calibration/state_machine.py
import logging
import queue
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

import numpy as np

from calibration.scheduler import TICK_INTERVAL_MS, TickScheduler
from calibration.table import CalibrationEntry, CalibrationTable
from cv_output.voltage import VoltageStandard, frequency_to_midi, midi_to_frequency
from tuner.measurement import Measurement, TunerListener
from utils.music_utils import midi_to_note_name

logger = logging.getLogger(__name__)


class CalibrationState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    SETTLING_VOLTAGE = "settling_voltage"
    WAITING_FOR_MEASUREMENT = "waiting_for_measurement"
    PROCESSING_RESULT = "processing_result"
    MOVING_TO_NEXT = "moving_to_next"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


# Ticks in these states do nothing but stop the scheduler
_IDLE_STATES = (
    CalibrationState.IDLE,
    CalibrationState.COMPLETED,
    CalibrationState.ERROR,
    CalibrationState.PAUSED,
)

_STOPPED_STATES = (
    CalibrationState.IDLE,
    CalibrationState.COMPLETED,
    CalibrationState.ERROR,
)


@dataclass
class CalibrationSettings:
    start_note: int = 24            # C1
    end_note: int = 96              # C7
    note_step: int = 1
    settle_time_ms: int = 200       # time for the VCO to stabilise after a CV change
    measurements_per_note: int = 1
    standard: VoltageStandard = VoltageStandard.ONE_VOLT_PER_OCTAVE
    use_external_cv_source: bool = False

    def validate(self) -> List[str]:
        problems = []
        for name in ("start_note", "end_note"):
            note = getattr(self, name)
            if not 0 <= note <= 127:
                problems.append(f"{name} {note} is outside the MIDI range 0-127")
        if self.start_note > self.end_note:
            problems.append(
                f"start_note {self.start_note} is above end_note {self.end_note}"
            )
        if self.note_step < 1:
            problems.append(f"note_step must be at least 1, got {self.note_step}")
        if self.settle_time_ms < 0:
            problems.append(f"settle_time_ms must not be negative, got {self.settle_time_ms}")
        if self.measurements_per_note < 1:
            problems.append(
                f"measurements_per_note must be at least 1, got {self.measurements_per_note}"
            )
        return problems

    def total_points(self) -> int:
        if self.note_step <= 0:
            return 0
        return (self.end_note - self.start_note) // self.note_step + 1


@dataclass
class CalibrationPoint:
    target_midi_note: int = 0
    target_voltage: float = 0.0
    measured_frequency: float = 0.0
    measured_pitch: float = 0.0     # fractional MIDI pitch of measured_frequency
    pitch_error: float = 0.0        # semitones, measured - target
    error_cents: float = 0.0
    voltage_correction: float = 0.0
    std_dev_cents: float = 0.0
    timestamp: Optional[datetime] = None


class CalibrationListener:
    """Sweep notifications. Delivered synchronously on the tick thread."""

    def calibration_started(self) -> None:
        pass

    def calibration_point_completed(self, point: CalibrationPoint) -> None:
        pass

    def calibration_progress(self, percent: float, status: str) -> None:
        pass

    def calibration_completed(self, table: CalibrationTable) -> None:
        pass

    def calibration_error(self, message: str) -> None:
        pass

    def calibration_cancelled(self) -> None:
        pass


class CalibrationEngine(TunerListener):
    """
    Automated sweep: output a CV, let the oscillator settle, measure it with
    the tuner, and record the pitch error for every note in the range.

      STARTING -> SETTLING_VOLTAGE -> WAITING_FOR_MEASUREMENT
        -> PROCESSING_RESULT -> MOVING_TO_NEXT -> SETTLING_VOLTAGE ... -> COMPLETED

    The engine is advanced by tick() every TICK_INTERVAL_MS. Tuner callbacks
    may arrive on any thread; they are queued and applied by the next tick,
    and only while a measurement is actually awaited.
    """

    def __init__(self, tuner, cv_output, scheduler=None):
        self.tuner = tuner
        self.cv_output = cv_output
        self.scheduler = scheduler if scheduler is not None else TickScheduler(
            self.tick, TICK_INTERVAL_MS
        )
        self.tick_interval_ms = TICK_INTERVAL_MS

        self.settings = CalibrationSettings()
        self.state = CalibrationState.IDLE

        self._listeners = []
        self._events: queue.Queue = queue.Queue()
        self._lock = threading.RLock()

        self.current_note_index = 0
        self.current_measurement_count = 0
        self.current_point = CalibrationPoint()
        self._calibration_data: List[CalibrationPoint] = []
        self._frequency_accumulator: List[float] = []
        self.settle_counter = 0
        self._paused_from: Optional[CalibrationState] = None

        if hasattr(self.tuner, "add_listener"):
            self.tuner.add_listener(self)

    def close(self) -> None:
        """Cancel any sweep and detach from the tuner."""
        if self.is_running():
            self.cancel_calibration()
        self.scheduler.stop()
        if hasattr(self.tuner, "remove_listener"):
            self.tuner.remove_listener(self)

    # ---------------------------------------------------------
    # Listeners
    # ---------------------------------------------------------
    def add_listener(self, listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, name: str, *args) -> None:
        for listener in list(self._listeners):
            getattr(listener, name)(*args)

    # ---------------------------------------------------------
    # State queries
    # ---------------------------------------------------------
    def is_running(self) -> bool:
        return self.state not in _STOPPED_STATES

    def is_paused(self) -> bool:
        return self.state is CalibrationState.PAUSED

    def get_total_points(self) -> int:
        return self.settings.total_points()

    def get_completed_points(self) -> int:
        return len(self._calibration_data)

    def get_progress_percent(self) -> float:
        total = self.get_total_points()
        if total <= 0:
            return 0.0
        return 100.0 * len(self._calibration_data) / total

    @property
    def calibration_data(self) -> List[CalibrationPoint]:
        return list(self._calibration_data)

    # ---------------------------------------------------------
    # Control
    # ---------------------------------------------------------
    def start_calibration(self, settings: Optional[CalibrationSettings] = None) -> bool:
        settings = settings if settings is not None else CalibrationSettings()

        with self._lock:
            if self.is_running():
                logger.warning("Calibration already running (%s); start ignored",
                               self.state.value)
                return False

            if self.tuner is None or self.cv_output is None:
                self._set_error("Tuner or CV output not configured")
                return False

            problems = settings.validate()
            if problems:
                self._set_error("Invalid calibration settings: " + "; ".join(problems))
                return False

            self.settings = settings
            self._calibration_data.clear()
            self._frequency_accumulator.clear()
            self._clear_events()
            self.current_note_index = 0
            self.current_measurement_count = 0
            self.current_point = CalibrationPoint()
            self._paused_from = None

            self.cv_output.set_voltage_standard(settings.standard)
            self.cv_output.lock_calibration()
            self.cv_output.set_active(True)

            self.state = CalibrationState.STARTING
            logger.info(
                "Calibration started: notes %d-%d step %d, settle %d ms, %d/note, %s",
                settings.start_note, settings.end_note, settings.note_step,
                settings.settle_time_ms, settings.measurements_per_note,
                settings.standard.label,
            )
            try:
                self._notify("calibration_started")
                self._notify("calibration_progress", 0.0, "Starting calibration...")
            except Exception as exc:  # noqa: BLE001
                logger.exception("Calibration listener failed on start")
                self._set_error(f"Calibration failed to start: {exc}")
                return False

            self.scheduler.start()
            return True

    def pause_calibration(self) -> bool:
        with self._lock:
            if self.state in _IDLE_STATES:
                return False

            self._paused_from = self.state
            self.state = CalibrationState.PAUSED
            self.scheduler.stop()
            self._deactivate_output()
            logger.info("Calibration paused at note %d", self.current_point.target_midi_note)
            return True

    def resume_calibration(self) -> bool:
        """
        Resume a paused sweep. The current note is re-settled and measured
        from scratch; a sweep paused before its first note or between notes
        carries on from there.
        """
        with self._lock:
            if self.state is not CalibrationState.PAUSED:
                return False

            self._clear_events()
            self.cv_output.set_active(True)

            if self._paused_from in (CalibrationState.STARTING,
                                     CalibrationState.MOVING_TO_NEXT):
                self.state = self._paused_from
            else:
                self.current_measurement_count = 0
                self._frequency_accumulator.clear()
                self._output_current_voltage()
                self.state = CalibrationState.SETTLING_VOLTAGE
                self.settle_counter = 0

            self._paused_from = None
            logger.info("Calibration resumed (%s)", self.state.value)
            self.scheduler.start()
            return True

    def cancel_calibration(self) -> bool:
        with self._lock:
            if self.state in _STOPPED_STATES:
                return False

            self.scheduler.stop()
            self._deactivate_output()
            self.cv_output.unlock_calibration()
            self.state = CalibrationState.IDLE
            self._paused_from = None
            self._clear_events()
            logger.info("Calibration cancelled after %d points", len(self._calibration_data))
            self._notify("calibration_cancelled")
            return True

    def trigger_manual_measurement(self, known_voltage: float) -> bool:
        """
        External CV source mode: the caller has set `known_voltage` on its own
        CV source; measure it now instead of waiting for the sweep.
        """
        with self._lock:
            if not self.settings.use_external_cv_source:
                return False
            if self.state in _IDLE_STATES:
                logger.warning("Manual measurement ignored in state %s", self.state.value)
                return False

            note = int(round(self.cv_output.voltage_to_midi(known_voltage)))
            if note != self.current_point.target_midi_note:
                self.current_measurement_count = 0
                self._frequency_accumulator.clear()

            self.current_point.target_voltage = float(known_voltage)
            self.current_point.target_midi_note = note

            self.state = CalibrationState.WAITING_FOR_MEASUREMENT
            try:
                self._start_measurement()
            except Exception as exc:  # noqa: BLE001
                logger.exception("Manual measurement request failed")
                self._set_error(f"Measurement request failed for note {note}: {exc}")
                return False
            self.scheduler.start()
            return True

    # ---------------------------------------------------------
    # Tuner callbacks (any thread)
    # ---------------------------------------------------------
    def new_measurement_ready(self, measurement: Measurement) -> None:
        self._events.put(("measurement", measurement))

    def tuner_stopped(self) -> None:
        self._events.put(("stopped", None))

    def _clear_events(self) -> None:
        while True:
            try:
                self._events.get_nowait()
            except queue.Empty:
                return

    def _drain_events(self) -> None:
        while True:
            try:
                kind, payload = self._events.get_nowait()
            except queue.Empty:
                return

            if self.state is not CalibrationState.WAITING_FOR_MEASUREMENT:
                logger.debug("Dropping tuner %s event in state %s", kind, self.state.value)
                continue

            if kind == "measurement":
                if self._process_measurement(payload):
                    self.state = CalibrationState.PROCESSING_RESULT
            elif kind == "stopped":
                self._set_error("Measurement failed - no signal detected")

    # ---------------------------------------------------------
    # Tick
    # ---------------------------------------------------------
    def tick(self) -> None:
        with self._lock:
            is_current = getattr(self.scheduler, "is_current", None)
            if is_current is not None and not is_current():
                # Worker stopped or replaced while waiting for the lock
                return

            try:
                self._step()
            except Exception as exc:  # noqa: BLE001
                logger.exception("Calibration step failed in state %s", self.state.value)
                if self.is_running():
                    self._set_error(f"Calibration step failed: {exc}")

    def _step(self) -> None:
        self._drain_events()
        state = self.state

        if state is CalibrationState.STARTING:
            self.current_note_index = 0
            self._begin_point(self.settings.start_note)
            self._output_current_voltage()
            self.state = CalibrationState.SETTLING_VOLTAGE
            self.settle_counter = 0

        elif state is CalibrationState.SETTLING_VOLTAGE:
            self.settle_counter += 1
            if self.settle_counter * self.tick_interval_ms >= self.settings.settle_time_ms:
                self.state = CalibrationState.WAITING_FOR_MEASUREMENT
                self._start_measurement()

        elif state is CalibrationState.WAITING_FOR_MEASUREMENT:
            # No timeout: only a measurement, tuner_stopped or cancel moves on
            pass

        elif state is CalibrationState.PROCESSING_RESULT:
            self.current_measurement_count += 1
            if self.current_measurement_count >= self.settings.measurements_per_note:
                self.state = CalibrationState.MOVING_TO_NEXT
                self._complete_current_point()
            else:
                self.state = CalibrationState.WAITING_FOR_MEASUREMENT
                self._start_measurement()

        elif state is CalibrationState.MOVING_TO_NEXT:
            self._advance_to_next_point()

        else:
            self.scheduler.stop()

    # ---------------------------------------------------------
    # Sweep helpers
    # ---------------------------------------------------------
    def _begin_point(self, note: int) -> None:
        self.current_point = CalibrationPoint(
            target_midi_note=note,
            target_voltage=self.cv_output.midi_to_voltage(note),
        )
        self.current_measurement_count = 0
        self._frequency_accumulator.clear()

    def _output_current_voltage(self) -> None:
        if not self.settings.use_external_cv_source:
            self.cv_output.output_voltage(self.current_point.target_voltage)

    def _start_measurement(self) -> None:
        logger.debug("Requesting measurement for note %d", self.current_point.target_midi_note)
        self.tuner.start_single_measurement(self.current_point.target_midi_note)

    def _deactivate_output(self) -> None:
        if self.cv_output is not None:
            self.cv_output.set_active(False)
        stop = getattr(self.tuner, "stop", None)
        if callable(stop):
            try:
                stop()
            except Exception:  # noqa: BLE001
                logger.exception("Tuner stop failed")

    def _advance_to_next_point(self) -> None:
        self.current_note_index += 1
        note = self.settings.start_note + self.current_note_index * self.settings.note_step

        if note > self.settings.end_note:
            self._finish_calibration()
            return

        self._begin_point(note)
        self._output_current_voltage()
        self.state = CalibrationState.SETTLING_VOLTAGE
        self.settle_counter = 0

    def _process_measurement(self, measurement: Measurement) -> bool:
        """Fold one measurement into the running average for the current note."""
        self._frequency_accumulator.append(float(measurement.frequency))
        avg_freq = float(np.mean(self._frequency_accumulator))

        note = self.current_point.target_midi_note
        try:
            measured_pitch = frequency_to_midi(avg_freq)
        except ValueError:
            self._set_error(f"Invalid measurement for note {note}: {avg_freq} Hz")
            return False

        pitch_error = measured_pitch - note

        if self.settings.standard is VoltageStandard.ONE_VOLT_PER_OCTAVE:
            # Sharp -> less voltage
            voltage_correction = -pitch_error / 12.0
        else:
            scale = self.cv_output.hz_per_volt
            voltage_correction = (midi_to_frequency(note) - avg_freq) / scale

        self.current_point.measured_frequency = avg_freq
        self.current_point.measured_pitch = measured_pitch
        self.current_point.pitch_error = pitch_error
        self.current_point.error_cents = pitch_error * 100.0
        self.current_point.voltage_correction = voltage_correction
        self.current_point.std_dev_cents = float(measurement.pitch_deviation) * 100.0
        self.current_point.timestamp = datetime.now(timezone.utc)
        return True

    def _complete_current_point(self) -> None:
        point = replace(self.current_point)
        self._calibration_data.append(point)
        self._notify("calibration_point_completed", point)

        note = point.target_midi_note
        status = (f"Note {midi_to_note_name(note)} ({note}): "
                  f"{point.error_cents:+.1f} cents error")
        logger.debug(status)
        self._notify("calibration_progress", self.get_progress_percent(), status)

    def _finish_calibration(self) -> None:
        self.scheduler.stop()
        self._deactivate_output()
        self.cv_output.unlock_calibration()
        self.state = CalibrationState.COMPLETED

        table = self.generate_calibration_table()
        logger.info(
            "Calibration completed: %d points, max %.2f / rms %.2f cents",
            len(table), table.get_max_error_cents(), table.get_rms_error_cents(),
        )
        self._notify("calibration_completed", table)

    def _set_error(self, message: str) -> None:
        self.scheduler.stop()
        self._deactivate_output()
        if self.cv_output is not None:
            self.cv_output.unlock_calibration()
        self.state = CalibrationState.ERROR
        self._paused_from = None
        logger.error("Calibration error: %s", message)
        self._notify("calibration_error", message)

    # ---------------------------------------------------------
    # Results
    # ---------------------------------------------------------
    def generate_calibration_table(self) -> CalibrationTable:
        table = CalibrationTable()
        for point in self._calibration_data:
            ideal = self.cv_output.midi_to_voltage(point.target_midi_note)
            table.add_entry(CalibrationEntry(
                midi_note=point.target_midi_note,
                ideal_voltage=ideal,
                actual_voltage=ideal + point.voltage_correction,
                correction_offset=point.voltage_correction,
                measured_frequency=point.measured_frequency,
                error_cents=point.error_cents,
                std_dev_cents=point.std_dev_cents,
            ))

        table.sort_by_midi_note()
        table.set_voltage_standard(self.settings.standard.label)
        table.set_interface_name(self.cv_output.interface_calibration.interface_name)
        table.set_calibration_date(datetime.now(timezone.utc))
        return table
