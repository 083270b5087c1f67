# tuner/measurement.py
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class Measurement:
    """One finished pitch measurement as reported by a tuner."""
    frequency: float
    pitch_offset_semitones: float = 0.0
    pitch_deviation: float = 0.0  # std dev of pitch, in semitones


class TunerListener:
    """Callbacks a tuner delivers. Override what you need."""

    def new_measurement_ready(self, measurement: Measurement) -> None:
        pass

    def tuner_started(self) -> None:
        pass

    def tuner_stopped(self) -> None:
        pass

    def tuner_finished(self) -> None:
        pass

    def tuner_status_changed(self, status: str) -> None:
        pass


class MeasurementSource:
    """
    Base for tuners the calibration engine can drive.

    Subclasses implement start_single_measurement()/stop() and report back
    through the _publish_* helpers, from whatever thread they run on.
    """

    def __init__(self):
        self._listeners = []

    def add_listener(self, listener: TunerListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: TunerListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def start_single_measurement(self, target_note: int) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError

    # -------------------------
    # Broadcast helpers
    # -------------------------
    def _publish_measurement(self, measurement: Measurement) -> None:
        logger.debug("Measurement ready: %.3f Hz", measurement.frequency)
        for listener in list(self._listeners):
            listener.new_measurement_ready(measurement)

    def _publish_started(self) -> None:
        for listener in list(self._listeners):
            listener.tuner_started()

    def _publish_stopped(self) -> None:
        for listener in list(self._listeners):
            listener.tuner_stopped()

    def _publish_finished(self) -> None:
        for listener in list(self._listeners):
            listener.tuner_finished()

    def _publish_status(self, status: str) -> None:
        for listener in list(self._listeners):
            listener.tuner_status_changed(status)
