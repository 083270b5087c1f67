# cv_output/manager.py
import logging
from enum import Enum
from typing import Any, Optional

import numpy as np

from cv_output.interface_calibration import (
    InterfaceCalibration,
    apply_interface_correction,
    compute_correction_from_points,
    load_interface_calibration,
    save_interface_calibration,
)
from cv_output.voltage import (
    DEFAULT_HZ_PER_VOLT,
    VoltageStandard,
    clamp_voltage,
    frequency_to_voltage,
    pitch_to_voltage,
    voltage_to_pitch,
    voltage_to_sample,
)

logger = logging.getLogger(__name__)


class InterfaceType(Enum):
    EXPERT_SLEEPERS = "expert_sleepers"
    MOTU = "motu"
    GENERIC = "generic"
    CUSTOM = "custom"


INTERFACE_RANGES = {
    InterfaceType.EXPERT_SLEEPERS: (-10.0, 10.0),
    InterfaceType.MOTU: (-10.0, 10.0),
    InterfaceType.GENERIC: (-10.0, 10.0),
}


class CVOutputManager:
    """
    DC-coupled audio output used as a CV source.

    The control side publishes a target voltage through output_voltage();
    the audio callback reads it on its own cadence. The handoff is a single
    float attribute rebinding, so the real-time side never takes a lock.
    """

    def __init__(
        self,
        standard: VoltageStandard = VoltageStandard.ONE_VOLT_PER_OCTAVE,
        interface_type: InterfaceType = InterfaceType.EXPERT_SLEEPERS,
        hz_per_volt: float = DEFAULT_HZ_PER_VOLT,
        output_channel: int = 0,
    ) -> None:
        self.standard = standard
        self.interface_type = interface_type
        self.min_volts, self.max_volts = INTERFACE_RANGES.get(
            interface_type, (-10.0, 10.0)
        )
        self.hz_per_volt = float(hz_per_volt)
        self.output_channel = int(output_channel)

        self._interface_calibration = InterfaceCalibration()
        self._calibration_locked = False

        # Read by the audio thread
        self._current_voltage = 0.0
        self._active = False

        self.stream: Optional[Any] = None

    # -------------------------
    # Configuration
    # -------------------------
    def set_voltage_standard(self, standard: VoltageStandard) -> None:
        self.standard = standard

    def set_interface_type(self, interface_type: InterfaceType) -> None:
        self.interface_type = interface_type
        if interface_type in INTERFACE_RANGES:
            self.min_volts, self.max_volts = INTERFACE_RANGES[interface_type]

    def set_custom_voltage_range(self, min_volts: float, max_volts: float) -> None:
        if min_volts >= max_volts:
            raise ValueError(
                f"invalid voltage range [{min_volts}, {max_volts}]"
            )
        self.min_volts = float(min_volts)
        self.max_volts = float(max_volts)
        self.interface_type = InterfaceType.CUSTOM

    def set_hz_per_volt_scale(self, hz_per_volt: float) -> None:
        self.hz_per_volt = float(hz_per_volt)

    # -------------------------
    # Activation
    # -------------------------
    def set_active(self, active: bool) -> None:
        self._active = bool(active)
        logger.debug("CV output %s", "active" if active else "inactive")

    @property
    def is_active(self) -> bool:
        return self._active

    # -------------------------
    # Voltage output (control side)
    # -------------------------
    def output_voltage(self, volts: float) -> float:
        """Clamp, correct and publish a voltage. Returns the published value."""
        volts = clamp_voltage(volts, self.min_volts, self.max_volts)
        volts = float(apply_interface_correction(volts, self._interface_calibration))
        self._current_voltage = volts
        return volts

    def output_pitch(self, pitch: float) -> float:
        return self.output_voltage(self.midi_to_voltage(pitch))

    def output_frequency(self, hz: float) -> float:
        return self.output_voltage(self.frequency_to_voltage(hz))

    @property
    def current_voltage(self) -> float:
        return self._current_voltage

    # -------------------------
    # Conversions for the active standard
    # -------------------------
    def midi_to_voltage(self, pitch: float) -> float:
        return pitch_to_voltage(pitch, self.standard, self.hz_per_volt)

    def voltage_to_midi(self, volts: float) -> float:
        return voltage_to_pitch(volts, self.standard, self.hz_per_volt)

    def frequency_to_voltage(self, hz: float) -> float:
        return frequency_to_voltage(hz, self.standard, self.hz_per_volt)

    # -------------------------
    # Real-time side
    # -------------------------
    def fill_output_buffer(self, buffer: np.ndarray) -> None:
        """Fill a 1-D buffer in place with the DC sample (zeros when inactive)."""
        if not self._active:
            buffer.fill(0.0)
            return
        buffer.fill(voltage_to_sample(self._current_voltage,
                                      self.min_volts, self.max_volts))

    def audio_callback(
        self, outdata: np.ndarray, _frames: int, _time_info: Any, _status: Any
    ) -> None:
        """Sounddevice output callback: DC level on the CV channel only."""
        outdata.fill(0.0)
        if self._active and 0 <= self.output_channel < outdata.shape[1]:
            self.fill_output_buffer(outdata[:, self.output_channel])

    def start_stream(self, samplerate: int = 48000,
                     channels: Optional[int] = None, device=None) -> None:
        if self.stream is not None:
            return

        import sounddevice as sd

        channels = channels or self.output_channel + 1
        self.stream = sd.OutputStream(
            samplerate=samplerate,
            channels=channels,
            device=device,
            dtype="float32",
            callback=self.audio_callback,
        )
        self.stream.start()
        logger.info(
            "CV output stream started at %d Hz, %d channels (CV on %d)",
            samplerate, channels, self.output_channel,
        )

    def stop_stream(self) -> None:
        if self.stream is None:
            return
        try:
            if getattr(self.stream, "active", False):
                self.stream.stop()
            self.stream.close()
        finally:
            self.stream = None
            logger.info("CV output stream stopped")

    # -------------------------
    # Interface calibration
    # -------------------------
    @property
    def interface_calibration(self) -> InterfaceCalibration:
        return self._interface_calibration

    @property
    def calibration_locked(self) -> bool:
        return self._calibration_locked

    def lock_calibration(self) -> None:
        self._calibration_locked = True

    def unlock_calibration(self) -> None:
        self._calibration_locked = False

    def _check_unlocked(self) -> None:
        if self._calibration_locked:
            raise RuntimeError(
                "interface calibration cannot change while a calibration sweep is running"
            )

    def set_interface_calibration(self, calibration: InterfaceCalibration) -> None:
        self._check_unlocked()
        self._interface_calibration = calibration

    def clear_interface_calibration(self) -> None:
        self._check_unlocked()
        self._interface_calibration = InterfaceCalibration()

    def add_calibration_point(self, ideal_voltage: float, actual_voltage: float) -> None:
        self._check_unlocked()
        self._interface_calibration.add_point(ideal_voltage, actual_voltage)

    def compute_calibration_from_points(self) -> InterfaceCalibration:
        self._check_unlocked()
        return compute_correction_from_points(self._interface_calibration)

    def save_calibration(self, path) -> None:
        save_interface_calibration(path, self._interface_calibration)

    def load_calibration(self, path) -> bool:
        self._check_unlocked()
        calibration = load_interface_calibration(path)
        if calibration is None:
            return False
        self._interface_calibration = calibration
        return True
