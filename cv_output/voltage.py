# cv_output/voltage.py
from enum import Enum

from utils.music_utils import hz_to_pitch, midi_to_hz

DEFAULT_HZ_PER_VOLT = 1000.0  # 1 V = 1 kHz

# MIDI 60 (C4) sits at 0 V under 1V/Oct
REFERENCE_NOTE = 60


class VoltageStandard(Enum):
    ONE_VOLT_PER_OCTAVE = "1V/Oct"
    HZ_PER_VOLT = "Hz/V"

    @property
    def label(self) -> str:
        return self.value

    @classmethod
    def from_label(cls, label):
        """Parse a persisted label; unknown labels fall back to 1V/Oct."""
        if isinstance(label, cls):
            return label
        for standard in cls:
            if standard.value == label or standard.name == label:
                return standard
        return cls.ONE_VOLT_PER_OCTAVE


# ---------------------------------------------------------
# Pitch / frequency
# ---------------------------------------------------------
def midi_to_frequency(pitch: float) -> float:
    return midi_to_hz(pitch)


def frequency_to_midi(hz: float) -> float:
    """
    Fractional MIDI pitch for a frequency.

    The log is undefined for non-positive input, so that is rejected
    instead of leaking NaN/-inf into the caller.
    """
    pitch = hz_to_pitch(hz)
    if pitch is None:
        raise ValueError(f"frequency must be positive and finite, got {hz!r}")
    return pitch


# ---------------------------------------------------------
# Pitch / voltage
# ---------------------------------------------------------
def pitch_to_voltage(pitch: float,
                     standard: VoltageStandard = VoltageStandard.ONE_VOLT_PER_OCTAVE,
                     hz_per_volt: float = DEFAULT_HZ_PER_VOLT) -> float:
    if standard is VoltageStandard.HZ_PER_VOLT:
        return midi_to_frequency(pitch) / hz_per_volt
    return (pitch - REFERENCE_NOTE) / 12.0


def frequency_to_voltage(hz: float,
                         standard: VoltageStandard = VoltageStandard.ONE_VOLT_PER_OCTAVE,
                         hz_per_volt: float = DEFAULT_HZ_PER_VOLT) -> float:
    if standard is VoltageStandard.HZ_PER_VOLT:
        return hz / hz_per_volt
    return (frequency_to_midi(hz) - REFERENCE_NOTE) / 12.0


def voltage_to_pitch(volts: float,
                     standard: VoltageStandard = VoltageStandard.ONE_VOLT_PER_OCTAVE,
                     hz_per_volt: float = DEFAULT_HZ_PER_VOLT) -> float:
    if standard is VoltageStandard.HZ_PER_VOLT:
        return frequency_to_midi(volts * hz_per_volt)
    return REFERENCE_NOTE + volts * 12.0


# ---------------------------------------------------------
# Interface range
# ---------------------------------------------------------
def clamp_voltage(volts: float, min_volts: float, max_volts: float) -> float:
    return float(min(max(volts, min_volts), max_volts))


def voltage_to_sample(volts: float, min_volts: float, max_volts: float) -> float:
    """Map [min_volts, max_volts] onto the bipolar sample range [-1, +1]."""
    normalized = (volts - min_volts) / (max_volts - min_volts)
    return normalized * 2.0 - 1.0


def sample_to_voltage(sample: float, min_volts: float, max_volts: float) -> float:
    normalized = (sample + 1.0) / 2.0
    return min_volts + normalized * (max_volts - min_volts)
