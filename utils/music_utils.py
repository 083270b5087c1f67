import numpy as np

NOTE_NAMES = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]

A4_MIDI = 69
A4_HZ = 440.0

# -------------------------
# Pitch <-> frequency
# -------------------------


def midi_to_hz(pitch):
    """Convert a (possibly fractional) MIDI pitch to frequency in Hz."""
    return float(A4_HZ * np.power(2.0, (pitch - A4_MIDI) / 12.0))


def hz_to_pitch(f0):
    """Fractional MIDI pitch for a frequency, or None when undefined."""
    if f0 is None or not np.isfinite(f0) or f0 <= 0:
        return None
    return float(A4_MIDI + 12 * np.log2(f0 / A4_HZ))


def hz_to_midi(f0):
    """Convert frequency in Hz to MIDI note number."""
    pitch = hz_to_pitch(f0)
    if pitch is None:
        return None
    return int(round(pitch))


# -------------------------
# Names
# -------------------------


def midi_to_note_name(midi: int) -> str:
    if midi is None or midi < 0 or midi >= 128:
        return "N/A"
    midi = int(midi)
    return f"{NOTE_NAMES[midi % 12]}{midi // 12 - 1}"


def freq_to_note_name(freq: float) -> str:
    if not freq or freq <= 0:
        return "N/A"
    return midi_to_note_name(hz_to_midi(freq))
