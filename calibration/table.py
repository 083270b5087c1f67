# calibration/table.py
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

import numpy as np

from cv_output.voltage import VoltageStandard

logger = logging.getLogger(__name__)

TABLE_FORMAT_VERSION = "1.0"
DEFAULT_POLYNOMIAL_DEGREE = 4
SINGULAR_PIVOT = 1e-10

_ENTRY_KEYS = (
    ("midi_note", "midiNote"),
    ("ideal_voltage", "idealVoltage"),
    ("actual_voltage", "actualVoltage"),
    ("correction_offset", "correctionOffset"),
    ("measured_frequency", "measuredFrequency"),
    ("error_cents", "errorCents"),
    ("std_dev_cents", "stdDevCents"),
)


@dataclass
class CalibrationEntry:
    midi_note: int
    ideal_voltage: float = 0.0      # 1V/Oct voltage before correction
    actual_voltage: float = 0.0     # voltage that actually produced the note
    correction_offset: float = 0.0  # actual_voltage - ideal_voltage
    measured_frequency: float = 0.0
    error_cents: float = 0.0
    std_dev_cents: float = 0.0

    def to_dict(self) -> dict:
        values = asdict(self)
        return {json_key: values[attr] for attr, json_key in _ENTRY_KEYS}

    @classmethod
    def from_dict(cls, data: dict) -> "CalibrationEntry":
        return cls(
            midi_note=int(data.get("midiNote", 0)),
            ideal_voltage=float(data.get("idealVoltage", 0.0)),
            actual_voltage=float(data.get("actualVoltage", 0.0)),
            correction_offset=float(data.get("correctionOffset", 0.0)),
            measured_frequency=float(data.get("measuredFrequency", 0.0)),
            error_cents=float(data.get("errorCents", 0.0)),
            std_dev_cents=float(data.get("stdDevCents", 0.0)),
        )


class CalibrationTable:
    """
    Per-note correction offsets for one oscillator, plus device metadata.

    Offsets are looked up by MIDI pitch with piecewise-linear interpolation
    between neighbouring entries and no extrapolation past either end.
    """

    def __init__(self):
        self._entries: List[CalibrationEntry] = []

        self.device_name = ""
        self.device_brand = ""
        self.interface_name = ""
        self.notes = ""
        self.calibration_date = datetime.now(timezone.utc)
        self.voltage_standard = VoltageStandard.ONE_VOLT_PER_OCTAVE.label

    # ---------------------------------------------------------
    # Building
    # ---------------------------------------------------------
    def add_entry(self, entry: CalibrationEntry) -> None:
        self._entries.append(entry)

    def clear(self) -> None:
        self._entries.clear()

    def sort_by_midi_note(self) -> None:
        # list.sort is stable
        self._entries.sort(key=lambda e: e.midi_note)

    # ---------------------------------------------------------
    # Access
    # ---------------------------------------------------------
    @property
    def entries(self) -> Tuple[CalibrationEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def get_entry(self, index: int) -> CalibrationEntry:
        return self._entries[index]

    def find_entry_for_note(self, midi_note: int) -> Optional[CalibrationEntry]:
        for entry in self._entries:
            if entry.midi_note == midi_note:
                return entry
        return None

    # ---------------------------------------------------------
    # Interpolation
    # ---------------------------------------------------------
    def get_corrected_voltage(self, pitch: float) -> float:
        ideal = (pitch - 60.0) / 12.0
        if not self._entries:
            return ideal
        return ideal + self.get_correction_offset(pitch)

    def get_correction_offset(self, pitch: float) -> float:
        if not self._entries:
            return 0.0
        if len(self._entries) == 1:
            return self._entries[0].correction_offset

        lower = upper = None
        for entry in self._entries:
            if entry.midi_note <= pitch and (lower is None or entry.midi_note > lower.midi_note):
                lower = entry
            if entry.midi_note >= pitch and (upper is None or entry.midi_note < upper.midi_note):
                upper = entry

        if lower is None:
            return upper.correction_offset
        if upper is None or lower.midi_note == upper.midi_note:
            return lower.correction_offset

        t = (pitch - lower.midi_note) / (upper.midi_note - lower.midi_note)
        return lower.correction_offset + t * (upper.correction_offset - lower.correction_offset)

    # ---------------------------------------------------------
    # Statistics
    # ---------------------------------------------------------
    def _errors(self) -> np.ndarray:
        return np.array([e.error_cents for e in self._entries], dtype=float)

    def get_max_error_cents(self) -> float:
        errors = self._errors()
        return float(errors.max()) if errors.size else 0.0

    def get_min_error_cents(self) -> float:
        errors = self._errors()
        return float(errors.min()) if errors.size else 0.0

    def get_average_error_cents(self) -> float:
        """Mean of the absolute errors."""
        errors = self._errors()
        return float(np.mean(np.abs(errors))) if errors.size else 0.0

    def get_rms_error_cents(self) -> float:
        errors = self._errors()
        return float(np.sqrt(np.mean(errors ** 2))) if errors.size else 0.0

    def get_worst_entry(self) -> Optional[CalibrationEntry]:
        worst = None
        for entry in self._entries:
            if worst is None or abs(entry.error_cents) > abs(worst.error_cents):
                worst = entry
        return worst

    def get_worst_note(self) -> Tuple[int, float]:
        """(midi note, |error| in cents) of the worst entry; (60, 0.0) when empty."""
        worst = self.get_worst_entry()
        if worst is None:
            return 60, 0.0
        return worst.midi_note, abs(worst.error_cents)

    def statistics(self) -> dict:
        worst_note, worst_error = self.get_worst_note()
        return {
            "maxErrorCents": self.get_max_error_cents(),
            "minErrorCents": self.get_min_error_cents(),
            "avgErrorCents": self.get_average_error_cents(),
            "rmsErrorCents": self.get_rms_error_cents(),
            "worstNote": worst_note,
            "worstError": worst_error,
        }

    # ---------------------------------------------------------
    # Polynomial fit
    # ---------------------------------------------------------
    def get_polynomial_coefficients(self, degree: int = DEFAULT_POLYNOMIAL_DEGREE) -> List[float]:
        """
        Least-squares fit of correction offset against MIDI note.

        Returns coefficients in increasing power order, or [] when there are
        fewer than degree + 1 entries or the normal equations are singular.
        """
        m = degree + 1
        if degree < 0 or len(self._entries) < m:
            return []

        x = np.array([e.midi_note for e in self._entries], dtype=float)
        y = np.array([e.correction_offset for e in self._entries], dtype=float)

        powers = np.arange(2 * m - 1)
        power_sums = np.array([np.sum(x ** p) for p in powers])
        gram = np.array([[power_sums[i + j] for j in range(m)] for i in range(m)])
        rhs = np.array([np.sum(y * x ** i) for i in range(m)])

        solution = _solve_gaussian(gram, rhs)
        if solution is None:
            logger.debug("Polynomial fit of degree %d is singular", degree)
            return []
        return [float(c) for c in solution]

    @staticmethod
    def evaluate_polynomial(coefficients: Sequence[float], pitch: float) -> float:
        result = 0.0
        x = 1.0
        for coef in coefficients:
            result += coef * x
            x *= pitch
        return float(result)

    # ---------------------------------------------------------
    # Metadata
    # ---------------------------------------------------------
    def set_device_name(self, name: str) -> None:
        self.device_name = name

    def set_device_brand(self, brand: str) -> None:
        self.device_brand = brand

    def set_interface_name(self, name: str) -> None:
        self.interface_name = name

    def set_notes(self, notes: str) -> None:
        self.notes = notes

    def set_calibration_date(self, date: datetime) -> None:
        self.calibration_date = date

    def set_voltage_standard(self, standard: str) -> None:
        self.voltage_standard = standard

    # ---------------------------------------------------------
    # Serialization
    # ---------------------------------------------------------
    def to_dict(self) -> dict:
        return {
            "version": TABLE_FORMAT_VERSION,
            "deviceName": self.device_name,
            "deviceBrand": self.device_brand,
            "interfaceName": self.interface_name,
            "notes": self.notes,
            "calibrationDate": (
                self.calibration_date.isoformat() if self.calibration_date else ""
            ),
            "voltageStandard": self.voltage_standard,
            "entries": [e.to_dict() for e in self._entries],
            "statistics": self.statistics(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CalibrationTable":
        table = cls()
        table.device_name = str(data.get("deviceName", ""))
        table.device_brand = str(data.get("deviceBrand", ""))
        table.interface_name = str(data.get("interfaceName", ""))
        table.notes = str(data.get("notes", ""))
        table.voltage_standard = VoltageStandard.from_label(data.get("voltageStandard")).label

        date_str = data.get("calibrationDate") or ""
        if date_str:
            table.calibration_date = datetime.fromisoformat(date_str)

        for raw in data.get("entries") or []:
            if isinstance(raw, dict):
                table.add_entry(CalibrationEntry.from_dict(raw))
        return table

    def save_to_file(self, path) -> None:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.info("Saved calibration table (%d entries) to %s", len(self), path)

    def load_from_file(self, path) -> bool:
        """Replace this table's contents from a file. False leaves it untouched."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            logger.warning("Could not read calibration table from %s", path)
            return False

        if not isinstance(data, dict):
            return False

        try:
            loaded = CalibrationTable.from_dict(data)
        except (TypeError, ValueError):
            logger.warning("Malformed calibration table in %s", path)
            return False

        self.__dict__.update(loaded.__dict__)
        return True

    @classmethod
    def from_file(cls, path) -> Optional["CalibrationTable"]:
        table = cls()
        return table if table.load_from_file(path) else None


def _solve_gaussian(a: np.ndarray, b: np.ndarray) -> Optional[np.ndarray]:
    """Gaussian elimination with partial pivoting; None when singular."""
    a = np.array(a, dtype=float)
    b = np.array(b, dtype=float)
    n = b.size

    for k in range(n):
        pivot = k + int(np.argmax(np.abs(a[k:, k])))
        if pivot != k:
            a[[k, pivot]] = a[[pivot, k]]
            b[[k, pivot]] = b[[pivot, k]]

        if abs(a[k, k]) < SINGULAR_PIVOT:
            return None

        for i in range(k + 1, n):
            factor = a[i, k] / a[k, k]
            a[i, k:] -= factor * a[k, k:]
            b[i] -= factor * b[k]

    x = np.zeros(n, dtype=float)
    for i in range(n - 1, -1, -1):
        x[i] = (b[i] - np.dot(a[i, i + 1:], x[i + 1:])) / a[i, i]
    return x
