# export/json_exporter.py
import json

from calibration.table import DEFAULT_POLYNOMIAL_DEGREE, CalibrationTable
from utils.music_utils import midi_to_hz

FORMAT_VERSION = "1.0"
GENERATOR = "cv-calibrator"
REFERENCE_NOTE = 60


def build_export_dict(table: CalibrationTable) -> dict:
    worst_note, worst_error = table.get_worst_note()

    data = {
        "format_version": FORMAT_VERSION,
        "generator": GENERATOR,
        "generated_at": table.calibration_date.isoformat() if table.calibration_date else "",
        "device_under_test": {
            "brand": table.device_brand,
            "model": table.device_name,
            "notes": table.notes,
        },
        "cv_interface": {"name": table.interface_name},
        "calibration_settings": {
            "voltage_standard": table.voltage_standard,
            "reference_note": REFERENCE_NOTE,
            "reference_frequency_hz": round(midi_to_hz(REFERENCE_NOTE), 2),
        },
        "calibration_points": [
            {
                "midi_note": e.midi_note,
                "ideal_voltage": e.ideal_voltage,
                "corrected_voltage": e.actual_voltage,
                "correction_offset": e.correction_offset,
                "measured_frequency_hz": e.measured_frequency,
                "error_cents": e.error_cents,
                "std_dev_cents": e.std_dev_cents,
            }
            for e in table.entries
        ],
        "statistics": {
            "total_points": len(table),
            "max_error_cents": table.get_max_error_cents(),
            "min_error_cents": table.get_min_error_cents(),
            "average_error_cents": table.get_average_error_cents(),
            "rms_error_cents": table.get_rms_error_cents(),
            "worst_note": worst_note,
            "worst_error_cents": worst_error,
        },
    }

    coefficients = table.get_polynomial_coefficients(DEFAULT_POLYNOMIAL_DEGREE)
    if coefficients:
        data["polynomial_fit"] = {
            "degree": DEFAULT_POLYNOMIAL_DEGREE,
            "coefficients": coefficients,
        }
    return data


def generate_json_string(table: CalibrationTable) -> str:
    return json.dumps(build_export_dict(table), indent=2)


def export_calibration(table: CalibrationTable, path) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(generate_json_string(table))
