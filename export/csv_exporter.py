# export/csv_exporter.py
import csv
import io

from calibration.table import CalibrationTable

COLUMNS = [
    "MIDINote",
    "IdealVoltage",
    "ActualVoltage",
    "CorrectionOffset",
    "MeasuredFrequency",
    "ErrorCents",
    "StdDevCents",
]


def generate_csv_string(table: CalibrationTable, include_header: bool = True) -> str:
    """Metadata and statistics as '#' comments, then one row per entry."""
    lines = [
        "# CV Calibration Export",
        f"# Device: {table.device_name} ({table.device_brand})",
        f"# Interface: {table.interface_name}",
        f"# Standard: {table.voltage_standard}",
        f"# Date: {table.calibration_date.isoformat() if table.calibration_date else ''}",
    ]
    if table.notes:
        lines.append(f"# Notes: {table.notes}")
    lines.append("#")

    worst_note, worst_error = table.get_worst_note()
    lines += [
        "# Statistics:",
        f"#   Max Error: {table.get_max_error_cents():.2f} cents",
        f"#   Min Error: {table.get_min_error_cents():.2f} cents",
        f"#   Avg Error: {table.get_average_error_cents():.2f} cents",
        f"#   RMS Error: {table.get_rms_error_cents():.2f} cents",
        f"#   Worst Note: MIDI {worst_note} ({worst_error:.2f} cents)",
        "#",
    ]

    buf = io.StringIO()
    buf.write("\n".join(lines) + "\n")

    writer = csv.writer(buf, lineterminator="\n")
    if include_header:
        writer.writerow(COLUMNS)
    for entry in table.entries:
        writer.writerow([
            entry.midi_note,
            f"{entry.ideal_voltage:.4f}",
            f"{entry.actual_voltage:.4f}",
            f"{entry.correction_offset:.4f}",
            f"{entry.measured_frequency:.2f}",
            f"{entry.error_cents:.2f}",
            f"{entry.std_dev_cents:.2f}",
        ])
    return buf.getvalue()


def export_calibration(table: CalibrationTable, path, include_header: bool = True) -> None:
    with open(path, "w", encoding="utf-8", newline="") as f:
        f.write(generate_csv_string(table, include_header))
