import argparse
import logging
import sys

from calibration.table import DEFAULT_POLYNOMIAL_DEGREE, CalibrationTable
from export import csv_exporter, json_exporter
from utils.music_utils import freq_to_note_name, midi_to_note_name

logger = logging.getLogger(__name__)


def cmd_show(table: CalibrationTable) -> int:
    print(f"Device:    {table.device_name} ({table.device_brand})")
    print(f"Interface: {table.interface_name}")
    print(f"Standard:  {table.voltage_standard}")
    print(f"Date:      {table.calibration_date.isoformat() if table.calibration_date else ''}")
    if table.notes:
        print(f"Notes:     {table.notes}")
    print()

    worst_note, worst_error = table.get_worst_note()
    print(f"Points: {len(table)}   Max: {table.get_max_error_cents():.1f}   "
          f"Min: {table.get_min_error_cents():.1f}   "
          f"Avg: {table.get_average_error_cents():.1f}   "
          f"RMS: {table.get_rms_error_cents():.1f} cents")
    print(f"Worst note: {midi_to_note_name(worst_note)} ({worst_note}), {worst_error:.1f} cents")
    print()

    print("note        ideal V   actual V   offset V      freq Hz  heard    cents   sd")
    for e in table.entries:
        print(f"{midi_to_note_name(e.midi_note):>4} ({e.midi_note:3d}) "
              f"{e.ideal_voltage:9.4f} {e.actual_voltage:10.4f} {e.correction_offset:10.4f} "
              f"{e.measured_frequency:12.2f} {freq_to_note_name(e.measured_frequency):>6} "
              f"{e.error_cents:8.2f} {e.std_dev_cents:5.2f}")
    return 0


def cmd_correct(table: CalibrationTable, pitches) -> int:
    for pitch in pitches:
        offset = table.get_correction_offset(pitch)
        print(f"{pitch:7.2f}  ->  {table.get_corrected_voltage(pitch):.5f} V  (offset {offset:+.5f} V)")
    return 0


def cmd_fit(table: CalibrationTable, degree: int) -> int:
    coefficients = table.get_polynomial_coefficients(degree)
    if not coefficients:
        print(f"Polynomial fit of degree {degree} not available "
              f"({len(table)} entries)")
        return 1
    for power, coef in enumerate(coefficients):
        print(f"x^{power}: {coef:.10e}")
    return 0


def cmd_export(table: CalibrationTable, out_path: str, fmt: str, no_header: bool) -> int:
    if fmt == "csv":
        csv_exporter.export_calibration(table, out_path, include_header=not no_header)
    else:
        json_exporter.export_calibration(table, out_path)
    logger.info("Exported %d entries to %s (%s)", len(table), out_path, fmt)
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="cv-calibrator",
        description="Inspect and export saved VCO calibration tables.",
    )
    ap.add_argument("-v", "--verbose", action="store_true")
    sub = ap.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("show", help="print metadata, statistics and entries")
    sp.add_argument("table")

    cp = sub.add_parser("correct", help="corrected 1V/Oct voltage for pitches")
    cp.add_argument("table")
    cp.add_argument("pitches", nargs="+", type=float)

    fp = sub.add_parser("fit", help="least-squares polynomial of the correction curve")
    fp.add_argument("table")
    fp.add_argument("--degree", type=int, default=DEFAULT_POLYNOMIAL_DEGREE)

    ep = sub.add_parser("export", help="write the table as CSV or JSON")
    ep.add_argument("table")
    ep.add_argument("out")
    ep.add_argument("--format", choices=("csv", "json"), default="csv")
    ep.add_argument("--no-header", action="store_true")

    return ap


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    table = CalibrationTable.from_file(args.table)
    if table is None:
        logger.error("Could not load calibration table %s", args.table)
        return 1

    if args.cmd == "show":
        return cmd_show(table)
    if args.cmd == "correct":
        return cmd_correct(table, args.pitches)
    if args.cmd == "fit":
        return cmd_fit(table, args.degree)
    return cmd_export(table, args.out, args.format, args.no_header)


if __name__ == "__main__":
    sys.exit(main())
