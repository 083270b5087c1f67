# cv_output/interface_calibration.py
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import numpy as np

logger = logging.getLogger(__name__)

# Below this the ideal voltages are treated as a single point
VARIANCE_EPSILON = 1e-10


@dataclass
class InterfaceCalibration:
    """
    Linear correction for one CV interface output path.

    gain/offset hold the *inverse* of the interface's measured response and
    are only meaningful while is_calibrated is True.
    """
    gain: float = 1.0
    offset: float = 0.0
    is_calibrated: bool = False
    calibration_points: List[Tuple[float, float]] = field(default_factory=list)
    calibration_date: Optional[datetime] = None
    interface_name: str = ""

    def add_point(self, ideal_voltage: float, actual_voltage: float) -> None:
        self.calibration_points.append((float(ideal_voltage), float(actual_voltage)))

    def to_dict(self) -> dict:
        return {
            "isCalibrated": self.is_calibrated,
            "gain": self.gain,
            "offset": self.offset,
            "interfaceName": self.interface_name,
            "calibrationDate": (
                self.calibration_date.isoformat() if self.calibration_date else ""
            ),
            "points": [
                {"ideal": ideal, "actual": actual}
                for ideal, actual in self.calibration_points
            ],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "InterfaceCalibration":
        date_str = data.get("calibrationDate") or ""
        points = []
        for point in data.get("points") or []:
            if isinstance(point, dict):
                points.append((float(point.get("ideal", 0.0)),
                               float(point.get("actual", 0.0))))

        return cls(
            gain=float(data.get("gain", 1.0)),
            offset=float(data.get("offset", 0.0)),
            is_calibrated=bool(data.get("isCalibrated", False)),
            calibration_points=points,
            calibration_date=datetime.fromisoformat(date_str) if date_str else None,
            interface_name=str(data.get("interfaceName", "")),
        )


def apply_interface_correction(volts: float, calibration: InterfaceCalibration) -> float:
    if calibration is None or not calibration.is_calibrated:
        return volts
    return calibration.gain * volts + calibration.offset


def compute_correction_from_points(calibration: InterfaceCalibration) -> InterfaceCalibration:
    """
    Fit actual = m * ideal + b over the stored points and store the inverse
    (gain = 1/m, offset = -b/m) so that interface(correct(v)) ~= v.

    With fewer than two points the calibration is marked uncalibrated and
    gain/offset are left as they were.
    """
    points = calibration.calibration_points
    if len(points) < 2:
        calibration.is_calibrated = False
        logger.info("Interface calibration needs 2+ points, have %d", len(points))
        return calibration

    arr = np.asarray(points, dtype=float)
    ideal, actual = arr[:, 0], arr[:, 1]
    mean_ideal = float(np.mean(ideal))
    mean_actual = float(np.mean(actual))

    numerator = float(np.sum((ideal - mean_ideal) * (actual - mean_actual)))
    denominator = float(np.sum((ideal - mean_ideal) ** 2))

    if abs(denominator) < VARIANCE_EPSILON:
        # All points at the same ideal voltage: offset-only correction
        calibration.gain = 1.0
        calibration.offset = mean_actual - mean_ideal
    else:
        interface_gain = numerator / denominator
        if abs(interface_gain) < VARIANCE_EPSILON:
            # Output does not follow the requested voltage; nothing to invert
            calibration.is_calibrated = False
            logger.warning(
                "Interface calibration failed: output flat at %.4f V over %d points",
                mean_actual, len(points),
            )
            return calibration
        interface_offset = mean_actual - interface_gain * mean_ideal
        calibration.gain = 1.0 / interface_gain
        calibration.offset = -interface_offset / interface_gain

    calibration.is_calibrated = True
    calibration.calibration_date = datetime.now(timezone.utc)
    logger.info(
        "Interface calibration computed from %d points: gain=%.6f offset=%.6f",
        len(points), calibration.gain, calibration.offset,
    )
    return calibration


# ---------------------------------------------------------
# Persistence
# ---------------------------------------------------------
def save_interface_calibration(path, calibration: InterfaceCalibration) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(calibration.to_dict(), f, indent=2)


def load_interface_calibration(path) -> Optional[InterfaceCalibration]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        logger.warning("Could not read interface calibration from %s", path)
        return None

    if not isinstance(data, dict):
        return None

    try:
        return InterfaceCalibration.from_dict(data)
    except (TypeError, ValueError):
        logger.warning("Malformed interface calibration in %s", path)
        return None
