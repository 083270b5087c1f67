import json
import logging
import os
from typing import Optional

from calibration.table import CalibrationTable
from cv_output.interface_calibration import (
    InterfaceCalibration,
    load_interface_calibration,
    save_interface_calibration,
)

logger = logging.getLogger(__name__)

TABLE_SUFFIX = "_calibration.json"


class CalibrationStore:
    """Directory of named calibration tables plus the interface calibration."""

    ACTIVE_FILE = "active_calibration.json"
    INTERFACE_FILE = "interface_calibration.json"

    def __init__(self, tables_dir):
        self.tables_dir = str(tables_dir)
        os.makedirs(self.tables_dir, exist_ok=True)

        self.active_table_name = None
        self._load_active_table()

    def _join(self, filename: str) -> str:
        return os.path.join(self.tables_dir, filename)

    def table_path(self, name: str) -> str:
        return self._join(f"{name}{TABLE_SUFFIX}")

    # ---------------------------------------------------------
    # Listing
    # ---------------------------------------------------------
    def list_tables(self):
        """Sorted names of saved tables."""
        reserved = (self.ACTIVE_FILE, self.INTERFACE_FILE)
        return sorted(
            fn[:-len(TABLE_SUFFIX)]
            for fn in os.listdir(self.tables_dir)
            if fn.endswith(TABLE_SUFFIX) and fn not in reserved
        )

    def table_exists(self, name: str) -> bool:
        return os.path.exists(self.table_path(name))

    # ---------------------------------------------------------
    # Tables
    # ---------------------------------------------------------
    def save_table(self, name: str, table: CalibrationTable) -> str:
        path = self.table_path(name)
        table.save_to_file(path)
        self.set_active_table(name)
        return path

    def load_table(self, name: str) -> Optional[CalibrationTable]:
        return CalibrationTable.from_file(self.table_path(name))

    def load_active_table(self) -> Optional[CalibrationTable]:
        if self.active_table_name is None:
            return None
        return self.load_table(self.active_table_name)

    def delete_table(self, name: str) -> None:
        path = self.table_path(name)
        if os.path.exists(path):
            os.remove(path)

        if self.active_table_name == name:
            self.active_table_name = None
            active_path = self._join(self.ACTIVE_FILE)
            if os.path.exists(active_path):
                os.remove(active_path)

    # ---------------------------------------------------------
    # Active table tracking
    # ---------------------------------------------------------
    def set_active_table(self, name: str) -> None:
        self.active_table_name = name
        with open(self._join(self.ACTIVE_FILE), "w", encoding="utf-8") as f:
            json.dump({"active": name}, f)

    def _load_active_table(self) -> None:
        path = self._join(self.ACTIVE_FILE)
        if not os.path.exists(path):
            return

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            self.active_table_name = data.get("active") if isinstance(data, dict) else None
        except (OSError, ValueError):
            logger.warning("Ignoring unreadable %s", path)
            self.active_table_name = None

    # ---------------------------------------------------------
    # Interface calibration
    # ---------------------------------------------------------
    def save_interface_calibration(self, calibration: InterfaceCalibration) -> str:
        path = self._join(self.INTERFACE_FILE)
        save_interface_calibration(path, calibration)
        return path

    def load_interface_calibration(self) -> Optional[InterfaceCalibration]:
        path = self._join(self.INTERFACE_FILE)
        if not os.path.exists(path):
            return None
        return load_interface_calibration(path)
