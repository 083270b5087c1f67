import json
import os

import pytest

from calibration.store import CalibrationStore
from calibration.table import CalibrationEntry, CalibrationTable
from cv_output.interface_calibration import InterfaceCalibration


@pytest.fixture
def store(tmp_path):
    return CalibrationStore(tmp_path / "tables")


def small_table(name):
    table = CalibrationTable()
    table.set_device_name(name)
    table.add_entry(CalibrationEntry(60, correction_offset=0.01))
    return table


def test_creates_directory(tmp_path):
    CalibrationStore(tmp_path / "a" / "b")
    assert os.path.isdir(tmp_path / "a" / "b")


def test_save_lists_and_activates(store):
    store.save_table("vco2", small_table("VCO 2"))
    path = store.save_table("vco1", small_table("VCO 1"))

    assert path.endswith("vco1_calibration.json")
    assert store.list_tables() == ["vco1", "vco2"]
    assert store.table_exists("vco1")
    assert not store.table_exists("vco3")
    assert store.active_table_name == "vco1"
    assert store.load_active_table().device_name == "VCO 1"


def test_active_table_survives_reopen(store):
    store.save_table("vco1", small_table("VCO 1"))
    store.save_table("vco2", small_table("VCO 2"))
    store.set_active_table("vco1")

    reopened = CalibrationStore(store.tables_dir)

    assert reopened.active_table_name == "vco1"
    assert reopened.load_table("vco2").device_name == "VCO 2"


def test_delete_active_table_clears_active(store):
    store.save_table("vco1", small_table("VCO 1"))
    store.delete_table("vco1")

    assert store.list_tables() == []
    assert store.active_table_name is None
    assert store.load_active_table() is None
    assert CalibrationStore(store.tables_dir).active_table_name is None


def test_load_missing_table_is_none(store):
    assert store.load_table("ghost") is None


def test_unreadable_active_file_is_ignored(tmp_path):
    tables = tmp_path / "tables"
    tables.mkdir()
    (tables / CalibrationStore.ACTIVE_FILE).write_text("{oops", encoding="utf-8")

    assert CalibrationStore(tables).active_table_name is None


def test_active_file_format(store):
    store.set_active_table("vco9")
    with open(os.path.join(store.tables_dir, CalibrationStore.ACTIVE_FILE), encoding="utf-8") as f:
        assert json.load(f) == {"active": "vco9"}


def test_interface_calibration_round_trip(store):
    assert store.load_interface_calibration() is None

    cal = InterfaceCalibration(gain=0.99, offset=0.01, is_calibrated=True, interface_name="MOTU")
    store.save_interface_calibration(cal)

    loaded = store.load_interface_calibration()
    assert loaded.gain == 0.99
    assert loaded.interface_name == "MOTU"
    assert store.list_tables() == []
