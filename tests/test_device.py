"""Tests for device identity"""
from synclayer.device import DEVICE_ID_FILENAME, get_device_id


def test_generated_once_and_reused(tmp_path):
    first = get_device_id(tmp_path / "data")
    assert len(first) == 32
    assert get_device_id(tmp_path / "data") == first
    assert (tmp_path / "data" / DEVICE_ID_FILENAME).read_text().strip() == first


def test_existing_id_is_kept(tmp_path):
    (tmp_path / DEVICE_ID_FILENAME).write_text("laptop-1\n")
    assert get_device_id(tmp_path) == "laptop-1"


def test_empty_file_regenerated(tmp_path):
    (tmp_path / DEVICE_ID_FILENAME).write_text("  \n")
    device_id = get_device_id(tmp_path)
    assert device_id
    assert get_device_id(tmp_path) == device_id
    assert not (tmp_path / "device_id.tmp").exists()
