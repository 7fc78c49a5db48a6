"""
Device identity

Each installation gets one random id, generated on first use and kept in
`<base_path>/device_id`. It is the writer id (`updated_by`) on every pushed
row and the device id on every bus intent.
"""

import logging
import os
import uuid
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)

DEVICE_ID_FILENAME = "device_id"


def get_device_id(base_path: Union[str, Path]) -> str:
    """Return the persisted device id, creating it if needed."""
    path = Path(base_path).expanduser() / DEVICE_ID_FILENAME
    if path.exists():
        device_id = path.read_text().strip()
        if device_id:
            return device_id
        logger.warning(f"Empty device id file at {path}, generating a new id")

    device_id = uuid.uuid4().hex
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".tmp")
    tmp_path.write_text(device_id + "\n")
    os.replace(tmp_path, path)
    logger.info(f"Generated device id {device_id}")
    return device_id


__all__ = ["get_device_id", "DEVICE_ID_FILENAME"]
