"""
Quarantine channel for permanently failed records
"""

from typing import Optional
from core.logging import QUARANTINE_LOGGER_NAME
from core.sanitizer import mask_user_id
from schemas.envelope import RawRecord
import json
import logging

failed_logger = logging.getLogger(QUARANTINE_LOGGER_NAME)


class QuarantineLog:
    """
    Write one line per failed record for manual review and replay.

    The user identity is always masked. The original record is included
    unless include_payload is off.
    """

    def __init__(self, include_payload: bool = True):
        self.include_payload = include_payload
        self.count = 0

    def record(self, table_name: str, record: RawRecord, reason: str, dt: Optional[str] = None) -> None:
        self.count += 1
        line = (
            f"FAILED: table={table_name}, dt={dt or '-'}, id={record.id}, "
            f"user={mask_user_id(record.user_unique_id)}, reason={reason}"
        )
        if self.include_payload:
            line += f", record={json.dumps(record.as_dict(), ensure_ascii=False, default=str)}"
        failed_logger.error(line)
