"""Sequential multi-image extraction.

Each named image goes through one backend in order. Per-file status moves
pending -> processing -> success | error. Successful results are flattened into
a row grid (header row + value rows) and the grids of all files are
concatenated in input order.
"""
from __future__ import annotations

import time
from enum import Enum
from typing import Iterable, List, Optional, Sequence

from pydantic import BaseModel, Field

from tabscan.ocr.backend import ExtractionBackend
from tabscan.ocr.models import ImageData, Record
from tabscan.utils import get_logger, log_batch_result

LOG = get_logger()


class FileStatus(str, Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    SUCCESS = 'success'
    ERROR = 'error'


class BatchItem(BaseModel):
    name: str = Field(..., min_length=1)
    image: ImageData


class FileOutcome(BaseModel):
    name: str
    status: FileStatus = FileStatus.PENDING
    record_count: int = 0
    error: Optional[str] = None


class BatchResult(BaseModel):
    backend: str
    files: List[FileOutcome] = Field(default_factory=list)
    success_count: int = 0
    error_count: int = 0
    rows: List[List[str]] = Field(default_factory=list)


def records_to_rows(records: Sequence[Record]) -> List[List[str]]:
    """Header row from every key seen, in first-seen order, then one row per record.

    Records missing a column get an empty cell.
    """
    if not records:
        return []
    headers: List[str] = []
    for record in records:
        headers.extend(k for k in record if k not in headers)
    rows = [headers]
    for record in records:
        rows.append([_cell(record.get(h)) for h in headers])
    return rows


def _cell(value: Optional[str]) -> str:
    return '' if value is None else value


async def extract_batch(backend: ExtractionBackend, items: Iterable[BatchItem]) -> BatchResult:
    items = list(items)
    result = BatchResult(
        backend=backend.name,
        files=[FileOutcome(name=item.name) for item in items],
    )
    start = time.time()

    for item, outcome in zip(items, result.files):
        outcome.status = FileStatus.PROCESSING
        LOG.info('batch_file_start', extra={'file_name': item.name, 'backend': backend.name})
        ocr = await backend.extract(item.image)
        if not ocr.success:
            outcome.status = FileStatus.ERROR
            outcome.error = ocr.error
            result.error_count += 1
            LOG.warning('batch_file_failed', extra={'file_name': item.name, 'error': ocr.error})
            continue

        outcome.status = FileStatus.SUCCESS
        outcome.record_count = ocr.record_count
        result.success_count += 1
        if ocr.data:
            result.rows.extend(records_to_rows(ocr.data))
        else:
            LOG.info('batch_file_empty', extra={'file_name': item.name})

    log_batch_result(
        backend.name,
        len(items),
        result.success_count,
        result.error_count,
        len(result.rows),
        int((time.time() - start) * 1000),
    )
    return result
