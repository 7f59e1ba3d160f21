"""Shared contract for extraction backends.

Every backend exposes the same capability set:
- configure(**options): backend-specific configuration, safe to repeat
- is_ready(): True once extract() can run without further setup
- extract(image): the single entry point; never raises, failures come back
  as OCRResult(success=False, error=<user message>)

Backends are plain caller-owned objects. Build them with create_backend()
and pass them to whatever needs extraction.
"""
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Any

from tabscan.ocr.errors import OCRError, describe_error
from tabscan.ocr.models import BackendState, ImageData, OCRResult
from tabscan.utils import get_logger, log_ocr_result

LOG = get_logger()


class ExtractionBackend(ABC):
    name = 'backend'

    def __init__(self):
        self._state = BackendState.UNCONFIGURED

    @property
    def state(self) -> BackendState:
        return self._state

    @abstractmethod
    def configure(self, **options: Any) -> None:
        ...

    def is_ready(self) -> bool:
        return self._state is BackendState.READY

    @abstractmethod
    async def _extract(self, image: ImageData) -> OCRResult:
        """Variant-specific extraction. May raise; extract() converts failures."""

    async def extract(self, image: ImageData) -> OCRResult:
        start = time.time()
        try:
            result = await self._extract(image)
        except Exception as e:
            category, message = describe_error(e)
            if isinstance(e, OCRError):
                LOG.warning(f'{self.name}_extract_failed', extra={'backend': self.name, 'error_category': category.value, 'details': str(e)})
            else:
                LOG.exception(f'{self.name}_extract_failed', extra={'backend': self.name, 'error_category': category.value})
            result = OCRResult.fail(message)
            log_ocr_result(self.name, False, 0, 0, int((time.time() - start) * 1000), error_category=category.value)
            return result
        log_ocr_result(
            self.name,
            result.success,
            result.record_count,
            len(result.raw_text or ''),
            int((time.time() - start) * 1000),
        )
        return result


def create_backend(kind: str, **kwargs: Any) -> ExtractionBackend:
    """Build a new, caller-owned backend instance of the given kind."""
    kind = (kind or '').strip().lower()
    if kind == 'cloud':
        from tabscan.ocr.cloud_engine import CloudExtractionEngine
        return CloudExtractionEngine(**kwargs)
    if kind == 'local':
        from tabscan.ocr.tesseract_engine import LocalExtractionEngine
        return LocalExtractionEngine(**kwargs)
    raise ValueError(f"Unknown extraction backend '{kind}'. Supported: cloud, local")
