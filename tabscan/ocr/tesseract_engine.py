"""Local, offline extraction backend built on Tesseract.

TesseractWorker owns the recognition parameters and the calls into
pytesseract. LocalExtractionEngine owns one worker and its lifecycle:

    unconfigured -> initializing -> ready -> (terminate) -> unconfigured

Initialization is single-flight: concurrent callers join the in-flight
setup and all observe its outcome. A failed setup resets the engine so the
next call can retry. Recognized text is structured by text_structurer.classify.

Environment variables:
- TESSERACT_LANG (default eng)
- TESSERACT_PSM (default 3, fully automatic page segmentation)
- TESSERACT_OEM (default 1, LSTM engine only)
- TESSERACT_PRESERVE_SPACES (default true)
"""
from __future__ import annotations

import asyncio
import io
import os
import time
from typing import Any, Callable, Dict, Optional, Sequence

import pytesseract
from PIL import Image

from tabscan.ocr.backend import ExtractionBackend
from tabscan.ocr.errors import InitializationError, OCRError, RecognitionError
from tabscan.ocr.models import BackendState, ImageData, OCRResult
from tabscan.ocr.text_structurer import DELIMITER_PRIORITY, KEY_VALUE_RATIO, classify
from tabscan.utils import get_logger, log_model_load

LOG = get_logger()

TESSERACT_LANG = os.getenv('TESSERACT_LANG', 'eng')
TESSERACT_PSM = int(os.getenv('TESSERACT_PSM', '3'))
TESSERACT_OEM = int(os.getenv('TESSERACT_OEM', '1'))
TESSERACT_PRESERVE_SPACES = os.getenv('TESSERACT_PRESERVE_SPACES', 'true').lower() in ('1', 'true', 'yes')

WORKER_OPTIONS = ('lang', 'psm', 'oem', 'preserve_interword_spaces')
CLASSIFIER_OPTIONS = ('delimiters', 'key_value_ratio')


class TesseractWorker:
    """Thin wrapper around pytesseract with fixed recognition parameters."""

    def __init__(self, lang: str = TESSERACT_LANG, psm: int = TESSERACT_PSM, oem: int = TESSERACT_OEM, preserve_interword_spaces: bool = TESSERACT_PRESERVE_SPACES):
        self.lang = lang
        self.psm = psm
        self.oem = oem
        self.preserve_interword_spaces = preserve_interword_spaces
        self._started = False
        self.version: Optional[str] = None

    @property
    def config(self) -> str:
        parts = [f'--psm {self.psm}', f'--oem {self.oem}']
        if self.preserve_interword_spaces:
            parts.append('-c preserve_interword_spaces=1')
        return ' '.join(parts)

    def configure(self, **options: Any):
        for key, value in options.items():
            if key in WORKER_OPTIONS:
                setattr(self, key, value)

    def start(self) -> str:
        version = str(pytesseract.get_tesseract_version())
        available = set(pytesseract.get_languages(config=''))
        missing = [code for code in self.lang.split('+') if code not in available]
        if missing:
            raise InitializationError(f'Tesseract language data not installed: {", ".join(missing)}')
        self.version = version
        self._started = True
        return version

    def recognize(self, image_bytes: bytes) -> str:
        if not self._started:
            raise RecognitionError('Tesseract worker is not started')
        with Image.open(io.BytesIO(image_bytes)) as img:
            if img.mode not in ('RGB', 'L'):
                img = img.convert('RGB')
            return pytesseract.image_to_string(img, lang=self.lang, config=self.config)

    def terminate(self):
        self._started = False


class LocalExtractionEngine(ExtractionBackend):
    name = 'local'

    def __init__(
        self,
        lang: str = TESSERACT_LANG,
        psm: int = TESSERACT_PSM,
        oem: int = TESSERACT_OEM,
        preserve_interword_spaces: bool = TESSERACT_PRESERVE_SPACES,
        worker_factory: Optional[Callable[..., Any]] = None,
        delimiters: Sequence[str] = DELIMITER_PRIORITY,
        key_value_ratio: float = KEY_VALUE_RATIO,
    ):
        super().__init__()
        self._worker_options: Dict[str, Any] = {
            'lang': lang,
            'psm': psm,
            'oem': oem,
            'preserve_interword_spaces': preserve_interword_spaces,
        }
        self._classifier_options: Dict[str, Any] = {
            'delimiters': tuple(delimiters),
            'key_value_ratio': key_value_ratio,
        }
        self._worker_factory = worker_factory or TesseractWorker
        self._worker = None
        self._init_task: Optional[asyncio.Future] = None
        self._recognize_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def configure(self, **options: Any) -> None:
        unknown = set(options) - set(WORKER_OPTIONS) - set(CLASSIFIER_OPTIONS)
        if unknown:
            raise ValueError(f'Unknown local engine options: {sorted(unknown)}')
        for key, value in options.items():
            if key in WORKER_OPTIONS:
                self._worker_options[key] = value
            elif key == 'delimiters':
                self._classifier_options[key] = tuple(value)
            else:
                self._classifier_options[key] = value
        if self._worker is not None:
            self._worker.configure(**{k: v for k, v in options.items() if k in WORKER_OPTIONS})
        LOG.info('local_ocr_configured', extra={'options': sorted(options)})

    def is_ready(self) -> bool:
        return self._state is BackendState.READY and self._worker is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        if self.is_ready():
            return
        if self._init_task is None:
            self._state = BackendState.INITIALIZING
            self._init_task = asyncio.ensure_future(self._start_worker())
        await asyncio.shield(self._init_task)

    async def _start_worker(self) -> None:
        start = time.time()
        LOG.info('local_ocr_init_start', extra={'lang': self._worker_options['lang']})
        try:
            worker = self._worker_factory(**self._worker_options)
            await asyncio.to_thread(worker.start)
        except Exception as e:
            self._state = BackendState.UNCONFIGURED
            self._init_task = None
            LOG.exception('local_ocr_init_failed', exc_info=True)
            raise InitializationError(f'Failed to initialize OCR engine: {e}') from e

        self._worker = worker
        self._state = BackendState.READY
        self._init_task = None
        load_ms = int((time.time() - start) * 1000)
        log_model_load('tesseract', self._worker_options['lang'], load_ms)

    async def terminate(self) -> None:
        pending = self._init_task
        if pending is not None:
            try:
                await asyncio.shield(pending)
            except InitializationError:
                # already logged and reset by _start_worker
                pass
        # detach before awaiting; a concurrent initialize() may install a new
        # worker meanwhile and that one stays owned and ready
        worker, self._worker = self._worker, None
        self._state = BackendState.UNCONFIGURED
        if worker is None:
            return
        async with self._recognize_lock:
            await asyncio.to_thread(worker.terminate)
        LOG.info('local_ocr_terminated')

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    async def recognize_text(self, image: ImageData) -> str:
        """Run recognition only, preferring the preprocessed variant."""
        try:
            payload = image.recognition_bytes()
        except ValueError as e:
            raise RecognitionError(f'Could not decode image to recognize: {e}') from e

        start = time.time()
        while True:
            await self.initialize()
            async with self._recognize_lock:
                # the worker is read under the lock so terminate() cannot release it mid-call
                worker = self._worker
                if worker is None:
                    continue
                try:
                    text = await asyncio.to_thread(worker.recognize, payload)
                except OCRError:
                    raise
                except Exception as e:
                    raise RecognitionError(f'Failed to recognize text: {e}') from e
                break
        LOG.info('local_ocr_recognized', extra={
            'duration_ms': int((time.time() - start) * 1000),
            'text_len': len(text or ''),
            'preprocessed': image.preprocessed_variant is not None,
        })
        return text or ''

    async def _extract(self, image: ImageData) -> OCRResult:
        text = await self.recognize_text(image)
        if not text.strip():
            raise RecognitionError('No text found in image. The image may be blank or too low quality.')

        records = classify(text, **self._classifier_options)
        if not records:
            raise RecognitionError('Could not parse recognized text into structured data.')
        return OCRResult.ok(records, raw_text=text)
