"""
OCR extraction for document images.
Two interchangeable backends: a cloud vision model that returns structured JSON
and a local Tesseract engine whose raw text is structured heuristically.
"""
from .models import ImageData, OCRResult, Record, BackendState, decode_image_payload, has_uniform_keys
from .errors import (
	ErrorCategory,
	OCRError,
	NotConfiguredError,
	InitializationError,
	RecognitionError,
	ResponseParseError,
	classify_error,
	category_for_message,
	describe_error,
	user_message,
)
from .text_structurer import classify, DELIMITER_PRIORITY, KEY_VALUE_RATIO
from .backend import ExtractionBackend, create_backend
from .tesseract_engine import LocalExtractionEngine, TesseractWorker
from .cloud_engine import CloudExtractionEngine, parse_model_response
from .batch import BatchItem, BatchResult, FileOutcome, FileStatus, extract_batch, records_to_rows

__all__ = [
	'ImageData',
	'OCRResult',
	'Record',
	'BackendState',
	'decode_image_payload',
	'has_uniform_keys',
	'ErrorCategory',
	'OCRError',
	'NotConfiguredError',
	'InitializationError',
	'RecognitionError',
	'ResponseParseError',
	'classify_error',
	'category_for_message',
	'describe_error',
	'user_message',
	'classify',
	'DELIMITER_PRIORITY',
	'KEY_VALUE_RATIO',
	'ExtractionBackend',
	'create_backend',
	'LocalExtractionEngine',
	'TesseractWorker',
	'CloudExtractionEngine',
	'parse_model_response',
	'BatchItem',
	'BatchResult',
	'FileOutcome',
	'FileStatus',
	'extract_batch',
	'records_to_rows',
]
