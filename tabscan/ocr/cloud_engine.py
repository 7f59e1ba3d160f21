"""Cloud extraction backend: a remote vision model returns structured JSON.

The remote model performs document-type detection and structuring itself; this
module only sends the image with a fixed instruction and normalizes the reply.
Requests go through the `openai` SDK to an OpenAI-compatible endpoint, Google
Gemini by default. Transient transport failures are retried with tenacity.

Environment variables:
- CLOUD_OCR_MODEL (default gemini-1.5-flash)
- CLOUD_OCR_BASE_URL (default Gemini's OpenAI-compatible endpoint)
- CLOUD_OCR_TIMEOUT (seconds, default 60)
- CLOUD_OCR_RETRY_ATTEMPTS (default 3), CLOUD_OCR_RETRY_MULTIPLIER, CLOUD_OCR_RETRY_MAX_WAIT
- CLOUD_OCR_TEMPERATURE (default 0)
"""
from __future__ import annotations

import json
import os
import re
import time
from typing import Any, Callable, Iterable, List, Optional

import openai
from openai import AsyncOpenAI
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from tabscan.ocr.backend import ExtractionBackend
from tabscan.ocr.errors import NotConfiguredError, ResponseParseError
from tabscan.ocr.models import BackendState, ImageData, OCRResult, Record
from tabscan.utils import get_logger, log_llm_call
from tabscan.utils.credentials import (
    CredentialProvider,
    EnvironmentCredentialProvider,
    SettingsFileCredentialProvider,
    StaticCredentialProvider,
    mask_credential,
    resolve_credential,
)

LOG = get_logger()

CLOUD_OCR_MODEL = os.getenv('CLOUD_OCR_MODEL', 'gemini-1.5-flash')
CLOUD_OCR_BASE_URL = os.getenv('CLOUD_OCR_BASE_URL', 'https://generativelanguage.googleapis.com/v1beta/openai/')
CLOUD_OCR_TIMEOUT = float(os.getenv('CLOUD_OCR_TIMEOUT', '60'))
CLOUD_OCR_RETRY_ATTEMPTS = int(os.getenv('CLOUD_OCR_RETRY_ATTEMPTS', '3'))
CLOUD_OCR_RETRY_MULTIPLIER = float(os.getenv('CLOUD_OCR_RETRY_MULTIPLIER', '1'))
CLOUD_OCR_RETRY_MAX_WAIT = float(os.getenv('CLOUD_OCR_RETRY_MAX_WAIT', '8'))
CLOUD_OCR_TEMPERATURE = float(os.getenv('CLOUD_OCR_TEMPERATURE', '0'))

TRANSIENT_ERRORS = (openai.APIConnectionError, openai.InternalServerError)

EXTRACTION_PROMPT = """
You are an expert data extraction AI. Analyze this image and extract structured data.

**Document Types:**
1. **Table**: Extract headers and rows -> JSON array of objects
2. **Receipt**: Extract merchant, total, date, items -> Single object in array
3. **List**: Extract repeating items -> Array of objects with consistent keys
4. **Note**: Extract title, date, content -> Single object in array
5. **Other**: General OCR -> Single object with 'extracted_text' key

**Rules:**
- ALWAYS return valid JSON array
- If no data found, return empty array []
- Don't invent data - use null for missing values
- Clean text: trim whitespace, fix obvious OCR errors
- Ignore watermarks and background text

**Example Table Output:**
[{"ItemID": "A1", "Product": "Widget", "Price": "10.00"}, {"ItemID": "A2", "Product": "Gadget", "Price": "15.00"}]

**Example Receipt Output:**
[{"merchant_name": "Store", "total_amount": "25.50", "transaction_date": "2024-01-15", "items": [{"description": "Item", "price": "25.50"}]}]
""".strip()

_CODE_FENCE = re.compile(r"^\s*```[\w-]*\s*|\s*```\s*$")


def strip_code_fences(text: str) -> str:
    return _CODE_FENCE.sub('', text or '').strip()


def _flatten_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, ensure_ascii=False)


def _to_record(item: dict) -> Record:
    record: Record = {}
    for key, value in item.items():
        key = str(key).strip()
        if not key:
            continue
        record[key] = _flatten_value(value)
    return record


def parse_model_response(text: Optional[str]) -> List[Record]:
    """Normalize the model's reply into records.

    A single object becomes a one-element list, empty objects are dropped and
    nested values are JSON-encoded so every record is flat. An empty reply or
    an empty array yields an empty list.
    """
    cleaned = strip_code_fences(text or '')
    if not cleaned:
        return []
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise ResponseParseError(f'Model response is not valid JSON: {e}') from e

    if isinstance(parsed, dict):
        parsed = [parsed]
    elif not isinstance(parsed, list):
        raise ResponseParseError(f'Model response is not a JSON array or object: {type(parsed).__name__}')

    records: List[Record] = []
    for item in parsed:
        if not isinstance(item, dict):
            raise ResponseParseError(f'Model response array holds a non-object element: {type(item).__name__}')
        record = _to_record(item)
        if record:
            records.append(record)
    return records


class CloudExtractionEngine(ExtractionBackend):
    name = 'cloud'

    def __init__(
        self,
        api_key: Optional[str] = None,
        providers: Optional[Iterable[CredentialProvider]] = None,
        model: str = CLOUD_OCR_MODEL,
        base_url: str = CLOUD_OCR_BASE_URL,
        timeout: float = CLOUD_OCR_TIMEOUT,
        temperature: float = CLOUD_OCR_TEMPERATURE,
        retry_attempts: int = CLOUD_OCR_RETRY_ATTEMPTS,
        retry_wait: Any = None,
        client_factory: Optional[Callable[..., Any]] = None,
    ):
        super().__init__()
        # explicit api_key goes first; these are the fallbacks behind it
        if providers is None:
            providers = [SettingsFileCredentialProvider(), EnvironmentCredentialProvider()]
        self._providers = list(providers)
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self.temperature = temperature
        self.retry_attempts = max(1, int(retry_attempts))
        self._retry_wait = retry_wait or wait_exponential(multiplier=CLOUD_OCR_RETRY_MULTIPLIER, max=CLOUD_OCR_RETRY_MAX_WAIT)
        self._client_factory = client_factory or AsyncOpenAI
        self._api_key: Optional[str] = None
        self._client = None
        self.configure(api_key=api_key)

    def configure(self, api_key: Optional[str] = None, model: Optional[str] = None, base_url: Optional[str] = None, timeout: Optional[float] = None, **options: Any) -> None:
        if options:
            raise ValueError(f'Unknown cloud engine options: {sorted(options)}')
        if model:
            self.model = model
        if base_url:
            self.base_url = base_url
        if timeout:
            self.timeout = timeout

        credential = resolve_credential([StaticCredentialProvider(api_key), *self._providers])
        if credential:
            self._api_key = credential
        elif self._api_key:
            LOG.warning('cloud_ocr_no_new_credential', extra={'masked': self.masked_api_key()})

        if self._api_key:
            self._client = self._client_factory(
                api_key=self._api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,
            )
            self._state = BackendState.READY
        LOG.info('cloud_ocr_configured', extra={'model': self.model, 'configured': self._api_key is not None, 'masked': self.masked_api_key()})

    def is_ready(self) -> bool:
        return self._api_key is not None and self._client is not None

    def masked_api_key(self) -> Optional[str]:
        return mask_credential(self._api_key)

    def _build_messages(self, image: ImageData) -> List[dict]:
        return [{
            'role': 'user',
            'content': [
                {'type': 'text', 'text': EXTRACTION_PROMPT},
                {'type': 'image_url', 'image_url': {'url': image.to_data_uri()}},
            ],
        }]

    async def _request_completion(self, image: ImageData) -> str:
        messages = self._build_messages(image)
        start = time.time()
        attempts = 0
        response = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=self._retry_wait,
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            reraise=True,
        ):
            with attempt:
                attempts = attempt.retry_state.attempt_number
                if attempts > 1:
                    LOG.warning('cloud_ocr_retry', extra={'attempt': attempts, 'model': self.model})
                response = await self._client.chat.completions.create(
                    model=self.model,
                    messages=messages,
                    temperature=self.temperature,
                )

        duration_ms = int((time.time() - start) * 1000)
        usage = getattr(response, 'usage', None)
        log_llm_call(
            self.model,
            getattr(usage, 'prompt_tokens', 0) or 0,
            getattr(usage, 'completion_tokens', 0) or 0,
            duration_ms,
            attempts=attempts,
        )
        choices = getattr(response, 'choices', None) or []
        if not choices:
            return ''
        return choices[0].message.content or ''

    async def _extract(self, image: ImageData) -> OCRResult:
        if not self.is_ready():
            raise NotConfiguredError('No API key configured for cloud extraction')
        text = await self._request_completion(image)
        records = parse_model_response(text)
        LOG.info('cloud_ocr_parsed', extra={'model': self.model, 'record_count': len(records), 'response_len': len(text)})
        return OCRResult.ok(records)
