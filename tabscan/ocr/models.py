"""Data model shared by both extraction backends.

- ImageData: immutable image payload handed to `extract()`
- Record: one structured output row (ordered field -> str | None mapping)
- OCRResult: success-with-data XOR failure-with-error
- BackendState: lifecycle state of a backend instance
"""
from __future__ import annotations

import base64
import binascii
from enum import Enum
from typing import Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

Record = Dict[str, Optional[str]]

RASTER_MIME_TYPES = frozenset({
    'image/png',
    'image/jpeg',
    'image/jpg',
    'image/gif',
    'image/bmp',
    'image/tiff',
    'image/webp',
})


class BackendState(str, Enum):
    UNCONFIGURED = 'unconfigured'
    INITIALIZING = 'initializing'
    READY = 'ready'


class ImageData(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    mime_type: str = Field(..., alias='mimeType', description='Raster image MIME type, e.g. image/png')
    data: str = Field(..., min_length=1, description='Base64-encoded image bytes')
    preprocessed_variant: Optional[str] = Field(
        default=None,
        alias='preprocessedVariant',
        description='Recognition-optimized variant, raw base64 or a data: URI',
    )

    @field_validator('mime_type')
    @classmethod
    def _raster_mime(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in RASTER_MIME_TYPES:
            raise ValueError(f'Unsupported image type: {v}')
        return v

    @field_validator('preprocessed_variant')
    @classmethod
    def _blank_variant_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v

    def to_data_uri(self) -> str:
        return f'data:{self.mime_type};base64,{self.data}'

    def recognition_source(self) -> str:
        """The payload the local engine should read: the preprocessed variant when present."""
        return self.preprocessed_variant or self.data

    def recognition_bytes(self) -> bytes:
        return decode_image_payload(self.recognition_source())


def decode_image_payload(payload: str) -> bytes:
    """Decode raw base64 or a `data:<mime>;base64,<data>` URI into bytes."""
    if payload.startswith('data:'):
        header, _, payload = payload.partition(',')
        if ';base64' not in header:
            raise ValueError('Only base64 data URIs are supported')
    try:
        return base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f'Invalid base64 image payload: {e}')


class OCRResult(BaseModel):
    """Standard extraction output. Exactly one of `data` / `error` is set."""
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    data: Optional[List[Record]] = None
    error: Optional[str] = None
    raw_text: Optional[str] = Field(default=None, alias='rawText')

    @model_validator(mode='after')
    def _check_shape(self) -> 'OCRResult':
        if self.success:
            if self.data is None:
                raise ValueError('successful result requires data')
            if self.error is not None:
                raise ValueError('successful result cannot carry an error')
        else:
            if not self.error:
                raise ValueError('failed result requires an error message')
            if self.data is not None:
                raise ValueError('failed result cannot carry data')
        return self

    @classmethod
    def ok(cls, data: Sequence[Record], raw_text: Optional[str] = None) -> 'OCRResult':
        return cls(success=True, data=list(data), raw_text=raw_text)

    @classmethod
    def fail(cls, error: str) -> 'OCRResult':
        return cls(success=False, error=error)

    @property
    def record_count(self) -> int:
        return len(self.data) if self.data else 0


def has_uniform_keys(records: Sequence[Record]) -> bool:
    """True when every record has the same field names in the same order."""
    if not records:
        return True
    first = list(records[0].keys())
    return all(list(r.keys()) == first for r in records[1:])
