"""Error taxonomy for extraction backends.

Raw failures from either backend (network, quota, credential, parse,
recognition) are mapped onto a small set of categories, each with one fixed
user-facing message. Callers never see the underlying exception text.
"""
from __future__ import annotations

import json
from enum import Enum
from typing import Optional, Tuple

import openai


class ErrorCategory(str, Enum):
    NOT_CONFIGURED = 'not_configured'
    INVALID_CREDENTIAL = 'invalid_credential'
    QUOTA_EXCEEDED = 'quota_exceeded'
    NETWORK_ERROR = 'network_error'
    RESPONSE_PARSE_ERROR = 'response_parse_error'
    INITIALIZATION_ERROR = 'initialization_error'
    RECOGNITION_ERROR = 'recognition_error'
    UNKNOWN = 'unknown'


USER_MESSAGES = {
    ErrorCategory.NOT_CONFIGURED: 'Gemini API key not configured. Please set your API key in the OCR settings.',
    ErrorCategory.INVALID_CREDENTIAL: 'Invalid API key. Please check your Gemini API key.',
    ErrorCategory.QUOTA_EXCEEDED: 'API quota exceeded. Please check your Gemini API usage limits.',
    ErrorCategory.NETWORK_ERROR: 'Network error. Please check your internet connection.',
    ErrorCategory.RESPONSE_PARSE_ERROR: 'Failed to parse AI response. The image may not contain structured data.',
    ErrorCategory.INITIALIZATION_ERROR: 'Failed to initialize OCR engine. Please try again.',
    ErrorCategory.RECOGNITION_ERROR: 'Failed to recognize text. Try a clearer, higher-contrast image.',
    ErrorCategory.UNKNOWN: 'Failed to extract data from image.',
}


class OCRError(Exception):
    category = ErrorCategory.UNKNOWN


class NotConfiguredError(OCRError):
    category = ErrorCategory.NOT_CONFIGURED


class InitializationError(OCRError):
    category = ErrorCategory.INITIALIZATION_ERROR


class RecognitionError(OCRError):
    category = ErrorCategory.RECOGNITION_ERROR


class ResponseParseError(OCRError):
    category = ErrorCategory.RESPONSE_PARSE_ERROR


# checked in order; first hit wins
_MESSAGE_RULES = (
    (('api key', 'api_key', 'apikey', 'credential', 'unauthorized', 'permission denied'), ErrorCategory.INVALID_CREDENTIAL),
    (('quota', 'rate limit', 'resource_exhausted', 'resource exhausted'), ErrorCategory.QUOTA_EXCEEDED),
    (('network', 'fetch', 'connection', 'timed out', 'timeout'), ErrorCategory.NETWORK_ERROR),
    (('initialize', 'initialise'), ErrorCategory.INITIALIZATION_ERROR),
    (('recognize', 'recognise'), ErrorCategory.RECOGNITION_ERROR),
)


def classify_error(exc: BaseException) -> ErrorCategory:
    if isinstance(exc, OCRError):
        return exc.category
    if isinstance(exc, json.JSONDecodeError):
        return ErrorCategory.RESPONSE_PARSE_ERROR
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ErrorCategory.INVALID_CREDENTIAL
    if isinstance(exc, openai.RateLimitError):
        return ErrorCategory.QUOTA_EXCEEDED
    if isinstance(exc, (openai.APIConnectionError, ConnectionError, TimeoutError)):
        return ErrorCategory.NETWORK_ERROR

    message = str(exc).lower()
    for needles, category in _MESSAGE_RULES:
        if any(n in message for n in needles):
            return category
    return ErrorCategory.UNKNOWN


def user_message(category: ErrorCategory) -> str:
    return USER_MESSAGES[category]


def describe_error(exc: BaseException) -> Tuple[ErrorCategory, str]:
    category = classify_error(exc)
    return category, user_message(category)


def category_for_message(message: Optional[str]) -> ErrorCategory:
    """Recover the category of a failed OCRResult from its fixed message."""
    for category, text in USER_MESSAGES.items():
        if text == message:
            return category
    return ErrorCategory.UNKNOWN
