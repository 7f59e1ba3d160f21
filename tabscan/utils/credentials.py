"""Credential resolution for the cloud extraction backend.

The cloud backend needs a single opaque API key. It is looked up through an
ordered list of providers; the first non-blank value wins. The standard order
is an explicit call-time value, then the locally persisted setting, then the
build-time default taken from the environment.

Environment variables:
- GEMINI_API_KEY: build-time default credential
- OCR_SETTINGS_PATH: settings file holding the persisted credential
  (default ~/.tabscan/settings.json)
"""
from __future__ import annotations

import json
import os
import pathlib
from typing import Iterable, Optional, Protocol

from tabscan.utils.logger import get_logger

LOG = get_logger()

DEFAULT_CREDENTIAL_ENV = 'GEMINI_API_KEY'
DEFAULT_SETTINGS_PATH = os.getenv('OCR_SETTINGS_PATH') or str(pathlib.Path.home() / '.tabscan' / 'settings.json')
SETTINGS_CREDENTIAL_KEY = 'GEMINI_API_KEY'

MASK_PREFIX_LEN = 8
MASK_SUFFIX_LEN = 4


class CredentialProvider(Protocol):
    def get(self) -> Optional[str]:
        ...


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class StaticCredentialProvider:
    """Explicit value supplied by the caller."""

    def __init__(self, value: Optional[str] = None):
        self._value = _clean(value)

    def get(self) -> Optional[str]:
        return self._value


class EnvironmentCredentialProvider:
    """Build-time default read from an environment variable."""

    def __init__(self, var: str = DEFAULT_CREDENTIAL_ENV):
        self.var = var

    def get(self) -> Optional[str]:
        return _clean(os.getenv(self.var))


class SettingsFileCredentialProvider:
    """Locally persisted credential kept in a small JSON settings file."""

    def __init__(self, path: Optional[str] = None, key: str = SETTINGS_CREDENTIAL_KEY):
        self.path = pathlib.Path(path or DEFAULT_SETTINGS_PATH)
        self.key = key

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding='utf-8'))
        except (OSError, ValueError):
            LOG.warning('settings_file_unreadable', extra={'path': str(self.path)})
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: dict):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2), encoding='utf-8')

    def get(self) -> Optional[str]:
        value = self._read().get(self.key)
        return _clean(value) if isinstance(value, str) else None

    def save(self, value: str):
        cleaned = _clean(value)
        if not cleaned:
            raise ValueError('Credential must be a non-empty string')
        data = self._read()
        data[self.key] = cleaned
        self._write(data)
        LOG.info('credential_saved', extra={'path': str(self.path), 'masked': mask_credential(cleaned)})

    def clear(self):
        data = self._read()
        if self.key in data:
            del data[self.key]
            self._write(data)
            LOG.info('credential_removed', extra={'path': str(self.path)})


def resolve_credential(providers: Iterable[CredentialProvider]) -> Optional[str]:
    for provider in providers:
        value = _clean(provider.get())
        if value:
            return value
    return None


def default_providers(explicit: Optional[str] = None, settings_path: Optional[str] = None, env_var: str = DEFAULT_CREDENTIAL_ENV) -> list:
    return [
        StaticCredentialProvider(explicit),
        SettingsFileCredentialProvider(settings_path),
        EnvironmentCredentialProvider(env_var),
    ]


def mask_credential(value: Optional[str]) -> Optional[str]:
    """Display form of a credential: first 8 and last 4 characters.

    Short credentials are fully hidden so the mask never equals the secret.
    """
    if not value:
        return None
    if len(value) <= MASK_PREFIX_LEN + MASK_SUFFIX_LEN:
        return '...'
    return value[:MASK_PREFIX_LEN] + '...' + value[-MASK_SUFFIX_LEN:]
