import os
import base64
import time
import pytest
from io import BytesIO
from pathlib import Path
from unittest.mock import MagicMock

from dotenv import load_dotenv

# load test env first
env_path = Path(__file__).resolve().parents[1] / '.env.test'
if env_path.exists():
    load_dotenv(env_path)

os.environ.setdefault('TESTING', '1')


@pytest.fixture(autouse=True)
def silence_logger(monkeypatch):
    # Patch the helper loggers to avoid noisy logs
    import tabscan.utils.logger as logger_mod
    monkeypatch.setattr(logger_mod, 'get_logger', lambda *a, **k: MagicMock())
    yield


@pytest.fixture(autouse=True)
def isolated_credentials(monkeypatch, tmp_path):
    # never pick up a developer's real key or settings file
    monkeypatch.delenv('GEMINI_API_KEY', raising=False)
    import tabscan.utils.credentials as cred_mod
    monkeypatch.setattr(cred_mod, 'DEFAULT_SETTINGS_PATH', str(tmp_path / 'settings.json'))
    yield


@pytest.fixture
def sample_image():
    from PIL import Image
    img = Image.new('RGB', (100, 100), color=(255, 255, 255))
    return img


@pytest.fixture
def sample_image_bytes(sample_image):
    buf = BytesIO()
    sample_image.save(buf, format='PNG')
    buf.seek(0)
    return buf.getvalue()


@pytest.fixture
def sample_image_b64(sample_image_bytes):
    return base64.b64encode(sample_image_bytes).decode('ascii')


@pytest.fixture
def image_data(sample_image_b64):
    from tabscan.ocr.models import ImageData
    return ImageData(mime_type='image/png', data=sample_image_b64)


class FakeWorker:
    """Stands in for TesseractWorker; returns canned text per image payload."""

    def __init__(self, text='', start_error=None, start_delay=0.0, stop_delay=0.0, registry=None, **options):
        self.text = text
        self.start_error = start_error
        self.start_delay = start_delay
        self.stop_delay = stop_delay
        self.options = options
        self.started = 0
        self.terminated = 0
        self.recognized = []
        if registry is not None:
            registry.append(self)

    def configure(self, **options):
        self.options.update(options)

    def start(self):
        self.started += 1
        if self.start_delay:
            time.sleep(self.start_delay)
        if self.start_error is not None:
            raise self.start_error
        return 'fake-5.3'

    def recognize(self, image_bytes):
        self.recognized.append(image_bytes)
        if isinstance(self.text, dict):
            return self.text.get(image_bytes, '')
        return self.text

    def terminate(self):
        if self.stop_delay:
            time.sleep(self.stop_delay)
        self.terminated += 1


@pytest.fixture
def worker_factory():
    """Build a worker factory plus the list of workers it created."""

    def _make(text='', start_error=None, start_delay=0.0, stop_delay=0.0):
        created = []

        def factory(**options):
            return FakeWorker(text=text, start_error=start_error, start_delay=start_delay, stop_delay=stop_delay, registry=created, **options)

        factory.created = created
        return factory

    return _make


@pytest.fixture
def mock_openai_client():
    """Factory for fake AsyncOpenAI clients; see tests/fixtures/mock_openai.py."""
    from tests.fixtures.mock_openai import FakeOpenAIFactory
    return FakeOpenAIFactory
