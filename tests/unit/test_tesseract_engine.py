import asyncio
import base64

import pytest

from tabscan.ocr import (
    BackendState,
    ImageData,
    InitializationError,
    LocalExtractionEngine,
    RecognitionError,
    TesseractWorker,
    create_backend,
)
from tabscan.ocr import tesseract_engine
from tabscan.ocr.errors import USER_MESSAGES, ErrorCategory

pytestmark = pytest.mark.unit

RECOGNITION_FAILED = USER_MESSAGES[ErrorCategory.RECOGNITION_ERROR]
INIT_FAILED = USER_MESSAGES[ErrorCategory.INITIALIZATION_ERROR]


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode('ascii')


def test_concurrent_initialize_runs_setup_once(worker_factory):
    factory = worker_factory(start_delay=0.05)
    engine = LocalExtractionEngine(worker_factory=factory)

    async def scenario():
        await asyncio.gather(*(engine.initialize() for _ in range(5)))

    asyncio.run(scenario())
    assert len(factory.created) == 1
    assert factory.created[0].started == 1
    assert engine.state is BackendState.READY
    assert engine.is_ready()


def test_concurrent_initialize_shares_failure_and_allows_retry(worker_factory):
    factory = worker_factory(start_error=RuntimeError('tessdata missing'), start_delay=0.02)
    engine = LocalExtractionEngine(worker_factory=factory)

    async def scenario():
        outcomes = await asyncio.gather(*(engine.initialize() for _ in range(3)), return_exceptions=True)
        assert all(isinstance(o, InitializationError) for o in outcomes)
        assert len(factory.created) == 1
        assert engine.state is BackendState.UNCONFIGURED
        with pytest.raises(InitializationError):
            await engine.initialize()

    asyncio.run(scenario())
    # the retry built a fresh worker instead of staying stuck
    assert len(factory.created) == 2


def test_initialize_is_idempotent_once_ready(worker_factory):
    factory = worker_factory()
    engine = LocalExtractionEngine(worker_factory=factory)

    async def scenario():
        await engine.initialize()
        await engine.initialize()

    asyncio.run(scenario())
    assert len(factory.created) == 1


def test_extract_key_value_text(worker_factory, image_data):
    factory = worker_factory(text='Store: Acme\nTotal: 25.50\nDate: 2024-01-15\n')
    engine = LocalExtractionEngine(worker_factory=factory)
    result = asyncio.run(engine.extract(image_data))
    assert result.success
    assert result.data == [{'Store': 'Acme', 'Total': '25.50', 'Date': '2024-01-15'}]
    assert result.raw_text.startswith('Store: Acme')


@pytest.mark.parametrize('text', ['', '   \n\t  \n'])
def test_blank_text_is_a_failure_not_empty_success(worker_factory, image_data, text):
    engine = LocalExtractionEngine(worker_factory=worker_factory(text=text))
    result = asyncio.run(engine.extract(image_data))
    assert not result.success
    assert result.data is None
    assert result.error == RECOGNITION_FAILED


def test_text_without_records_is_a_failure(worker_factory, image_data):
    engine = LocalExtractionEngine(worker_factory=worker_factory(text=':a\n:b'))
    result = asyncio.run(engine.extract(image_data))
    assert not result.success
    assert result.error == RECOGNITION_FAILED


def test_preprocessed_variant_is_recognized_first(worker_factory):
    original, cleaned = b'original-bytes', b'cleaned-bytes'
    factory = worker_factory(text={cleaned: 'A,B\n1,2', original: ''})
    engine = LocalExtractionEngine(worker_factory=factory)
    image = ImageData(mime_type='image/jpeg', data=_b64(original), preprocessed_variant=f'data:image/png;base64,{_b64(cleaned)}')

    result = asyncio.run(engine.extract(image))
    assert result.success
    assert result.data == [{'A': '1', 'B': '2'}]
    assert factory.created[0].recognized == [cleaned]


def test_extract_reports_initialization_failure(worker_factory, image_data):
    engine = LocalExtractionEngine(worker_factory=worker_factory(start_error=OSError('tesseract not found')))
    result = asyncio.run(engine.extract(image_data))
    assert not result.success
    assert result.error == INIT_FAILED
    assert engine.state is BackendState.UNCONFIGURED


def test_worker_crash_is_a_recognition_failure(worker_factory, image_data):
    factory = worker_factory(text='x')
    engine = LocalExtractionEngine(worker_factory=factory)

    async def scenario():
        await engine.initialize()

        def crash(_):
            raise RuntimeError('segfault in leptonica')

        factory.created[0].recognize = crash
        return await engine.extract(image_data)

    result = asyncio.run(scenario())
    assert not result.success
    assert result.error == RECOGNITION_FAILED


def test_terminate_releases_worker_and_allows_reinit(worker_factory, image_data):
    factory = worker_factory(text='- Milk\n- Eggs')
    engine = LocalExtractionEngine(worker_factory=factory)

    async def scenario():
        # no-op before any setup
        await engine.terminate()
        assert engine.state is BackendState.UNCONFIGURED
        first = await engine.extract(image_data)
        await engine.terminate()
        assert engine.state is BackendState.UNCONFIGURED
        second = await engine.extract(image_data)
        return first, second

    first, second = asyncio.run(scenario())
    assert first.data == second.data == [{'Item': 'Milk', 'Line': '1'}, {'Item': 'Eggs', 'Line': '2'}]
    assert factory.created[0].terminated == 1
    assert len(factory.created) == 2


def test_extract_during_terminate_gets_its_own_live_worker(worker_factory, image_data):
    factory = worker_factory(text='- Milk', stop_delay=0.1)
    engine = LocalExtractionEngine(worker_factory=factory)

    async def scenario():
        await engine.initialize()
        _, result = await asyncio.gather(engine.terminate(), engine.extract(image_data))
        # state and worker handle must agree once both calls settle
        assert engine.state is BackendState.READY
        assert engine._worker is factory.created[-1]
        await engine.terminate()
        return result

    result = asyncio.run(scenario())
    assert result.success
    assert result.data == [{'Item': 'Milk', 'Line': '1'}]
    assert len(factory.created) == 2
    # every worker that was built got released exactly once
    assert [w.terminated for w in factory.created] == [1, 1]
    assert factory.created[0].recognized == []
    assert engine.state is BackendState.UNCONFIGURED
    assert engine._worker is None


def test_configure_updates_ready_worker_in_place(worker_factory):
    factory = worker_factory()
    engine = LocalExtractionEngine(worker_factory=factory)
    asyncio.run(engine.initialize())

    engine.configure(psm=6, key_value_ratio=0.3)
    assert factory.created[0].options['psm'] == 6
    assert len(factory.created) == 1
    assert engine.is_ready()

    with pytest.raises(ValueError):
        engine.configure(dpi=300)


def test_create_backend_builds_independent_instances():
    a = create_backend('local')
    b = create_backend('LOCAL')
    assert isinstance(a, LocalExtractionEngine)
    assert a is not b
    with pytest.raises(ValueError):
        create_backend('paddle')


class TestTesseractWorker:

    @pytest.fixture
    def fake_pytesseract(self, monkeypatch):
        calls = {}

        def image_to_string(img, lang=None, config=None):
            calls['lang'] = lang
            calls['config'] = config
            calls['mode'] = img.mode
            return 'Name\tPrice\nApple\t1\n'

        monkeypatch.setattr(tesseract_engine.pytesseract, 'get_tesseract_version', lambda: '5.3.0')
        monkeypatch.setattr(tesseract_engine.pytesseract, 'get_languages', lambda config='': ['eng', 'osd'])
        monkeypatch.setattr(tesseract_engine.pytesseract, 'image_to_string', image_to_string)
        return calls

    def test_start_and_recognize(self, fake_pytesseract, sample_image_bytes):
        worker = TesseractWorker(lang='eng', psm=3, oem=1, preserve_interword_spaces=True)
        assert worker.start() == '5.3.0'
        text = worker.recognize(sample_image_bytes)
        assert text.startswith('Name\tPrice')
        assert fake_pytesseract['lang'] == 'eng'
        assert fake_pytesseract['config'] == '--psm 3 --oem 1 -c preserve_interword_spaces=1'
        assert fake_pytesseract['mode'] == 'RGB'

    def test_missing_language_data_fails_start(self, fake_pytesseract):
        worker = TesseractWorker(lang='eng+deu')
        with pytest.raises(InitializationError):
            worker.start()

    def test_recognize_requires_start(self, fake_pytesseract, sample_image_bytes):
        worker = TesseractWorker()
        with pytest.raises(RecognitionError):
            worker.recognize(sample_image_bytes)

    def test_engine_end_to_end_with_real_worker(self, fake_pytesseract, image_data):
        engine = LocalExtractionEngine()
        result = asyncio.run(engine.extract(image_data))
        assert result.success
        assert result.data == [{'Name': 'Apple', 'Price': '1'}]
