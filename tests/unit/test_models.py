import base64

import pytest
from pydantic import ValidationError

from tabscan.ocr.models import ImageData, OCRResult, decode_image_payload, has_uniform_keys

pytestmark = pytest.mark.unit


def test_image_data_accepts_camel_case_aliases(sample_image_b64):
    img = ImageData.model_validate({'mimeType': 'IMAGE/PNG', 'data': sample_image_b64, 'preprocessedVariant': '  '})
    assert img.mime_type == 'image/png'
    assert img.preprocessed_variant is None
    assert img.to_data_uri().startswith('data:image/png;base64,')


def test_image_data_rejects_non_raster_types():
    with pytest.raises(ValidationError):
        ImageData(mime_type='application/pdf', data='AAAA')


def test_image_data_requires_data():
    with pytest.raises(ValidationError):
        ImageData(mime_type='image/png', data='')


def test_image_data_is_immutable(image_data):
    with pytest.raises(ValidationError):
        image_data.data = 'other'


def test_recognition_prefers_preprocessed_variant(sample_image_b64):
    variant = base64.b64encode(b'clean').decode()
    img = ImageData(mime_type='image/png', data=sample_image_b64, preprocessed_variant=f'data:image/png;base64,{variant}')
    assert img.recognition_bytes() == b'clean'
    plain = ImageData(mime_type='image/png', data=variant)
    assert plain.recognition_bytes() == b'clean'


def test_decode_rejects_non_base64_data_uri():
    with pytest.raises(ValueError):
        decode_image_payload('data:image/png,rawbytes')


def test_result_shapes_are_exclusive():
    ok = OCRResult.ok([{'a': '1'}], raw_text='a: 1')
    assert ok.success and ok.error is None and ok.record_count == 1
    empty = OCRResult.ok([])
    assert empty.success and empty.data == []
    failed = OCRResult.fail('boom')
    assert not failed.success and failed.data is None

    with pytest.raises(ValidationError):
        OCRResult(success=True)
    with pytest.raises(ValidationError):
        OCRResult(success=True, data=[], error='x')
    with pytest.raises(ValidationError):
        OCRResult(success=False)
    with pytest.raises(ValidationError):
        OCRResult(success=False, error='x', data=[])


def test_result_serializes_with_aliases():
    dumped = OCRResult.ok([{'a': None}], raw_text='a').model_dump(by_alias=True)
    assert dumped['rawText'] == 'a'
    assert dumped['data'] == [{'a': None}]


def test_has_uniform_keys():
    assert has_uniform_keys([])
    assert has_uniform_keys([{'a': '1', 'b': '2'}, {'a': '3', 'b': None}])
    assert not has_uniform_keys([{'a': '1'}, {'b': '2'}])
