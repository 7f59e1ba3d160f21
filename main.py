import os
import time
import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from tabscan import __version__
from tabscan.ocr import (
    BatchItem,
    ErrorCategory,
    ExtractionBackend,
    ImageData,
    InitializationError,
    category_for_message,
    classify,
    create_backend,
    extract_batch,
)
from tabscan.ocr.text_structurer import DELIMITER_PRIORITY, KEY_VALUE_RATIO
from tabscan.utils import (
    EnvironmentCredentialProvider,
    SettingsFileCredentialProvider,
    get_logger,
    log_error,
    log_request,
    set_request_context,
)

load_dotenv()

LOG = get_logger()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    HOST: str = '0.0.0.0'
    PORT: int = 8000
    ENVIRONMENT: str = 'development'
    LOG_LEVEL: str = 'INFO'
    CORS_ORIGIN: str = '*'
    LOCAL_OCR_WARMUP: bool = False


settings = Settings()

app = FastAPI(title='tabscan', version=__version__, description='Document image to structured data rows')

origins = [o.strip() for o in settings.CORS_ORIGIN.split(',') if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ['*'],
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

# failed extractions keep their fixed message; the status code carries the category
STATUS_BY_CATEGORY = {
    ErrorCategory.NOT_CONFIGURED: 400,
    ErrorCategory.INVALID_CREDENTIAL: 502,
    ErrorCategory.QUOTA_EXCEEDED: 429,
    ErrorCategory.NETWORK_ERROR: 502,
    ErrorCategory.RESPONSE_PARSE_ERROR: 502,
    ErrorCategory.INITIALIZATION_ERROR: 503,
    ErrorCategory.RECOGNITION_ERROR: 422,
    ErrorCategory.UNKNOWN: 500,
}


@app.middleware('http')
async def add_request_id_and_logging(request: Request, call_next):
    # prefer incoming X-Request-ID header for cross-service tracing
    request_id = request.headers.get('x-request-id') or os.urandom(8).hex()
    request.state.request_id = request_id
    set_request_context(request_id)
    start = time.time()
    LOG.info('http_request_start', extra={'method': request.method, 'path': request.url.path, 'request_id': request_id, 'client': request.client.host if request.client else None})
    try:
        response: Response = await call_next(request)
    except Exception as exc:
        log_error(exc, {'event': 'unhandled_request_error', 'path': request.url.path, 'request_id': request_id})
        body = {'success': False, 'error': {'message': 'Internal server error', 'request_id': request_id}}
        return JSONResponse(status_code=500, content=body)
    duration = int((time.time() - start) * 1000)
    log_request(request_id, request.method, request.url.path, response.status_code, duration, ip=request.client.host if request.client else None)
    response.headers['X-Request-ID'] = request_id
    return response


def _request_id(request: Request) -> str:
    return getattr(request.state, 'request_id', None) or os.urandom(8).hex()


def _credential_store() -> SettingsFileCredentialProvider:
    store = getattr(app.state, 'credential_store', None)
    if store is None:
        store = SettingsFileCredentialProvider()
        app.state.credential_store = store
    return store


def _build_cloud_backend(store: SettingsFileCredentialProvider) -> ExtractionBackend:
    return create_backend('cloud', providers=[store, EnvironmentCredentialProvider()])


def _backends() -> Dict[str, ExtractionBackend]:
    backends = getattr(app.state, 'backends', None)
    if backends is None:
        backends = {
            'cloud': _build_cloud_backend(_credential_store()),
            'local': create_backend('local'),
        }
        app.state.backends = backends
    return backends


@app.get('/health')
async def health():
    return {'status': 'ok', 'timestamp': datetime.now(timezone.utc).isoformat(), 'service': 'tabscan'}


@app.get('/ready')
async def ready():
    services = {name: {'state': b.state.value, 'ready': b.is_ready()} for name, b in _backends().items()}
    ready_ok = any(s['ready'] for s in services.values())
    status_code = 200 if ready_ok else 503
    return JSONResponse(status_code=status_code, content={'status': 'ready' if ready_ok else 'not ready', 'services': services})


BackendKind = Literal['cloud', 'local']


class ExtractRequest(BaseModel):
    backend: BackendKind = Field('local', description='Extraction backend')
    image: ImageData


class BatchRequest(BaseModel):
    backend: BackendKind = Field('local', description='Extraction backend')
    images: List[BatchItem] = Field(..., min_length=1)


class StructureOptions(BaseModel):
    delimiters: Optional[List[str]] = Field(None, description='Delimiter priority, first match wins')
    key_value_ratio: Optional[float] = Field(None, ge=0.0, le=1.0)


class StructureRequest(BaseModel):
    text: str = Field(..., description='Raw OCR text to structure')
    options: StructureOptions = Field(default_factory=StructureOptions)


class CredentialRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    api_key: str = Field(..., min_length=1, alias='apiKey')


@app.post('/ocr/extract')
async def ocr_extract(req: ExtractRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    set_request_context(request_id, backend=req.backend)
    backend = _backends()[req.backend]
    result = await backend.extract(req.image)
    content = result.model_dump(by_alias=True)
    content['request_id'] = request_id
    if result.success:
        return JSONResponse(status_code=200, content=content)
    status_code = STATUS_BY_CATEGORY[category_for_message(result.error)]
    return JSONResponse(status_code=status_code, content=content)


@app.post('/ocr/batch')
async def ocr_batch(req: BatchRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    set_request_context(request_id, backend=req.backend)
    result = await extract_batch(_backends()[req.backend], req.images)
    content = result.model_dump(mode='json')
    content['success'] = result.error_count == 0
    content['request_id'] = request_id
    return JSONResponse(status_code=200, content=content)


@app.post('/ocr/structure')
async def ocr_structure(req: StructureRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    if not req.text or not req.text.strip():
        return JSONResponse(status_code=400, content={'success': False, 'error': 'Empty text', 'request_id': request_id})
    delimiters = tuple(req.options.delimiters) if req.options.delimiters else DELIMITER_PRIORITY
    ratio = req.options.key_value_ratio if req.options.key_value_ratio is not None else KEY_VALUE_RATIO
    try:
        records = await asyncio.to_thread(classify, req.text, delimiters, ratio)
    except Exception as e:
        log_error(e, {'event': 'ocr_structure_failed', 'request_id': request_id})
        return JSONResponse(status_code=500, content={'success': False, 'error': 'Structuring failed', 'request_id': request_id})
    return {'success': True, 'data': records, 'record_count': len(records), 'request_id': request_id}


def _credential_status(request_id: str) -> dict:
    cloud = _backends()['cloud']
    return {
        'success': True,
        'configured': cloud.is_ready(),
        'masked': cloud.masked_api_key(),
        'request_id': request_id,
    }


@app.get('/settings/credential')
async def get_credential(fastapi_request: Request):
    return _credential_status(_request_id(fastapi_request))


@app.put('/settings/credential')
async def put_credential(req: CredentialRequest, fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    store = _credential_store()
    try:
        store.save(req.api_key)
    except ValueError as e:
        LOG.warning('credential_rejected', extra={'error': str(e)})
        return JSONResponse(status_code=400, content={'success': False, 'error': 'Invalid API key', 'request_id': request_id})
    except OSError as e:
        log_error(e, {'event': 'credential_save_failed', 'request_id': request_id})
        return JSONResponse(status_code=500, content={'success': False, 'error': 'Could not save API key', 'request_id': request_id})
    _backends()['cloud'] = _build_cloud_backend(store)
    return _credential_status(request_id)


@app.delete('/settings/credential')
async def delete_credential(fastapi_request: Request):
    request_id = _request_id(fastapi_request)
    store = _credential_store()
    try:
        store.clear()
    except OSError as e:
        log_error(e, {'event': 'credential_remove_failed', 'request_id': request_id})
        return JSONResponse(status_code=500, content={'success': False, 'error': 'Could not remove API key', 'request_id': request_id})
    # a fresh instance falls back to the environment default, if any
    _backends()['cloud'] = _build_cloud_backend(store)
    return _credential_status(request_id)


@app.on_event('startup')
async def on_startup():
    LOG.info('tabscan service starting', extra={'env': settings.ENVIRONMENT})
    backends = _backends()
    if not backends['cloud'].is_ready():
        LOG.warning('Cloud OCR credential not set; cloud extraction will be unavailable')
    if settings.LOCAL_OCR_WARMUP:
        try:
            await backends['local'].initialize()
            LOG.info('Local OCR warmup complete')
        except InitializationError as e:
            LOG.warning('Local OCR warmup failed', extra={'error': str(e)})


@app.on_event('shutdown')
async def on_shutdown():
    LOG.info('tabscan service shutting down')
    backends = getattr(app.state, 'backends', None) or {}
    local = backends.get('local')
    if local is not None:
        await local.terminate()


if __name__ == '__main__':
    import uvicorn

    workers = int(os.getenv('WORKERS', '1'))
    # uvicorn does not support --reload with multiple workers
    if settings.ENVIRONMENT == 'development':
        workers = 1
    reload_enabled = (settings.ENVIRONMENT == 'development') and (workers == 1)

    uvicorn.run(
        'main:app',
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        reload=reload_enabled,
        workers=workers,
    )
