import os
import sys
import logging
import pathlib
import contextvars
from logging.handlers import RotatingFileHandler
from pythonjsonlogger.json import JsonFormatter

_request_ctx_var = contextvars.ContextVar('request_ctx', default={})


def set_request_context(request_id: str, backend: str = None):
    _request_ctx_var.set({'request_id': request_id, 'backend': backend})


def get_request_context():
    return _request_ctx_var.get()


def _inject_request_context(record):
    ctx = get_request_context()
    # explicit extra={} values win over the ambient context
    if getattr(record, 'request_id', None) is None:
        record.request_id = ctx.get('request_id')
    if getattr(record, 'backend', None) is None:
        record.backend = ctx.get('backend')
    return True


def get_logger(name: str = 'tabscan'):
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')
    LOG_FORMAT = os.getenv('LOG_FORMAT', 'json')
    # file logging is opt-in; stdout only unless a directory is given
    LOG_FILE_PATH = os.getenv('LOG_FILE_PATH')
    LOG_MAX_SIZE = int(os.getenv('LOG_MAX_SIZE', str(10 * 1024 * 1024)))
    LOG_MAX_FILES = int(os.getenv('LOG_MAX_FILES', '7'))

    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(LOG_LEVEL.upper())

    ch = logging.StreamHandler(sys.stdout)
    if LOG_FORMAT == 'json':
        fmt = JsonFormatter('%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s')
    else:
        fmt = logging.Formatter('%(asctime)s %(levelname)s %(name)s %(message)s')
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    if LOG_FILE_PATH:
        log_path = pathlib.Path(LOG_FILE_PATH)
        if not log_path.is_absolute():
            log_path = pathlib.Path(os.getcwd()) / log_path
        log_path.mkdir(parents=True, exist_ok=True)

        combined = RotatingFileHandler(log_path / 'combined.log', maxBytes=LOG_MAX_SIZE, backupCount=LOG_MAX_FILES)
        combined.setFormatter(fmt)
        logger.addHandler(combined)

        errors = RotatingFileHandler(log_path / 'error.log', maxBytes=LOG_MAX_SIZE, backupCount=LOG_MAX_FILES)
        errors.setLevel(logging.ERROR)
        errors.setFormatter(fmt)
        logger.addHandler(errors)

    f = logging.Filter()
    f.filter = _inject_request_context
    logger.addFilter(f)

    logging.captureWarnings(True)

    return logger


def log_request(request_id: str, method: str, path: str, status_code: int, duration_ms: float, ip: str = None):
    logger = get_logger()
    logger.info('http_request', extra={'request_id': request_id, 'method': method, 'path': path, 'status_code': status_code, 'duration_ms': duration_ms, 'ip': ip})


def log_error(error: Exception, context: dict = None):
    logger = get_logger()
    logger.exception('error', exc_info=error, extra=context or {})


def log_model_load(engine: str, lang: str, load_time_ms: float):
    logger = get_logger()
    logger.info('model_load', extra={'engine': engine, 'lang': lang, 'load_time_ms': load_time_ms})


def log_ocr_result(backend: str, success: bool, record_count: int, text_length: int, duration_ms: float, error_category: str = None):
    logger = get_logger()
    logger.info('ocr_result', extra={
        'backend': backend,
        'success': success,
        'record_count': record_count,
        'text_length': text_length,
        'duration_ms': duration_ms,
        'error_category': error_category,
    })


def log_llm_call(model: str, prompt_tokens: int, completion_tokens: int, duration_ms: float, attempts: int = 1):
    logger = get_logger()
    logger.info('llm_call', extra={'model': model, 'prompt_tokens': prompt_tokens, 'completion_tokens': completion_tokens, 'duration_ms': duration_ms, 'attempts': attempts})


def log_batch_result(backend: str, file_count: int, success_count: int, error_count: int, row_count: int, duration_ms: float):
    logger = get_logger()
    logger.info('ocr_batch', extra={
        'backend': backend,
        'file_count': file_count,
        'success_count': success_count,
        'error_count': error_count,
        'row_count': row_count,
        'duration_ms': duration_ms,
    })
