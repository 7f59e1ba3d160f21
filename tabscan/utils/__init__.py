"""Utility subpackage: logging and credential configuration"""

from .logger import (
	get_logger,
	log_request,
	log_error,
	log_model_load,
	log_ocr_result,
	log_llm_call,
	log_batch_result,
	set_request_context,
	get_request_context,
)
from .credentials import (
	CredentialProvider,
	StaticCredentialProvider,
	EnvironmentCredentialProvider,
	SettingsFileCredentialProvider,
	resolve_credential,
	default_providers,
	mask_credential,
)

__all__ = [
	'get_logger',
	'log_request',
	'log_error',
	'log_model_load',
	'log_ocr_result',
	'log_llm_call',
	'log_batch_result',
	'set_request_context',
	'get_request_context',
	'CredentialProvider',
	'StaticCredentialProvider',
	'EnvironmentCredentialProvider',
	'SettingsFileCredentialProvider',
	'resolve_credential',
	'default_providers',
	'mask_credential',
]
