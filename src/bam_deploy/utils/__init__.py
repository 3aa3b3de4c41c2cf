"""Utility modules for logging, AWS clients, errors and retries."""

from bam_deploy.utils.aws_client import AWSClientManager
from bam_deploy.utils.retry import RetryExecutor, with_retry
from bam_deploy.utils.errors import (
    ErrorCategory,
    ErrorContext,
    DeploymentError,
    ConfigurationError,
    CredentialError,
    StateError,
    ProvisioningError,
    ValidationError,
    RetryExhaustedError,
    ErrorHandler,
    error_handler
)
from bam_deploy.utils.logging import LogContext, get_logger, setup_logging

__all__ = [
    # AWS Client
    'AWSClientManager',

    # Retry
    'RetryExecutor',
    'with_retry',

    # Errors
    'ErrorCategory',
    'ErrorContext',
    'DeploymentError',
    'ConfigurationError',
    'CredentialError',
    'StateError',
    'ProvisioningError',
    'ValidationError',
    'RetryExhaustedError',
    'ErrorHandler',
    'error_handler',

    # Logging
    'LogContext',
    'get_logger',
    'setup_logging',
]
