"""Error types and AWS error classification for deploy operations."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError, NoCredentialsError, PartialCredentialsError

from bam_deploy.utils.logging import get_logger

logger = get_logger(__name__)


class ErrorCategory(Enum):
    """Categories of errors that can occur during a deploy."""
    CONFIGURATION = "configuration"
    AWS = "aws"
    NETWORK = "network"
    STATE = "state"
    PROVISIONING = "provisioning"
    CREDENTIAL = "credential"
    PERMISSION = "permission"
    VALIDATION = "validation"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


@dataclass
class ErrorContext:
    """Context information for an error."""
    resource_name: Optional[str] = None
    resource_type: Optional[str] = None
    operation: Optional[str] = None
    aws_operation: Optional[str] = None
    request_id: Optional[str] = None
    additional_info: Optional[Dict[str, Any]] = None


class DeploymentError(Exception):
    """Base exception for deploy errors."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        context: Optional[ErrorContext] = None,
        cause: Optional[Exception] = None,
        suggestions: Optional[List[str]] = None
    ):
        """Initialize deployment error.

        Args:
            message: Human-readable error message
            category: Error category
            context: Additional context about the error
            cause: Original exception that caused this error
            suggestions: List of suggested fixes
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.context = context or ErrorContext()
        self.cause = cause
        self.suggestions = suggestions or []

    def to_user_message(self) -> str:
        """Format the error for display to the user."""
        lines = [f"Error: {self.message}"]

        if self.context.resource_name:
            lines.append(f"   Resource: {self.context.resource_name}")
        if self.context.operation:
            lines.append(f"   Operation: {self.context.operation}")
        if self.cause:
            lines.append(f"   Cause: {self.cause}")

        if self.suggestions:
            lines.append("\nSuggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for logging."""
        return {
            'message': self.message,
            'category': self.category.value,
            'context': {
                'resource_name': self.context.resource_name,
                'resource_type': self.context.resource_type,
                'operation': self.context.operation,
                'aws_operation': self.context.aws_operation,
                'request_id': self.context.request_id,
                'additional_info': self.context.additional_info,
            },
            'cause': str(self.cause) if self.cause else None,
            'suggestions': self.suggestions,
        }


class ConfigurationError(DeploymentError):
    """Missing or invalid project configuration."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.CONFIGURATION, **kwargs)


class CredentialError(DeploymentError):
    """Error related to AWS credentials."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.CREDENTIAL, **kwargs)


class StateError(DeploymentError):
    """Local state files could not be read or written."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.STATE, **kwargs)


class ProvisioningError(DeploymentError):
    """A remote mutation failed."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault('category', ErrorCategory.PROVISIONING)
        super().__init__(message, **kwargs)


class ValidationError(DeploymentError):
    """A request was rejected before any remote call was made."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, category=ErrorCategory.VALIDATION, **kwargs)


class RetryExhaustedError(DeploymentError):
    """A throttled call kept failing after every allowed attempt."""

    def __init__(self, message: str, attempts: int, **kwargs):
        super().__init__(message, category=ErrorCategory.TRANSIENT, **kwargs)
        self.attempts = attempts


def get_error_code(error: Exception) -> Optional[str]:
    """Return the AWS error code of a ClientError, or None for anything else."""
    if isinstance(error, ClientError):
        return error.response.get('Error', {}).get('Code')
    return None


class ErrorHandler:
    """Converts AWS and local exceptions into categorized DeploymentErrors."""

    AWS_ERROR_MAPPING = {
        'AccessDenied': {
            'category': ErrorCategory.PERMISSION,
            'message': 'Access denied - insufficient permissions',
            'suggestions': [
                'Check IAM policies attached to your user/role',
                'Verify you are operating in the correct AWS region',
            ]
        },
        'AccessDeniedException': {
            'category': ErrorCategory.PERMISSION,
            'message': 'Access denied - insufficient permissions',
            'suggestions': [
                'Check IAM policies attached to your user/role',
            ]
        },
        'TooManyRequestsException': {
            'category': ErrorCategory.TRANSIENT,
            'message': 'API rate limit exceeded',
            'suggestions': [
                'Wait a minute and run the command again',
                'Avoid running several deploys against the same API at once',
            ]
        },
        'NotFoundException': {
            'category': ErrorCategory.PROVISIONING,
            'message': 'Resource not found',
            'suggestions': [
                'Check if the API was deleted manually',
                'Run redeploy again so the local state is re-validated',
            ]
        },
        'ResourceNotFoundException': {
            'category': ErrorCategory.PROVISIONING,
            'message': 'Resource not found',
            'suggestions': [
                'Verify the function exists in the configured region',
            ]
        },
        'NoSuchEntity': {
            'category': ErrorCategory.PROVISIONING,
            'message': 'IAM entity not found',
            'suggestions': [
                'Run `bam role <name>` to create the execution role',
            ]
        },
        'ConflictException': {
            'category': ErrorCategory.PROVISIONING,
            'message': 'Conflicting change on the API',
            'suggestions': [
                'Another change to this API is in progress, retry shortly',
            ]
        },
        'ResourceConflictException': {
            'category': ErrorCategory.PROVISIONING,
            'message': 'Resource already exists or is being updated',
            'suggestions': [
                'Wait for the pending update to finish',
            ]
        },
        'EntityAlreadyExists': {
            'category': ErrorCategory.PROVISIONING,
            'message': 'IAM entity already exists',
            'suggestions': [
                'Use the existing role or pick a different name',
            ]
        },
        'BadRequestException': {
            'category': ErrorCategory.VALIDATION,
            'message': 'Invalid request',
            'suggestions': [
                'Review the error message for the offending parameter',
            ]
        },
        'InvalidParameterValueException': {
            'category': ErrorCategory.VALIDATION,
            'message': 'Invalid parameter value',
            'suggestions': [
                'Check the runtime, handler and role settings',
            ]
        },
    }

    def handle_exception(
        self,
        error: Exception,
        context: Optional[ErrorContext] = None
    ) -> DeploymentError:
        """Convert an exception into a DeploymentError.

        Args:
            error: The exception to handle
            context: Additional context about where the error occurred

        Returns:
            DeploymentError with categorization and suggestions
        """
        context = context or ErrorContext()

        if isinstance(error, DeploymentError):
            return error

        if isinstance(error, ClientError):
            return self._handle_aws_error(error, context)

        if isinstance(error, NoCredentialsError):
            return CredentialError(
                'No AWS credentials found',
                context=context,
                cause=error,
                suggestions=[
                    'Configure AWS credentials using: aws configure',
                    'Specify a profile with --profile',
                ]
            )

        if isinstance(error, PartialCredentialsError):
            return CredentialError('Incomplete AWS credentials', context=context, cause=error)

        return DeploymentError(
            message=str(error),
            category=ErrorCategory.UNKNOWN,
            context=context,
            cause=error,
            suggestions=['Check .bam/logs for more details']
        )

    def _handle_aws_error(self, error: ClientError, context: ErrorContext) -> DeploymentError:
        error_code = get_error_code(error) or 'Unknown'
        error_message = error.response.get('Error', {}).get('Message', str(error))
        context.request_id = error.response.get('ResponseMetadata', {}).get('RequestId')
        context.aws_operation = getattr(error, 'operation_name', None)

        error_info = self.AWS_ERROR_MAPPING.get(error_code)
        if error_info:
            return ProvisioningError(
                f"{error_info['message']}: {error_message}",
                category=error_info['category'],
                context=context,
                cause=error,
                suggestions=error_info['suggestions']
            )

        return ProvisioningError(
            f"AWS Error ({error_code}): {error_message}",
            category=ErrorCategory.AWS,
            context=context,
            cause=error,
        )

    def log_error(self, error: DeploymentError) -> None:
        """Log an error and its full details at debug level."""
        logger.error(error.to_user_message())
        logger.debug(f"Error details: {error.to_dict()}")


error_handler = ErrorHandler()
