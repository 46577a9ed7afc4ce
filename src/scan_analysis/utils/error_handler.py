"""
Error taxonomy, retry logic and error responses for the scan analysis service.

Every error raised on the synchronous request path is a ScanAnalysisError
subclass carrying the HTTP status it maps to. Errors raised inside a
background analysis run are never surfaced this way; the orchestrator
records them as a failed transition instead.
"""

import logging
import random
import time
import functools
from typing import Any, Callable, Dict, Optional, Union
from dataclasses import dataclass
from enum import Enum

from botocore.exceptions import ClientError, BotoCoreError


logger = logging.getLogger(__name__)


class ErrorType(Enum):
    """Classification of error types for different handling strategies"""
    TRANSIENT = "transient"  # Temporary errors that can be retried
    PERMANENT = "permanent"  # Permanent errors that should not be retried
    THROTTLING = "throttling"  # Rate limiting errors
    AUTHENTICATION = "authentication"  # Auth/permission errors
    VALIDATION = "validation"  # Input validation errors


@dataclass
class RetryConfig:
    """Configuration for retry behavior"""
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    backoff_multiplier: float = 2.0
    jitter: bool = True


@dataclass
class ErrorContext:
    """Context information for error handling"""
    function_name: str
    operation: str
    resource_id: Optional[str] = None
    user_id: Optional[str] = None
    additional_context: Optional[Dict[str, Any]] = None


class ScanAnalysisError(Exception):
    """Base class for errors surfaced to API callers."""
    status_code = 500
    default_error_type = ErrorType.PERMANENT

    def __init__(self, message: str, error_type: Optional[ErrorType] = None):
        super().__init__(message)
        self.message = message
        self.error_type = error_type or self.default_error_type


class NotFoundError(ScanAnalysisError):
    """A scan or analysis does not exist."""
    status_code = 404


class ConflictError(ScanAnalysisError):
    """The requested state transition is not allowed from the current state."""
    status_code = 409


class ValidationError(ScanAnalysisError):
    """The request is malformed or references something that cannot be analyzed."""
    status_code = 400
    default_error_type = ErrorType.VALIDATION


class InferenceError(ScanAnalysisError):
    """The external inference call failed, timed out or returned garbage."""
    status_code = 502

    def __init__(self, message: str, error_type: Optional[ErrorType] = None,
                 endpoint: Optional[str] = None, http_status: Optional[int] = None):
        super().__init__(message, error_type)
        self.endpoint = endpoint
        self.http_status = http_status


class StorageError(ScanAnalysisError):
    """A stored image artifact could not be read or written."""
    status_code = 502


class AuthorizationError(ScanAnalysisError, PermissionError):
    """The caller is not allowed to perform an administrative action."""
    status_code = 403
    default_error_type = ErrorType.AUTHENTICATION


class CapacityError(ScanAnalysisError):
    """The background dispatcher cannot accept more work right now."""
    status_code = 503
    default_error_type = ErrorType.THROTTLING


class RetryableError(Exception):
    """Exception that indicates an operation should be retried"""
    def __init__(self, message: str, error_type: ErrorType = ErrorType.TRANSIENT):
        super().__init__(message)
        self.error_type = error_type


def classify_aws_error(error: Union[ClientError, BotoCoreError]) -> ErrorType:
    """
    Classify AWS errors to determine retry strategy

    Args:
        error: AWS SDK error

    Returns:
        ErrorType classification
    """
    if isinstance(error, ClientError):
        error_code = error.response.get('Error', {}).get('Code', '')

        if error_code in ['Throttling', 'ThrottlingException', 'SlowDown', 'RequestLimitExceeded']:
            return ErrorType.THROTTLING

        if error_code in ['AccessDenied', 'InvalidAccessKeyId', 'SignatureDoesNotMatch']:
            return ErrorType.AUTHENTICATION

        if error_code in ['NoSuchKey', 'NoSuchBucket', '404', 'NotFound']:
            return ErrorType.PERMANENT

        if error_code in ['ServiceUnavailable', 'InternalError', 'RequestTimeout']:
            return ErrorType.TRANSIENT

        status_code = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode', 0)
        if status_code >= 500:
            return ErrorType.TRANSIENT
        elif status_code in [400, 403, 404]:
            return ErrorType.PERMANENT
        elif status_code == 429:
            return ErrorType.THROTTLING

    # Default to transient for BotoCoreError and unknown errors
    return ErrorType.TRANSIENT


def exponential_backoff(attempt: int, config: RetryConfig) -> float:
    """
    Calculate exponential backoff delay

    Args:
        attempt: Current attempt number (0-based)
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay = config.initial_delay * (config.backoff_multiplier ** attempt)
    delay = min(delay, config.max_delay)

    if config.jitter:
        delay *= (0.5 + random.random() * 0.5)  # Add 0-50% jitter

    return delay


def retry_with_backoff(
    config: RetryConfig = None,
    retryable_exceptions: tuple = (RetryableError, ClientError, BotoCoreError),
):
    """
    Decorator for adding retry logic with exponential backoff.

    AWS errors classified as permanent, authentication or validation are
    re-raised immediately without further attempts.

    Args:
        config: Retry configuration
        retryable_exceptions: Exceptions that should trigger retries
    """
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            last_exception = None

            for attempt in range(config.max_attempts):
                try:
                    return func(*args, **kwargs)

                except retryable_exceptions as e:
                    last_exception = e

                    if isinstance(e, (ClientError, BotoCoreError)):
                        error_type = classify_aws_error(e)
                        if error_type in [ErrorType.PERMANENT, ErrorType.AUTHENTICATION, ErrorType.VALIDATION]:
                            logger.error(f"Non-retryable AWS error in {func.__name__}: {e}")
                            raise

                    if attempt < config.max_attempts - 1:
                        delay = exponential_backoff(attempt, config)
                        logger.warning(
                            f"Attempt {attempt + 1} failed for {func.__name__}: {e}. "
                            f"Retrying in {delay:.2f} seconds..."
                        )
                        time.sleep(delay)
                    else:
                        logger.error(f"All {config.max_attempts} attempts failed for {func.__name__}")

            raise last_exception

        return wrapper
    return decorator


class ErrorHandler:
    """Centralized error handler for API requests"""

    def __init__(self, context: ErrorContext):
        self.context = context
        self.logger = logging.getLogger(f"{__name__}.{context.function_name}")

    def handle_error(self, error: Exception, operation: str = None) -> Dict[str, Any]:
        """
        Handle and log errors with appropriate context

        Args:
            error: The exception that occurred
            operation: Optional operation description

        Returns:
            Error information dictionary
        """
        operation = operation or self.context.operation

        error_info = {
            'error_type': type(error).__name__,
            'error_message': str(error),
            'function_name': self.context.function_name,
            'operation': operation,
            'resource_id': self.context.resource_id,
            'user_id': self.context.user_id
        }

        if self.context.additional_context:
            error_info.update(self.context.additional_context)

        if isinstance(error, ScanAnalysisError):
            if error.status_code >= 500:
                self.logger.error(f"Error in {operation}: {error}")
            else:
                self.logger.info(f"Rejected {operation}: {error}")
        else:
            self.logger.error(f"Unexpected error in {operation}: {error}")

        return error_info

    def create_error_response(self, error: Exception) -> Dict[str, Any]:
        """
        Create a standardized error response

        Args:
            error: The exception that occurred

        Returns:
            Response dictionary with statusCode, headers and body
        """
        error_info = self.handle_error(error)
        status_code = error.status_code if isinstance(error, ScanAnalysisError) else 500

        return {
            'statusCode': status_code,
            'headers': {
                'X-Error-Type': error_info['error_type']
            },
            'body': {
                'status': 'error',
                'message': error_info['error_message'],
                'error_type': error_info['error_type'],
                'operation': error_info['operation']
            }
        }
