"""
Custom exception hierarchy for the tag-map pipeline.

This module defines a structured hierarchy of exceptions that allows the batch
runner to tell configuration problems, oracle failures and cache problems apart.
"""


class TagMapError(Exception):
    """Base class for all application-specific errors."""
    pass


class ConfigurationError(TagMapError):
    """Raised when there are configuration-related issues."""
    pass


class PromptFileError(ConfigurationError):
    """Raised when a mandatory stage prompt cannot be loaded."""

    def __init__(self, prompt_path: str, reason: str = None):
        self.prompt_path = prompt_path
        self.reason = reason

        message = f"Cannot load stage prompt: {prompt_path}"
        if reason:
            message += f" - {reason}"

        super().__init__(message)


class CorpusError(TagMapError):
    """Raised when the metadata corpus directory cannot be scanned."""

    def __init__(self, path: str, reason: str = None):
        self.path = path
        self.reason = reason

        message = f"Cannot read metadata corpus at {path}"
        if reason:
            message += f": {reason}"

        super().__init__(message)


class OraclePipelineError(TagMapError):
    """Base class for errors raised while talking to the classification oracle."""
    pass


class OracleCommunicationError(OraclePipelineError):
    """Raised for network failures and non-2xx responses."""

    def __init__(self, message: str, status_code: int = None, body: str = None):
        self.status_code = status_code
        self.body = body

        if status_code is not None:
            message = f"{message} (status {status_code})"
        if body:
            message += f" - {body[:300]}"

        super().__init__(message)


class OracleTimeoutError(OracleCommunicationError):
    """Raised when an oracle request times out."""

    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Oracle request timed out after {timeout_seconds} seconds")


class MalformedOracleResponse(OraclePipelineError):
    """Raised when oracle output is not a JSON array."""

    def __init__(self, raw_output: str, reason: str):
        self.raw_output = raw_output
        self.reason = reason

        message = f"Malformed oracle response: {reason}"
        super().__init__(message)

    @property
    def snippet(self) -> str:
        return (self.raw_output or "")[:1000]


class CacheError(TagMapError):
    """Raised when cache or result-log operations fail."""

    def __init__(self, cache_type: str, operation: str, reason: str = None):
        self.cache_type = cache_type
        self.operation = operation
        self.reason = reason

        message = f"Cache error in {cache_type} during {operation}"
        if reason:
            message += f": {reason}"

        super().__init__(message)


class FilesystemError(TagMapError):
    """Raised when filesystem operations fail."""

    def __init__(self, path: str, operation: str, reason: str = None):
        self.path = path
        self.operation = operation
        self.reason = reason

        message = f"Filesystem error during {operation} on {path}"
        if reason:
            message += f": {reason}"

        super().__init__(message)
