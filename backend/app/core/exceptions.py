"""
Custom Exceptions

Application-specific exception classes for better error handling
and more informative error messages.

Provider failures are deliberately absent here: adapters never raise,
they return a ProviderError value (see app.services.providers.base).
"""


class ModelCompareError(Exception):
    """Base exception for all application errors."""
    pass


class ConfigurationError(ModelCompareError):
    """Invalid wiring detected at startup."""
    pass


# === Orchestration Errors ===

class OrchestrationFault(ModelCompareError):
    """
    A fault that aborts a whole query run.

    Raised out of the orchestrator so the job scheduler can apply
    its retry policy.
    """
    def __init__(self, query_id: str, message: str):
        self.query_id = query_id
        self.message = message
        super().__init__(f"Query {query_id}: {message}")


class UserNotFoundError(OrchestrationFault):
    """Owner of a query could not be resolved."""
    def __init__(self, query_id: str, user_id: str):
        super().__init__(query_id, f"User not found: {user_id}")
        self.user_id = user_id


class QueryNotFoundError(ModelCompareError):
    """Query with given ID was not found."""
    def __init__(self, query_id: str):
        self.query_id = query_id
        super().__init__(f"Query not found: {query_id}")


class InvalidStateError(ModelCompareError):
    """Requested lifecycle transition is not allowed."""
    def __init__(self, query_id: str, current: str, requested: str):
        self.query_id = query_id
        self.current = current
        self.requested = requested
        super().__init__(f"Query {query_id} cannot move from {current} to {requested}")


class UnsupportedModelError(ModelCompareError):
    """No registered provider serves the model identifier."""
    def __init__(self, model_id: str):
        self.model_id = model_id
        super().__init__(f"No provider found for model: {model_id}")


class UnknownProviderError(ModelCompareError):
    """Provider name is not registered."""
    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Unknown provider: {provider}")


# === Scoring Errors ===

class InsufficientDataError(ModelCompareError):
    """Fewer than two usable responses; scoring is skipped."""
    def __init__(self, found: int, minimum: int = 2):
        self.found = found
        self.minimum = minimum
        super().__init__(f"Only found {found} completed responses, minimum required is {minimum}")


# === Credential Errors ===

class CredentialError(ModelCompareError):
    """Stored credential could not be decrypted."""
    def __init__(self, provider: str, detail: str = None):
        msg = f"Failed to decrypt API key for {provider}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)
        self.provider = provider


# === Cache Errors ===

class CacheError(ModelCompareError):
    """Base exception for cache-related errors."""
    pass


class CacheConnectionError(CacheError):
    """Failed to connect to cache backend."""
    def __init__(self, host: str, port: int = None, detail: str = None):
        if port:
            msg = f"Failed to connect to cache at {host}:{port}"
        else:
            msg = f"Failed to connect to {host} cache"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)
        self.host = host
        self.port = port
