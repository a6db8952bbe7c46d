"""Error taxonomy for the expense categorizer.

Request-level errors (validation, authorization, not found) are translated to HTTP status codes by the API layer.
Pipeline errors (classification, delivery) are caught by the worker and turned into expense status writes or queue
redeliveries. Configuration errors are fatal at startup.
"""


class CategorizerError(Exception):
    """Base class for all categorizer errors."""


class ValidationError(CategorizerError):
    """A request or batch is malformed."""


class AuthorizationError(CategorizerError):
    """The requester does not own the resource."""


class NotFoundError(CategorizerError):
    """The requested expense does not exist."""


class ConfigurationError(CategorizerError):
    """A required setting is missing or invalid."""


class ClassificationError(CategorizerError):
    """The classification service failed after retries or returned an unusable payload."""


class DeliveryFailure(CategorizerError):
    """A work queue operation failed."""
