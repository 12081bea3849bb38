"""Custom exceptions for the consignment ledger application."""

class LedgerError(Exception):
    """Base exception for all application errors."""
    def __init__(self, message="An internal error occurred", status_code=500, error='internal_error', payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error = error
        self.payload = payload

    def to_dict(self):
        rv = dict(self.payload or ())
        rv['error'] = self.error
        rv['message'] = self.message
        return rv

class ConfigurationError(LedgerError):
    """A required external dependency or setting is absent. Fatal, never falls back."""
    def __init__(self, message="Missing configuration", missing=None):
        payload = {'missing': list(missing)} if missing else None
        super().__init__(message, 500, 'missing_env', payload)

class AuthError(LedgerError):
    """Missing or invalid credential."""
    def __init__(self, message="Unauthorized"):
        super().__init__(message, 401, 'unauthorized')

class ForbiddenError(LedgerError):
    """Raised when a user's role lacks permission for an action."""
    def __init__(self, message="Forbidden"):
        super().__init__(message, 403, 'forbidden')

class ValidationError(LedgerError):
    """Exception raised for invalid request parameters."""
    def __init__(self, message, error='invalid_params'):
        super().__init__(message, 400, error)

class NotFoundError(LedgerError):
    """Exception raised when a resource is not found."""
    def __init__(self, message="Resource not found", error='not_found'):
        super().__init__(message, 404, error)

class DataSourceError(LedgerError):
    """A data store query failed for a reason other than a missing relation."""
    def __init__(self, message, error='data_source_error'):
        super().__init__(message, 500, error)
