"""
Newsdeck error taxonomy.

    ValidationError   — malformed payload, rejected with a 4xx and a message
    PersistenceError  — storage/transaction failure, batch not committed
    NotificationError — broadcast or local queue failure, logged and dropped
    ConfigError       — configuration file is invalid
"""


class NewsdeckError(Exception):
    """Base class for all newsdeck errors."""
    pass


class ValidationError(NewsdeckError):
    """Raised when an ingestion payload is malformed."""

    status = 400

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


class PersistenceError(NewsdeckError):
    """Raised when a batch could not be written to the store."""
    pass


class NotificationError(NewsdeckError):
    """Raised by broadcast transports when a publish fails."""
    pass


class ConfigError(NewsdeckError):
    """Raised when configuration is invalid or incomplete."""
    pass
