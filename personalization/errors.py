"""Error types raised across the personalization pipeline."""


class PersonalizationError(RuntimeError):
    """Base class for personalization failures."""


class ValidationError(PersonalizationError):
    """Raised when a single item carries a malformed or missing embedding."""


class ConfigurationError(PersonalizationError):
    """Raised when embeddings in one run do not share a dimensionality."""


class StorageError(PersonalizationError):
    """Raised when a backing store cannot read or persist data."""


class CacheError(PersonalizationError):
    """Raised by cache backends; callers treat it as a miss."""
