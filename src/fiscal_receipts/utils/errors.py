class NotFoundError(Exception):
    """Raised when an expected DB record does not exist."""


class ConflictError(Exception):
    """Raised when an operation violates a uniqueness or business constraint."""


class InvalidTransitionError(ConflictError):
    """Raised when a document status change is not allowed by the lifecycle."""


class CipherError(Exception):
    """Raised when a credential envelope cannot be decrypted or a key is unusable."""


class CredentialsError(Exception):
    """Raised when stored portal credentials are missing, unverified or invalid."""
