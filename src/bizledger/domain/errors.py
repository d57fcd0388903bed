class AppError(Exception):
    """Base app error."""


class ValidationError(AppError):
    pass


class DuplicateNameError(ValidationError):
    pass


class NotFoundError(AppError):
    pass


class BatchClosedError(ValidationError):
    pass


class SchemaMigrationError(AppError):
    """Schema upgrade failed; the store must not be used."""


class TransactionError(AppError):
    """A composite write failed and was rolled back."""


class SyncError(AppError):
    pass
