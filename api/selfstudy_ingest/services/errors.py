class IngestError(Exception):
    """Base error for document ingestion."""


class ValidationError(IngestError):
    """Raised when a request is missing data or carries an invalid value."""


class UnsupportedFormatError(ValidationError):
    """Raised when the uploaded file is not a PDF, DOCX or PPTX document."""


class DocumentParseError(IngestError):
    """Raised when a supported document cannot be read."""


class ExternalServiceError(IngestError):
    """Raised when the external classifier rejects, times out or returns garbage."""


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""
