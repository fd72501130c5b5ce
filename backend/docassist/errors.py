"""Error taxonomy for the knowledge engine."""


class DocAssistError(Exception):
    """Base class for engine errors."""

    pass


class ValidationError(DocAssistError):
    """Malformed, oversized or missing input. Rejected before any external call."""

    pass


class EmptyContentError(DocAssistError):
    """Content normalized to nothing, or chunking produced zero chunks."""

    pass


class ExternalServiceError(DocAssistError):
    """The hosted retrieval/completion service failed.

    Attributes:
        operation: Name of the failed operation (e.g. "upload_file")
    """

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
