"""Domain exceptions for the invoice pipeline.

Rule failures found during compliance checks are never raised; they are
returned as ``Violation``/``ValidationWarning`` data. The exceptions below
signal conditions that stop or degrade a pipeline stage.
"""


class InvoicePipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, details: dict | None = None):
        """Initialize InvoicePipelineError.

        Args:
            message: Human-readable error message
            details: Optional dictionary with additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvoiceNotFoundError(InvoicePipelineError):
    """Raised when an invoice (or its owning client) does not exist."""

    def __init__(self, invoice_id: str):
        super().__init__(f"Invoice not found: {invoice_id}", {"invoice_id": invoice_id})
        self.invoice_id = invoice_id


class UnauthorizedAccessError(InvoicePipelineError):
    """Raised when a user tries to process an invoice of another client."""

    def __init__(self, invoice_id: str, user_id: str):
        super().__init__(
            "Unauthorized access to invoice",
            {"invoice_id": invoice_id, "user_id": user_id},
        )
        self.invoice_id = invoice_id
        self.user_id = user_id


class ExtractionError(InvoicePipelineError):
    """Raised when the field extractor (OCR or LLM vendor) fails.

    Always fatal for a pipeline run.
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        document_ref: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(message, details)
        self.provider = provider
        self.document_ref = document_ref


class CategorizationError(InvoicePipelineError):
    """Raised when the categorization stage cannot produce a result."""


class ComplianceCheckError(InvoicePipelineError):
    """Raised when the compliance validator itself breaks.

    Distinct from an invoice that merely scores low.
    """


class PersistenceError(InvoicePipelineError):
    """Raised when the persistence layer rejects a read or write."""


class BatchSizeLimitError(InvoicePipelineError, ValueError):
    """Raised when a batch request exceeds the configured size cap."""

    def __init__(self, size: int, limit: int):
        super().__init__(
            f"Maximum {limit} invoices can be processed in one batch (got {size})",
            {"size": size, "limit": limit},
        )
        self.size = size
        self.limit = limit


class PipelineCancelledError(InvoicePipelineError):
    """Raised when a run is cancelled before all stages complete."""
