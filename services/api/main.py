"""FastAPI application for the invoice compliance pipeline.

Production-ready API with:
- Health and readiness checks for Kubernetes
- Single-invoice and batch pipeline processing
- Pipeline status snapshots
- Manual approve/reject workflow
- Prometheus metrics for monitoring

Based on FastAPI best practices:
https://fastapi.tiangolo.com/
"""

import logging
import time

from fastapi import FastAPI, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, Field

from services.api import metrics
from services.pipeline.approval import ApprovalResult, ApprovalService
from services.pipeline.notes import result_message
from services.pipeline.orchestrator import PipelineOrchestrator
from services.pipeline.schema import (
    BatchSummary,
    PipelineConfig,
    PipelineResult,
    PipelineStatusSnapshot,
)
from services.repository.store import InMemoryInvoiceRepository
from services.shared.config import get_settings
from services.shared.errors import (
    BatchSizeLimitError,
    InvoiceNotFoundError,
    UnauthorizedAccessError,
)

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Invoice Compliance Pipeline",
    description="GST invoice extraction, categorization, validation and approval API",
    version=settings.service_version,
)

repository = InMemoryInvoiceRepository()
orchestrator = PipelineOrchestrator.from_settings(settings, repository)
approval_service = ApprovalService(repository)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Middleware to collect request metrics.

    Tracks:
    - Request count by method, endpoint, and status
    - Request duration by method and endpoint
    """
    # Skip metrics for /metrics endpoint itself
    if request.url.path == "/metrics":
        return await call_next(request)

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    # Route template keeps invoice ids out of the label set
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)

    metrics.http_requests_total.labels(
        method=request.method,
        endpoint=endpoint,
        status=response.status_code,
    ).inc()

    metrics.http_request_duration_seconds.labels(
        method=request.method,
        endpoint=endpoint,
    ).observe(duration)

    return response


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool


class PipelineOptions(BaseModel):
    """Per-request overrides of the pipeline configuration."""

    skip_extraction: bool | None = None
    skip_categorization: bool | None = None
    skip_validation: bool | None = None
    auto_approve_threshold: float | None = Field(None, ge=0, le=1)
    review_threshold: float | None = Field(None, ge=0, le=1)
    retry_on_error: bool | None = None
    max_retries: int | None = Field(None, ge=0)


class ProcessRequest(BaseModel):
    """Single-invoice processing request."""

    user_id: str | None = None
    config: PipelineOptions | None = None


class ProcessResponse(BaseModel):
    """Single-invoice processing response."""

    success: bool
    message: str
    data: PipelineResult


class BatchRequest(BaseModel):
    """Batch processing request."""

    invoice_ids: list[str]
    user_id: str | None = None
    config: PipelineOptions | None = None


class BatchResponse(BaseModel):
    """Batch processing response; results keep the request order."""

    success: bool
    summary: BatchSummary
    results: list[PipelineResult]


class ApproveRequest(BaseModel):
    """Manual approval request."""

    approved_by: str
    notes: str | None = None


class RejectRequest(BaseModel):
    """Rejection request; a reason is mandatory."""

    rejected_by: str
    reason: str = Field(..., min_length=1)


def _build_config(options: PipelineOptions | None) -> PipelineConfig:
    overrides = options.model_dump(exclude_none=True) if options else {}
    try:
        return PipelineConfig.from_settings(settings, **overrides)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e


def _raise_for_access(result: PipelineResult) -> None:
    kinds = {error.kind for error in result.errors}
    if "not_found" in kinds:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    if "unauthorized" in kinds:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized access to invoice"
        )


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check() -> HealthResponse:
    """Health check endpoint for liveness probe.

    Returns:
        Health status information
    """
    return HealthResponse(
        status="healthy", version=settings.service_version, service=settings.service_name
    )


@app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
def readiness_check() -> ReadinessResponse:
    """Readiness check endpoint for Kubernetes readiness probe.

    Returns:
        Readiness status
    """
    return ReadinessResponse(ready=True)


@app.get("/metrics", tags=["Monitoring"])
def get_metrics() -> Response:
    """Prometheus metrics endpoint.

    Returns:
        Prometheus metrics in text format
    """
    metrics_data, content_type = metrics.get_metrics()
    return Response(content=metrics_data, media_type=content_type)


@app.post(
    "/api/v1/invoices/{invoice_id}/process",
    response_model=ProcessResponse,
    tags=["Pipeline"],
)
def process_invoice(invoice_id: str, request: ProcessRequest | None = None) -> ProcessResponse:
    """Run one invoice through extraction, categorization, validation and approval.

    ## Error Handling

    - Returns 404 if the invoice does not exist
    - Returns 403 if `user_id` does not own the invoice
    - Returns 400 if the config overrides are inconsistent
    - Returns 200 with `success: false` when a stage failed fatally

    Args:
        invoice_id: Invoice to process
        request: Optional requesting user and config overrides

    Returns:
        Pipeline result with a human-readable message
    """
    request = request or ProcessRequest()
    config = _build_config(request.config)

    logger.info(f"Starting pipeline processing for invoice {invoice_id}")
    result = orchestrator.process(invoice_id, user_id=request.user_id, config=config)
    _raise_for_access(result)

    return ProcessResponse(success=result.success, message=result_message(result), data=result)


@app.post("/api/v1/invoices/process/batch", response_model=BatchResponse, tags=["Pipeline"])
def process_batch(request: BatchRequest) -> BatchResponse:
    """Process up to the configured maximum of invoices in one request.

    Returns:
        Summary counts plus one result per invoice, in request order

    Raises:
        HTTPException: 400 if the list is empty or over the size limit
    """
    if not request.invoice_ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="invoice_ids must be a non-empty array",
        )

    config = _build_config(request.config)
    try:
        batch = orchestrator.process_batch(
            request.invoice_ids, user_id=request.user_id, config=config
        )
    except BatchSizeLimitError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message) from e

    metrics.batch_size_invoices.observe(len(request.invoice_ids))
    return BatchResponse(success=True, summary=batch.summary, results=batch.results)


@app.get(
    "/api/v1/invoices/{invoice_id}/status",
    response_model=PipelineStatusSnapshot,
    tags=["Pipeline"],
)
def get_pipeline_status(
    invoice_id: str,
    user_id: str | None = Query(None, description="Requesting user; must own the invoice"),
) -> PipelineStatusSnapshot:
    """Stage completion snapshot for an invoice."""
    try:
        return orchestrator.status(invoice_id, user_id=user_id)
    except InvoiceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message) from e
    except UnauthorizedAccessError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=e.message) from e


def _approval_response(action: str, result: ApprovalResult) -> ApprovalResult:
    metrics.approval_actions_total.labels(
        action=action, status="success" if result.success else "failed"
    ).inc()
    if result.success:
        return result
    if result.message == "Invoice not found":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.message)
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.message)


@app.post(
    "/api/v1/invoices/{invoice_id}/approve",
    response_model=ApprovalResult,
    tags=["Approval"],
)
def approve_invoice(invoice_id: str, request: ApproveRequest) -> ApprovalResult:
    """Manually approve an invoice, optionally with reviewer notes."""
    result = approval_service.manual_approve(invoice_id, request.approved_by, request.notes)
    return _approval_response("approve", result)


@app.post(
    "/api/v1/invoices/{invoice_id}/reject",
    response_model=ApprovalResult,
    tags=["Approval"],
)
def reject_invoice(invoice_id: str, request: RejectRequest) -> ApprovalResult:
    """Reject an invoice with a mandatory reason."""
    result = approval_service.reject(invoice_id, request.rejected_by, request.reason)
    return _approval_response("reject", result)
