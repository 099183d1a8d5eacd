"""Label quoting, purchase, refund and batch endpoints."""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status

from shipping_schemas import Address, AddressValidation

from ..domain.account import Account
from ..domain.batches import BatchRow, BatchService
from ..domain.labels import LabelOrchestrator, LabelResult
from ..domain.shipment import ShipmentStatus
from .deps import current_account, get_batch_service, get_label_orchestrator
from .models import (
    BatchListResponse,
    BatchRequest,
    BatchResponse,
    LabelResponse,
    Pagination,
    PurchaseRequest,
    RateResponse,
    RatesRequest,
    RatesResponse,
    RefundRequest,
    ShipmentListResponse,
    ShipmentResponse,
    TransactionResponse,
)

router = APIRouter()


def _label_response(result: LabelResult) -> LabelResponse:
    return LabelResponse(
        shipment=ShipmentResponse.from_domain(result.shipment),
        transaction=TransactionResponse.from_domain(result.transaction),
        credit_balance=float(result.credit_balance),
    )


@router.post("/labels/validate-address", response_model=AddressValidation, tags=["labels"])
def validate_address(
    payload: Address,
    actor: Account = Depends(current_account),
    orchestrator: LabelOrchestrator = Depends(get_label_orchestrator),
) -> AddressValidation:
    return orchestrator.validate_address(actor, payload)


@router.post("/labels/rates", response_model=RatesResponse, tags=["labels"])
def get_rates(
    payload: RatesRequest,
    actor: Account = Depends(current_account),
    orchestrator: LabelOrchestrator = Depends(get_label_orchestrator),
) -> RatesResponse:
    """Quote every available rate for the route, cheapest first."""
    rates = orchestrator.get_rates(actor, payload.from_address, payload.to_address, payload.parcel)
    return RatesResponse(rates=[RateResponse.from_rate(rate) for rate in rates])


@router.post("/labels/purchase", response_model=LabelResponse, tags=["labels"])
def purchase_label(
    payload: PurchaseRequest,
    actor: Account = Depends(current_account),
    orchestrator: LabelOrchestrator = Depends(get_label_orchestrator),
) -> LabelResponse:
    """Buy the label for a quoted rate and debit its cost from the caller."""
    result = orchestrator.purchase(
        actor,
        payload.rate_id,
        payload.label_format,
        from_address=payload.from_address.model_dump() if payload.from_address else None,
        to_address=payload.to_address.model_dump() if payload.to_address else None,
        parcel=payload.parcel.model_dump() if payload.parcel else None,
    )
    return _label_response(result)


@router.post("/labels/refund", response_model=LabelResponse, tags=["labels"])
def refund_label(
    payload: RefundRequest,
    actor: Account = Depends(current_account),
    orchestrator: LabelOrchestrator = Depends(get_label_orchestrator),
) -> LabelResponse:
    """Refund a purchased label; the cost is credited back to the label owner."""
    return _label_response(orchestrator.refund(actor, payload.transaction_id))


@router.get("/labels", response_model=ShipmentListResponse, tags=["labels"])
def list_labels(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    status_filter: ShipmentStatus | None = Query(default=None, alias="status"),
    batch_id: str | None = Query(default=None, alias="batchId"),
    user_id: str | None = Query(default=None, alias="userId"),
    actor: Account = Depends(current_account),
    orchestrator: LabelOrchestrator = Depends(get_label_orchestrator),
) -> ShipmentListResponse:
    result = orchestrator.list_shipments(
        actor,
        owner_id=user_id,
        status=status_filter,
        batch_id=batch_id,
        page=page,
        limit=limit,
    )
    return ShipmentListResponse(
        shipments=[ShipmentResponse.from_domain(item) for item in result.items],
        pagination=Pagination.from_page(result),
    )


@router.post(
    "/labels/batch",
    response_model=BatchResponse,
    status_code=status.HTTP_202_ACCEPTED,
    tags=["batches"],
)
def submit_batch(
    payload: BatchRequest,
    background_tasks: BackgroundTasks,
    actor: Account = Depends(current_account),
    service: BatchService = Depends(get_batch_service),
) -> BatchResponse:
    """Open a batch and purchase its rows after the response is sent."""
    rows = [
        BatchRow(
            from_address=row.from_address,
            to_address=row.to_address,
            parcel=row.parcel,
            carrier=row.carrier,
            service_level=row.service_level,
        )
        for row in payload.rows
    ]
    batch = service.start(actor, payload.filename, rows)
    background_tasks.add_task(service.process, actor, batch.batch_id, rows, payload.label_format)
    return BatchResponse.from_domain(batch)


@router.get("/labels/batch", response_model=BatchListResponse, tags=["batches"])
def list_batches(
    limit: int = Query(default=100, ge=1, le=100),
    actor: Account = Depends(current_account),
    service: BatchService = Depends(get_batch_service),
) -> BatchListResponse:
    return BatchListResponse(batches=[BatchResponse.from_domain(batch) for batch in service.list_batches(actor, limit)])


@router.get("/labels/batch/{batch_id}", response_model=BatchResponse, tags=["batches"])
def get_batch(
    batch_id: str,
    actor: Account = Depends(current_account),
    service: BatchService = Depends(get_batch_service),
) -> BatchResponse:
    return BatchResponse.from_domain(service.get_batch(actor, batch_id))


@router.post("/labels/batch/{batch_id}/cancel", response_model=BatchResponse, tags=["batches"])
def cancel_batch(
    batch_id: str,
    actor: Account = Depends(current_account),
    service: BatchService = Depends(get_batch_service),
) -> BatchResponse:
    return BatchResponse.from_domain(service.cancel(actor, batch_id))


@router.get("/labels/{shipment_id}", response_model=ShipmentResponse, tags=["labels"])
def get_label(
    shipment_id: str,
    actor: Account = Depends(current_account),
    orchestrator: LabelOrchestrator = Depends(get_label_orchestrator),
) -> ShipmentResponse:
    return ShipmentResponse.from_domain(orchestrator.get_shipment(actor, shipment_id))
