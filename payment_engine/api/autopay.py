"""
Autopay (mandate) endpoints
"""

from fastapi import APIRouter, Depends

from .dependencies import get_account_id, get_payment_system, run_queued
from .schemas import CreateMandateRequest, UpdateMandateStatusRequest
from ..admission import OperationClass
from ..system import PaymentSystem


router = APIRouter()


@router.post("/mandates", status_code=201)
async def create_mandate(
    request: CreateMandateRequest,
    account_id: str = Depends(get_account_id),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Create a recurring mandate debiting the calling account"""
    mandate = await run_queued(
        system, OperationClass.MANDATE_UPDATE,
        lambda: system.mandates.create_mandate(
            sender_id=account_id,
            receiver_id=request.receiver_id,
            amount=request.amount,
            frequency=request.frequency,
            start_date=request.start_date,
            end_date=request.end_date
        )
    )
    return {"message": "Mandate created successfully", "mandate": mandate.to_public_dict()}


@router.get("/mandates/{mandate_id}")
async def get_mandate(
    mandate_id: str,
    account_id: str = Depends(get_account_id),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Get a mandate"""
    mandate = await system.mandates.get_mandate(mandate_id, caller_id=account_id)
    return {"mandate": mandate.to_public_dict()}


@router.patch("/mandates/{mandate_id}/status")
async def update_mandate_status(
    mandate_id: str,
    request: UpdateMandateStatusRequest,
    account_id: str = Depends(get_account_id),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Pause, cancel or expire a mandate"""
    mandate = await run_queued(
        system, OperationClass.MANDATE_UPDATE,
        lambda: system.mandates.update_status(
            mandate_id, request.status, request.reason, caller_id=account_id
        )
    )
    return {
        "message": f"Mandate {mandate.status.value} successfully.",
        "mandate": mandate.to_public_dict()
    }


@router.get("/mandates/{mandate_id}/events")
async def get_mandate_events(
    mandate_id: str,
    account_id: str = Depends(get_account_id),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Audit trail of a mandate"""
    events = await system.mandates.list_events(mandate_id, caller_id=account_id)
    return {"events": [e.to_public_dict() for e in events]}
