"""
Payment endpoints
"""

from fastapi import APIRouter, Depends

from .dependencies import get_account_id, get_payment_system, run_queued
from .schemas import InitiatePaymentRequest
from ..admission import OperationClass
from ..errors import InvalidRequest
from ..system import PaymentSystem


router = APIRouter()


@router.post("/initiate")
async def initiate_payment(
    request: InitiatePaymentRequest,
    account_id: str = Depends(get_account_id),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Pay from the calling account"""
    result = await run_queued(
        system, OperationClass.PAYMENT,
        lambda: system.payments.initiate_payment(
            caller_id=account_id,
            sender_id=request.sender_id,
            receiver_id=request.receiver_id,
            amount=request.amount,
            payment_pin=request.payment_pin
        )
    )
    return {"message": "Payment successful.", **result.to_dict()}


@router.get("/transactions/{account_id}")
async def get_transaction_logs(
    account_id: str,
    caller_id: str = Depends(get_account_id),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Transactions sent or received by the calling account, newest first"""
    if caller_id != account_id:
        raise InvalidRequest("You can only view your own transactions.")
    transactions = await system.payments.list_transactions(account_id)
    return {"transactions": [t.to_public_dict() for t in transactions]}
