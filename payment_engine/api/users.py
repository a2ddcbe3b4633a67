"""
User endpoints
"""

from fastapi import APIRouter, Depends

from .dependencies import get_account_id, get_payment_system, run_queued
from .schemas import ForgetPinRequest
from ..admission import OperationClass
from ..errors import NotFound
from ..system import PaymentSystem


router = APIRouter()


@router.get("/me")
async def view_user_details(
    account_id: str = Depends(get_account_id),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Details of the calling account"""
    account = await system.account_store.find_by_id(account_id)
    if not account:
        raise NotFound("User not found", account_id=account_id)
    return {"user": account.to_public_dict()}


@router.post("/forget-pin")
async def forget_pin(
    request: ForgetPinRequest,
    account_id: str = Depends(get_account_id),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Replace the payment PIN after verifying the current password"""
    return await run_queued(
        system, OperationClass.PIN_RESET,
        lambda: system.credentials.reset_pin(account_id, request.password, request.new_pin)
    )
