"""
Authentication endpoints
"""

from fastapi import APIRouter, Depends

from .dependencies import get_account_id, get_payment_system, run_queued
from .schemas import ForgetPasswordRequest, LoginRequest, RegisterRequest
from ..admission import OperationClass
from ..system import PaymentSystem


router = APIRouter()


@router.post("/register", status_code=201)
async def register(
    request: RegisterRequest,
    system: PaymentSystem = Depends(get_payment_system)
):
    """Open an account"""
    account = await run_queued(
        system, OperationClass.LOGIN,
        lambda: system.account_store.register(
            request.name, request.email, request.password, request.payment_pin
        )
    )
    return {
        "message": "User registered successfully.",
        "account": account.to_public_dict()
    }


@router.post("/login")
async def login(
    request: LoginRequest,
    system: PaymentSystem = Depends(get_payment_system)
):
    """Verify a password; token issuance happens in the gateway"""
    identity = await run_queued(
        system, OperationClass.LOGIN,
        lambda: system.credentials.login(request.email, request.password)
    )
    return {"message": "Login successful.", **identity}


@router.post("/forget-password")
async def forget_password(
    request: ForgetPasswordRequest,
    account_id: str = Depends(get_account_id),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Replace the caller's login password"""
    return await run_queued(
        system, OperationClass.PASSWORD_RESET,
        lambda: system.credentials.reset_password(
            account_id, request.email, request.new_password
        )
    )
