"""
Product endpoints
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from .dependencies import get_account_id, get_payment_system, run_queued
from .schemas import AddProductRequest, PurchaseProductRequest
from ..admission import OperationClass
from ..system import PaymentSystem


router = APIRouter()


@router.post("")
async def add_product(
    request: AddProductRequest,
    account_id: str = Depends(get_account_id),
    system: PaymentSystem = Depends(get_payment_system)
):
    """List a product, or re-price one the caller already lists"""
    product, created = await run_queued(
        system, OperationClass.PRODUCT_PURCHASE,
        lambda: system.products.add_product(account_id, request.product_id, request.price)
    )
    message = "Product added successfully." if created else "Product price updated successfully."
    return JSONResponse(
        status_code=201 if created else 200,
        content={"message": message, "product": product.to_public_dict()}
    )


@router.post("/{product_id}/purchase")
async def purchase_product(
    product_id: str,
    request: PurchaseProductRequest,
    account_id: str = Depends(get_account_id),
    system: PaymentSystem = Depends(get_payment_system)
):
    """Pay a product's price to its owner"""
    result = await run_queued(
        system, OperationClass.PRODUCT_PURCHASE,
        lambda: system.products.purchase_product(
            account_id, product_id, request.password, request.payment_pin
        )
    )
    return {"message": "Payment successful", **result.to_dict()}
