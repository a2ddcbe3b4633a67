"""
Request dependencies: the payment system, caller identity and queued execution
"""

from typing import Any, Awaitable, Callable, Optional

from fastapi import Header, Request

from ..admission import OperationClass
from ..errors import InvalidCredential
from ..system import PaymentSystem


def get_payment_system(request: Request) -> PaymentSystem:
    """Payment system attached to the application"""
    return request.app.state.system


async def get_account_id(x_account_id: Optional[str] = Header(None)) -> str:
    """
    Verified account identity.

    Token verification happens in the upstream gateway, which forwards the
    authenticated account id in the ``X-Account-Id`` header.
    """
    if not x_account_id:
        raise InvalidCredential("Authentication required.")
    return x_account_id


async def run_queued(system: PaymentSystem, op_class: OperationClass,
                     task: Callable[[], Awaitable[Any]]) -> Any:
    """Submit through the admission queue and return the value or raise its error"""
    result = await system.queue.submit(op_class, task)
    return result.unwrap()
