# market.py
import sqlite3
from typing import Callable, Dict

from fastapi import APIRouter, HTTPException, Request

from .errors import FailureReason
from .ledger_store import get_order
from .models import OrderOut, PaymentVerifyIn, SettleOut
from .payments import SKU_CREDITS, PaymentSettlement, normalize_payment_ref


def create_market_router(
    settlement: PaymentSettlement,
    db_func: Callable[[], sqlite3.Connection],
    service_auth_func: Callable[[Request], None],
) -> APIRouter:
    router = APIRouter()

    @router.get("/skus")
    def market_skus() -> Dict[str, int]:
        return dict(SKU_CREDITS)

    @router.post("/verify", response_model=SettleOut)
    def market_verify(data: PaymentVerifyIn, req: Request):
        """
        Payment notification from the checkout flow.

        Safe to replay: the transaction hash is the order id, so a duplicate
        notification is acknowledged without crediting twice.
        """
        service_auth_func(req)
        res = settlement.settle(data.tx_id, data.wallet, data.sku, data.amount)
        return SettleOut(
            success=res.success,
            order_id=res.order_id,
            credits_added=res.credits_added,
            already_settled=res.already_settled,
            reason=FailureReason.ALREADY_SETTLED.value if res.already_settled else None,
        )

    @router.get("/orders/{order_id}", response_model=OrderOut)
    def market_get_order(order_id: str, req: Request):
        service_auth_func(req)
        ref = normalize_payment_ref(order_id)
        con = db_func()
        try:
            row = get_order(con, ref)
        finally:
            con.close()
        if not row:
            raise HTTPException(status_code=404, detail="unknown order")
        return OrderOut(**row)

    return router
