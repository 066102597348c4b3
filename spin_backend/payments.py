# payments.py
from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

import requests

from .config import Settings
from .errors import DuplicateSettlementError, PersistenceError, VerificationError
from .ledger_store import credit_purchase, insert_order, normalize_wallet, rollback

log = logging.getLogger("spin.payments")

# Spin credits granted per SKU. Unknown SKUs grant nothing.
SKU_CREDITS: Dict[str, int] = {
    "spin_pack_small": 5,
    "spin_pack_medium": 20,
    "booster_sauce": 0,  # booster is fulfilled as an NFT, not as spin credits
}


def credits_for_sku(sku: str) -> int:
    return SKU_CREDITS.get((sku or "").strip(), 0)


@dataclass(frozen=True)
class PaymentReceipt:
    exists: bool
    status_ok: bool
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    block_number: Optional[int] = None


@dataclass(frozen=True)
class SettlementResult:
    success: bool
    order_id: str
    credits_added: int
    already_settled: bool = False


class JsonRpcPaymentSource:
    """Looks a payment up by transaction hash via eth_getTransactionReceipt."""

    def __init__(self, rpc_url: str, timeout: int = 10, session: Optional[requests.Session] = None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def rpc_call(self, method: str, params: list) -> Any:
        if not self.rpc_url:
            raise VerificationError("payment rpc not configured")
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        try:
            resp = self.session.post(self.rpc_url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.Timeout as e:
            log.warning("[payments] %s timed out after %ss", method, self.timeout)
            raise VerificationError("payment source timeout") from e
        except (requests.RequestException, ValueError) as e:
            log.warning("[payments] %s failed: %s", method, type(e).__name__)
            raise VerificationError("payment source unavailable") from e

        if not isinstance(data, dict):
            raise VerificationError("invalid rpc response")
        if data.get("error"):
            err = data["error"]
            msg = err.get("message") if isinstance(err, dict) else err
            log.warning("[payments] %s rpc error: %s", method, str(msg)[:200])
            raise VerificationError("payment source rejected lookup")
        return data.get("result")

    def lookup(self, tx_hash: str) -> PaymentReceipt:
        receipt = self.rpc_call("eth_getTransactionReceipt", [tx_hash])
        if not receipt:
            return PaymentReceipt(exists=False, status_ok=False)
        if not isinstance(receipt, dict):
            raise VerificationError("invalid receipt")

        try:
            block_number = None
            raw_block = receipt.get("blockNumber")
            if raw_block:
                block_number = int(str(raw_block), 16)

            return PaymentReceipt(
                exists=True,
                status_ok=str(receipt.get("status") or "").lower() == "0x1",
                from_address=_lower_or_none(receipt.get("from")),
                to_address=_lower_or_none(receipt.get("to")),
                block_number=block_number,
            )
        except (TypeError, ValueError) as e:
            log.warning("[payments] malformed receipt for %s: %s", tx_hash, type(e).__name__)
            raise VerificationError("invalid receipt") from e


class PaymentSettlement:
    def __init__(
        self,
        db_func: Callable[[], sqlite3.Connection],
        source,
        settings: Settings,
        now_func: Callable[[], int] = lambda: int(time.time()),
    ):
        self.db_func = db_func
        self.source = source
        self.settings = settings
        self.now_func = now_func

    def settle(self, payment_ref: str, wallet: str, sku: str, amount_usdc: Any) -> SettlementResult:
        wallet = normalize_wallet(wallet)
        order_id = normalize_payment_ref(payment_ref)
        amount = _normalize_amount(amount_usdc)
        sku = (sku or "").strip()

        # Network I/O stays outside the write transaction.
        receipt = self.source.lookup(order_id)
        if not receipt.exists:
            raise VerificationError("payment not found")
        if not receipt.status_ok:
            raise VerificationError("payment failed on-chain")
        recipient = (self.settings.payment_recipient or "").strip().lower()
        if recipient and receipt.to_address != recipient:
            log.warning("[settle] %s paid to %s, expected %s", order_id, receipt.to_address, recipient)
            raise VerificationError("payment sent to wrong recipient")

        credits = credits_for_sku(sku)
        points = self.settings.purchase_bonus_points if credits > 0 else 0

        con = self.db_func()
        try:
            ts = int(self.now_func())
            con.execute("BEGIN IMMEDIATE;")
            insert_order(
                con,
                order_id,
                wallet,
                sku,
                amount,
                credits,
                ts,
                from_address=receipt.from_address,
                block_number=receipt.block_number,
            )
            if credits > 0:
                credit_purchase(con, wallet, credits, points, ts)
            con.execute("COMMIT;")
        except DuplicateSettlementError as e:
            con.execute("ROLLBACK;")
            log.info("[settle] %s already settled (wallet=%s)", order_id, e.existing_wallet)
            return SettlementResult(success=True, order_id=order_id, credits_added=0, already_settled=True)
        except sqlite3.Error as e:
            rollback(con)
            log.error("[settle] %s aborted: storage failure (%s)", order_id, type(e).__name__)
            raise PersistenceError("settlement transaction failed") from e
        except BaseException:
            rollback(con)
            raise
        finally:
            con.close()

        if sku not in SKU_CREDITS:
            log.warning("[settle] %s unknown sku %r, order recorded without credits", order_id, sku)
        log.info("[settle] %s wallet=%s sku=%s credits=%s", order_id, wallet, sku, credits)
        return SettlementResult(success=True, order_id=order_id, credits_added=credits)


def normalize_payment_ref(payment_ref: str) -> str:
    ref = (payment_ref or "").strip().lower()
    if not ref.startswith("0x") or len(ref) < 3:
        raise VerificationError("invalid payment reference")
    try:
        int(ref, 16)
    except ValueError as e:
        raise VerificationError("invalid payment reference") from e
    return ref


def _normalize_amount(amount_usdc: Any) -> str:
    try:
        d = Decimal(str(amount_usdc))
    except (InvalidOperation, ValueError) as e:
        raise VerificationError("invalid payment amount") from e
    if not d.is_finite() or d < 0:
        raise VerificationError("invalid payment amount")
    return str(d)


def _lower_or_none(value: Any) -> Optional[str]:
    return str(value).lower() if value else None
