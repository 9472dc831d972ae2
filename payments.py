"""
Payment gateway contract and webhook settlement.

Gateway calls are made outside any database transaction. A PaymentRecord ties
the gateway's payment order to our Order and moves pending -> approved|failed
exactly once.
"""
import hashlib
import hmac
import logging
import random
import string
from typing import Any, Dict, Optional, Protocol

import database
import settings
from errors import NotFoundError, ValidationError
from schemas import Order, PaymentRecord, PaymentRecordStatus, PaymentStatus

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    def create_payment_order(self, amount: float, currency: str, reference: str) -> Dict[str, Any]:
        """Return at least {"id", "status"} for the created payment order."""
        ...


class MockGateway:
    """Razorpay stand-in: hands out a random order id without calling out."""

    def create_payment_order(self, amount: float, currency: str, reference: str) -> Dict[str, Any]:
        return {
            "id": "order_" + ''.join(random.choices(string.ascii_letters + string.digits, k=12)),
            "status": "created",
            "amount": int(round(amount * 100)),
            "currency": currency,
            "receipt": reference,
        }


def sign(payment_order_id: str, payment_id: str, status: str = "approved", secret: Optional[str] = None) -> str:
    """HMAC-SHA256 over "order|payment|status", so the outcome cannot be swapped under a valid signature."""
    key = (secret or settings.PAYMENT_WEBHOOK_SECRET).encode()
    return hmac.new(key, f"{payment_order_id}|{payment_id}|{status}".encode(), hashlib.sha256).hexdigest()


def verify_signature(payment_order_id: str, payment_id: str, signature: Optional[str],
                     status: str = "approved", secret: Optional[str] = None) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign(payment_order_id, payment_id, status, secret), signature)


def open_payment(order: Order, gateway: Optional[PaymentGateway] = None) -> PaymentRecord:
    """Create the gateway payment order for a committed Order. Failures are recorded, not raised."""
    gateway = gateway or MockGateway()
    record = PaymentRecord(order=order.id, user=order.user, amount=order.total_amount, currency=order.currency)
    database.create_document("paymentrecord", record)
    coll = database.get_db()["paymentrecord"]

    try:
        result = gateway.create_payment_order(order.total_amount, order.currency, order.id)
    except Exception as e:
        logger.warning("Payment gateway failed for order %s: %s", order.id, e)
        record.status = PaymentRecordStatus.failed.value
        record.failure_reason = str(e)[:200]
        coll.update_one({"_id": record.id}, {"$set": {"status": record.status,
                                                       "failure_reason": record.failure_reason,
                                                       "updated_at": database.now_utc()}})
        return record

    record.payment_order_id = result["id"]
    coll.update_one({"_id": record.id}, {"$set": {"payment_order_id": record.payment_order_id,
                                                   "updated_at": database.now_utc()}})
    database.get_db()["order"].update_one({"_id": order.id}, {"$set": {"payment_order_id": record.payment_order_id}})
    return record


def handle_webhook(payment_order_id: str, payment_id: str, signature: Optional[str],
                   succeeded: bool = True, reason: Optional[str] = None) -> PaymentRecord:
    """
    Settle a payment record from a gateway callback.

    Duplicate deliveries are harmless: the transition only applies while the
    record is still pending, otherwise the current record is returned as is.
    """
    status = PaymentRecordStatus.approved if succeeded else PaymentRecordStatus.failed
    if not verify_signature(payment_order_id, payment_id, signature, status.value):
        logger.warning("Rejected webhook with bad signature for payment order %s", payment_order_id)
        raise ValidationError("Invalid payment signature")

    with database.transaction() as session:
        db = database.get_db()
        doc = db["paymentrecord"].find_one({"payment_order_id": payment_order_id}, session=session)
        if not doc:
            raise NotFoundError("Payment", payment_order_id)

        changes = {"status": status.value, "payment_id": payment_id, "updated_at": database.now_utc()}
        if not succeeded:
            changes["failure_reason"] = reason or "Payment failed"
        result = db["paymentrecord"].update_one(
            {"_id": doc["_id"], "status": PaymentRecordStatus.pending.value}, {"$set": changes}, session=session
        )
        if result.matched_count == 1:
            doc.update(changes)
            if succeeded:
                db["order"].update_one(
                    {"_id": doc["order"]},
                    {"$set": {"payment_status": PaymentStatus.paid.value, "updated_at": database.now_utc()}},
                    session=session,
                )
            logger.info("Payment %s for order %s is %s", payment_order_id, doc["order"], status.value)

    return PaymentRecord.model_validate(doc)
