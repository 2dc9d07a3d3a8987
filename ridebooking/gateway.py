"""
Payment gateway collaborator.

The booking core only needs three calls (create an order for the advance,
fetch a payment, fetch an order) plus the shared secret used to
authenticate checkout callbacks. RazorpayGateway maps them onto the
Razorpay SDK; amounts cross this boundary in major currency units and are
converted to paise here.
"""

import hashlib
import hmac
import logging
from decimal import Decimal
from typing import Dict, Optional

import razorpay
from razorpay.errors import BadRequestError, ServerError, GatewayError as RazorpayGatewayError

from ridebooking.errors import GatewayError

logger = logging.getLogger(__name__)

SUCCESSFUL_PAYMENT_STATUSES = ("captured", "authorized")


def expected_signature(order_id: str, payment_id: str, secret: str) -> str:
    message = f"{order_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    if not signature or not secret:
        return False
    expected = expected_signature(order_id, payment_id, secret)
    return hmac.compare_digest(expected.encode(), signature.encode())


class PaymentGateway:
    signature_secret: str = ""

    def create_intent(self, amount: Decimal, currency: str, reference: str,
                      notes: Optional[Dict[str, str]] = None) -> str:
        """Create a payment order and return its id."""
        raise NotImplementedError

    def fetch_payment(self, payment_id: str) -> Dict:
        """Return {"status", "amount", "order_id"} with amount in major units."""
        raise NotImplementedError

    def fetch_order(self, order_id: str) -> Dict:
        """Return {"id", "status", "notes"}."""
        raise NotImplementedError


class RazorpayGateway(PaymentGateway):
    def __init__(self, key_id: Optional[str], key_secret: str, client: Optional[razorpay.Client] = None):
        self.signature_secret = key_secret
        self.client = client or razorpay.Client(auth=(key_id, key_secret))

    def _call(self, action: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (BadRequestError, ServerError, RazorpayGatewayError) as e:
            description = str(e.args[0]) if e.args else None
            code = str(e.args[1]) if len(e.args) > 1 else None
            logger.warning("Razorpay %s failed: code=%s description=%s", action, code, description)
            raise GatewayError(f"Payment gateway {action} failed", code=code, description=description) from e
        except Exception as e:
            logger.warning("Razorpay %s failed: %s", action, e)
            raise GatewayError(f"Payment gateway {action} failed: {e}") from e

    def create_intent(self, amount: Decimal, currency: str, reference: str,
                      notes: Optional[Dict[str, str]] = None) -> str:
        data = {
            "amount": int((Decimal(str(amount)) * 100).to_integral_value()),
            "currency": currency,
            "receipt": reference,
            "notes": notes or {},
        }
        order = self._call("order creation", self.client.order.create, data=data)
        return order["id"]

    def fetch_payment(self, payment_id: str) -> Dict:
        payment = self._call("payment lookup", self.client.payment.fetch, payment_id)
        return {
            "status": payment.get("status"),
            "amount": Decimal(payment.get("amount", 0)) / 100,
            "order_id": payment.get("order_id"),
        }

    def fetch_order(self, order_id: str) -> Dict:
        order = self._call("order lookup", self.client.order.fetch, order_id)
        return {
            "id": order.get("id"),
            "status": order.get("status"),
            "notes": order.get("notes") or {},
        }
