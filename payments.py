"""
Payment orchestration against Mercado Pago.

`MercadoPagoGateway` is the thin REST client (preferences and payment lookup).
`PaymentOrchestrator` owns the order side of the flow: it turns an order into a
checkout preference and reconciles webhook notifications back onto the order.
The gateway reaches the orchestrator through a dependency in `main.py`, so
tests swap it for a fake.
"""
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests
import structlog
from bson import ObjectId
from bson.errors import InvalidId
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from errors import Conflict, NotFound, PaymentNotFound, UpstreamError, ValidationError

logger = structlog.get_logger(__name__)

PLACEHOLDER_PAYER_EMAIL = "test_user@test.com"
EXCLUDED_PAYMENT_TYPES = [{"id": "ticket"}]
MAX_INSTALLMENTS = 1


class MercadoPagoGateway:
    """Blocking client for the provider's REST API.

    A bounded semaphore caps concurrent outbound calls; the session retries once
    on connection/read failures and never on HTTP status codes.
    """

    def __init__(self, access_token: Optional[str], api_url: str = "https://api.mercadopago.com",
                 timeout: float = 10.0, max_concurrency: int = 8):
        self.access_token = access_token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._slots = threading.BoundedSemaphore(max_concurrency)
        self.session = requests.Session()
        retry = Retry(total=1, connect=1, read=1, status=0, allowed_methods=None, raise_on_status=False)
        self.session.mount("https://", HTTPAdapter(max_retries=retry))
        self.session.mount("http://", HTTPAdapter(max_retries=retry))

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}
        if extra:
            headers.update(extra)
        return headers

    def create_preference(self, preference: Dict[str, Any]) -> Dict[str, Any]:
        if not self.access_token:
            raise UpstreamError("Payment provider is not configured")
        # Reused by the transport retry
        headers = self._headers({"X-Idempotency-Key": str(uuid.uuid4())})
        try:
            with self._slots:
                response = self.session.post(f"{self.api_url}/checkout/preferences", json=preference,
                                             headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error("preference_request_failed", error=str(exc))
            raise UpstreamError("Could not reach payment provider") from exc
        if response.status_code >= 400:
            logger.error("preference_rejected", status=response.status_code, body=response.text[:500])
            raise UpstreamError("Payment provider rejected the preference")
        return response.json()

    def get_payment(self, payment_id: str) -> Dict[str, Any]:
        try:
            with self._slots:
                response = self.session.get(f"{self.api_url}/v1/payments/{payment_id}",
                                            headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error("payment_lookup_failed", payment_id=payment_id, error=str(exc))
            raise UpstreamError("Could not reach payment provider") from exc
        if response.status_code == 404:
            raise PaymentNotFound(f"Payment {payment_id} not found")
        if response.status_code >= 400:
            logger.error("payment_lookup_rejected", payment_id=payment_id, status=response.status_code)
            raise UpstreamError("Payment provider lookup failed")
        return response.json()


class PaymentOrchestrator:
    def __init__(self, gateway, orders, products, frontend_url: str, currency: str = "ARS",
                 notification_url: Optional[str] = None):
        self.gateway = gateway
        self.orders = orders
        self.products = products
        self.frontend_url = frontend_url.rstrip("/")
        self.currency = currency
        self.notification_url = notification_url

    def _unit_price(self, item: dict) -> float:
        # Orders placed before price snapshots existed fall back to the catalog
        if item.get("price") is not None:
            return float(item["price"])
        product = self.products.find_one({"_id": ObjectId(str(item["product"]))})
        return float(product.get("price", 0)) if product else 0.0

    def build_preference(self, order: dict, payer_email: Optional[str]) -> Dict[str, Any]:
        items: List[Dict[str, Any]] = []
        for item in order.get("items", []):
            items.append({
                "title": item.get("productName"),
                "quantity": int(item.get("quantity", 1)),
                "unit_price": self._unit_price(item),
                "currency_id": self.currency,
            })
        preference = {
            "external_reference": str(order["_id"]),
            "items": items,
            "payer": {"email": payer_email or PLACEHOLDER_PAYER_EMAIL},
            "payment_methods": {
                "excluded_payment_types": EXCLUDED_PAYMENT_TYPES,
                "installments": MAX_INSTALLMENTS,
            },
            "back_urls": {
                "success": f"{self.frontend_url}/success",
                "failure": f"{self.frontend_url}/failure",
                "pending": f"{self.frontend_url}/pending",
            },
            "auto_return": "approved",
        }
        if self.notification_url:
            preference["notification_url"] = self.notification_url
        return preference

    def create_payment_request(self, order_id: str, user_id: str, payer_email: Optional[str]) -> Dict[str, Any]:
        """Create a checkout preference for one of the caller's unpaid orders."""
        try:
            oid = ObjectId(order_id)
        except (InvalidId, TypeError):
            raise NotFound("Order not found")
        order = self.orders.find_one({"_id": oid, "user": user_id})
        if not order:
            raise NotFound("Order not found")
        if order.get("status") != "pending":
            raise Conflict("This order has already been paid")

        preference = self.build_preference(order, payer_email)
        logger.info("creating_preference", order_id=order_id, lines=len(preference["items"]))
        response = self.gateway.create_preference(preference)
        init_point = response.get("init_point")
        if not init_point:
            raise UpstreamError("Payment provider returned no redirect URL")
        return {
            "order_id": order_id,
            "init_point": init_point,
            "message": "Payment preference created",
        }

    def mark_paid(self, order_id: Any) -> bool:
        """Move a pending order to paid. Returns False when nothing changed."""
        try:
            oid = ObjectId(str(order_id))
        except (InvalidId, TypeError):
            return False
        now = datetime.now(timezone.utc)
        res = self.orders.update_one(
            {"_id": oid, "status": "pending"},
            {"$set": {"status": "paid", "paidAt": now, "updated_at": now}},
        )
        return res.modified_count == 1

    def handle_notification(self, payload: Dict[str, Any]) -> Dict[str, str]:
        """Reconcile one webhook delivery.

        Returns the acknowledgement body for a 200; raises ValidationError for a
        payload without a payment id and UpstreamError when the provider lookup
        fails in a way the provider should retry.
        """
        notification_type = payload.get("type")
        if notification_type != "payment":
            logger.info("webhook_ignored", type=notification_type)
            return {"status": "ignored"}

        data = payload.get("data") or {}
        payment_id = data.get("id") if isinstance(data, dict) else None
        if not payment_id:
            logger.warning("webhook_missing_payment_id")
            raise ValidationError("Payment id missing from notification")
        payment_id = str(payment_id)
        live_mode = bool(payload.get("live_mode"))
        log = logger.bind(payment_id=payment_id, live_mode=live_mode)

        if not live_mode:
            # Sandbox harness: the payment id is the order id
            updated = self.mark_paid(payment_id)
            log.info("sandbox_notification", updated=updated)
            return {"status": "processed" if updated else "unchanged"}

        try:
            payment = self.gateway.get_payment(payment_id)
        except PaymentNotFound:
            log.warning("payment_not_found")
            return {"status": "payment_not_found"}

        payment_status = payment.get("status")
        if payment_status != "approved":
            log.info("payment_not_approved", payment_status=payment_status)
            return {"status": "unchanged"}

        external_reference = payment.get("external_reference")
        if not external_reference:
            log.warning("payment_without_external_reference")
            return {"status": "unchanged"}
        updated = self.mark_paid(external_reference)
        log.info("payment_approved", order_id=external_reference, updated=updated)
        return {"status": "processed" if updated else "unchanged"}
