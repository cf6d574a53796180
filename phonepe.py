"""
PhonePe Standard Checkout client.

Wraps the three gateway calls the order workflows need (initiate a checkout,
check an order's state, refund) behind a RetryPolicy. Amounts are taken in
rupees and sent to PhonePe in paise.
"""
import hashlib
import hmac
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Optional

import requests

from config import Settings
from errors import PaymentGatewayError
from retry import AttemptBudget, RetryPolicy

logger = logging.getLogger(__name__)

SANDBOX_HOST = "https://api-preprod.phonepe.com/apis/pg-sandbox"
PRODUCTION_AUTH_HOST = "https://api.phonepe.com/apis/identity-manager"
PRODUCTION_PG_HOST = "https://api.phonepe.com/apis/pg"

STATE_COMPLETED = "COMPLETED"
FAILED_STATES = ("FAILED", "ATTEMPT_FAILED")
PENDING_STATES = ("PENDING", "INITIATED")


@dataclass
class CheckoutSession:
    gateway_order_id: str
    merchant_order_id: str
    checkout_url: str
    state: Optional[str] = None


@dataclass
class RefundReceipt:
    refund_id: str
    merchant_refund_id: str
    state: Optional[str] = None


def to_paise(amount: float) -> int:
    return int(round(amount * 100))


class PhonePeClient:
    def __init__(self, settings: Settings, http: Optional[requests.Session] = None, retry_policy: Optional[RetryPolicy] = None):
        self.settings = settings
        self.http = http or requests.Session()
        self.retry_policy = retry_policy or RetryPolicy()
        if settings.is_production:
            self.auth_host, self.pg_host = PRODUCTION_AUTH_HOST, PRODUCTION_PG_HOST
        else:
            self.auth_host = self.pg_host = SANDBOX_HOST
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    # -----------------------------
    # Auth
    # -----------------------------

    def _access_token(self, budget: AttemptBudget) -> str:
        if self._token and time.time() < self._token_expires_at - 60:
            return self._token
        resp = self.http.post(
            f"{self.auth_host}/v1/oauth/token",
            data={
                "client_id": self.settings.phonepe_client_id,
                "client_version": self.settings.phonepe_client_version,
                "client_secret": self.settings.phonepe_client_secret,
                "grant_type": "client_credentials",
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=budget.remaining(),
        )
        if resp.status_code >= 300:
            raise PaymentGatewayError(f"PhonePe authorization failed: {resp.text}")
        data = resp.json()
        self._token = data["access_token"]
        self._token_expires_at = float(data.get("expires_at") or time.time() + 300)
        return self._token

    def _headers(self, budget: AttemptBudget) -> dict:
        return {
            "Content-Type": "application/json",
            "Authorization": f"O-Bearer {self._access_token(budget)}",
        }

    # -----------------------------
    # Payments
    # -----------------------------

    def initiate(self, amount: float, redirect_url: str, merchant_order_id: Optional[str] = None,
                 request_id: Optional[str] = None) -> CheckoutSession:
        merchant_order_id = merchant_order_id or str(uuid.uuid4())

        def call(timeout: float) -> CheckoutSession:
            budget = AttemptBudget(timeout)
            resp = self.http.post(
                f"{self.pg_host}/checkout/v2/pay",
                json={
                    "merchantOrderId": merchant_order_id,
                    "amount": to_paise(amount),
                    "paymentFlow": {
                        "type": "PG_CHECKOUT",
                        "merchantUrls": {"redirectUrl": redirect_url},
                    },
                },
                headers=self._headers(budget),
                timeout=budget.remaining(),
            )
            if resp.status_code >= 300:
                raise PaymentGatewayError(f"PhonePe payment initiation failed: {resp.text}")
            data = resp.json()
            return CheckoutSession(
                gateway_order_id=data.get("orderId"),
                merchant_order_id=merchant_order_id,
                checkout_url=data.get("redirectUrl"),
                state=data.get("state"),
            )

        session = self.retry_policy.call(call, "PhonePe initiate", request_id)
        logger.info("[%s] PhonePe checkout %s created for %s", request_id, session.gateway_order_id, merchant_order_id)
        return session

    def verify(self, merchant_order_id: str, request_id: Optional[str] = None) -> str:
        def call(timeout: float) -> str:
            budget = AttemptBudget(timeout)
            resp = self.http.get(
                f"{self.pg_host}/checkout/v2/order/{merchant_order_id}/status",
                headers=self._headers(budget),
                timeout=budget.remaining(),
            )
            if resp.status_code >= 300:
                raise PaymentGatewayError(f"PhonePe status check failed: {resp.text}")
            return resp.json().get("state")

        return self.retry_policy.call(call, "PhonePe status", request_id)

    def refund(self, original_merchant_order_id: str, amount: float, merchant_refund_id: Optional[str] = None,
               request_id: Optional[str] = None) -> RefundReceipt:
        merchant_refund_id = merchant_refund_id or str(uuid.uuid4())

        def call(timeout: float) -> RefundReceipt:
            budget = AttemptBudget(timeout)
            resp = self.http.post(
                f"{self.pg_host}/payments/v2/refund",
                json={
                    "merchantRefundId": merchant_refund_id,
                    "originalMerchantOrderId": original_merchant_order_id,
                    "amount": to_paise(amount),
                },
                headers=self._headers(budget),
                timeout=budget.remaining(),
            )
            if resp.status_code >= 300:
                raise PaymentGatewayError(f"PhonePe refund failed: {resp.text}")
            data = resp.json()
            return RefundReceipt(
                refund_id=data.get("refundId"),
                merchant_refund_id=merchant_refund_id,
                state=data.get("state"),
            )

        receipt = self.retry_policy.call(call, "PhonePe refund", request_id)
        logger.info("[%s] PhonePe refund %s issued against %s", request_id, receipt.refund_id, original_merchant_order_id)
        return receipt

    # -----------------------------
    # Callbacks
    # -----------------------------

    def validate_callback(self, authorization: Optional[str]) -> bool:
        username = self.settings.phonepe_callback_username
        password = self.settings.phonepe_callback_password
        if not username or not password:
            return True
        if not authorization:
            return False
        expected = hashlib.sha256(f"{username}:{password}".encode()).hexdigest()
        return hmac.compare_digest(expected, authorization.strip())
