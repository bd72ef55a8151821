import logging
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from app.core.config import settings
from app.core.exceptions import ExternalGatewayError, GatewayPayloadError
from app.schemas.gateway_schema import (
    ChargeResult,
    GatewayTransaction,
    GatewayUpdateResult,
    PaymentPage,
    RecurringCharge,
    RecurringChargeHistory,
    TransactionHistory,
)
from app.utils.helpers import mask_uid, utcnow

logger = logging.getLogger(__name__)

# PayPlus recurring_type codes
RECURRING_TYPES = {"daily": 0, "monthly": 2, "yearly": 3}

SUCCESS_CHARGE_STATUSES = ("approved", "success")


class PayPlusClient:
    """Async client for the PayPlus REST API."""

    def __init__(
        self,
        api_url: str = None,
        api_key: str = None,
        secret_key: str = None,
        terminal_uid: str = None,
        payment_page_uid: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = (api_url or settings.PAYPLUS_API_URL).rstrip("/") + "/"
        self.api_key = api_key if api_key is not None else settings.PAYPLUS_API_KEY
        self.secret_key = secret_key if secret_key is not None else settings.PAYPLUS_SECRET_KEY
        self.terminal_uid = terminal_uid if terminal_uid is not None else settings.PAYPLUS_TERMINAL_UID
        self.payment_page_uid = (
            payment_page_uid if payment_page_uid is not None else settings.PAYPLUS_PAYMENT_PAGE_UID
        )
        self.timeout = timeout or settings.PAYPLUS_TIMEOUT_SECONDS
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "api-key": self.api_key,
            "secret-key": self.secret_key,
        }

    def _normalize_url(self, path: str) -> str:
        base = settings.APP_BASE_URL.rstrip("/")
        return f"{base}/{path.lstrip('/')}"

    async def _post(self, endpoint: str, payload: dict) -> Any:
        """POST to the API and return the decoded JSON body, raising ExternalGatewayError on any failure."""
        try:
            async with httpx.AsyncClient(
                base_url=self.api_url, timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(endpoint, headers=self._headers(), json=payload)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "PayPlus %s HTTP error %s: %s", endpoint, e.response.status_code, e.response.text[:500]
            )
            raise ExternalGatewayError(
                f"PayPlus {endpoint} HTTP {e.response.status_code}", status_code=e.response.status_code
            )
        except httpx.HTTPError as e:
            logger.error("PayPlus %s request failed: %s", endpoint, e)
            raise ExternalGatewayError(f"PayPlus {endpoint} request failed: {e}")

        try:
            return response.json()
        except ValueError:
            logger.error("PayPlus %s returned invalid JSON: %s", endpoint, response.text[:500])
            raise ExternalGatewayError(f"PayPlus {endpoint} returned invalid JSON")

    @staticmethod
    def _results_ok(body: Any) -> bool:
        return isinstance(body, dict) and (body.get("results") or {}).get("status") == "success"

    @staticmethod
    def _results_error(body: Any, default: str) -> str:
        if isinstance(body, dict):
            return (body.get("results") or {}).get("message") or default
        return default

    # commands

    async def charge_token(
        self,
        token: str,
        amount: Decimal,
        currency: str,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChargeResult:
        payload = {
            "terminal_uid": self.terminal_uid,
            "payment_token": token,
            "amount": float(amount),
            "currency": currency,
            "description": description,
            "charge_method": 1,
            "metadata": {"source": "saved_payment_method", **(metadata or {})},
        }
        try:
            body = await self._post("Charges/ChargeWithToken", payload)
        except ExternalGatewayError as e:
            return ChargeResult(success=False, error=e.detail)

        if not isinstance(body, dict):
            return ChargeResult(success=False, error="Invalid charge response")

        status = body.get("status")
        if body.get("success") is not False and status in SUCCESS_CHARGE_STATUSES:
            transaction_id = body.get("transaction_uid") or body.get("uid")
            logger.info("Token charge approved: %s %s (%s)", amount, currency, mask_uid(transaction_id))
            return ChargeResult(success=True, transaction_id=transaction_id, status=status, raw=body)

        error = body.get("error_message") or body.get("decline_reason") or body.get("message") or "Payment was declined"
        logger.warning("Token charge declined: %s", error)
        return ChargeResult(success=False, status=status, error=error, raw=body)

    async def update_recurring_amount(
        self, subscription_uid: str, new_amount: Decimal, reason: str
    ) -> GatewayUpdateResult:
        payload = {
            "terminal_uid": self.terminal_uid,
            "recurring_uid": subscription_uid,
            "amount": float(new_amount),
            "currency": settings.DEFAULT_CURRENCY,
            "metadata": {
                "update_reason": reason,
                "updated_at": utcnow().isoformat(),
                "source": "plan_change",
            },
        }
        try:
            body = await self._post("RecurringPayments/Update", payload)
        except ExternalGatewayError as e:
            return GatewayUpdateResult(success=False, error=e.detail)

        if not self._results_ok(body):
            error = self._results_error(body, "Failed to update recurring payment")
            logger.error("PayPlus recurring update failed for %s: %s", mask_uid(subscription_uid), error)
            return GatewayUpdateResult(success=False, error=error)

        logger.info("PayPlus recurring amount of %s set to %s (%s)", mask_uid(subscription_uid), new_amount, reason)
        return GatewayUpdateResult(success=True)

    async def cancel_recurring(
        self, subscription_uid: str, immediate: bool = True, reason: str = "user_cancelled"
    ) -> GatewayUpdateResult:
        payload = {
            "terminal_uid": self.terminal_uid,
            "recurring_uid": subscription_uid,
            "cancel_immediately": immediate,
            "cancellation_reason": reason,
            "metadata": {"cancelled_at": utcnow().isoformat()},
        }
        try:
            body = await self._post("RecurringPayments/Cancel", payload)
        except ExternalGatewayError as e:
            return GatewayUpdateResult(success=False, error=e.detail)

        if not self._results_ok(body):
            return GatewayUpdateResult(
                success=False, error=self._results_error(body, "Failed to cancel recurring payment")
            )
        return GatewayUpdateResult(success=True)

    async def create_payment_page(
        self,
        amount: Decimal,
        currency: str,
        description: str,
        user_id: str,
        more_info: Optional[Dict[str, Any]] = None,
        success_url: Optional[str] = None,
        failure_url: Optional[str] = None,
        billing_period: str = "monthly",
    ) -> PaymentPage:
        """Create a recurring-payment page; the first charge is taken instantly."""
        success_url = success_url or self._normalize_url("/payment-result")
        failure_url = failure_url or self._normalize_url("/payment-result")
        payload = {
            "payment_page_uid": self.payment_page_uid,
            "charge_method": 3,
            "amount": float(amount),
            "currency_code": currency,
            "language_code": "he",
            "more_info": str(user_id),
            "items": [{"name": description, "price": float(amount), "quantity": 1}],
            "refURL_success": success_url,
            "refURL_failure": failure_url,
            "refURL_cancel": failure_url,
            "recurring_settings": {
                "instant_first_payment": True,
                "recurring_type": RECURRING_TYPES.get(billing_period, RECURRING_TYPES["monthly"]),
                "recurring_range": 1,
                "number_of_charges": 0,
                "start_date_on_payment_date": True,
                "custom_fields": more_info or {},
            },
            "create_token": True,
            "payments": 1,
        }
        body = await self._post("PaymentPages/generateLink", payload)
        if not self._results_ok(body):
            raise ExternalGatewayError(self._results_error(body, "Failed to create payment page"))

        data = body.get("data") or {}
        if not data.get("page_request_uid") or not data.get("payment_page_link"):
            raise GatewayPayloadError("PayPlus payment page response is missing page_request_uid or link")
        return PaymentPage(page_request_uid=data["page_request_uid"], payment_page_link=data["payment_page_link"])

    # queries

    async def query_transaction_history(self, page_request_uid: str) -> TransactionHistory:
        body = await self._post(
            "TransactionReports/TransactionsHistory",
            {"terminal_uid": self.terminal_uid, "page_request_uid": page_request_uid},
        )
        if not isinstance(body, dict) or not isinstance(body.get("transactions"), list):
            raise GatewayPayloadError("Invalid transactions history response from PayPlus")

        try:
            return TransactionHistory(transactions=[self._parse_transaction(item) for item in body["transactions"]])
        except (PydanticValidationError, AttributeError, TypeError) as e:
            raise GatewayPayloadError(f"Invalid transaction entry in PayPlus history: {e}")

    @staticmethod
    def _parse_transaction(item: dict) -> GatewayTransaction:
        information = item.get("information") or {}
        page_request = item.get("payment_page_payment_request") or {}
        recurring = item.get("recurring_charge_information") or {}
        return GatewayTransaction(
            uuid=item.get("uuid"),
            page_request_uid=page_request.get("uuid"),
            status_code=information.get("status_code"),
            approval_number=information.get("approval_number"),
            amount=information.get("amount_by_currency"),
            card_last4=information.get("card_num"),
            transaction_at=information.get("transaction_at"),
            recurring_uid=recurring.get("recurring_uid"),
        )

    async def query_recurring_charges(self, subscription_uid: str) -> RecurringChargeHistory:
        body = await self._post(
            "RecurringPayments/Get",
            {"terminal_uid": self.terminal_uid, "recurring_uid": subscription_uid},
        )
        if not isinstance(body, dict):
            raise GatewayPayloadError("Invalid recurring payment response from PayPlus")

        data = body.get("data") if isinstance(body.get("data"), dict) else body
        charges = data.get("charges", [])
        if not isinstance(charges, list):
            raise GatewayPayloadError("Invalid recurring charges list from PayPlus")
        try:
            return RecurringChargeHistory(charges=[RecurringCharge.model_validate(c) for c in charges])
        except PydanticValidationError as e:
            raise GatewayPayloadError(f"Invalid recurring charge entry from PayPlus: {e}")
