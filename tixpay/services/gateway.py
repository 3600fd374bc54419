# tixpay/services/gateway.py
import hashlib
import hmac
import logging
import re
import secrets
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Dict, List, Optional

import httpx

from tixpay.config import Settings
from tixpay.errors import (
    ConfigurationError, GatewayError, GatewayTimeoutError, InvalidSplitError, ValidationError,
)
from tixpay.metrics import gateway_latency

logger = logging.getLogger(__name__)

DEFAULT_CHANNELS = ["card", "bank", "ussd", "qr", "mobile_money"]
_INVALID_SPLIT = re.compile(r"invalid split", re.IGNORECASE)


@dataclass
class InitializeResult:
    redirect_url: str
    reference: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VerifyResult:
    success: bool
    raw_status: Optional[str]
    amount: Optional[int]
    currency: Optional[str]
    metadata: Dict[str, Any]
    customer: Dict[str, Any]
    raw: Dict[str, Any]


class GatewayClient:
    """Thin adapter around the payment gateway (Paystack-compatible API).

    Without a secret key the client runs in mock mode: ``initialize`` never touches
    the network and redirects straight to the caller's success page.
    """

    def __init__(
        self,
        secret_key: Optional[str],
        base_url: str = "https://api.paystack.co",
        timeout_secs: float = 10.0,
        webhook_secret: Optional[str] = None,
        enable_splits: bool = False,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.webhook_secret = webhook_secret or secret_key
        self.enable_splits = enable_splits
        self._timeout = httpx.Timeout(timeout_secs)
        self._transport = transport
        self._client: Optional[httpx.Client] = None
        if self.mock_mode:
            logger.warning("GATEWAY_SECRET_KEY is not set; checkout runs in mock mode")

    @classmethod
    def from_settings(cls, settings: Settings, transport: Optional[httpx.BaseTransport] = None) -> "GatewayClient":
        return cls(
            secret_key=settings.gateway_secret_key,
            base_url=settings.gateway_base_url,
            timeout_secs=settings.gateway_timeout_secs,
            webhook_secret=settings.gateway_webhook_secret,
            enable_splits=settings.gateway_enable_splits,
            transport=transport,
        )

    @property
    def mock_mode(self) -> bool:
        return not self.secret_key

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.base_url,
                timeout=self._timeout,
                headers={"Authorization": f"Bearer {self.secret_key}"},
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _request(self, operation: str, method: str, path: str, **kwargs) -> Dict[str, Any]:
        if self.mock_mode:
            raise ConfigurationError(f"gateway {operation} needs GATEWAY_SECRET_KEY")

        start = perf_counter()
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise GatewayTimeoutError(f"Gateway {operation} timed out") from e
        except httpx.HTTPError as e:
            raise GatewayError(f"Gateway {operation} failed: {e}") from e
        finally:
            gateway_latency.labels(operation).observe(perf_counter() - start)

        if response.status_code >= 300:
            body = response.text
            error_cls = InvalidSplitError if _INVALID_SPLIT.search(body) else GatewayError
            raise error_cls(
                f"Gateway {operation} failed: {response.status_code} {body}",
                http_status=response.status_code,
                body=body,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise GatewayError(
                f"Gateway {operation} returned a non-JSON body",
                http_status=response.status_code,
                body=response.text,
            ) from e
        if not payload.get("status"):
            raise GatewayError(
                payload.get("message") or f"Gateway {operation} was not accepted",
                http_status=response.status_code,
                body=response.text,
            )
        return payload

    def initialize(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        currency: str,
        metadata: Dict[str, Any],
        callback_url: str,
        subaccount: Optional[str] = None,
        split_code: Optional[str] = None,
        channels: Optional[List[str]] = None,
    ) -> InitializeResult:
        if self.mock_mode:
            url = httpx.URL(callback_url).copy_merge_params({"reference": reference, "mock": "1"})
            return InitializeResult(
                redirect_url=str(url),
                reference=reference,
                raw={"status": "mock", "message": "Gateway secret key not configured. Using mock checkout session."},
            )

        body: Dict[str, Any] = {
            "email": email,
            "amount": amount_minor,
            "reference": reference,
            "currency": currency,
            "metadata": metadata,
            "callback_url": callback_url,
            "channels": channels or DEFAULT_CHANNELS,
        }
        if subaccount:
            body["subaccount"] = subaccount
        if split_code:
            body["split_code"] = split_code
            body["bearer"] = "account"

        payload = self._request("initialize", "POST", "/transaction/initialize", json=body)
        data = payload.get("data") or {}
        if not data.get("authorization_url"):
            raise GatewayError("Gateway initialize returned no authorization_url", body=str(payload))
        return InitializeResult(
            redirect_url=data["authorization_url"],
            reference=data.get("reference") or reference,
            raw=payload,
        )

    def verify(self, reference: str) -> VerifyResult:
        payload = self._request("verify", "GET", f"/transaction/verify/{reference}")
        data = payload.get("data") or {}
        metadata = data.get("metadata")
        return VerifyResult(
            success=data.get("status") == "success",
            raw_status=data.get("status"),
            amount=data.get("amount"),
            currency=data.get("currency"),
            metadata=metadata if isinstance(metadata, dict) else {},
            customer=data.get("customer") or {},
            raw=data,
        )

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """HMAC-SHA512 of the raw body, hex encoded, compared in constant time."""
        if not signature:
            return False
        if not self.webhook_secret:
            logger.warning("webhook received but no signing secret is configured")
            return False
        computed = hmac.new(self.webhook_secret.encode(), raw_body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(computed, signature.strip().lower())

    def resolve_bank_account(self, bank_code: str, account_number: str) -> Dict[str, Any]:
        bank_code = (bank_code or "").strip()
        digits = re.sub(r"\D", "", account_number or "")
        if not bank_code or not digits:
            raise ValidationError("Bank code and account number are required to validate bank details.")
        if not re.fullmatch(r"\d{10,11}", digits):
            raise ValidationError("Account number must contain 10 or 11 digits.")

        if self.mock_mode:
            return {"account_name": f"Test Account • {digits[-4:]}", "account_number": digits, "is_mock": True}

        payload = self._request(
            "resolve_account", "GET", "/bank/resolve",
            params={"bank_code": bank_code, "account_number": digits},
        )
        data = payload.get("data") or {}
        if not data.get("account_name"):
            raise GatewayError(payload.get("message") or "Gateway could not resolve the supplied bank details.")
        return {
            "account_name": data["account_name"].strip(),
            "account_number": data.get("account_number") or digits,
            "is_mock": False,
        }

    def create_subaccount(
        self,
        business_name: str,
        settlement_bank: str,
        account_number: str,
        percentage_charge: float,
        email: Optional[str] = None,
    ) -> str:
        if self.mock_mode:
            return f"SUB_{secrets.token_hex(4)}"
        payload = self._request("create_subaccount", "POST", "/subaccount", json={
            "business_name": business_name,
            "settlement_bank": settlement_bank,
            "account_number": account_number,
            "percentage_charge": percentage_charge,
            "primary_contact_email": email,
        })
        return payload["data"]["subaccount_code"]

    def create_split(self, name: str, subaccount_code: str, share_percent: float, currency: str = "NGN") -> str:
        if self.mock_mode:
            return f"SPL_{secrets.token_hex(4)}"
        payload = self._request("create_split", "POST", "/split", json={
            "name": name,
            "type": "percentage",
            "currency": currency,
            "bearer_type": "account",
            "subaccounts": [
                {"subaccount": subaccount_code, "share": max(0, min(100, share_percent))},
            ],
        })
        return payload["data"]["split_code"]
