"""MPESA Daraja client for STK push payment requests.

Three modes are supported:

* ``simulated`` never touches the network.  Every request is accepted
  with a locally minted ``ws_CO_...`` checkout token, and confirmation
  arrives through the regular callback endpoint (posted by a tester or
  a fixture).
* ``sandbox`` and ``production`` call the Safaricom Daraja API: an OAuth
  client-credentials token is fetched (and cached until shortly before it
  expires), then ``/mpesa/stkpush/v1/processrequest`` is posted.

Transient failures (timeouts, transport errors, 5xx) are retried up to 3
times with exponential backoff.  A 4xx answer fails immediately.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
import secrets
import time
from datetime import UTC, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import BaseModel

from plant_api.config import MpesaMode
from plant_api.services.errors import PaymentProviderError
from plant_core.models.trade import PaymentCallback

if TYPE_CHECKING:
    from plant_api.config import APISettings

logger = logging.getLogger(__name__)

_MAX_RETRIES = 3
_BACKOFF_BASE = 1.0
_TOKEN_REFRESH_MARGIN = 60

_BASE_URLS = {
    MpesaMode.SANDBOX: "https://sandbox.safaricom.co.ke",
    MpesaMode.PRODUCTION: "https://api.safaricom.co.ke",
}

# Daraja timestamps and TransactionDate values are East Africa Time.
_EAT = timezone(timedelta(hours=3))

_PHONE_RE = re.compile(r"^254[17]\d{8}$")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def normalize_phone(raw: str) -> str:
    """Return *raw* as a ``2547XXXXXXXX`` / ``2541XXXXXXXX`` MSISDN.

    Accepts local (``07...``), bare (``7...``) and international
    (``+254...``) forms, with spaces or dashes.

    Raises
    ------
    ValueError
        If the number is not a Kenyan mobile number.
    """
    digits = re.sub(r"[\s\-()+]", "", raw or "")
    if digits.startswith("0") and len(digits) == 10:
        digits = "254" + digits[1:]
    elif len(digits) == 9 and digits[0] in "17":
        digits = "254" + digits
    if not _PHONE_RE.match(digits):
        raise ValueError(f"Invalid phone number: {raw!r}")
    return digits


def daraja_timestamp(now: datetime | None = None) -> str:
    """``YYYYMMDDHHMMSS`` in East Africa Time."""
    return (now or datetime.now(UTC)).astimezone(_EAT).strftime("%Y%m%d%H%M%S")


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """Base64 of ``shortcode + passkey + timestamp`` as Daraja expects."""
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode("ascii")


def _parse_transaction_date(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return datetime.strptime(str(value), "%Y%m%d%H%M%S").replace(tzinfo=_EAT).astimezone(UTC)
    except ValueError:
        logger.warning("Unparseable MPESA TransactionDate %r", value)
        return None


def parse_callback(body: dict[str, Any]) -> PaymentCallback:
    """Normalise a Daraja ``stkCallback`` envelope.

    Raises
    ------
    ValueError
        If the envelope is missing ``Body.stkCallback.CheckoutRequestID``
        or ``ResultCode``, or its metadata is not a list of name/value
        items with a numeric ``Amount``.
    """
    try:
        callback = body["Body"]["stkCallback"]
        token = str(callback["CheckoutRequestID"])
        result_code = int(callback["ResultCode"])

        items: dict[str, Any] = {}
        metadata = callback.get("CallbackMetadata") or {}
        for item in metadata.get("Item", []) or []:
            if isinstance(item, dict) and "Name" in item:
                items[item["Name"]] = item.get("Value")

        amount = items.get("Amount")
        phone = items.get("PhoneNumber")
        return PaymentCallback(
            checkout_token=token,
            result_code=result_code,
            result_desc=str(callback.get("ResultDesc", "")),
            receipt_number=str(items["MpesaReceiptNumber"]) if items.get("MpesaReceiptNumber") else None,
            amount=Decimal(str(amount)) if amount is not None else None,
            phone_number=str(phone) if phone is not None else None,
            transaction_date=_parse_transaction_date(items.get("TransactionDate")),
        )
    # decimal.InvalidOperation is an ArithmeticError, not a ValueError.
    except (KeyError, TypeError, ValueError, AttributeError, ArithmeticError) as exc:
        raise ValueError("Malformed MPESA callback payload") from exc


class StkPushResult(BaseModel):
    """Synchronous acknowledgement of an STK push request."""

    checkout_request_id: str | None = None
    merchant_request_id: str | None = None
    response_code: str
    description: str = ""

    @property
    def accepted(self) -> bool:
        return self.response_code == "0" and bool(self.checkout_request_id)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class MpesaClient:
    """Async STK push client.

    Parameters
    ----------
    mode:
        ``simulated``, ``sandbox`` or ``production``.
    consumer_key, consumer_secret:
        Daraja app credentials (unused when simulated).
    shortcode, passkey:
        Paybill shortcode and its Lipa Na MPESA passkey.
    callback_url:
        Public URL of ``POST /api/v1/payments/callback``.
    timeout:
        Per-request timeout in seconds.
    http_client:
        Optional ``httpx.AsyncClient`` for testing.
    backoff_base:
        First retry delay in seconds; doubles on each attempt.
    """

    def __init__(
        self,
        *,
        mode: MpesaMode = MpesaMode.SIMULATED,
        consumer_key: str = "",
        consumer_secret: str = "",
        shortcode: str = "174379",
        passkey: str = "",
        callback_url: str = "",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
        backoff_base: float = _BACKOFF_BASE,
    ) -> None:
        self._mode = MpesaMode(mode)
        self._consumer_key = consumer_key
        self._consumer_secret = consumer_secret
        self._shortcode = shortcode
        self._passkey = passkey
        self._callback_url = callback_url
        self._backoff_base = backoff_base
        base_url = _BASE_URLS.get(self._mode, "")
        self._client = http_client or httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(timeout))
        self._owns_client = http_client is None
        self._token: str | None = None
        self._token_expires_at = 0.0

    @classmethod
    def from_settings(cls, settings: APISettings) -> MpesaClient:
        return cls(
            mode=settings.mpesa_mode,
            consumer_key=settings.mpesa_consumer_key.get_secret_value(),
            consumer_secret=settings.mpesa_consumer_secret.get_secret_value(),
            shortcode=settings.mpesa_shortcode,
            passkey=settings.mpesa_passkey.get_secret_value(),
            callback_url=settings.mpesa_callback_url,
            timeout=settings.mpesa_timeout,
        )

    @property
    def mode(self) -> MpesaMode:
        return self._mode

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    # -- STK push ------------------------------------------------------------

    async def stk_push(
        self,
        *,
        phone: str,
        amount: Decimal,
        reference: str,
        description: str = "PLANT Metrics Trade Payment",
    ) -> StkPushResult:
        """Ask the payer's handset to authorise a payment.

        Returns the gateway's acknowledgement; ``result.accepted`` tells
        whether the request was queued.  Raises
        :class:`PaymentProviderError` when the gateway cannot be reached
        or rejects the request outright.
        """
        msisdn = normalize_phone(phone)
        whole_amount = int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

        if self._mode is MpesaMode.SIMULATED:
            token = f"ws_CO_{int(time.time() * 1000)}_{secrets.token_hex(5)}"
            logger.info("Simulated STK push to %s for %d (ref=%s): %s", msisdn, whole_amount, reference, token)
            return StkPushResult(
                checkout_request_id=token,
                merchant_request_id=f"MR{int(time.time() * 1000)}",
                response_code="0",
                description="Success. Request accepted for processing",
            )

        timestamp = daraja_timestamp()
        body = {
            "BusinessShortCode": self._shortcode,
            "Password": stk_password(self._shortcode, self._passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": whole_amount,
            "PartyA": msisdn,
            "PartyB": self._shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": self._callback_url,
            "AccountReference": reference[:12],
            "TransactionDesc": description[:13],
        }
        token = await self._access_token()
        data = await self._request(
            "POST",
            "/mpesa/stkpush/v1/processrequest",
            json=body,
            headers={"Authorization": f"Bearer {token}"},
        )
        result = StkPushResult(
            checkout_request_id=data.get("CheckoutRequestID"),
            merchant_request_id=data.get("MerchantRequestID"),
            response_code=str(data.get("ResponseCode", "")),
            description=str(data.get("ResponseDescription") or data.get("errorMessage") or ""),
        )
        logger.info(
            "STK push to %s for %d (ref=%s): code=%s checkout=%s",
            msisdn,
            whole_amount,
            reference,
            result.response_code,
            result.checkout_request_id,
        )
        return result

    # -- Internals -----------------------------------------------------------

    async def _access_token(self) -> str:
        if self._token is not None and time.monotonic() < self._token_expires_at:
            return self._token
        credentials = base64.b64encode(f"{self._consumer_key}:{self._consumer_secret}".encode()).decode("ascii")
        data = await self._request(
            "GET",
            "/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            headers={"Authorization": f"Basic {credentials}"},
        )
        token = data.get("access_token")
        if not token:
            raise PaymentProviderError("MPESA OAuth response did not include an access token")
        expires_in = int(data.get("expires_in", 3599))
        self._token = token
        self._token_expires_at = time.monotonic() + max(expires_in - _TOKEN_REFRESH_MARGIN, 0)
        return token

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """Send a request with retries and exponential backoff."""
        last_error = "unknown error"
        for attempt in range(1, _MAX_RETRIES + 1):
            try:
                response = await self._client.request(method, path, **kwargs)
                if response.status_code < 400:
                    return response.json()
                if response.status_code < 500:
                    detail = _error_detail(response)
                    logger.warning("MPESA %s %s rejected: %d %s", method, path, response.status_code, detail)
                    raise PaymentProviderError(f"MPESA request rejected: {detail}")
                last_error = f"HTTP {response.status_code}"
                logger.warning(
                    "MPESA %s %s failed: status=%d attempt=%d/%d",
                    method,
                    path,
                    response.status_code,
                    attempt,
                    _MAX_RETRIES,
                )
            except httpx.TimeoutException:
                last_error = "timeout"
                logger.warning("MPESA %s %s timeout: attempt=%d/%d", method, path, attempt, _MAX_RETRIES)
            except httpx.RequestError as exc:
                last_error = str(exc)
                logger.warning(
                    "MPESA %s %s error=%s attempt=%d/%d",
                    method,
                    path,
                    exc,
                    attempt,
                    _MAX_RETRIES,
                )

            if attempt < _MAX_RETRIES:
                await asyncio.sleep(self._backoff_base * (2 ** (attempt - 1)))

        logger.error("MPESA %s %s exhausted retries: %s", method, path, last_error)
        raise PaymentProviderError(f"MPESA gateway unavailable: {last_error}")


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("errorMessage") or body.get("ResponseDescription") or body)
    return str(body)
