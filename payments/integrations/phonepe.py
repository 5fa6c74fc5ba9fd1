import base64
import json
import logging
from dataclasses import dataclass

import requests
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from requests import RequestException

from ..checksum import SignatureEngine

logger = logging.getLogger(__name__)

PAY_PATH = "/pg/v1/pay"
STATUS_PATH = "/pg/v1/status/{merchant_id}/{transaction_id}"
REFUND_PATH = "/pg/v1/refund"


class PhonePeError(Exception):
    """Gateway call failed. ``retryable`` is True for timeouts, connection errors and 5xx."""

    def __init__(self, message, *, status_code=None, retryable=False, timeout=False, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retryable = retryable
        self.timeout = timeout
        self.payload = payload or {}


@dataclass(frozen=True)
class GatewayConfig:
    merchant_id: str
    salt_key: str
    salt_index: str
    base_url: str
    redirect_url: str
    callback_url: str
    frontend_url: str
    pay_timeout: float = 30.0
    status_timeout: float = 15.0
    require_signed_callbacks: bool = False

    @classmethod
    def from_settings(cls):
        mid = getattr(settings, "PHONEPE_MERCHANT_ID", "")
        salt = getattr(settings, "PHONEPE_SALT_KEY", "")
        if not mid: raise ImproperlyConfigured("Missing PHONEPE_MERCHANT_ID")
        if not salt: raise ImproperlyConfigured("Missing PHONEPE_SALT_KEY")
        return cls(
            merchant_id=mid,
            salt_key=salt,
            salt_index=str(getattr(settings, "PHONEPE_SALT_INDEX", "1")),
            base_url=getattr(settings, "PHONEPE_BASE_URL", "").rstrip("/"),
            redirect_url=getattr(settings, "PHONEPE_REDIRECT_URL", ""),
            callback_url=getattr(settings, "PHONEPE_CALLBACK_URL", ""),
            frontend_url=getattr(settings, "FRONTEND_URL", "").rstrip("/"),
            pay_timeout=float(getattr(settings, "PHONEPE_PAY_TIMEOUT", 30)),
            status_timeout=float(getattr(settings, "PHONEPE_STATUS_TIMEOUT", 15)),
            require_signed_callbacks=bool(getattr(settings, "PHONEPE_REQUIRE_SIGNED_CALLBACKS", False)),
        )


def encode_payload(payload: dict) -> str:
    return base64.b64encode(json.dumps(payload, separators=(",", ":")).encode("utf-8")).decode("ascii")


def decode_payload(encoded: str) -> dict:
    """Inverse of ``encode_payload``; raises ValueError on anything that is not base64 JSON."""
    try:
        data = json.loads(base64.b64decode(encoded, validate=True).decode("utf-8"))
    except (ValueError, TypeError) as e:
        raise ValueError(f"Undecodable gateway payload: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Gateway payload is not a JSON object")
    return data


def _json_or_raw(resp) -> dict:
    try: data = resp.json()
    except ValueError: data = {"raw": resp.text}
    return data if isinstance(data, dict) else {"raw": data}


class PhonePeClient:
    def __init__(self, config: GatewayConfig):
        self.config = config
        self.signer = SignatureEngine(config.salt_key, config.salt_index)

    def _headers(self, checksum: str, **extra) -> dict:
        return {
            "Content-Type": "application/json",
            "accept": "application/json",
            "X-VERIFY": checksum,
            **extra,
        }

    def _check(self, resp, what: str) -> dict:
        data = _json_or_raw(resp)
        if 200 <= resp.status_code < 300:
            return data
        message = data.get("message") or f"HTTP {resp.status_code}"
        if resp.status_code >= 500:
            raise PhonePeError(f"{what} failed: gateway error {resp.status_code}",
                               status_code=resp.status_code, retryable=True, payload=data)
        # 4xx: the gateway's own message goes back to the caller untouched
        raise PhonePeError(message, status_code=resp.status_code, payload=data)

    def _send(self, method, url, what, **kwargs):
        try:
            return method(url, **kwargs)
        except requests.Timeout as e:
            raise PhonePeError(f"{what} timed out: {e}", retryable=True, timeout=True)
        except RequestException as e:
            raise PhonePeError(f"{what} request failed: {e}", retryable=True)

    def _post_signed(self, path: str, payload: dict, what: str) -> dict:
        body = encode_payload(payload)
        checksum = self.signer.sign(body, path)
        resp = self._send(
            requests.post, f"{self.config.base_url}{path}", what,
            json={"request": body}, headers=self._headers(checksum), timeout=self.config.pay_timeout,
        )
        return self._check(resp, what)

    def pay(self, payload: dict) -> dict:
        logger.info("PhonePe pay request for %s (amount=%s)", payload.get("merchantTransactionId"), payload.get("amount"))
        return self._post_signed(PAY_PATH, payload, "Pay")

    def refund(self, payload: dict) -> dict:
        logger.info("PhonePe refund request %s for %s", payload.get("merchantTransactionId"), payload.get("originalTransactionId"))
        return self._post_signed(REFUND_PATH, payload, "Refund")

    def status(self, transaction_id: str) -> dict:
        path = STATUS_PATH.format(merchant_id=self.config.merchant_id, transaction_id=transaction_id)
        headers = self._headers(self.signer.sign_path(path), **{"X-MERCHANT-ID": self.config.merchant_id})
        resp = self._send(
            requests.get, f"{self.config.base_url}{path}", "Status check",
            headers=headers, timeout=self.config.status_timeout,
        )
        return self._check(resp, "Status check")


def redirect_url_from(data: dict) -> str:
    inner = data.get("data") or {}
    redirect_info = (inner.get("instrumentResponse") or {}).get("redirectInfo") or {}
    return redirect_info.get("url") or ""
