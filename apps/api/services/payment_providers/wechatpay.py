"""
WeChat Pay API v3 client (Native QR-code payments).

Requests are signed with the merchant RSA key using the
``WECHATPAY2-SHA256-RSA2048`` scheme; notification resources are
AES-256-GCM encrypted with the merchant API v3 key.
"""

from __future__ import annotations

import base64
import json
import logging
import secrets
import time
from typing import Any, Dict, Optional
from urllib.parse import quote, urlencode

import httpx
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from services.payment_providers.base import BasePaymentProvider
from services.payment_providers.types import (
    OrderCreationResult,
    OrderRequest,
    PaymentMethod,
    ProviderUnavailableError,
    VerificationResult,
    to_minor_units,
)

logger = logging.getLogger(__name__)

AUTH_SCHEMA = "WECHATPAY2-SHA256-RSA2048"
TRADE_STATE_SUCCESS = "SUCCESS"


def normalize_pem_key(raw: Optional[str]) -> str:
    """Accept PEM values stored on one line with literal ``\\n`` escapes."""
    return (raw or "").strip().replace("\\n", "\n")


def decrypt_notification_resource(resource: Dict[str, Any], api_v3_key: str) -> Dict[str, Any]:
    """
    Decrypt the ``resource`` block of a WeChat Pay notification.

    Raises:
        ProviderUnavailableError: API v3 key is not configured.
        ValueError: ciphertext is malformed or fails authentication.
    """
    if not api_v3_key:
        raise ProviderUnavailableError("WECHAT_PAY_API_V3_KEY is missing")
    key = api_v3_key.encode("utf-8")
    if len(key) != 32:
        raise ProviderUnavailableError("WECHAT_PAY_API_V3_KEY must be 32 bytes")

    try:
        ciphertext = base64.b64decode(str(resource.get("ciphertext") or ""))
    except (ValueError, TypeError) as exc:
        raise ValueError("Invalid WeChat ciphertext") from exc
    if len(ciphertext) < 17:
        raise ValueError("Invalid WeChat ciphertext")

    nonce = str(resource.get("nonce") or "").encode("utf-8")
    associated_data = str(resource.get("associated_data") or "").encode("utf-8")
    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, associated_data)
    except InvalidTag as exc:
        raise ValueError("WeChat notification failed authentication") from exc
    return json.loads(plaintext.decode("utf-8"))


def parse_notification(raw_body: bytes, api_v3_key: str) -> Dict[str, Any]:
    """Parse a notification body, replacing an encrypted resource with its plaintext."""
    data = json.loads(raw_body or b"{}")
    resource = data.get("resource")
    if isinstance(resource, dict) and resource.get("ciphertext") and resource.get("nonce"):
        data["resource"] = decrypt_notification_resource(resource, api_v3_key)
    return data


class WechatPayProvider(BasePaymentProvider):
    name: PaymentMethod = "wechatpay"

    def __init__(
        self,
        *,
        mch_id: str,
        serial_no: str,
        private_key_pem: str,
        api_v3_key: str = "",
        app_id: str = "",
        notify_url: str = "",
        api_base: str = "https://api.mch.weixin.qq.com",
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.mch_id = (mch_id or "").strip()
        self.serial_no = (serial_no or "").strip()
        self.private_key_pem = normalize_pem_key(private_key_pem)
        self.api_v3_key = api_v3_key or ""
        self.app_id = (app_id or "").strip()
        self.notify_url = notify_url
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._http_client = http_client
        self._private_key = None

    def _load_private_key(self):
        if not self.mch_id or not self.serial_no or not self.private_key_pem:
            raise ProviderUnavailableError(
                "WeChat Pay is not configured. Required: WECHAT_PAY_MCH_ID, "
                "WECHAT_PAY_SERIAL_NO, WECHAT_PAY_PRIVATE_KEY"
            )
        if self._private_key is None:
            try:
                self._private_key = serialization.load_pem_private_key(
                    self.private_key_pem.encode("utf-8"),
                    password=None,
                )
            except ValueError as exc:
                raise ProviderUnavailableError(
                    f"WECHAT_PAY_PRIVATE_KEY parse failed: {exc}. Keep the full PEM BEGIN/END block."
                ) from exc
        return self._private_key

    def build_authorization(
        self,
        method: str,
        url_path_with_query: str,
        body: str,
        *,
        timestamp: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> str:
        private_key = self._load_private_key()
        timestamp = timestamp or str(int(time.time()))
        nonce = nonce or secrets.token_hex(16)
        message = f"{method}\n{url_path_with_query}\n{timestamp}\n{nonce}\n{body}\n"
        signature = private_key.sign(message.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
        encoded = base64.b64encode(signature).decode("ascii")
        return (
            f'{AUTH_SCHEMA} mchid="{self.mch_id}",nonce_str="{nonce}",'
            f'signature="{encoded}",timestamp="{timestamp}",serial_no="{self.serial_no}"'
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        query: Optional[Dict[str, str]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url_path = f"{path}?{urlencode(query)}" if query else path
        request_body = json.dumps(body, separators=(",", ":"), ensure_ascii=False) if body is not None else ""
        headers = {
            "Accept": "application/json",
            "Accept-Language": "zh-CN",
            "Authorization": self.build_authorization(method, url_path, request_body),
            "User-Agent": "morntool-wechatpay/1.0",
        }
        if body is not None:
            headers["Content-Type"] = "application/json"

        url = f"{self.api_base}{url_path}"
        if self._http_client is not None:
            response = await self._http_client.request(
                method, url, headers=headers, content=request_body.encode("utf-8") or None
            )
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(
                    method, url, headers=headers, content=request_body.encode("utf-8") or None
                )

        if response.status_code >= 400:
            logger.warning("WeChat Pay API %s %s failed: %s %s", method, path, response.status_code, response.text)
            response.raise_for_status()
        return response.json() if response.content else {}

    async def query_order(self, out_trade_no: str) -> Dict[str, Any]:
        return await self._request(
            "GET",
            f"/v3/pay/transactions/out-trade-no/{quote(out_trade_no, safe='')}",
            query={"mchid": self.mch_id},
        )

    async def verify(self, identifier: str) -> VerificationResult:
        data = await self.query_order(identifier)
        trade_state = str(data.get("trade_state") or "")
        amount = data.get("amount") or {}
        total = amount.get("payer_total", amount.get("total"))
        return VerificationResult(
            success=trade_state == TRADE_STATE_SUCCESS,
            transaction_id=data.get("transaction_id"),
            amount=(int(total) / 100.0) if total is not None else None,
            currency=amount.get("currency") or "CNY",
            status=trade_state or None,
            raw=data,
        )

    async def create_order(self, order: OrderRequest) -> OrderCreationResult:
        self._load_private_key()
        if not self.app_id:
            raise ProviderUnavailableError("WECHAT_APP_ID is required")
        data = await self._request(
            "POST",
            "/v3/pay/transactions/native",
            body={
                "appid": self.app_id,
                "mchid": self.mch_id,
                "description": order.description,
                "out_trade_no": order.reference_id,
                "notify_url": self.notify_url,
                "amount": {"total": to_minor_units(order.amount), "currency": "CNY"},
            },
        )
        code_url = data.get("code_url")
        if not code_url:
            raise ProviderUnavailableError("WeChat Pay did not return a code_url")
        return OrderCreationResult(reference_id=order.reference_id, provider=self.name, code_url=code_url)
