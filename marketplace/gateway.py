"""
Marketplace — 決済ゲートウェイクライアント

Razorpay 互換 API を呼び出す:
  - POST /v1/orders          決済インテントを作成 (先方での呼び名は "order")
  - GET  /v1/payments/{id}   決済を取得

チェックアウト後のコールバック署名も扱う:
  signature = base64(HMAC-SHA256(key_secret, intent_id + "|" + payment_id))

クライアント SDK とゲートウェイのテストハーネスも同じ値を計算するので、
ペイロードの並びとエンコーディングはビット単位で一致させる。
"""

import base64
import hashlib
import hmac
import logging

import httpx

from .errors import GatewayError

logger = logging.getLogger(__name__)


def to_minor_units(amount: float) -> int:
    """金額を整数の最小通貨単位に変換する。端数は切り捨て (0.29 → 28)。"""
    return int(amount * 100)


class PaymentGatewayClient:
    def __init__(
        self,
        base_url: str,
        key_id: str,
        key_secret: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.key_id = key_id
        self._key_secret = key_secret
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self.key_id, self._key_secret),
            timeout=self._timeout,
            transport=self._transport,
        )

    async def create_intent(self, reference_id: str, amount: float, currency: str) -> str:
        """
        ``amount`` の決済インテントを作成し、その ID を返す。

        タイムアウトや通信失敗、エラー応答、不正なレスポンスは
        すべて GatewayError にする。
        """
        if amount is None or amount <= 0:
            raise GatewayError(f"Invalid amount: {amount}")

        payload = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": reference_id,
            "payment_capture": 1,
        }
        logger.info("Creating payment intent for %s: %s", reference_id, payload)

        async with self._client() as client:
            try:
                resp = await client.post("/v1/orders", json=payload)
                resp.raise_for_status()
                body = resp.json()
            except httpx.TimeoutException as e:
                logger.error("Payment gateway timed out for %s", reference_id)
                raise GatewayError(f"Payment gateway timed out: {e}") from e
            except httpx.HTTPStatusError as e:
                logger.error(
                    "Payment gateway rejected %s: %s %s",
                    reference_id, e.response.status_code, e.response.text,
                )
                raise GatewayError(
                    f"Payment gateway error {e.response.status_code}: {e.response.text}"
                ) from e
            except httpx.HTTPError as e:
                logger.error("Payment gateway unreachable for %s: %s", reference_id, e)
                raise GatewayError(f"Payment gateway unreachable: {e}") from e
            except ValueError as e:
                raise GatewayError(f"Payment gateway returned invalid JSON: {e}") from e

        intent_id = body.get("id") if isinstance(body, dict) else None
        if not intent_id:
            raise GatewayError("Payment gateway response has no intent id")

        logger.info("Payment intent %s created for %s", intent_id, reference_id)
        return intent_id

    async def fetch_payment(self, payment_id: str) -> dict:
        async with self._client() as client:
            try:
                resp = await client.get(f"/v1/payments/{payment_id}")
                resp.raise_for_status()
                return resp.json()
            except httpx.TimeoutException as e:
                raise GatewayError(f"Payment gateway timed out: {e}") from e
            except httpx.HTTPStatusError as e:
                raise GatewayError(
                    f"Payment gateway error {e.response.status_code}: {e.response.text}"
                ) from e
            except httpx.HTTPError as e:
                raise GatewayError(f"Payment gateway unreachable: {e}") from e
            except ValueError as e:
                raise GatewayError(f"Payment gateway returned invalid JSON: {e}") from e

    def compute_signature(self, intent_id: str, payment_id: str) -> str:
        payload = f"{intent_id}|{payment_id}".encode()
        digest = hmac.new(self._key_secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(digest).decode("ascii")

    def verify_signature(self, intent_id: str, payment_id: str, signature: str) -> bool:
        expected = self.compute_signature(intent_id, payment_id)
        is_valid = hmac.compare_digest(expected.encode(), (signature or "").encode())
        logger.info(
            "Signature verification for intent=%s payment=%s: %s",
            intent_id, payment_id, "VALID" if is_valid else "INVALID",
        )
        return is_valid
