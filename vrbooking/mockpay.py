from abc import ABC, abstractmethod
from typing import Optional, Tuple, TypedDict
from fastapi import HTTPException
import uuid
import hmac
import hashlib
import base64
import time

import orjson

EVENT_KINDS = ("succeeded", "failed", "canceled")


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateSessionResult(TypedDict):
    payment_session_id: str
    redirect_url: str


class PaymentAdapter(ABC):
    @abstractmethod
    def create_session(
            self, amount: int, currency: str, meta: dict
    ) -> CreateSessionResult: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "succeeded" | "failed" | "canceled"
    @abstractmethod
    def event_kind(self, event: dict) -> str:
        ...

    # (payment_session_id, idempotency_key)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        ...


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    def __init__(self, secret: str = "supersecret") -> None:
        self.secret = secret

    def create_session(
            self, amount: int, currency: str, meta: dict
    ) -> CreateSessionResult:
        # nothing to call out to; the session lives in our own store
        psid = f"mock_{uuid.uuid4().hex}"
        redirect_url = f"/mockpay/{psid}"
        return {"payment_session_id": psid, "redirect_url": redirect_url}

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def build_event(self, kind: str, psid: str, registration_id: str,
                    amount: int, currency: str) -> bytes:
        return orjson.dumps({
            "type": f"payment.{kind}",
            "payment_session_id": psid,
            "registration_id": registration_id,
            "amount": int(amount),
            "currency": currency,
            "created_at": int(time.time()),
            "idempotency_key": f"evt_{uuid.uuid4().hex}",
        })

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("x-mockpay-signature")
        expected = self.sign(payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise HTTPException(status_code=400, detail="Invalid signature")
        try:
            event = orjson.loads(payload)
        except orjson.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Invalid JSON")
        if not isinstance(event, dict):
            raise HTTPException(status_code=400, detail="Invalid event")
        return event

    def event_kind(self, event: dict) -> str:
        return event.get("type", "").split(".")[-1]

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        return (
                event.get("payment_session_id", ""),
                event.get("idempotency_key")
        )
