"""
Capability interface the ledger uses to move money.

Adapters return a result on success and raise one of two typed failures:
``GatewayDeclined`` when the gateway answered and said no, and
``GatewayTransportError`` when no trustworthy answer arrived (timeout,
connection reset, 5xx). Only the first means the money did not move.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

import requests

from models.enums import WebhookEventKind


class GatewayError(Exception):
    pass


class GatewayDeclined(GatewayError):
    def __init__(self, code: str, message: str, response: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.response = response


class GatewayTransportError(GatewayError):
    """The request may or may not have been applied by the gateway."""


@dataclass
class GatewayResult:
    transaction_id: str
    authorization_id: Optional[str] = None
    gateway_fee_cents: int = 0
    amount_cents: Optional[int] = None
    status: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayRefundResult:
    refund_id: str
    amount_cents: int
    status: str
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayEvent:
    event_id: str
    event_type: str
    kind: WebhookEventKind
    transaction_reference: Optional[str] = None
    payment_id: Optional[int] = None
    amount_cents: Optional[int] = None
    refund_reference: Optional[str] = None
    # Other identifiers the gateway uses for the same refund
    refund_aliases: Tuple[str, ...] = ()
    refund_status: Optional[str] = None
    refunded_total_cents: Optional[int] = None
    gateway_fee_cents: Optional[int] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None
    dispute: Optional[Dict[str, Any]] = None


class GatewayAdapter(ABC):
    name: str = ""
    # Static map of the gateway's event types to their meaning; unknown types are UNHANDLED
    EVENT_KINDS: Mapping[str, WebhookEventKind] = {}

    @abstractmethod
    def authorize(self, amount_cents: int, currency: str, payment_method: Dict[str, Any],
                  metadata: Dict[str, Any], idempotency_key: str) -> GatewayResult:
        ...

    @abstractmethod
    def capture(self, authorization_id: str, amount_cents: int, currency: str, idempotency_key: str) -> GatewayResult:
        ...

    @abstractmethod
    def charge(self, amount_cents: int, currency: str, payment_method: Dict[str, Any],
               metadata: Dict[str, Any], idempotency_key: str) -> GatewayResult:
        ...

    @abstractmethod
    def refund(self, transaction_id: str, amount_cents: int, reason: Optional[str], idempotency_key: str) -> GatewayRefundResult:
        ...

    @abstractmethod
    def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:
        ...

    @abstractmethod
    def parse_event(self, payload: Dict[str, Any]) -> GatewayEvent:
        ...

    def event_kind(self, event_type: str) -> WebhookEventKind:
        return self.EVENT_KINDS.get(event_type, WebhookEventKind.UNHANDLED)


def _metadata_payment_id(metadata: Optional[Mapping[str, Any]]) -> Optional[int]:
    if not metadata:
        return None
    value = metadata.get("payment_id")
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class HttpGateway(GatewayAdapter):
    """Shared plumbing for gateways reached over a JSON/form REST API."""

    def __init__(self, base_url: str, secret_key: str, timeout: float, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.secret_key}"}

    def _decline_from(self, resp: requests.Response, body: Dict[str, Any]) -> GatewayDeclined:
        message = body.get("message") or f"{self.name} rejected the request"
        return GatewayDeclined(code=str(body.get("code") or resp.status_code), message=message, response=body)

    def _post(self, path: str, idempotency_key: Optional[str] = None, **kwargs) -> Dict[str, Any]:
        try:
            resp = self.session.post(
                f"{self.base_url}{path}",
                headers=self._headers(idempotency_key),
                timeout=self.timeout,
                **kwargs,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise GatewayTransportError(f"{self.name} {path}: {exc}") from exc

        if resp.status_code >= 500:
            raise GatewayTransportError(f"{self.name} {path}: HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise GatewayTransportError(f"{self.name} {path}: unreadable response") from exc
        if resp.status_code >= 400:
            raise self._decline_from(resp, body)
        return body
