"""
Outbound sale sync against the remote POS API.

`SyncClient.push_sale` posts one committed sale (or supplier purchase) and
retries transient failures according to a `RetryPolicy`. It never raises for
HTTP or network problems: callers always get a `SyncResult` back. Each attempt
carries the transaction's local uuid as `Idempotency-Key` so the server can
drop repeats of a request whose response was lost, while sales from different
tills never share a key.
"""
import datetime as dt
import logging
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, Optional, Tuple

import requests

import money
from pos_store import Transaction, TransactionKind

log = logging.getLogger("pos.sync")


class AuthenticationError(money.PosError):
    """The remote refused our credentials; a fresh login is needed."""


class SyncOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    TERMINAL_FAILURE = "terminal_failure"


@dataclass(frozen=True)
class RetryPolicy:
    """How many attempts to make and how long to wait between them.

    `backoff="exponential"` waits base, 2*base, 4*base...; `"linear"` waits
    base, 2*base, 3*base... Both are capped at `max_delay`.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    backoff: str = "exponential"
    max_delay: float = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff not in ("exponential", "linear"):
            raise ValueError(f"Unknown backoff {self.backoff!r}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Delays must not be negative")

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (1-based)."""
        if self.backoff == "linear":
            raw = self.base_delay * attempt
        else:
            raw = self.base_delay * (2 ** (attempt - 1))
        return min(raw, self.max_delay)


# ---------- wire types ----------
@dataclass(frozen=True)
class SaleLinePayload:
    product_id: str
    variation_id: str
    quantity: str
    unit_price: str
    discount_amount: str
    tax_amount: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "variation_id": self.variation_id,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "tax_rate_id": None,
            "item_tax": self.tax_amount,
            "discount_amount": self.discount_amount,
            "discount_type": "fixed",
            "note": None,
        }


@dataclass(frozen=True)
class SalePaymentPayload:
    method: str
    amount: str
    note: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {"method": self.method, "amount": self.amount, "note": self.note, "account_id": None, "is_return": 0}


@dataclass(frozen=True)
class SaleRequest:
    """The remote sale payload. Amounts travel as decimal strings."""
    endpoint: ClassVar[str] = "sell"

    local_id: str
    invoice_no: str
    location_id: Optional[str]
    contact_id: Optional[str]
    transaction_date: str
    products: Tuple[SaleLinePayload, ...]
    payments: Tuple[SalePaymentPayload, ...]
    discount_amount: str = "0.00"
    shipping_charges: str = "0.00"
    order_tax_amount: str = "0.00"
    change_return: str = "0.00"
    total_before_tax: str = "0.00"
    final_total: str = "0.00"
    sale_note: Optional[str] = None

    @classmethod
    def from_transaction(cls, txn: Transaction) -> "SaleRequest":
        if not txn.invoice_no:
            raise ValueError(f"Sale {txn.local_id} has no invoice number; only committed sales can be synced")
        return cls(
            local_id=txn.local_id,
            invoice_no=txn.invoice_no,
            location_id=txn.location_id,
            contact_id=txn.customer_id,
            transaction_date=txn.created_at.astimezone(dt.timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
            products=tuple(
                SaleLinePayload(
                    product_id=l.product_id,
                    variation_id=l.variation_id,
                    quantity=str(l.quantity),
                    unit_price=money.to_decimal(l.unit_price_minor),
                    discount_amount=money.to_decimal(l.discount_minor),
                    tax_amount=money.to_decimal(l.tax_minor),
                )
                for l in txn.lines
            ),
            payments=tuple(
                SalePaymentPayload(p.method.value, money.to_decimal(p.amount_minor), p.note)
                for p in txn.payments
            ),
            discount_amount=money.to_decimal(txn.snapshot.discount_minor),
            shipping_charges=money.to_decimal(txn.snapshot.shipping_minor),
            order_tax_amount=money.to_decimal(txn.snapshot.order_tax_minor),
            change_return=money.to_decimal(txn.change_return_minor),
            total_before_tax=money.to_decimal(txn.total_minor - txn.snapshot.order_tax_minor),
            final_total=money.to_decimal(txn.total_minor),
            sale_note=txn.note,
        )

    def to_payload(self) -> Dict[str, Any]:
        sale = {
            "location_id": self.location_id,
            "contact_id": self.contact_id,
            "transaction_date": self.transaction_date,
            "invoice_no": self.invoice_no,
            "status": "final",
            "is_quotation": 0,
            "discount_amount": self.discount_amount,
            "discount_type": "fixed",
            "shipping_charges": self.shipping_charges,
            "order_tax_amount": self.order_tax_amount,
            "change_return": self.change_return,
            "sale_note": self.sale_note,
            "products": [p.to_payload() for p in self.products],
            "payments": [p.to_payload() for p in self.payments],
        }
        return {"sells": [sale]}


@dataclass(frozen=True)
class PurchaseRequest(SaleRequest):
    """A stock purchase from a supplier, posted to the purchase endpoint.

    The contact is the supplier and the local invoice number is sent as
    the supplier reference (`ref_no`).
    """
    endpoint: ClassVar[str] = "purchase"

    def to_payload(self) -> Dict[str, Any]:
        purchase = {
            "location_id": self.location_id,
            "contact_id": self.contact_id,
            "transaction_date": self.transaction_date,
            "ref_no": self.invoice_no,
            "status": "received",
            "tax_id": None,
            "discount_amount": self.discount_amount,
            "discount_type": "fixed",
            "total_before_tax": self.total_before_tax,
            "tax_amount": self.order_tax_amount,
            "final_total": self.final_total,
            "additional_notes": self.sale_note,
            "shipping_charges": self.shipping_charges,
            "shipping_details": None,
            "purchases": [
                {
                    "product_id": p.product_id,
                    "variation_id": p.variation_id,
                    "quantity": p.quantity,
                    "unit_price": p.unit_price,
                    "line_discount_amount": p.discount_amount,
                    "line_discount_type": "fixed",
                    "item_tax_id": None,
                    "item_tax": p.tax_amount,
                }
                for p in self.products
            ],
            "payments": [p.to_payload() for p in self.payments],
        }
        return {"purchases": [purchase]}


def request_for(txn: Transaction) -> SaleRequest:
    """Wire request matching the transaction's kind."""
    if txn.kind == TransactionKind.PURCHASE:
        return PurchaseRequest.from_transaction(txn)
    return SaleRequest.from_transaction(txn)


@dataclass(frozen=True)
class SaleResponse:
    remote_id: str
    invoice_url: Optional[str] = None
    payment_lines: Tuple[Dict[str, Any], ...] = ()

    @property
    def payment_ids(self) -> Tuple[Optional[str], ...]:
        return tuple(None if l.get("id") is None else str(l["id"]) for l in self.payment_lines)

    @classmethod
    def decode(cls, body: Any) -> Optional["SaleResponse"]:
        """Accept `[{...}]`, `{"data": ...}` or a bare object; None if no id is present."""
        if isinstance(body, list):
            body = body[0] if body else None
        if isinstance(body, dict) and "data" in body and "id" not in body:
            return cls.decode(body["data"])
        if not isinstance(body, dict):
            return None
        remote_id = body.get("id") or body.get("transaction_id")
        if remote_id in (None, ""):
            return None
        lines = body.get("payment_lines") or []
        return cls(
            remote_id=str(remote_id),
            invoice_url=body.get("invoice_url"),
            payment_lines=tuple(l for l in lines if isinstance(l, dict)),
        )


@dataclass(frozen=True)
class SyncResult:
    outcome: SyncOutcome
    attempts: int
    status_code: Optional[int] = None
    error: Optional[str] = None
    response: Optional[SaleResponse] = None
    reauth_required: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome == SyncOutcome.SUCCESS

    @property
    def remote_id(self) -> Optional[str]:
        return self.response.remote_id if self.response else None

    @property
    def invoice_url(self) -> Optional[str]:
        return self.response.invoice_url if self.response else None


# ---------- auth ----------
class StaticTokenProvider:
    def __init__(self, token: Optional[str]):
        self.token = token

    def get_token(self) -> str:
        if not self.token:
            raise AuthenticationError("No API token configured")
        return self.token

    def invalidate(self):
        pass


class PasswordGrantTokenProvider:
    """OAuth password-grant login, cached until the server rejects the token."""

    def __init__(self, login_url: str, client_id: str, client_secret: str, username: str, password: str,
                 session: Optional[requests.Session] = None, timeout: float = 30.0):
        self.login_url = login_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.username = username
        self.password = password
        self.session = session or requests.Session()
        self.timeout = timeout
        self._token: Optional[str] = None
        self._lock = threading.Lock()

    def get_token(self) -> str:
        with self._lock:
            if self._token:
                return self._token
            resp = self.session.post(
                self.login_url,
                data={
                    "grant_type": "password",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "username": self.username,
                    "password": self.password,
                },
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
            if resp.status_code in (400, 401, 403):
                raise AuthenticationError(f"Login rejected: {_error_message(resp)}")
            resp.raise_for_status()
            try:
                body = resp.json()
            except ValueError:
                body = None
            token = body.get("access_token") if isinstance(body, dict) else None
            if not token:
                raise AuthenticationError("Login response carried no access_token")
            self._token = token
            return token

    def invalidate(self):
        with self._lock:
            self._token = None


def _error_message(resp: Any) -> str:
    """Best-effort message out of an error body, trimmed for logs."""
    try:
        data = resp.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            err = err.get("message") or err.get("info")
        msg = data.get("message") or err
        if msg:
            return str(msg)
    text = (getattr(resp, "text", "") or "").strip()
    if len(text) > 400:
        text = text[:400] + "…"
    return text or f"HTTP {resp.status_code}"


# ---------- client ----------
class SyncClient:
    def __init__(
        self,
        base_url: str,
        token_provider: Any,
        api_path: str = "/connector/api",
        session: Optional[requests.Session] = None,
        policy: Optional[RetryPolicy] = None,
        timeout: float = 30.0,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_path = "/" + (api_path or "").strip("/") if api_path else ""
        self.token_provider = token_provider
        self.session = session or requests.Session()
        self.policy = policy or RetryPolicy()
        self.timeout = timeout
        self._sleep = sleep

    def url_for(self, endpoint: str) -> str:
        return f"{self.base_url}{self.api_path}/{endpoint}"

    @property
    def sell_url(self) -> str:
        return self.url_for(SaleRequest.endpoint)

    def push_sale(self, request: SaleRequest, cancel: Optional[threading.Event] = None) -> SyncResult:
        attempt = 0
        while True:
            attempt += 1
            result = self._attempt(request, attempt)
            if result.outcome != SyncOutcome.RETRYABLE_FAILURE:
                return result
            if attempt >= self.policy.max_attempts:
                log.warning("Giving up on %s after %d attempt(s): %s", request.invoice_no, attempt, result.error)
                return result
            delay = self.policy.delay(attempt)
            log.info("Retrying %s in %.1fs (attempt %d/%d): %s",
                     request.invoice_no, delay, attempt + 1, self.policy.max_attempts, result.error)
            if self._wait(delay, cancel):
                log.info("Sync of %s cancelled after %d attempt(s)", request.invoice_no, attempt)
                return replace(result, cancelled=True)

    def _wait(self, delay: float, cancel: Optional[threading.Event]) -> bool:
        """Sleep between attempts; True if cancelled meanwhile."""
        if cancel is not None and cancel.is_set():
            return True
        if self._sleep is not None:
            self._sleep(delay)
            return cancel is not None and cancel.is_set()
        if cancel is not None:
            return cancel.wait(delay)
        threading.Event().wait(delay)
        return False

    def _attempt(self, request: SaleRequest, attempt: int) -> SyncResult:
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Idempotency-Key": request.local_id,
        }
        try:
            headers["Authorization"] = f"Bearer {self.token_provider.get_token()}"
        except AuthenticationError as exc:
            return SyncResult(SyncOutcome.TERMINAL_FAILURE, attempt, error=str(exc), reauth_required=True)
        except requests.RequestException as exc:
            return SyncResult(SyncOutcome.RETRYABLE_FAILURE, attempt, error=f"Login failed: {exc}")

        url = self.url_for(request.endpoint)
        log.debug("POST %s (%s) attempt %d", url, request.invoice_no, attempt)
        try:
            resp = self.session.post(url, json=request.to_payload(), headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            return SyncResult(SyncOutcome.RETRYABLE_FAILURE, attempt, error=f"Network error: {exc}")
        return self._classify(resp, attempt)

    def _classify(self, resp: Any, attempt: int) -> SyncResult:
        code = int(resp.status_code)
        if 200 <= code < 300:
            try:
                body = resp.json()
            except ValueError:
                body = None
            decoded = SaleResponse.decode(body)
            if decoded is None:
                return SyncResult(SyncOutcome.TERMINAL_FAILURE, attempt, code, "malformed_response")
            return SyncResult(SyncOutcome.SUCCESS, attempt, code, response=decoded)
        if code == 401:
            return SyncResult(SyncOutcome.TERMINAL_FAILURE, attempt, code,
                              "Unauthorized - token may be expired", reauth_required=True)
        if code == 403:
            return SyncResult(SyncOutcome.TERMINAL_FAILURE, attempt, code,
                              "Forbidden - insufficient permissions", reauth_required=True)
        if 400 <= code < 500:
            return SyncResult(SyncOutcome.TERMINAL_FAILURE, attempt, code, _error_message(resp))
        if code >= 500:
            return SyncResult(SyncOutcome.RETRYABLE_FAILURE, attempt, code, f"Server error: HTTP {code}")
        return SyncResult(SyncOutcome.TERMINAL_FAILURE, attempt, code, f"Unexpected status code: {code}")
