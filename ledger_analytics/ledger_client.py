from __future__ import annotations

import random
import time
import uuid
from types import TracebackType
from typing import Any, Callable, Dict, Mapping, Optional

import httpx

from ledger_analytics.errors import LedgerAPIError, LedgerTransportError
from ledger_analytics.models import Feed, Transaction, TransactionPage

# Error codes returned by the ledger API.
CODE_REQUEST_TIMED_OUT = "CH001"
CODE_FEED_EXISTS = "CH050"

# Extra read time on top of the long-poll wait so the server ends the poll.
_LONG_POLL_MARGIN_S = 10.0


def _json_or_none(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return None


class LedgerClient:
    """Minimal JSON client for the ledger's transaction-feed endpoints."""

    def __init__(
        self,
        *,
        base_url: str,
        access_token: Optional[str] = None,
        timeout_connect_s: float = 10.0,
        timeout_read_s: float = 30.0,
        max_retries: int = 3,
        backoff_base_s: float = 0.5,
        backoff_max_s: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._timeout_connect_s = float(timeout_connect_s)
        self._timeout_read_s = float(timeout_read_s)
        self._max_retries = max(0, int(max_retries))
        self._backoff_base_s = float(backoff_base_s)
        self._backoff_max_s = float(backoff_max_s)
        self._sleep = sleep
        self._rng = rng or random.Random()

        auth: Optional[httpx.BasicAuth] = None
        if access_token:
            # Tokens are "<id>:<secret>".
            user, _, secret = access_token.partition(":")
            auth = httpx.BasicAuth(user, secret)

        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            auth=auth,
            timeout=self._timeout(self._timeout_read_s),
            transport=transport,
            headers={"Accept": "application/json", "Content-Type": "application/json"},
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "LedgerClient":
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self.close()

    def _timeout(self, read_s: float) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self._timeout_connect_s,
            read=read_s,
            write=self._timeout_read_s,
            pool=self._timeout_connect_s,
        )

    def _backoff(self, attempt: int) -> float:
        base = self._backoff_base_s * (2 ** max(0, attempt - 1))
        jitter = self._rng.random() * 0.25
        return min(self._backoff_max_s, base + jitter)

    def _is_retryable_status(self, status_code: int) -> bool:
        return status_code == 429 or 500 <= status_code <= 599

    def _parse_retry_after_s(self, value: Optional[str]) -> Optional[float]:
        if not value or not value.strip():
            return None
        try:
            return float(value.strip())
        except ValueError:
            return None

    def request(self, path: str, body: Mapping[str, Any], *, read_timeout_s: Optional[float] = None) -> Any:
        """POST *body* to *path* and return the decoded JSON response.

        Transport failures, 429 and 5xx responses are retried with capped
        exponential backoff.  Error envelopes become LedgerAPIError.
        """
        timeout = self._timeout(read_timeout_s) if read_timeout_s is not None else None
        kwargs: Dict[str, Any] = {"json": dict(body)}
        if timeout is not None:
            kwargs["timeout"] = timeout

        for attempt in range(1, self._max_retries + 2):
            try:
                resp = self._client.post(path, **kwargs)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                if attempt >= self._max_retries + 1:
                    raise LedgerTransportError(path, f"HTTP transport error for {path}: {e}") from e
                self._sleep(self._backoff(attempt))
                continue

            if self._is_retryable_status(resp.status_code) and attempt < self._max_retries + 1:
                retry_after = self._parse_retry_after_s(resp.headers.get("Retry-After"))
                self._sleep(retry_after if retry_after is not None else self._backoff(attempt))
                continue

            payload = _json_or_none(resp)
            if resp.status_code >= 400:
                raise self._api_error(resp, payload)
            return payload

        raise LedgerTransportError(path, f"HTTP failed for {path}")

    def _api_error(self, resp: httpx.Response, payload: Any) -> LedgerAPIError:
        envelope = payload if isinstance(payload, dict) else {}
        return LedgerAPIError(
            code=envelope.get("code"),
            message=envelope.get("message") or f"HTTP {resp.status_code}",
            detail=envelope.get("detail"),
            temporary=bool(envelope.get("temporary", False)),
            status_code=resp.status_code,
            request_id=resp.headers.get("Chain-Request-Id"),
        )

    # -- Transaction feeds ---------------------------------------------------

    def create_feed(self, alias: str, filter: str) -> Feed:
        body = {"client_token": str(uuid.uuid4()), "alias": alias, "filter": filter}
        return Feed.from_json(self.request("/create-transaction-feed", body))

    def get_feed(self, *, alias: Optional[str] = None, id: Optional[str] = None) -> Feed:
        body = {"alias": alias} if alias is not None else {"id": id}
        return Feed.from_json(self.request("/get-transaction-feed", body))

    def update_feed_cursor(self, feed_id: str, previous_after: str, after: str) -> Feed:
        """Compare-and-swap the feed cursor; fails if *previous_after* is stale."""
        body = {"id": feed_id, "previous_after": previous_after, "after": after}
        return Feed.from_json(self.request("/update-transaction-feed", body))

    def list_transactions(self, *, filter: str, after: str, timeout_s: float) -> TransactionPage:
        """Long-poll for the next ascending page of transactions after *after*."""
        body = {
            "filter": filter,
            "after": after,
            "timeout": int(timeout_s * 1000),
            "ascending_with_long_poll": True,
        }
        payload = self.request(
            "/list-transactions", body, read_timeout_s=max(self._timeout_read_s, timeout_s + _LONG_POLL_MARGIN_S)
        )
        payload = payload or {}
        nxt = payload.get("next") or {}
        return TransactionPage(
            transactions=[Transaction.from_json(item) for item in payload.get("items") or []],
            next_after=nxt.get("after") or after,
            last_page=bool(payload.get("last_page", False)),
        )


def connect_feed(client: LedgerClient, alias: str, filter: str) -> Feed:
    """Create the feed for *alias* unless it already exists, then load it."""
    try:
        client.create_feed(alias, filter)
    except LedgerAPIError as e:
        if e.code != CODE_FEED_EXISTS:
            raise
    return client.get_feed(alias=alias)
