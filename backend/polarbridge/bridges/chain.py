"""
Polar Bridge - Chain Gateway Bridge

One client per chain. Calls never raise for remote failures: every
operation returns a result model carrying an ErrorKind so the watcher and
dispatcher branch on a typed decision.

Gateway contract (JSON over HTTP):
    POST /transfers                {to, amount, asset, reference} -> {tx_ref}
    GET  /events?cursor=&limit=    -> {events: [...], cursor}
    GET  /events/{event_id}        -> event (404 when unknown)
    GET  /balances/{address}?asset=  -> {balance}
    GET  /transactions/{tx_ref}    -> {status}
    POST /locks                    {amount, asset, destination, memo} -> {event_id, tx_ref}
"""

import logging
from typing import Optional, Protocol

import httpx
from pydantic import BaseModel, Field, ValidationError

from polarbridge.core.errors import ErrorKind
from polarbridge.models.schemas import RawChainEvent, TxStatus

logger = logging.getLogger(__name__)


# =============================================================================
# RESULTS
# =============================================================================

class ChainResult(BaseModel):
    """Outcome of a gateway call."""
    ok: bool = True
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def failure(cls, kind: ErrorKind, error: str, **values):
        return cls(ok=False, error=error, error_kind=kind, **values)


class SubmitResult(ChainResult):
    tx_ref: Optional[str] = None


class EventPage(ChainResult):
    events: list[RawChainEvent] = Field(default_factory=list)
    cursor: Optional[str] = None


class EventResult(ChainResult):
    event: Optional[RawChainEvent] = None


class BalanceResult(ChainResult):
    balance: int = 0


class TxStatusResult(ChainResult):
    status: TxStatus = TxStatus.NOT_FOUND


class LockResult(ChainResult):
    source_event_id: Optional[str] = None
    tx_ref: Optional[str] = None


class ChainClient(Protocol):
    """Narrow per-chain capability set used by the settlement core."""

    chain: str

    async def submit_transfer(
        self, to: str, amount: int, asset: str, reference: str
    ) -> SubmitResult: ...

    async def query_events(self, cursor: Optional[str], limit: int) -> EventPage: ...

    async def get_event(self, event_id: str) -> EventResult: ...

    async def get_balance(self, address: str, asset: str) -> BalanceResult: ...

    async def get_transaction_status(self, tx_ref: str) -> TxStatusResult: ...

    async def lock(
        self, amount: int, asset: str, destination: str, memo: dict
    ) -> LockResult: ...

    async def aclose(self) -> None: ...


# =============================================================================
# HTTP GATEWAY CLIENT
# =============================================================================

def classify_status(status_code: int) -> ErrorKind:
    """Map a non-success gateway status code onto an ErrorKind."""
    if status_code in (401, 403):
        return ErrorKind.FATAL
    if status_code == 429 or status_code >= 500:
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT


class HttpChainClient:
    """
    httpx client for a chain gateway.

    Timeouts and connection errors are transient. Credential rejections
    (401/403) are fatal: the signer is gone and no retry can succeed.
    """

    def __init__(
        self,
        chain: str,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.chain = chain
        self.base_url = base_url.rstrip("/")
        headers = {"X-Source-App": "polar-bridge"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response | tuple[ErrorKind, str]:
        try:
            return await self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"[CHAIN:{self.chain}] {method} {path} timed out: {e}")
            return ErrorKind.TRANSIENT, f"timeout: {e}"
        except httpx.TransportError as e:
            logger.warning(f"[CHAIN:{self.chain}] {method} {path} transport error: {e}")
            return ErrorKind.TRANSIENT, f"transport error: {e}"

    def _failure_from(self, response: httpx.Response) -> tuple[ErrorKind, str]:
        kind = classify_status(response.status_code)
        try:
            detail = response.json().get("error") or response.text
        except ValueError:
            detail = response.text
        return kind, f"HTTP {response.status_code}: {detail}"

    async def submit_transfer(
        self, to: str, amount: int, asset: str, reference: str
    ) -> SubmitResult:
        response = await self._request(
            "POST",
            "/transfers",
            json={"to": to, "amount": str(amount), "asset": asset, "reference": reference},
        )
        if isinstance(response, tuple):
            return SubmitResult.failure(*response)

        if response.status_code in (200, 201, 202):
            return SubmitResult(tx_ref=response.json().get("tx_ref"))
        if response.status_code == 409:
            # Reference already used - the gateway returns the original transfer
            tx_ref = response.json().get("tx_ref")
            logger.info(f"[CHAIN:{self.chain}] Transfer {reference} already submitted as {tx_ref}")
            return SubmitResult(tx_ref=tx_ref)

        return SubmitResult.failure(*self._failure_from(response))

    async def query_events(self, cursor: Optional[str], limit: int) -> EventPage:
        params: dict = {"limit": limit}
        if cursor:
            params["cursor"] = cursor
        response = await self._request("GET", "/events", params=params)
        if isinstance(response, tuple):
            return EventPage.failure(*response, cursor=cursor)
        if response.status_code != 200:
            return EventPage.failure(*self._failure_from(response), cursor=cursor)

        data = response.json()
        events = []
        for raw in data.get("events", []):
            try:
                events.append(RawChainEvent.model_validate(raw))
            except ValidationError as e:
                logger.warning(f"[CHAIN:{self.chain}] Dropping unparseable event {raw!r}: {e}")
        return EventPage(events=events, cursor=data.get("cursor") or cursor)

    async def get_event(self, event_id: str) -> EventResult:
        """Single contract event by id. A 404 is an ok result with no event."""
        response = await self._request("GET", f"/events/{event_id}")
        if isinstance(response, tuple):
            return EventResult.failure(*response)
        if response.status_code == 404:
            return EventResult()
        if response.status_code != 200:
            return EventResult.failure(*self._failure_from(response))
        try:
            return EventResult(event=RawChainEvent.model_validate(response.json()))
        except (ValueError, ValidationError) as e:
            return EventResult.failure(ErrorKind.PERMANENT, f"unparseable event {event_id}: {e}")

    async def get_balance(self, address: str, asset: str) -> BalanceResult:
        response = await self._request("GET", f"/balances/{address}", params={"asset": asset})
        if isinstance(response, tuple):
            return BalanceResult.failure(*response)
        if response.status_code != 200:
            return BalanceResult.failure(*self._failure_from(response))
        return BalanceResult(balance=int(response.json().get("balance", 0)))

    async def get_transaction_status(self, tx_ref: str) -> TxStatusResult:
        response = await self._request("GET", f"/transactions/{tx_ref}")
        if isinstance(response, tuple):
            return TxStatusResult.failure(*response)
        if response.status_code == 404:
            return TxStatusResult(status=TxStatus.NOT_FOUND)
        if response.status_code != 200:
            return TxStatusResult.failure(*self._failure_from(response))
        return TxStatusResult(status=TxStatus(response.json().get("status", "pending")))

    async def lock(
        self, amount: int, asset: str, destination: str, memo: dict
    ) -> LockResult:
        response = await self._request(
            "POST",
            "/locks",
            json={
                "amount": str(amount),
                "asset": asset,
                "destination": destination,
                "memo": memo,
            },
        )
        if isinstance(response, tuple):
            return LockResult.failure(*response)
        if response.status_code not in (200, 201, 202):
            return LockResult.failure(*self._failure_from(response))
        data = response.json()
        return LockResult(source_event_id=data.get("event_id"), tx_ref=data.get("tx_ref"))
