# billing.py
from __future__ import annotations

import math
from typing import Iterable, Sequence

import httpx

from config import Settings
from errors import GatewayError, InsufficientCredits, ProviderError, Unauthorized
from logs import preview, provider_failure, redact_headers, trace
from models import BatchItem, RequestContext


# ---------------------- Cost policy ----------------------

def fixed_cost(settings: Settings, operation: str) -> int:
    return settings.cost_of(operation)


def size_scaled_cost(total_bytes: int, *, per_kb: int = 1, minimum: int = 1) -> int:
    """
    ``max(minimum, ceil(total_bytes / 1000) * per_kb)``.
    Pure; an empty input still costs ``minimum``.
    """
    total_bytes = max(0, int(total_bytes or 0))
    return max(minimum, math.ceil(total_bytes / 1000) * per_kb)


def calculate_cost(sizes: Iterable[int], settings: Settings | None = None) -> int:
    """Size-scaled charge for a batch given the decoded byte length of each item."""
    s = settings or Settings()
    return size_scaled_cost(
        sum(sizes),
        per_kb=s.embedding_credits_per_kb,
        minimum=s.embedding_min_credits,
    )


def per_item_cost(settings: Settings, count: int) -> int:
    return count * settings.cost_of("document_convert_per_file")


def estimate_batch(settings: Settings, items: Sequence[BatchItem]) -> dict:
    total = sum(i.size for i in items)
    return {
        "estimatedCost": calculate_cost((i.size for i in items), settings),
        "totalSizeKB": round(total / 1024),
        "fileCount": len(items),
    }


# ---------------------- Ledger ----------------------

class LedgerClient:
    """
    Debit endpoint of the external credit service.

    The caller's bearer credential is forwarded as-is; the shared secret header
    proves to the ledger that the request comes from this gateway.
    """

    provider_id = "ledger"

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.url = f"{settings.ledger_base_url}{settings.ledger_consume_path}"
        self.secret = settings.ledger_internal_secret
        self.secret_header = settings.ledger_secret_header
        self.timeout = settings.ledger_timeout_seconds
        self._transport = transport

    async def consume(self, ctx: RequestContext) -> None:
        headers = {
            "Authorization": f"Bearer {ctx.credential}",
            "Content-Type": "application/json",
            self.secret_header: self.secret,
        }
        trace(
            f"[LEDGER] POST {self.url} uid={ctx.principal_id} cost={ctx.cost} "
            f"headers={redact_headers(headers, self.secret_header)}"
        )
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.post(self.url, headers=headers, json={"cost": ctx.cost})
        except httpx.HTTPError as exc:
            raise ProviderError(self.provider_id, f"Ledger unreachable ({type(exc).__name__})") from exc

        if r.status_code == 402:
            raise InsufficientCredits(required=ctx.cost)
        if r.status_code == 401:
            raise Unauthorized("Ledger rejected the credential")
        if r.status_code >= 400:
            raise ProviderError(
                self.provider_id,
                f"Ledger returned {r.status_code}: {preview(r.text, 200)}",
                upstream_status=r.status_code,
            )


class ConsumptionReporter:
    """
    Tells the ledger what a finished request cost.

    Called once, after every provider stage of a flow succeeded. Never raises:
    by the time it runs the caller already has a correct result, so a ledger
    failure is logged and reported back as ``False`` only.
    """

    def __init__(self, ledger: LedgerClient):
        self.ledger = ledger

    async def report(self, ctx: RequestContext) -> bool:
        try:
            await self.ledger.consume(ctx)
        except GatewayError as e:
            provider_failure(
                f"ledger consume failed uid={ctx.principal_id} cost={ctx.cost} "
                f"code={e.code} msg={e.message}"
            )
            return False
        except Exception as e:
            provider_failure(
                f"ledger consume crashed uid={ctx.principal_id} cost={ctx.cost} err={e!r}"
            )
            return False
        trace(f"[LEDGER] consumed uid={ctx.principal_id} cost={ctx.cost}")
        return True
