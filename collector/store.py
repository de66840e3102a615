"""Supabase (PostgREST) gateway for tokens, metering rows and snapshots."""

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import httpx

from .config import settings
from .errors import PersistenceError

logger = logging.getLogger(__name__)

# Natural keys used as on_conflict targets
TOKENS_TABLE = "enedis_tokens"
LOAD_CURVE_TABLE = "load_curve_data"
WEEKLY_AVG_TABLE = "load_curve_weekly_avg_30min"
OFFPEAK_TABLE = "offpeak_windows"
CONTRACTS_TABLE = "clients_contracts"

PAGE_SIZE = 1000

Params = List[Tuple[str, str]]


class SupabaseStore:
    """Thin async client over the PostgREST API exposed by Supabase.

    Every failing call raises ``PersistenceError`` carrying PostgREST's
    message/details/hint/code. Callers decide whether to log or propagate.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        service_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.supabase_rest_url).rstrip("/")
        self.service_key = service_key if service_key is not None else settings.supabase_service_role_key
        self.timeout = timeout or settings.supabase_timeout
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def connect(self):
        """Initialize HTTP client."""
        if self.client is None:
            self.client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={
                    "apikey": self.service_key,
                    "Authorization": f"Bearer {self.service_key}",
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
                transport=self._transport,
            )

    async def close(self):
        """Close HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None

    # =========================================================================
    # Generic PostgREST verbs
    # =========================================================================

    async def _request(
        self,
        method: str,
        table: str,
        params: Optional[Params] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        await self.connect()
        try:
            resp = await self.client.request(
                method, f"{self.base_url}/{table}", params=params, json=json, headers=headers
            )
        except httpx.HTTPError as e:
            raise PersistenceError(f"{method} {table} failed: {e}")

        if resp.status_code >= 400:
            raise _persistence_error(resp, f"{method} {table}")
        return resp

    async def select(
        self,
        table: str,
        filters: Optional[Params] = None,
        columns: str = "*",
        order: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
    ) -> List[dict]:
        params: Params = [("select", columns)]
        params.extend(filters or [])
        if order:
            params.append(("order", order))
        if limit is not None:
            params.append(("limit", str(limit)))
        if offset:
            params.append(("offset", str(offset)))
        resp = await self._request("GET", table, params=params)
        return resp.json() or []

    async def select_all(self, table: str, filters: Optional[Params] = None, order: Optional[str] = None) -> List[dict]:
        """Select every matching row, paging past PostgREST's row cap."""
        rows: List[dict] = []
        offset = 0
        while True:
            page = await self.select(table, filters, order=order, limit=PAGE_SIZE, offset=offset)
            rows.extend(page)
            if len(page) < PAGE_SIZE:
                return rows
            offset += PAGE_SIZE

    async def upsert(self, table: str, rows: Sequence[dict], on_conflict: str) -> int:
        """Insert rows, replacing existing ones that share the ``on_conflict`` key."""
        if not rows:
            return 0
        await self._request(
            "POST",
            table,
            params=[("on_conflict", on_conflict)],
            json=list(rows),
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )
        return len(rows)

    async def insert(self, table: str, row: dict):
        await self._request("POST", table, json=row, headers={"Prefer": "return=minimal"})

    async def update(self, table: str, values: dict, filters: Params):
        await self._request("PATCH", table, params=filters, json=values, headers={"Prefer": "return=minimal"})

    async def delete(self, table: str, filters: Params):
        await self._request("DELETE", table, params=filters)

    # =========================================================================
    # Enedis tokens
    # =========================================================================

    async def get_active_credential(self) -> Optional[dict]:
        """Most recent row flagged active, or None."""
        rows = await self.select(
            TOKENS_TABLE,
            [("is_active", "eq.true")],
            order="created_at.desc",
            limit=1,
        )
        return rows[0] if rows else None

    async def deactivate_credentials(self):
        await self.update(TOKENS_TABLE, {"is_active": False}, [("is_active", "eq.true")])

    async def insert_credential(self, row: dict):
        await self.insert(TOKENS_TABLE, row)

    async def prune_credentials(self, keep: int = 5) -> int:
        """Delete all but the ``keep`` most recent tokens. Returns rows deleted."""
        stale = await self.select(
            TOKENS_TABLE, columns="id", order="created_at.desc", limit=PAGE_SIZE, offset=keep
        )
        ids = [str(row["id"]) for row in stale if row.get("id") is not None]
        if ids:
            await self.delete(TOKENS_TABLE, [("id", f"in.({','.join(ids)})")])
        return len(ids)

    # =========================================================================
    # Metering data
    # =========================================================================

    async def get_offpeak_windows(self, prm: str) -> List[dict]:
        return await self.select(OFFPEAK_TABLE, [("prm", f"eq.{prm}")])

    async def get_contract(self, prm: str) -> Optional[Any]:
        """The stored contract payload for a usage point, if any."""
        rows = await self.select(CONTRACTS_TABLE, [("usage_point_id", f"eq.{prm}")], columns="contract", limit=1)
        return rows[0].get("contract") if rows else None

    async def get_interval_samples(self, prm: str, start: str, end: str) -> List[dict]:
        """Load curve rows with a value, for civil dates in ``[start, end]``."""
        return await self.select_all(
            LOAD_CURVE_TABLE,
            [
                ("prm", f"eq.{prm}"),
                ("date", f"gte.{start}"),
                ("date", f"lte.{end}"),
                ("value", "not.is.null"),
            ],
            order="date_time.asc",
        )


def _persistence_error(resp: httpx.Response, action: str) -> PersistenceError:
    try:
        body = resp.json()
    except ValueError:
        body = {"message": resp.text}
    if not isinstance(body, dict):
        body = {"message": str(body)}
    return PersistenceError(
        body.get("message") or f"{action} failed with HTTP {resp.status_code}",
        details=body.get("details"),
        hint=body.get("hint"),
        code=body.get("code"),
    )


async def safe_upsert(store, table: str, rows: Iterable[dict], on_conflict: str, label: str = "") -> bool:
    """Upsert and log failures instead of raising.

    Writes are best effort: the data already returned to the caller stays
    authoritative whatever the store answers.
    """
    rows = list(rows)
    if not rows:
        return True
    try:
        await store.upsert(table, rows, on_conflict=on_conflict)
    except PersistenceError as e:
        logger.error(
            f"Error upserting {label or table}: "
            f"{dict(e.diagnostics(), rowsCount=len(rows), sampleRow=rows[0])}"
        )
        return False
    logger.info(f"{label or table}: {len(rows)} rows upserted")
    return True
