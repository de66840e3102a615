"""Switchgrid consent broker client.

Data is ordered asynchronously: an order is posted with one typed request,
the order is polled until that request leaves PENDING, then the dataset is
downloaded and parsed. Each product below is a variant of that flow.
Orders completed elsewhere can be persisted with ``save_order_data``.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .config import settings
from .errors import (
    CreationError,
    PersistenceError,
    PipelineError,
    PollTimeoutError,
    RequestFailedError,
    ValidationError,
)
from .measurements import (
    extract_tariff_info,
    parse_cadran_energy,
    parse_daily_energy,
    parse_load_curve,
    parse_max_power,
    parse_power_items,
)
from .models import BrokerOrder, BrokerRequest, BrokerResult, RequestStatus, TariffInfo
from .retry import RetryPolicy
from .store import safe_upsert

logger = logging.getLogger("enedis-collector.switchgrid")

# Rows written without an authenticated user are attached to this id
ANONYMOUS_USER_ID = "00000000-0000-0000-0000-000000000000"

LOAD_CURVE_TABLE = "switchgrid_load_curve"
CONTRACT_DETAILS_TABLE = "switchgrid_contract_details"
DAILY_ENERGY_TABLE = "switchgrid_consumption_daily"
ORDERS_TABLE = "switchgrid_orders"

DAILY_CONFLICT = "pdl,date,user_id"
CURVE_CONFLICT = "pdl,timestamp,user_id"

# Rows per upsert when saving relayed power curves
STREAM_BATCH_SIZE = 1000


@dataclass(frozen=True)
class BrokerProduct:
    """Request shape of a power-curve product.

    Attributes:
        request_type: Switchgrid request ``type``
        direction: request ``direction``
        lookback_days: default window length when no start date is given
        sends_period: whether the data query carries ``period``
    """

    request_type: str
    direction: str
    lookback_days: int
    sends_period: bool

    def data_params(self, period: Optional[str] = None) -> Dict[str, str]:
        if self.sends_period:
            return {"period": period or "30m", "format": "json"}
        return {"format": "json"}


LOADCURVE = BrokerProduct("LOADCURVE", "CONSUMPTION", lookback_days=365, sends_period=True)
R63_SYNC = BrokerProduct("R63_SYNC", "SOUTIRAGE", lookback_days=7, sends_period=False)

PRODUCTS = {p.request_type: p for p in (LOADCURVE, R63_SYNC)}


def _today() -> date:
    return datetime.now(timezone.utc).date()


class SwitchgridClient:
    """Client for the Switchgrid Enedis v2 API.

    Attributes:
        base_url: API root, e.g. https://app.switchgrid.tech/enedis/v2
        token: bearer token
        poll_attempts: status polls before giving up
        poll_interval: seconds between polls
        store: optional persistence gateway for parsed datasets
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        store=None,
        poll_attempts: Optional[int] = None,
        poll_interval: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep=None,
        retry: Optional[RetryPolicy] = None,
    ):
        self.base_url = (base_url or settings.switchgrid_base_url).rstrip("/")
        self.token = token if token is not None else settings.switchgrid_token
        self.store = store
        self.poll_attempts = poll_attempts or settings.switchgrid_poll_attempts
        self.poll_interval = settings.switchgrid_poll_interval if poll_interval is None else poll_interval
        self.sleep = sleep or asyncio.sleep
        self.retry = retry or RetryPolicy(
            attempts=settings.switchgrid_retry_attempts,
            jitter=True,
            not_found_as_empty=False,
            sleep=self.sleep,
            name="switchgrid",
        )
        self.client = client
        self._owns_client = client is None

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def connect(self):
        """Initialize HTTP client."""
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=settings.switchgrid_timeout)
            self._owns_client = True

    async def close(self):
        """Close HTTP client."""
        if self.client and self._owns_client:
            await self.client.aclose()
            self.client = None

    @property
    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _get_json(self, url: str, params: Optional[dict] = None, auth: bool = True) -> Any:
        """GET through the retry policy and decode the JSON body."""
        await self.connect()
        response = await self.retry.send(
            self.client, "GET", url, params=params, headers=self._headers if auth else None
        )
        try:
            return response.json()
        except ValueError as e:
            raise PipelineError(f"Invalid JSON from Switchgrid: {e}", details=response.text[:200])

    # =========================================================================
    # Orders
    # =========================================================================

    async def create_order(self, order_request: dict) -> dict:
        """POST /order and return the partner's order document.

        An empty consentId is dropped and C68 requests lose their direction,
        both of which the partner rejects.

        Raises:
            CreationError: on any non-2xx answer, with the partner body
        """
        await self.connect()
        payload = dict(order_request)
        if not payload.get("consentId"):
            payload.pop("consentId", None)
        requests = []
        for request in payload.get("requests") or []:
            request = dict(request)
            if request.get("type") == "C68":
                request.pop("direction", None)
            requests.append(request)
        payload["requests"] = requests

        logger.info(f"Creating order: {[r.get('type') for r in requests]}")
        try:
            response = await self.client.post(f"{self.base_url}/order", json=payload, headers=self._headers)
        except httpx.HTTPError as e:
            raise CreationError(f"Network error creating order: {e}", upstream_status=502)

        if not response.is_success:
            body = response.text
            logger.error(f"Order creation failed: HTTP {response.status_code} - {body[:500]}")
            if "<html" in body.lower():
                raise CreationError(
                    f"Switchgrid API temporarily unavailable (HTTP {response.status_code})",
                    upstream_status=502,
                )
            raise CreationError("Failed to create order", upstream_status=response.status_code, body=body)

        order = response.json()
        logger.info(f"Order created: {order.get('id') or order.get('orderId')}")
        return order

    async def get_order(self, order_id: str) -> dict:
        """GET /order/{id} as returned by the partner."""
        if not order_id:
            raise ValidationError("orderId required", required=["orderId"])
        return await self._get_json(f"{self.base_url}/order/{order_id}")

    async def await_request(
        self,
        order_id: str,
        request_type: str,
        attempts: Optional[int] = None,
        interval: Optional[float] = None,
    ) -> BrokerRequest:
        """Poll an order until its ``request_type`` request is terminal.

        Raises:
            RequestFailedError: partner reported FAILED, or the order has no
                such request
            PollTimeoutError: still PENDING after ``attempts`` polls
        """
        attempts = attempts or self.poll_attempts
        interval = self.poll_interval if interval is None else interval
        logger.info(f"Polling order {order_id} for {request_type} ({attempts} x {interval}s)")

        for attempt in range(1, attempts + 1):
            order = BrokerOrder.from_api_response(await self.get_order(order_id))
            request = order.find_request(request_type)
            if request is None:
                raise RequestFailedError(f"Request {request_type} not found in order {order_id}")

            logger.info(f"  Attempt {attempt}: {request.status.value}")
            if request.is_terminal:
                if request.status == RequestStatus.FAILED:
                    raise RequestFailedError(f"Request failed: {request.error_message or 'Unknown error'}")
                return request

            if attempt < attempts:
                await self.sleep(interval)

        raise PollTimeoutError(f"Timeout waiting for {request_type} to complete")

    async def fetch_request_data(self, request_id: str, params: Optional[dict] = None) -> Any:
        """GET /request/{id}/data."""
        return await self._get_json(f"{self.base_url}/request/{request_id}/data", params=params)

    async def fetch_url(self, data_url: str) -> Any:
        """Download a pre-signed dataUrl (no bearer token)."""
        return await self._get_json(data_url, auth=False)

    async def resolve_consent_id(self, ask_id: str, prm: str) -> str:
        """Consent id granted for ``prm`` within a consent ask."""
        if not ask_id or not prm:
            raise ValidationError("askId and prm required", required=["askId", "prm"])

        ask = await self._get_json(f"{self.base_url}/ask/{ask_id}")
        consent_id = (ask.get("consentIds") or {}).get(prm)
        if not consent_id:
            for consent in ask.get("consents") or []:
                if isinstance(consent, dict) and prm in (consent.get("prm"), consent.get("pdl")):
                    consent_id = consent.get("id") or consent.get("consentId")
                    break
        if not consent_id:
            raise ValidationError(f"No consentId found for PRM {prm}")
        return consent_id

    async def _consent(self, prm: str, consent_id: Optional[str], ask_id: Optional[str]) -> str:
        if consent_id:
            return consent_id
        if not ask_id:
            raise ValidationError("consentId or askId required", required=["consentId", "askId"])
        consent_id = await self.resolve_consent_id(ask_id, prm)
        logger.info(f"ConsentId resolved from ask {ask_id}")
        return consent_id

    async def _order_and_await(self, consent_id: str, request: dict, attempts=None, interval=None):
        order = BrokerOrder.from_api_response(await self.create_order({"consentId": consent_id, "requests": [request]}))
        created = order.find_request(request["type"])
        if created is not None and created.status == RequestStatus.SUCCESS:
            return order, created
        return order, await self.await_request(order.id, request["type"], attempts, interval)

    # =========================================================================
    # Power curve products
    # =========================================================================

    async def create_and_await(
        self,
        prm: str,
        consent_id: str,
        product: BrokerProduct = LOADCURVE,
        since: Optional[str] = None,
        until: Optional[str] = None,
        return_rows: bool = True,
        period: Optional[str] = None,
        user_id: str = ANONYMOUS_USER_ID,
    ) -> BrokerResult:
        """Order a power curve, wait for it and (optionally) download it.

        With ``return_rows`` False only the dataset pointer is returned and
        no data call is made.
        """
        if not prm or not consent_id:
            raise ValidationError("prm and consent_id are required", required=["prm", "consent_id"])

        today = _today()
        since = since or (today - timedelta(days=product.lookback_days)).isoformat()
        until = until or today.isoformat()
        logger.info(f"Creating {product.request_type} order for {prm}: {since} -> {until}")

        order, request = await self._order_and_await(
            consent_id,
            {
                "type": product.request_type,
                "direction": product.direction,
                "prms": [prm],
                "since": since,
                "until": until,
            },
        )
        result = BrokerResult(
            order_id=order.id,
            request_id=request.id,
            request_type=product.request_type,
            since=since,
            until=until,
            data_url=request.data_url,
        )
        if not return_rows:
            return result

        raw = await self.fetch_request_data(request.id, product.data_params(period))
        samples = parse_load_curve(prm, raw)
        result.rows = [s.model_dump(exclude={"is_off_peak"}) for s in samples]

        if self.store is not None and samples:
            await safe_upsert(
                self.store,
                LOAD_CURVE_TABLE,
                [
                    {
                        "user_id": user_id,
                        "pdl": prm,
                        "timestamp": s.date_time,
                        "power_kw": s.value,
                        "source_order_id": order.id,
                    }
                    for s in samples
                ],
                on_conflict=CURVE_CONFLICT,
                label=product.request_type,
            )
        return result

    # =========================================================================
    # Contract and daily energy products
    # =========================================================================

    async def _save_contract(self, prm: str, contract, tariff: TariffInfo, order_id: str, user_id: str) -> bool:
        if self.store is None:
            return False
        return await safe_upsert(
            self.store,
            CONTRACT_DETAILS_TABLE,
            [{
                "user_id": user_id,
                "pdl": prm,
                "contract_data": contract,
                "tariff_type": tariff.tariff_type,
                "formula_code": tariff.formula_code,
                "tariff_structure": tariff.model_dump(),
                "source_order_id": order_id,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }],
            on_conflict="pdl,user_id",
            label="C68",
        )

    async def fetch_contract_details(
        self,
        prm: str,
        consent_id: Optional[str] = None,
        ask_id: Optional[str] = None,
        user_id: str = ANONYMOUS_USER_ID,
    ) -> Dict[str, Any]:
        """Order a C68 contract extract and detect the tariff family."""
        if not prm:
            raise ValidationError("prm required", required=["prm"])
        consent_id = await self._consent(prm, consent_id, ask_id)

        order, request = await self._order_and_await(
            consent_id, {"type": "C68", "prms": [str(prm)]}, attempts=45, interval=2.0
        )
        if not request.data_url:
            return {"orderId": order.id, "requestId": request.id, "warning": "C68 SUCCESS without dataUrl"}

        contract = await self.fetch_url(request.data_url)
        tariff = extract_tariff_info(contract)
        await self._save_contract(prm, contract, tariff, order.id, user_id)
        return {"orderId": order.id, "requestId": request.id, "c68": contract, "tariff": tariff.model_dump()}

    async def _collect_daily_energy(
        self,
        order_doc: dict,
        request_type: str,
        prm: str,
        since: str,
        until: str,
        user_id: str,
    ) -> Tuple[Dict[str, Any], Any]:
        """Wait for an R65 request, download, parse and store its rows.

        Returns the summary and the raw dataset.
        """
        order = BrokerOrder.from_api_response(order_doc)
        request = order.find_request(request_type)
        if request is None or request.status != RequestStatus.SUCCESS:
            request = await self.await_request(order.id, request_type, attempts=45, interval=2.0)

        if request.data_url:
            raw = await self.fetch_url(request.data_url)
        else:
            raw = await self.fetch_request_data(request.id, {"since": since, "until": until, "prm": prm})

        rows = parse_daily_energy(raw)
        saved = False
        if self.store is not None and rows:
            saved = await safe_upsert(
                self.store,
                DAILY_ENERGY_TABLE,
                [
                    dict(row.model_dump(), user_id=user_id, pdl=prm, source_order_id=order.id)
                    for row in rows
                ],
                on_conflict=DAILY_CONFLICT,
                label=request_type,
            )
        elif not rows:
            logger.warning(f"No {request_type} rows to save for {prm}")

        summary = {
            "orderId": order.id,
            "requestId": request.id,
            "requestType": request_type,
            "since": since,
            "until": until,
            "count": len(rows),
            "saved": saved,
            "sample": rows[0].model_dump() if rows else None,
        }
        return summary, raw

    async def fetch_daily_energy(
        self,
        prm: str,
        consent_id: Optional[str] = None,
        ask_id: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        user_id: str = ANONYMOUS_USER_ID,
    ) -> Dict[str, Any]:
        """Order daily consumed energy. R65_SYNC first, R65 when it is refused."""
        if not prm:
            raise ValidationError("prm required", required=["prm"])
        consent_id = await self._consent(prm, consent_id, ask_id)

        today = _today()
        until = until or today.isoformat()
        since = since or (today - timedelta(days=30)).isoformat()

        request_type = "R65_SYNC"
        try:
            order = await self.create_order(
                {"consentId": consent_id, "requests": [_r65_request(request_type, prm, since, until)]}
            )
        except CreationError as e:
            logger.info(f"R65_SYNC unavailable ({e.message}), falling back to R65")
            request_type = "R65"
            order = await self.create_order(
                {"consentId": consent_id, "requests": [_r65_request(request_type, prm, since, until)]}
            )

        summary, _raw = await self._collect_daily_energy(order, request_type, prm, since, until, user_id)
        return summary

    async def fetch_daily_energy_year(
        self,
        prm: str,
        consent_id: Optional[str] = None,
        ask_id: Optional[str] = None,
        since: Optional[str] = None,
        until: Optional[str] = None,
        user_id: str = ANONYMOUS_USER_ID,
    ) -> Dict[str, Any]:
        """One-shot R65 order over a year (``until`` defaults to today).

        The whole R65_SYNC flow is retried as R65 when any step of it fails.
        """
        if not prm:
            raise ValidationError("prm required", required=["prm"])
        consent_id = await self._consent(prm, consent_id, ask_id)

        until_day = date.fromisoformat(until[:10]) if until else _today()
        until = until or until_day.isoformat()
        since = since or one_year_before(until_day).isoformat()

        async def one_shot(request_type: str):
            order = await self.create_order(
                {"consentId": consent_id, "requests": [_r65_request(request_type, prm, since, until)]}
            )
            return await self._collect_daily_energy(order, request_type, prm, since, until, user_id)

        try:
            summary, raw = await one_shot("R65_SYNC")
        except PipelineError as e:
            logger.warning(f"One-shot R65_SYNC failed ({e.message}), retrying with R65")
            summary, raw = await one_shot("R65")

        summary.pop("sample")
        return dict(summary, mode="one-shot", raw=raw)

    async def create_daily_energy_order(
        self,
        prm: str,
        consent_id: str,
        since: Optional[str] = None,
        until: Optional[str] = None,
        return_rows: bool = True,
    ) -> BrokerResult:
        """Order R65_SYNC daily energy (365 days by default) and wait for it.

        With ``return_rows`` the dataUrl is downloaded and parsed; nothing
        is stored.
        """
        if not prm or not consent_id:
            raise ValidationError("prm and consent_id are required", required=["prm", "consent_id"])

        today = _today()
        since = since or (today - timedelta(days=365)).isoformat()
        until = until or today.isoformat()
        logger.info(f"Creating R65_SYNC order for {prm}: {since} -> {until}")

        order, request = await self._order_and_await(
            consent_id, _r65_request("R65_SYNC", prm, since, until), attempts=45, interval=2.0
        )
        result = BrokerResult(
            order_id=order.id,
            request_id=request.id,
            request_type="R65_SYNC",
            since=since,
            until=until,
            data_url=request.data_url,
        )
        if not return_rows:
            return result
        if not request.data_url:
            raise PipelineError("No dataUrl in completed request", status_code=502)

        raw = await self.fetch_url(request.data_url)
        result.rows = [row.model_dump() for row in parse_daily_energy(raw)]
        return result

    # =========================================================================
    # Order payloads relayed by the front end
    # =========================================================================

    async def _save_stream(self, table: str, conflict: str, rows: List[dict], label: str) -> int:
        saved = 0
        for i in range(0, len(rows), STREAM_BATCH_SIZE):
            batch = rows[i:i + STREAM_BATCH_SIZE]
            if await safe_upsert(self.store, table, batch, on_conflict=conflict, label=label):
                saved += len(batch)
        return saved

    async def save_order_data(
        self,
        prm: str,
        order_data: Optional[dict],
        requests_data: Optional[dict],
        user_id: str = ANONYMOUS_USER_ID,
    ) -> Dict[str, int]:
        """Persist a completed order and the datasets fetched for it.

        The order row must be written; a failed stream is logged and counted
        as zero rows.

        Args:
            prm: meter the order was placed for
            order_data: order document as returned by GET /order/{id}
            requests_data: datasets keyed by stream (contractDetails,
                consumption, maxPower, loadCurve and their production twins)

        Returns:
            Rows written per stream
        """
        if not prm or not order_data or not requests_data:
            raise ValidationError("Missing required data", required=["pdl", "orderData", "allRequestsData"])
        if self.store is None:
            raise PersistenceError("No store configured")

        order_id = order_data.get("id") or order_data.get("orderId")
        await self.store.upsert(
            ORDERS_TABLE,
            [{
                "user_id": user_id,
                "pdl": prm,
                "order_id": order_id,
                "order_status": order_data.get("status"),
                "order_data": order_data,
                "requests": order_data.get("requests"),
                "completed_at": datetime.now(timezone.utc).isoformat(),
            }],
            on_conflict="order_id",
        )
        logger.info(f"Order {order_id} saved for {prm}")

        stats = {"contract": 0}
        tariff = TariffInfo()
        contract = requests_data.get("contractDetails")
        if contract:
            tariff = extract_tariff_info(contract)
            if await self._save_contract(prm, contract, tariff, order_id, user_id):
                stats["contract"] = 1

        for stream in ORDER_STREAMS:
            payload = requests_data.get(stream.key)
            if not payload:
                stats[stream.stat] = 0
                continue
            if stream.kind == "energy":
                rows = [r.model_dump() for r in parse_cadran_energy(payload, tariff)]
            elif stream.kind == "max_power":
                rows = [r.model_dump(exclude_none=True) for r in parse_max_power(payload)]
            else:
                rows = parse_power_items(prm, payload)
            rows = [dict(row, user_id=user_id, pdl=prm, source_order_id=order_id) for row in rows]
            stats[stream.stat] = await self._save_stream(stream.table, stream.conflict, rows, stream.key)

        logger.info(f"Order {order_id} streams saved: {stats}")
        return stats


@dataclass(frozen=True)
class OrderStream:
    """A dataset of an order payload and where its rows go."""

    key: str
    stat: str
    kind: str
    table: str
    conflict: str


ORDER_STREAMS = (
    OrderStream("consumption", "consumption", "energy", DAILY_ENERGY_TABLE, DAILY_CONFLICT),
    OrderStream("maxPower", "consumptionMaxPower", "max_power", "switchgrid_max_power", DAILY_CONFLICT),
    OrderStream("loadCurve", "consumptionLoadCurve", "load_curve", LOAD_CURVE_TABLE, CURVE_CONFLICT),
    OrderStream("production", "production", "energy", "switchgrid_production_daily", DAILY_CONFLICT),
    OrderStream(
        "productionMaxPower", "productionMaxPower", "max_power", "switchgrid_production_max_power", DAILY_CONFLICT
    ),
    OrderStream(
        "productionLoadCurve", "productionLoadCurve", "load_curve", "switchgrid_production_load_curve", CURVE_CONFLICT
    ),
)


def one_year_before(day: date) -> date:
    """Same calendar day a year earlier; Feb 29 maps to Feb 28."""
    try:
        return day.replace(year=day.year - 1)
    except ValueError:
        return day.replace(year=day.year - 1, day=28)


def _r65_request(request_type: str, prm: str, since: Optional[str], until: Optional[str]) -> dict:
    request: Dict[str, Any] = {"type": request_type, "prms": [str(prm)]}
    if since:
        request["since"] = since
    if until:
        request["until"] = until
    return request


def product_for(name: str) -> BrokerProduct:
    try:
        return PRODUCTS[name.upper()]
    except KeyError:
        raise ValidationError(f"Unknown product: {name}", details={"supported": sorted(PRODUCTS)})
