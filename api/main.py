"""Enedis / Switchgrid metering-data API.

Each endpoint takes a JSON body with an ``action`` field and answers
``{success: true, data: ...}``. Failures are ``{error, details?}`` with the
nearest upstream status, or 500.
"""

import logging
import sys
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from collector.aggregator import recompute_weekly_average
from collector.enedis_auth import TokenSupplier
from collector.enedis_client import EnedisClient
from collector.errors import PipelineError, ValidationError
from collector.measurements import parse_daily_energy, parse_load_curve
from collector.models import SeriesKind
from collector.store import SupabaseStore
from collector.switchgrid_client import LOADCURVE, R63_SYNC, SwitchgridClient

from .config import settings
from .models import (
    EnedisAuthRequest,
    EnedisDataRequest,
    HealthStatus,
    LoadCurveOrderRequest,
    SwitchgridOrdersRequest,
)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}

# Create FastAPI app
app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description="Enedis and Switchgrid metering data collection API",
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    logger.error(f"{request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid JSON in request body", "details": str(exc.errors())},
    )


def error_response(status_code: int, **content) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=content)


# =============================================================================
# Dependencies
# =============================================================================

async def get_store():
    store = SupabaseStore()
    try:
        yield store
    finally:
        await store.close()


async def get_token_supplier(store=Depends(get_store)):
    supplier = TokenSupplier(store)
    try:
        yield supplier
    finally:
        await supplier.close()


async def get_enedis_client(store=Depends(get_store), tokens=Depends(get_token_supplier)):
    client = EnedisClient(store, tokens)
    try:
        yield client
    finally:
        await client.close()


async def get_switchgrid_client(store=Depends(get_store)):
    client = SwitchgridClient(store=store)
    try:
        yield client
    finally:
        await client.close()


# =============================================================================
# Health & Info Endpoints
# =============================================================================

@app.get("/", tags=["Info"])
async def root():
    """API root - returns basic info."""
    return {
        "name": settings.api_title,
        "version": settings.api_version,
        "docs": "/docs",
    }


@app.get("/health", response_model=HealthStatus, tags=["Info"])
async def health():
    """Check API health status."""
    return HealthStatus(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version=settings.api_version,
    )


@app.options("/{path:path}", include_in_schema=False)
async def preflight(path: str):
    """Answer CORS preflight for every route."""
    return Response(status_code=200, headers=CORS_HEADERS)


# =============================================================================
# Enedis Endpoints
# =============================================================================

# action -> (stream, fetch whole range in segments)
SERIES_ACTIONS = {
    "get_consumption": (SeriesKind.DAILY_CONSUMPTION, False),
    "get_load_curve": (SeriesKind.LOAD_CURVE, False),
    "get_annual_load_curve": (SeriesKind.LOAD_CURVE, True),
    "get_max_power": (SeriesKind.DAILY_MAX_POWER, False),
    "get_daily_production": (SeriesKind.DAILY_PRODUCTION, False),
    "get_production_load_curve": (SeriesKind.PRODUCTION_LOAD_CURVE, False),
}

SNAPSHOT_ACTIONS = {
    "get_identity": "get_identity",
    "get_address": "get_address",
    "get_contract": "get_contracts",
    "get_contracts": "get_contracts",
    "get_contact": "get_contact",
}

ENEDIS_ACTIONS = list(SERIES_ACTIONS) + list(SNAPSHOT_ACTIONS) + ["compute_weekly_avg"]

DATE_RANGE_FIELDS = ["prm", "startDate", "endDate"]


def require_date_range(body: EnedisDataRequest):
    if not body.prm or not body.start_date or not body.end_date:
        raise ValidationError("Missing required parameters", required=DATE_RANGE_FIELDS)


@app.post("/enedis-data", tags=["Enedis"])
async def enedis_data(
    body: EnedisDataRequest,
    client: EnedisClient = Depends(get_enedis_client),
    store=Depends(get_store),
):
    """Fetch Enedis metering data or customer snapshots for a usage point."""
    if not body.action:
        return error_response(400, error="Missing action parameter", supported_actions=ENEDIS_ACTIONS)

    logger.info(f"enedis-data: action={body.action} prm={body.prm}")

    if body.action in SERIES_ACTIONS:
        require_date_range(body)
        kind, segmented = SERIES_ACTIONS[body.action]
        samples = await client.fetch_series(body.prm, kind, body.start_date, body.end_date, segmented=segmented)
        return {"success": True, "data": [s.model_dump() for s in samples]}

    if body.action in SNAPSHOT_ACTIONS:
        if not body.prm:
            raise ValidationError("Missing required parameter: prm", required=["prm"])
        payload = await getattr(client, SNAPSHOT_ACTIONS[body.action])(body.prm)
        return {"success": True, "data": payload}

    if body.action == "compute_weekly_avg":
        require_date_range(body)
        summary = await recompute_weekly_average(store, body.prm, body.start_date, body.end_date)
        return {"success": True, "data": summary.model_dump()}

    return error_response(
        400, error="Unsupported action", action=body.action, supported_actions=ENEDIS_ACTIONS
    )


@app.api_route("/enedis-token-refresh", methods=["GET", "POST"], tags=["Enedis"])
async def enedis_token_refresh(
    scheduled: bool = Query(False, description="Short answer for scheduled runs"),
    tokens: TokenSupplier = Depends(get_token_supplier),
):
    """Exchange a new Enedis token and store it as the only active one."""
    credential = await tokens.refresh()
    expires_at = credential.expires_at.isoformat()
    if scheduled:
        return {"success": True, "message": "Token refreshed successfully", "expires_at": expires_at}
    return {
        "access_token": credential.access_token,
        "token_type": credential.token_type,
        "expires_in": credential.expires_in,
        "expires_at": expires_at,
    }


AUTH_ACTIONS = ["refresh_token", "get_api_token"]


@app.post("/enedis-auth", tags=["Enedis"])
async def enedis_auth(
    body: EnedisAuthRequest,
    tokens: TokenSupplier = Depends(get_token_supplier),
):
    """Refresh a customer token or exchange an application token."""
    if body.action == "refresh_token" and body.refresh_token:
        return await tokens.exchange_refresh_token(body.refresh_token)

    if body.action == "get_api_token":
        credential = await tokens.exchange()
        return {
            "access_token": credential.access_token,
            "token_type": credential.token_type,
            "expires_in": credential.expires_in,
            "expires_at": credential.expires_at.isoformat(),
        }

    return error_response(400, error="Invalid request", action=body.action, expected_actions=AUTH_ACTIONS)


# =============================================================================
# Switchgrid Endpoints
# =============================================================================

def _order_response(body: LoadCurveOrderRequest, result) -> dict:
    response = {
        "success": True,
        "orderId": result.order_id,
        "requestId": result.request_id,
        "period": {"start": result.since, "end": result.until},
    }
    if body.return_rows:
        response.update(count=result.count, rows=result.rows)
    else:
        response["dataUrl"] = result.data_url
    return response


async def _power_curve_order(body: LoadCurveOrderRequest, client: SwitchgridClient, product) -> dict:
    result = await client.create_and_await(
        body.prm,
        body.consent_id,
        product,
        since=body.start_date,
        until=body.end_date,
        return_rows=body.return_rows,
        period=body.period,
    )
    return _order_response(body, result)


@app.post("/switchgrid-loadcurve", tags=["Switchgrid"])
async def switchgrid_loadcurve(
    body: LoadCurveOrderRequest,
    client: SwitchgridClient = Depends(get_switchgrid_client),
):
    """Order a LOADCURVE (30-minute power curve, one year by default)."""
    if body.action == "create_loadcurve_order_and_poll":
        return await _power_curve_order(body, client, LOADCURVE)

    if body.action == "fetch_data_url":
        if not body.data_url:
            raise ValidationError("dataUrl required", required=["dataUrl"])
        raw = await client.fetch_url(body.data_url)
        if not body.parse:
            return raw
        rows = [s.model_dump(exclude={"is_off_peak"}) for s in parse_load_curve(body.prm or "", raw)]
        return {"success": True, "count": len(rows), "rows": rows}

    return error_response(
        400,
        error="Unknown action",
        supported_actions=["create_loadcurve_order_and_poll", "fetch_data_url"],
    )


@app.post("/switchgrid-r63-sync", tags=["Switchgrid"])
async def switchgrid_r63_sync(
    body: LoadCurveOrderRequest,
    client: SwitchgridClient = Depends(get_switchgrid_client),
):
    """Order an R63_SYNC power curve (last 7 days by default)."""
    if body.action == "create_r63_sync_order_and_poll":
        return await _power_curve_order(body, client, R63_SYNC)

    return error_response(400, error="Unknown action", supported_actions=["create_r63_sync_order_and_poll"])


@app.post("/switchgrid-r65", tags=["Switchgrid"])
async def switchgrid_r65(
    body: LoadCurveOrderRequest,
    client: SwitchgridClient = Depends(get_switchgrid_client),
):
    """Order R65_SYNC daily energy (365 days by default)."""
    if body.action == "create_r65_order_and_poll":
        result = await client.create_daily_energy_order(
            body.prm,
            body.consent_id,
            since=body.start_date,
            until=body.end_date,
            return_rows=body.return_rows,
        )
        return _order_response(body, result)

    if body.action == "fetch_data_url":
        if not body.data_url:
            raise ValidationError("dataUrl required", required=["dataUrl"])
        raw = await client.fetch_url(body.data_url)
        if not body.parse:
            return raw
        rows = [row.model_dump() for row in parse_daily_energy(raw)]
        return {"success": True, "count": len(rows), "rows": rows}

    return error_response(
        400,
        error="Unknown action",
        supported_actions=["create_r65_order_and_poll", "fetch_data_url"],
    )


ORDER_ACTIONS = [
    "create_order",
    "get_order",
    "get_request_data",
    "fetch_url",
    "get_consent_id",
    "create_order_c68",
    "create_order_r65",
    "create_order_r65_year_single",
    "save_order_data",
]


@app.post("/switchgrid-orders", tags=["Switchgrid"])
async def switchgrid_orders(
    body: SwitchgridOrdersRequest,
    client: SwitchgridClient = Depends(get_switchgrid_client),
):
    """Generic Switchgrid order operations, the C68 / R65 products and order saving."""
    action = body.action
    user_id = body.user_id or None

    if action == "create_order":
        if not body.order_request:
            raise ValidationError("orderRequest required", required=["orderRequest"])
        return await client.create_order(body.order_request)

    if action == "get_order":
        return await client.get_order(body.order_id)

    if action == "get_request_data":
        if not body.request_id:
            raise ValidationError("requestId required", required=["requestId"])
        return await client.fetch_request_data(body.request_id, {"format": "json"})

    if action == "fetch_url":
        if not body.url:
            raise ValidationError("url required", required=["url"])
        return await client.fetch_url(body.url)

    if action == "get_consent_id":
        consent_id = await client.resolve_consent_id(body.ask_id, body.prm)
        return {"success": True, "consentId": consent_id}

    if action == "create_order_c68":
        kwargs = {"user_id": user_id} if user_id else {}
        return await client.fetch_contract_details(body.prm, body.consent_id, body.ask_id, **kwargs)

    if action == "create_order_r65":
        kwargs = {"user_id": user_id} if user_id else {}
        return await client.fetch_daily_energy(
            body.prm, body.consent_id, body.ask_id, since=body.since, until=body.until, **kwargs
        )

    if action == "create_order_r65_year_single":
        kwargs = {"user_id": user_id} if user_id else {}
        return await client.fetch_daily_energy_year(
            body.prm, body.consent_id, body.ask_id, since=body.since, until=body.until, **kwargs
        )

    if action == "save_order_data":
        kwargs = {"user_id": user_id} if user_id else {}
        stats = await client.save_order_data(
            body.pdl or body.prm, body.order_data, body.all_requests_data, **kwargs
        )
        return {"success": True, "stats": stats, "message": "Order data saved"}

    return error_response(400, error="Unknown action", action=action, supported_actions=ORDER_ACTIONS)
