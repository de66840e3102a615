"""API request and response models."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ActionRequest(BaseModel):
    """Base for JSON bodies dispatched on ``action``."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    action: Optional[str] = None
    prm: Optional[str] = None


class EnedisDataRequest(ActionRequest):
    """Body of POST /enedis-data."""

    start_date: Optional[str] = Field(default=None, alias="startDate")
    end_date: Optional[str] = Field(default=None, alias="endDate")


class EnedisAuthRequest(ActionRequest):
    """Body of POST /enedis-auth."""

    refresh_token: Optional[str] = None


class LoadCurveOrderRequest(ActionRequest):
    """Body of POST /switchgrid-loadcurve, /switchgrid-r63-sync and /switchgrid-r65."""

    consent_id: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    return_rows: bool = Field(default=True, alias="returnRows")
    period: Optional[str] = None
    data_url: Optional[str] = Field(default=None, alias="dataUrl")
    parse: bool = True


class SwitchgridOrdersRequest(ActionRequest):
    """Body of POST /switchgrid-orders."""

    order_request: Optional[Dict[str, Any]] = Field(default=None, alias="orderRequest")
    order_id: Optional[str] = Field(default=None, alias="orderId")
    request_id: Optional[str] = Field(default=None, alias="requestId")
    url: Optional[str] = None
    consent_id: Optional[str] = Field(default=None, alias="consentId")
    ask_id: Optional[str] = Field(default=None, alias="askId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    since: Optional[str] = None
    until: Optional[str] = None
    pdl: Optional[str] = None
    order_data: Optional[Dict[str, Any]] = Field(default=None, alias="orderData")
    all_requests_data: Optional[Dict[str, Any]] = Field(default=None, alias="allRequestsData")


class HealthStatus(BaseModel):
    """API health status."""

    status: str
    timestamp: datetime
    version: str
