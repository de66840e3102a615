"""Data models for Enedis and Switchgrid payloads and stored rows."""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Enedis token
# =============================================================================

class Credential(BaseModel):
    """Bearer token row from the enedis_tokens table."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int = 0
    created_at: datetime
    expires_at: datetime
    is_active: bool = True

    def is_valid(self, now: Optional[datetime] = None, margin_s: int = 120) -> bool:
        """True while the token has at least ``margin_s`` seconds left."""
        now = now or datetime.now(timezone.utc)
        return self.expires_at > now + timedelta(seconds=margin_s)

    def to_row(self) -> dict:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "is_active": self.is_active,
        }

    @classmethod
    def from_token_response(cls, data: dict, now: Optional[datetime] = None) -> "Credential":
        """Create from an OAuth2 token endpoint response."""
        now = now or datetime.now(timezone.utc)
        expires_in = int(data.get("expires_in") or 0)
        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type") or "Bearer",
            expires_in=expires_in,
            created_at=now,
            expires_at=now + timedelta(seconds=expires_in),
            is_active=True,
        )

    @classmethod
    def from_row(cls, row: dict) -> "Credential":
        """Create from a stored row. Rows without expires_at count as expired."""
        created_at = _parse_ts(row.get("created_at")) or datetime.now(timezone.utc)
        expires_at = _parse_ts(row.get("expires_at")) or created_at
        return cls(
            access_token=row["access_token"],
            token_type=row.get("token_type") or "Bearer",
            expires_in=int(row.get("expires_in") or 0),
            created_at=created_at,
            expires_at=expires_at,
            is_active=bool(row.get("is_active", False)),
        )


def _parse_ts(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str) and value:
        try:
            ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


# =============================================================================
# Enedis metering streams
# =============================================================================

class SeriesKind(str, Enum):
    """Metering streams served by the Enedis v5 endpoints."""

    DAILY_CONSUMPTION = "daily_consumption"
    DAILY_PRODUCTION = "daily_production"
    DAILY_MAX_POWER = "daily_max_power"
    LOAD_CURVE = "load_curve"
    PRODUCTION_LOAD_CURVE = "production_load_curve"

    @property
    def is_interval(self) -> bool:
        return self in (SeriesKind.LOAD_CURVE, SeriesKind.PRODUCTION_LOAD_CURVE)

    @property
    def is_consumption(self) -> bool:
        return self in (SeriesKind.DAILY_CONSUMPTION, SeriesKind.LOAD_CURVE)


class OffpeakWindow(BaseModel):
    """Off-peak (HC) window in minutes of day. start >= end wraps midnight."""

    start: int
    end: int

    @property
    def wraps(self) -> bool:
        return self.start >= self.end


class IntervalSample(BaseModel):
    """One load curve reading, keyed on (prm, date_time)."""

    prm: str
    date: str  # civil date of the interval start, YYYY-MM-DD
    time: str  # civil time of the interval start, HH:MM:SS
    date_time: str  # UTC instant of the interval start, ISO 8601
    value: Optional[float] = None  # kW
    is_off_peak: Optional[bool] = None  # consumption streams only

    def to_row(self) -> dict:
        row = self.model_dump()
        if row["is_off_peak"] is None:
            row.pop("is_off_peak")
        return row


class DailySample(BaseModel):
    """One daily value (kWh or kVA), keyed on (prm, date)."""

    prm: str
    date: str
    value: Optional[float] = None


class WeeklyAverageSlot(BaseModel):
    """One cell of the 7 x 48 weekly average grid."""

    prm: str
    dow: int  # 1=Monday .. 7=Sunday
    time_slot: str  # HH:MM
    n: int = 0
    avg_kw: Optional[float] = None


class WeeklyAverageSummary(BaseModel):
    """Result of a weekly average recompute."""

    total_slots: int
    slots_with_data: int
    null_slots: int
    input_points: int


# =============================================================================
# Switchgrid broker
# =============================================================================

class RequestStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class BrokerRequest(BaseModel):
    """A typed request inside a Switchgrid order."""

    id: str
    type: str
    status: RequestStatus = RequestStatus.PENDING
    data_url: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (RequestStatus.SUCCESS, RequestStatus.FAILED)

    @classmethod
    def from_api_response(cls, data: dict) -> "BrokerRequest":
        """Create from an entry of ``order.requests``.

        Unknown statuses (e.g. QUEUED, RUNNING) are treated as PENDING.
        """
        raw_status = str(data.get("status") or "PENDING").upper()
        try:
            status = RequestStatus(raw_status)
        except ValueError:
            status = RequestStatus.PENDING
        return cls(
            id=str(data.get("id", "")),
            type=data.get("type", ""),
            status=status,
            data_url=data.get("dataUrl"),
            error_message=data.get("errorMessage"),
        )


class BrokerOrder(BaseModel):
    """A Switchgrid order grouping one or more requests."""

    id: str
    requests: List[BrokerRequest] = Field(default_factory=list)

    def find_request(self, request_type: str) -> Optional[BrokerRequest]:
        for request in self.requests:
            if request.type == request_type:
                return request
        return None

    @classmethod
    def from_api_response(cls, data: dict) -> "BrokerOrder":
        """Create from ``POST /order`` or ``GET /order/{id}``."""
        return cls(
            id=str(data.get("id") or data.get("orderId") or ""),
            requests=[BrokerRequest.from_api_response(r) for r in data.get("requests") or []],
        )


class BrokerDailyEnergy(BaseModel):
    """Daily active energy from the R65 product family."""

    date: str
    energy_total_kwh: float
    energy_by_cadran: Dict[str, float] = Field(default_factory=dict)


class BrokerDailyMaxPower(BaseModel):
    """Daily maximum power (kVA) from an order dataset."""

    date: str
    max_power_kw: float
    max_power_by_cadran: Optional[Dict[str, Any]] = None


class TariffInfo(BaseModel):
    """Tariff family detected from a C68 contract payload."""

    tariff_type: str = "BASE"
    formula_code: str = "UNKNOWN"
    cadrans: List[str] = Field(default_factory=lambda: ["BASE"])


class BrokerResult(BaseModel):
    """Outcome of a create-and-await call."""

    order_id: str
    request_id: str
    request_type: str
    since: Optional[str] = None
    until: Optional[str] = None
    data_url: Optional[str] = None
    rows: Optional[List[Any]] = None

    @property
    def count(self) -> int:
        return len(self.rows) if self.rows is not None else 0
