"""Enedis Data Connect metering client.

Fetches daily and load curve streams from the v5 metering endpoints,
normalises them to Europe/Paris civil time and upserts them into Supabase.

Load curve endpoints reject windows longer than 7 days, so longer ranges are
split into segments fetched one after another. A 404 from Enedis means "no
data for this meter and period" and is returned as an empty result.
"""

import asyncio
import logging
from datetime import timezone
from typing import Dict, List, Optional, Tuple, Union

import httpx

from .clock import (
    Segment,
    classify_off_peak,
    clamp_to_seven_days,
    coerce_offpeak_windows,
    minute_of_day,
    reconstruct_start,
    segment_range,
    to_civil_date,
)
from .config import settings
from .errors import NotFoundAsEmpty, PersistenceError, PipelineError, ValidationError
from .models import DailySample, IntervalSample, OffpeakWindow, SeriesKind
from .retry import RetryPolicy
from .store import safe_upsert

logger = logging.getLogger("enedis-collector.metering")

# (service base path, resource) per stream
SERIES_ENDPOINTS: Dict[SeriesKind, Tuple[str, str]] = {
    SeriesKind.DAILY_CONSUMPTION: ("metering_data_dc/v5", "daily_consumption"),
    SeriesKind.DAILY_PRODUCTION: ("metering_data_dp/v5", "daily_production"),
    SeriesKind.DAILY_MAX_POWER: ("metering_data_dcmp/v5", "daily_consumption_max_power"),
    SeriesKind.LOAD_CURVE: ("metering_data_clc/v5", "consumption_load_curve"),
    SeriesKind.PRODUCTION_LOAD_CURVE: ("metering_data_plc/v5", "production_load_curve"),
}

# (table, value column) for daily streams, upserted on (prm, date)
DAILY_TABLES: Dict[SeriesKind, Tuple[str, str]] = {
    SeriesKind.DAILY_CONSUMPTION: ("consumption_data", "peak_hours"),
    SeriesKind.DAILY_PRODUCTION: ("production_data", "production"),
    SeriesKind.DAILY_MAX_POWER: ("max_power_data", "max_power"),
}

# Interval streams, upserted on (prm, date_time)
INTERVAL_TABLES: Dict[SeriesKind, str] = {
    SeriesKind.LOAD_CURVE: "load_curve_data",
    SeriesKind.PRODUCTION_LOAD_CURVE: "production_load_curve",
}

# Customer snapshots, upserted on usage_point_id
SNAPSHOT_ENDPOINTS = {
    "identity": ("customers_i/v5", "identity", "clients_identity"),
    "address": ("customers_upa/v5", "usage_points/addresses", "clients_addresses"),
    "contract": ("customers_upc/v5", "usage_points/contracts", "clients_contracts"),
    "contact_data": ("customers_cd/v5", "contact_data", "clients_contacts"),
}
LEGACY_IDENTITY_PATH = "customers/v5/identity"

Sample = Union[DailySample, IntervalSample]


def _scaled(value) -> Optional[float]:
    """Enedis reports Wh / W / VA; stored values are kWh / kW / kVA."""
    if value is None:
        return None
    try:
        return float(value) / 1000
    except (TypeError, ValueError):
        return None


def _interval_readings(data: Optional[dict]) -> List[dict]:
    meter_reading = (data or {}).get("meter_reading") or {}
    return meter_reading.get("interval_reading") or []


def parse_daily_readings(prm: str, data: Optional[dict]) -> List[DailySample]:
    """Daily ``interval_reading`` entries to DailySample (value / 1000)."""
    samples = []
    for reading in _interval_readings(data):
        raw_date = reading.get("date")
        if not raw_date:
            continue
        samples.append(DailySample(prm=prm, date=str(raw_date)[:10], value=_scaled(reading.get("value"))))
    return samples


def parse_interval_readings(
    prm: str,
    data: Optional[dict],
    windows: Optional[List[OffpeakWindow]] = None,
) -> List[IntervalSample]:
    """Load curve readings to IntervalSample.

    Enedis stamps each reading with the end of its interval; the sample is
    keyed on the interval start. ``windows`` is None for production streams,
    which carry no off-peak flag.
    """
    samples = []
    for reading in _interval_readings(data):
        try:
            start, _end = reconstruct_start(reading.get("date"), reading.get("interval_length"))
        except ValidationError as e:
            logger.warning(f"Skipping reading for {prm}: {e.message}")
            continue

        is_off_peak = None
        if windows is not None:
            # HC/HP is decided on the interval start
            is_off_peak = classify_off_peak(minute_of_day(start), windows)

        samples.append(IntervalSample(
            prm=prm,
            date=start.date().isoformat(),
            time=start.strftime("%H:%M:%S"),
            date_time=start.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
            value=_scaled(reading.get("value")),
            is_off_peak=is_off_peak,
        ))
    return samples


def daily_rows(kind: SeriesKind, samples: List[DailySample]) -> List[dict]:
    _table, column = DAILY_TABLES[kind]
    rows = []
    for sample in samples:
        row = {"prm": sample.prm, "date": sample.date, column: sample.value}
        if kind == SeriesKind.DAILY_CONSUMPTION:
            row["off_peak_hours"] = 0
        rows.append(row)
    return rows


class EnedisClient:
    """Enedis metering data client.

    Attributes:
        store: persistence gateway (Supabase)
        tokens: TokenSupplier providing the bearer token
        base_url: Enedis gateway root URL
        retry: retry policy for metering calls
        segment_pause: seconds to wait between load curve segments
    """

    def __init__(
        self,
        store,
        tokens,
        base_url: Optional[str] = None,
        retry: Optional[RetryPolicy] = None,
        segment_pause: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep=None,
    ):
        self.store = store
        self.tokens = tokens
        self.base_url = (base_url or settings.enedis_base_url).rstrip("/")
        self.sleep = sleep or asyncio.sleep
        self.retry = retry or RetryPolicy(
            attempts=settings.enedis_retry_attempts,
            base_delay=1.0,
            max_delay=4.0,
            sleep=self.sleep,
            name="enedis",
        )
        self.segment_pause = settings.enedis_segment_pause if segment_pause is None else segment_pause
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
            self.client = httpx.AsyncClient(timeout=settings.enedis_timeout)
            self._owns_client = True

    async def close(self):
        """Close HTTP client."""
        if self.client and self._owns_client:
            await self.client.aclose()
            self.client = None

    async def _get_json(self, path: str, params: dict, token: str) -> dict:
        """GET an Enedis resource. Raises NotFoundAsEmpty on 404."""
        await self.connect()
        response = await self.retry.send(
            self.client,
            "GET",
            f"{self.base_url}/{path}",
            params=params,
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
        )
        try:
            return response.json()
        except ValueError as e:
            raise PipelineError(f"Invalid JSON from Enedis: {e}", details=response.text[:200])

    # =========================================================================
    # Metering streams
    # =========================================================================

    async def fetch_series(
        self,
        prm: str,
        kind: Union[SeriesKind, str],
        start_date: str,
        end_date: str,
        segmented: bool = False,
    ) -> List[Sample]:
        """Fetch one metering stream for a usage point.

        Args:
            prm: usage point id (14 digits)
            kind: stream to fetch
            start_date: first civil date, YYYY-MM-DD
            end_date: last civil date; exclusive for daily streams as Enedis
                defines it, inclusive for load curves
            segmented: for load curves, fetch the whole range in 7-day
                segments instead of clamping to the first 7 days

        Returns:
            DailySample or IntervalSample list, already upserted best-effort
        """
        if not prm or not start_date or not end_date:
            raise ValidationError("Missing required parameters", required=["prm", "startDate", "endDate"])
        kind = SeriesKind(kind)
        # Reject malformed dates before any network call
        to_civil_date(start_date)
        to_civil_date(end_date)

        token = await self.tokens.get_token()

        if not kind.is_interval:
            return await self._fetch_daily(prm, kind, start_date, end_date, token)

        windows = await self.get_offpeak_windows(prm) if kind.is_consumption else None
        if segmented:
            samples = await self._fetch_segmented(prm, kind, start_date, end_date, token, windows)
        else:
            samples = await self._fetch_window(prm, kind, start_date, end_date, token, windows)

        if samples:
            await safe_upsert(
                self.store,
                INTERVAL_TABLES[kind],
                [s.to_row() for s in samples],
                on_conflict="prm,date_time",
                label=kind.value,
            )
        else:
            logger.info(f"No {kind.value} data retrieved for {prm}")
        return samples

    async def _fetch_daily(self, prm: str, kind: SeriesKind, start: str, end: str, token: str) -> List[DailySample]:
        base, resource = SERIES_ENDPOINTS[kind]
        logger.info(f"Getting {kind.value} for PRM {prm}, period {start} to {end}")
        try:
            data = await self._get_json(
                f"{base}/{resource}",
                {"usage_point_id": prm, "start": start, "end": end},
                token,
            )
        except NotFoundAsEmpty:
            logger.info(f"No {kind.value} data for {prm} (404)")
            return []

        samples = parse_daily_readings(prm, data)
        if not samples:
            logger.warning(f"Unexpected {kind.value} payload for {prm}")
            return []

        table, _column = DAILY_TABLES[kind]
        await safe_upsert(self.store, table, daily_rows(kind, samples), on_conflict="prm,date", label=kind.value)
        return samples

    async def _fetch_window(
        self,
        prm: str,
        kind: SeriesKind,
        start: str,
        end: str,
        token: str,
        windows: Optional[List[OffpeakWindow]],
    ) -> List[IntervalSample]:
        start_iso, end_iso = clamp_to_seven_days(start, end)
        base, resource = SERIES_ENDPOINTS[kind]
        logger.info(f"Getting {kind.value} for PRM {prm}, window {start_iso} to {end_iso} (exclusive)")
        try:
            data = await self._get_json(
                f"{base}/{resource}",
                {"usage_point_id": prm, "start": start_iso, "end": end_iso},
                token,
            )
        except NotFoundAsEmpty:
            logger.info(f"No {kind.value} data for {prm} (404)")
            return []
        return parse_interval_readings(prm, data, windows)

    async def _fetch_segmented(
        self,
        prm: str,
        kind: SeriesKind,
        start: str,
        end: str,
        token: str,
        windows: Optional[List[OffpeakWindow]],
    ) -> List[IntervalSample]:
        segments: List[Segment] = segment_range(start, end)
        base, resource = SERIES_ENDPOINTS[kind]
        logger.info(f"{kind.value}: {len(segments)} segments of up to 7 days for {prm}")

        samples: List[IntervalSample] = []
        succeeded = 0
        failed = 0
        for i, segment in enumerate(segments):
            verbose = i < 3 or i >= len(segments) - 3 or i % 10 == 0
            if verbose:
                logger.info(f"Segment {i + 1}/{len(segments)}: {segment.start_iso} to {segment.end_iso}")

            try:
                data = await self._get_json(
                    f"{base}/{resource}",
                    {"usage_point_id": prm, "start": segment.start_iso, "end": segment.end_iso},
                    token,
                )
            except NotFoundAsEmpty:
                failed += 1
            except PipelineError as e:
                logger.error(f"Segment {i + 1} error: {e.message}")
                failed += 1
            else:
                parsed = parse_interval_readings(prm, data, windows)
                if verbose:
                    logger.info(f"Segment {i + 1}: {len(parsed)} points")
                samples.extend(parsed)
                succeeded += 1

            if i < len(segments) - 1 and self.segment_pause > 0:
                await self.sleep(self.segment_pause)

        logger.info(
            f"{kind.value}: {len(samples)} points from {len(segments)} segments "
            f"({succeeded} ok, {failed} failed)"
        )
        return samples

    async def get_offpeak_windows(self, prm: str) -> List[OffpeakWindow]:
        """Off-peak windows from offpeak_windows, else the stored contract, else none."""
        try:
            rows = await self.store.get_offpeak_windows(prm)
            windows = coerce_offpeak_windows(rows)
            if windows:
                return windows

            contract = await self.store.get_contract(prm)
        except PersistenceError as e:
            logger.warning(f"Could not read off-peak windows for {prm}: {e.message}")
            return []

        for entry in contract if isinstance(contract, list) else [contract]:
            if isinstance(entry, dict):
                raw = entry.get("offpeak_hours")
                if raw is None and isinstance(entry.get("contracts"), dict):
                    raw = entry["contracts"].get("offpeak_hours")
                windows = coerce_offpeak_windows(raw)
                if windows:
                    return windows
        return []

    # =========================================================================
    # Customer snapshots
    # =========================================================================

    async def _get_snapshot(self, prm: str, name: str, extract) -> Optional[dict]:
        if not prm:
            raise ValidationError("Missing required parameter: prm", required=["prm"])
        base, resource, table = SNAPSHOT_ENDPOINTS[name]
        token = await self.tokens.get_token()

        try:
            data = await self._get_json(f"{base}/{resource}", {"usage_point_id": prm}, token)
        except NotFoundAsEmpty:
            logger.info(f"No {name} for {prm} (404)")
            data = None
        except PipelineError as e:
            if name != "identity":
                raise
            logger.error(f"Identity endpoint failed for {prm}: {e.message}")
            data = None

        if data is None and name == "identity":
            data = await self._get_legacy_identity(prm, token)

        payload = extract(data) if data else None
        if payload:
            await safe_upsert(
                self.store,
                table,
                [{"usage_point_id": prm, name: payload}],
                on_conflict="usage_point_id",
                label=name,
            )
        else:
            logger.info(f"No {name} data in response for {prm}")
        return payload

    async def _get_legacy_identity(self, prm: str, token: str) -> Optional[dict]:
        try:
            return await self._get_json(LEGACY_IDENTITY_PATH, {"usage_point_id": prm}, token)
        except PipelineError as e:
            logger.error(f"Alternative identity endpoint failed: {e.message}")
            return None

    async def get_identity(self, prm: str) -> Optional[dict]:
        return await self._get_snapshot(prm, "identity", lambda d: d.get("customer") or d.get("identity"))

    async def get_address(self, prm: str) -> Optional[dict]:
        return await self._get_snapshot(prm, "address", _first_usage_point("usage_point", "usage_point_addresses"))

    async def get_contracts(self, prm: str) -> Optional[dict]:
        return await self._get_snapshot(prm, "contract", _first_usage_point("contracts"))

    async def get_contact(self, prm: str) -> Optional[dict]:
        return await self._get_snapshot(prm, "contact_data", lambda d: d.get("contact_data"))


def _first_usage_point(*keys):
    """Extractor for ``customer.usage_points[0].<keys...>``."""

    def extract(data: dict):
        try:
            node = (data.get("customer") or {}).get("usage_points")[0]
            for key in keys:
                node = node.get(key)
            return node
        except (AttributeError, IndexError, TypeError):
            return None

    return extract
