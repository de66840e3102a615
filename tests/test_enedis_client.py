import httpx
import pytest

from collector.enedis_client import EnedisClient, parse_interval_readings
from collector.errors import TransientFetchError, ValidationError
from collector.models import OffpeakWindow, SeriesKind

from conftest import mock_client

BASE = "https://enedis.test"
PRM = "12345678901234"


def readings(*entries):
    return {
        "meter_reading": {
            "usage_point_id": PRM,
            "interval_reading": [dict(zip(("date", "value", "interval_length"), e)) for e in entries],
        }
    }


def make_client(store, tokens, sleeper, handler):
    return EnedisClient(
        store,
        tokens,
        base_url=BASE,
        client=mock_client(handler),
        sleep=sleeper,
        segment_pause=0.2,
    )


@pytest.mark.asyncio
async def test_daily_consumption_is_scaled_and_upserted(store, tokens, sleeper):
    seen = []

    def handler(request):
        seen.append(request)
        assert request.url.path == "/metering_data_dc/v5/daily_consumption"
        return httpx.Response(200, json=readings(
            ("2024-01-01", "5000"), ("2024-01-02", "5000"), ("2024-01-03", "5000"),
        ))

    client = make_client(store, tokens, sleeper, handler)
    samples = await client.fetch_series(PRM, "daily_consumption", "2024-01-01", "2024-01-04")

    assert [s.value for s in samples] == [5.0, 5.0, 5.0]
    assert seen[0].url.params["usage_point_id"] == PRM
    assert seen[0].url.params["start"] == "2024-01-01"
    assert seen[0].url.params["end"] == "2024-01-04"
    assert seen[0].headers["Authorization"] == "Bearer test-token"

    rows = store.rows("consumption_data")
    assert len(rows) == 3
    assert all(row["peak_hours"] == 5.0 and row["off_peak_hours"] == 0 for row in rows)
    assert store.upserts == [("consumption_data", 3, "prm,date")]


@pytest.mark.asyncio
async def test_refetching_the_same_days_does_not_duplicate_rows(store, tokens, sleeper):
    def handler(request):
        return httpx.Response(200, json=readings(("2024-01-01", "1200"), ("2024-01-02", "800")))

    client = make_client(store, tokens, sleeper, handler)
    await client.fetch_series(PRM, SeriesKind.DAILY_PRODUCTION, "2024-01-01", "2024-01-03")
    await client.fetch_series(PRM, SeriesKind.DAILY_PRODUCTION, "2024-01-01", "2024-01-03")

    rows = store.rows("production_data")
    assert len(rows) == 2
    assert sorted(row["production"] for row in rows) == [0.8, 1.2]


@pytest.mark.asyncio
async def test_missing_max_power_value_stays_null(store, tokens, sleeper):
    def handler(request):
        return httpx.Response(200, json=readings(("2024-01-01 18:32:00", None), ("2024-01-02 07:10:00", "6120")))

    client = make_client(store, tokens, sleeper, handler)
    samples = await client.fetch_series(PRM, "daily_max_power", "2024-01-01", "2024-01-03")

    assert [(s.date, s.value) for s in samples] == [("2024-01-01", None), ("2024-01-02", 6.12)]


@pytest.mark.asyncio
async def test_not_found_is_an_empty_success(store, tokens, sleeper):
    def handler(request):
        return httpx.Response(404, json={"error": "no_data_found"})

    client = make_client(store, tokens, sleeper, handler)

    assert await client.fetch_series(PRM, "daily_consumption", "2024-01-01", "2024-01-04") == []
    assert await client.fetch_series(PRM, "load_curve", "2024-01-01", "2024-01-04") == []
    assert store.upserts == []
    assert sleeper.calls == []


@pytest.mark.asyncio
async def test_daily_server_errors_surface_after_retries(store, tokens, sleeper):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500, text="internal error")

    client = make_client(store, tokens, sleeper, handler)
    with pytest.raises(TransientFetchError):
        await client.fetch_series(PRM, "daily_consumption", "2024-01-01", "2024-01-04")

    assert len(calls) == 3
    assert sleeper.calls == [1.0, 2.0]


@pytest.mark.asyncio
async def test_missing_parameters_are_rejected_before_any_call(store, tokens, sleeper):
    def handler(request):
        raise AssertionError("no network call expected")

    client = make_client(store, tokens, sleeper, handler)
    with pytest.raises(ValidationError) as exc_info:
        await client.fetch_series("", "daily_consumption", "2024-01-01", "2024-01-04")

    assert exc_info.value.required == ["prm", "startDate", "endDate"]
    assert tokens.calls == 0


@pytest.mark.asyncio
async def test_load_curve_window_is_clamped_to_seven_days(store, tokens, sleeper):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=readings(("2024-01-01 00:30:00", "1500", "PT30M")))

    client = make_client(store, tokens, sleeper, handler)
    samples = await client.fetch_series(PRM, "load_curve", "2024-01-01", "2024-02-15")

    assert len(seen) == 1
    assert seen[0].url.params["start"] == "2024-01-01"
    assert seen[0].url.params["end"] == "2024-01-08"

    sample = samples[0]
    assert (sample.date, sample.time, sample.value) == ("2024-01-01", "00:00:00", 1.5)
    assert sample.date_time == "2023-12-31T23:00:00Z"
    assert store.upserts == [("load_curve_data", 1, "prm,date_time")]


@pytest.mark.asyncio
async def test_consumption_curve_is_tagged_with_contract_off_peak_hours(store, tokens, sleeper):
    store.contracts[PRM] = {"offpeak_hours": "HC (22H00-6H00)"}

    def handler(request):
        return httpx.Response(200, json=readings(
            ("2024-01-01 23:30:00", "800", "PT30M"),
            ("2024-01-01 12:00:00", "2400", "PT30M"),
            ("2024-01-02 06:30:00", "600", "PT30M"),
        ))

    client = make_client(store, tokens, sleeper, handler)
    samples = await client.fetch_series(PRM, "load_curve", "2024-01-01", "2024-01-02")

    assert [(s.time, s.is_off_peak) for s in samples] == [
        ("23:00:00", True),
        ("11:30:00", False),
        ("06:00:00", False),
    ]


@pytest.mark.asyncio
async def test_off_peak_table_takes_precedence_over_contract(store, tokens, sleeper):
    store.offpeak[PRM] = [{"start": 11 * 60, "end": 13 * 60}]
    store.contracts[PRM] = {"offpeak_hours": "HC (22H00-6H00)"}
    client = make_client(store, tokens, sleeper, lambda request: httpx.Response(200, json={}))

    assert await client.get_offpeak_windows(PRM) == [OffpeakWindow(start=660, end=780)]


@pytest.mark.asyncio
async def test_production_curve_has_no_off_peak_flag(store, tokens, sleeper):
    store.offpeak[PRM] = [{"start": 0, "end": 1439}]

    def handler(request):
        assert request.url.path == "/metering_data_plc/v5/production_load_curve"
        return httpx.Response(200, json=readings(("2024-06-01 13:00:00", "3000", "PT30M")))

    client = make_client(store, tokens, sleeper, handler)
    samples = await client.fetch_series(PRM, "production_load_curve", "2024-06-01", "2024-06-01")

    assert samples[0].is_off_peak is None
    assert "is_off_peak" not in store.rows("production_load_curve")[0]


@pytest.mark.asyncio
async def test_segmented_fetch_skips_failed_segment(store, tokens, sleeper):
    requested = []

    def handler(request):
        start = request.url.params["start"]
        requested.append((start, request.url.params["end"]))
        if start == "2024-01-08":
            return httpx.Response(500, text="boom")
        if start == "2024-01-15":
            return httpx.Response(404)
        return httpx.Response(200, json=readings(
            ("2024-01-01 00:30:00", "1000", "PT30M"),
            ("2024-01-01 01:00:00", "2000", "PT30M"),
        ))

    client = make_client(store, tokens, sleeper, handler)
    samples = await client.fetch_series(PRM, "load_curve", "2024-01-01", "2024-01-20", segmented=True)

    assert len(samples) == 2
    assert ("2024-01-01", "2024-01-08") in requested
    assert ("2024-01-15", "2024-01-21") in requested
    # 2 pauses between the 3 segments, plus 2 retry delays for the failing one
    assert sleeper.calls.count(0.2) == 2
    assert [d for d in sleeper.calls if d != 0.2] == [1.0, 2.0]
    assert len(store.rows("load_curve_data")) == 2


@pytest.mark.asyncio
async def test_persistence_failure_does_not_abort_fetch(store, tokens, sleeper):
    store.fail_upserts = True

    def handler(request):
        return httpx.Response(200, json=readings(("2024-01-01", "5000")))

    client = make_client(store, tokens, sleeper, handler)
    samples = await client.fetch_series(PRM, "daily_consumption", "2024-01-01", "2024-01-02")

    assert [s.value for s in samples] == [5.0]
    assert store.rows("consumption_data") == []


@pytest.mark.asyncio
async def test_identity_snapshot_is_upserted(store, tokens, sleeper):
    def handler(request):
        assert request.url.path == "/customers_i/v5/identity"
        return httpx.Response(200, json={"customer": {"customer_id": "42", "identity": {"natural_person": {}}}})

    client = make_client(store, tokens, sleeper, handler)
    identity = await client.get_identity(PRM)

    assert identity["customer_id"] == "42"
    assert store.rows("clients_identity") == [{"usage_point_id": PRM, "identity": identity}]


@pytest.mark.asyncio
async def test_identity_falls_back_to_legacy_endpoint(store, tokens, sleeper):
    def handler(request):
        if request.url.path == "/customers_i/v5/identity":
            return httpx.Response(500, text="error")
        assert request.url.path == "/customers/v5/identity"
        return httpx.Response(200, json={"identity": {"natural_person": {"lastname": "Martin"}}})

    client = make_client(store, tokens, sleeper, handler)
    identity = await client.get_identity(PRM)

    assert identity == {"natural_person": {"lastname": "Martin"}}


@pytest.mark.asyncio
async def test_contract_snapshot_reads_first_usage_point(store, tokens, sleeper):
    contract = {"subscribed_power": "9 kVA", "offpeak_hours": "HC (22H30-6H30)"}

    def handler(request):
        return httpx.Response(200, json={"customer": {"usage_points": [{"contracts": contract}]}})

    client = make_client(store, tokens, sleeper, handler)

    assert await client.get_contracts(PRM) == contract
    assert store.rows("clients_contracts")[0]["contract"] == contract


@pytest.mark.asyncio
async def test_missing_snapshot_is_none(store, tokens, sleeper):
    client = make_client(store, tokens, sleeper, lambda request: httpx.Response(404))

    assert await client.get_contact(PRM) is None
    assert store.upserts == []


def test_unparseable_reading_is_skipped():
    samples = parse_interval_readings(PRM, readings(("bad", "100", "PT30M"), ("2024-01-01 00:30:00", "100", "PT30M")))

    assert len(samples) == 1
