"""Parsers for Switchgrid dataset payloads.

A dataset carries one or more measurement series under ``grandeur``. The
partner labels a series either by its physical code (``grandeurPhysique``)
or by its business label (``grandeurMetier``), so a series is picked with an
ordered list of predicates: first match wins, no match gives no rows.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .clock import LOCAL_TZ, reconstruct_start
from .errors import ValidationError
from .models import BrokerDailyEnergy, BrokerDailyMaxPower, IntervalSample, TariffInfo

logger = logging.getLogger(__name__)

SeriesPredicate = Tuple[str, Callable[[dict], bool]]

_FLAT_PERIOD_RE = re.compile(r"PT(\d+)S")
DEFAULT_FLAT_PERIOD_S = 1800


def _physical(series: dict) -> str:
    return str(series.get("grandeurPhysique") or "").upper()


def _business(series: dict) -> str:
    return str(series.get("grandeurMetier") or "").upper()


# Active power, in priority order
ACTIVE_POWER: Sequence[SeriesPredicate] = (
    ("physical P/PA/PACT", lambda s: _physical(s) in ("P", "PA", "PACT")),
    ("label PUISSANCE", lambda s: "PUISSANCE" in _business(s)),
    ("label ACTIVE", lambda s: "ACTIVE" in _business(s)),
)

# Consumed active energy
ACTIVE_ENERGY: Sequence[SeriesPredicate] = (
    (
        "label CONS + physical EA/E",
        lambda s: _business(s) in ("CONS", "CONSO", "CONSUMPTION") and _physical(s) in ("EA", "E"),
    ),
)


def series_list(raw) -> List[dict]:
    """``raw.grandeur`` as a list, whether the partner sent one object or many."""
    if not isinstance(raw, dict):
        return []
    grandeur = raw.get("grandeur")
    if isinstance(grandeur, dict):
        return [grandeur]
    if isinstance(grandeur, list):
        return [g for g in grandeur if isinstance(g, dict)]
    return []


def select_series(raw, predicates: Sequence[SeriesPredicate]) -> Optional[dict]:
    """First series matching the highest-priority predicate, or None."""
    candidates = series_list(raw)
    for name, matches in predicates:
        for series in candidates:
            if matches(series):
                logger.debug(f"Selected series {_business(series)}/{_physical(series)} ({name})")
                return series

    if candidates:
        available = ", ".join(f"{_business(s)}/{_physical(s)}" for s in candidates)
        logger.warning(f"No matching series among: {available}")
    else:
        logger.warning("No grandeur in dataset")
    return None


def _point_value(point: dict) -> float:
    value = point.get("v")
    if value is None:
        value = point.get("value")
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _to_kw(watts: float) -> float:
    return round(watts / 1000, 3)


def _sample(prm: str, start: datetime, value: float) -> IntervalSample:
    start = start.astimezone(LOCAL_TZ)
    return IntervalSample(
        prm=prm,
        date=start.date().isoformat(),
        time=start.strftime("%H:%M:%S"),
        date_time=start.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
        value=value,
    )


def parse_load_curve(prm: str, raw, step=None) -> List[IntervalSample]:
    """Parse a power curve dataset into IntervalSample rows (kW).

    Two shapes are accepted:
      - flat: ``{period: "PT1800S", startsAt, values: [...]}``, timestamps
        are ``startsAt + i * period`` and already mark interval starts
      - series: ``grandeur[].points[{d, v}]``, each point stamped with the
        end of its interval like Enedis readings
    """
    if isinstance(raw, dict) and raw.get("period") and raw.get("startsAt") and isinstance(raw.get("values"), list):
        return _parse_flat(prm, raw)

    series = select_series(raw, ACTIVE_POWER)
    if series is None:
        return []

    samples = []
    for point in series.get("points") or []:
        stamp = point.get("d") or point.get("date") or point.get("datetime")
        try:
            start, _end = reconstruct_start(stamp, step)
        except ValidationError as e:
            logger.warning(f"Skipping point: {e.message}")
            continue
        samples.append(_sample(prm, start, _to_kw(_point_value(point))))

    logger.info(f"Parsed {len(samples)} load curve points for {prm}")
    return samples


def _parse_flat(prm: str, raw: dict) -> List[IntervalSample]:
    match = _FLAT_PERIOD_RE.fullmatch(str(raw["period"]))
    period_s = int(match.group(1)) if match else DEFAULT_FLAT_PERIOD_S
    try:
        first = datetime.fromisoformat(str(raw["startsAt"]).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Invalid startsAt in dataset: {raw['startsAt']!r}")
        return []
    if first.tzinfo is None:
        first = first.replace(tzinfo=timezone.utc)

    samples = []
    for i, value in enumerate(raw["values"]):
        start = first.astimezone(timezone.utc) + timedelta(seconds=i * period_s)
        try:
            kw = _to_kw(float(value))
        except (TypeError, ValueError):
            continue
        samples.append(_sample(prm, start, kw))
    return samples


def parse_daily_energy(raw) -> List[BrokerDailyEnergy]:
    """Parse an R65 dataset into daily kWh rows. Wh is converted to kWh."""
    series = select_series(raw, ACTIVE_ENERGY)
    if series is None:
        return []

    factor = 1 / 1000 if str(series.get("unite") or "").lower() == "wh" else 1
    rows = []
    for point in series.get("points") or []:
        day = point.get("d") or point.get("date")
        if not day:
            continue
        total = round(_point_value(point) * factor, 3)
        rows.append(BrokerDailyEnergy(date=str(day)[:10], energy_total_kwh=total, energy_by_cadran={"BASE": total}))
    return rows


def extract_tariff_info(contract) -> TariffInfo:
    """Detect the tariff family from a C68 contract payload."""
    contract = contract if isinstance(contract, dict) else {}
    code = str(contract.get("formule_tarifaire_acheminement") or contract.get("formula_code") or "UNKNOWN")
    calendar = str(contract.get("calendrier_distributeur") or "")

    if "TEMPO" in code:
        cadrans = [f"{color}_{period}" for color in ("BLEU", "BLANC", "ROUGE") for period in ("HP", "HC")]
        info = TariffInfo(tariff_type="TEMPO", formula_code=code, cadrans=cadrans)
    elif "HC" in code or "CREUSE" in code or "HC" in calendar:
        info = TariffInfo(tariff_type="HP_HC", formula_code=code, cadrans=["HP", "HC"])
    elif "EJP" in code:
        info = TariffInfo(tariff_type="EJP", formula_code=code, cadrans=["NORMAL", "POINTE"])
    elif any(tag in code for tag in ("CU", "MU", "LU")):
        info = TariffInfo(
            tariff_type="PROFESSIONAL",
            formula_code=code,
            cadrans=[f"CADRAN_{i}" for i in range(1, 7)],
        )
    else:
        info = TariffInfo(formula_code=code)

    logger.info(f"Tariff detected: {info.tariff_type}, formula: {code}")
    return info


# =========================================================================
# Per-day item lists (order payloads relayed by the front end)
# =========================================================================

# Item keys read for each cadran, first non-zero wins
CADRAN_KEYS: Dict[str, Dict[str, Tuple[str, ...]]] = {
    "BASE": {"BASE": ("base", "total", "energy")},
    "HP_HC": {"HP": ("hp", "peak_hours", "hph"), "HC": ("hc", "off_peak_hours", "hch")},
    "TEMPO": {
        "BLEU_HP": ("bleu_hp", "hphcb"),
        "BLEU_HC": ("bleu_hc", "hchcb"),
        "BLANC_HP": ("blanc_hp", "hphcw"),
        "BLANC_HC": ("blanc_hc", "hchcw"),
        "ROUGE_HP": ("rouge_hp", "hphcr"),
        "ROUGE_HC": ("rouge_hc", "hchcr"),
    },
}

DEFAULT_ITEM_INTERVAL = "PT10M"


def item_list(raw) -> List[dict]:
    """Items of a payload given as a list or wrapped in results/data/items."""
    if isinstance(raw, dict):
        raw = raw.get("results") or raw.get("data") or raw.get("items") or []
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict)]


def _number(value) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _first_number(item: dict, keys: Sequence[str]) -> float:
    for key in keys:
        value = _number(item.get(key))
        if value:
            return value
    return 0.0


def _item_date(item: dict) -> Optional[str]:
    day = item.get("date") or item.get("jour") or item.get("day")
    return str(day)[:10] if day else None


def parse_cadran_energy(raw, tariff: TariffInfo) -> List[BrokerDailyEnergy]:
    """Daily energy split by the cadrans of ``tariff``.

    A grandeur dataset goes through :func:`parse_daily_energy`.
    """
    if series_list(raw):
        return parse_daily_energy(raw)

    rows = []
    for item in item_list(raw):
        day = _item_date(item)
        if day is None:
            continue
        if tariff.tariff_type == "PROFESSIONAL":
            by_cadran = {}
            for i in range(1, 7):
                value = _first_number(item, (f"cadran_{i}", f"c{i}"))
                if value > 0:
                    by_cadran[f"CADRAN_{i}"] = value
        else:
            keys = CADRAN_KEYS.get(tariff.tariff_type, {})
            by_cadran = {cadran: _first_number(item, names) for cadran, names in keys.items()}

        total = sum(by_cadran.values())
        if total == 0:
            total = _number(item.get("total"))
        rows.append(BrokerDailyEnergy(date=day, energy_total_kwh=round(total, 3), energy_by_cadran=by_cadran))
    if not rows:
        logger.warning("No energy items to parse")
    return rows


def parse_max_power(raw) -> List[BrokerDailyMaxPower]:
    rows = []
    for item in item_list(raw):
        day = _item_date(item)
        if day is None:
            continue
        rows.append(BrokerDailyMaxPower(
            date=day,
            max_power_kw=_first_number(item, ("max_power", "pmax", "puissance_max")),
            max_power_by_cadran=item.get("max_power_by_cadran") or item.get("cadrans") or None,
        ))
    return rows


def parse_power_items(prm: str, raw) -> List[Dict[str, Any]]:
    """Power curve rows ``{timestamp, power_kw, interval_duration}``.

    Item lists carry their own interval (``interval``/``pas``). Datasets
    use their ``period``, half-hourly when they have none.
    """
    if series_list(raw) or (isinstance(raw, dict) and raw.get("values")):
        interval = str(raw.get("period") or "PT30M")
        return [
            {"timestamp": s.date_time, "power_kw": s.value, "interval_duration": interval}
            for s in parse_load_curve(prm, raw)
        ]

    rows = []
    for item in item_list(raw):
        stamp = item.get("timestamp") or item.get("horodate") or item.get("date")
        if not stamp:
            continue
        rows.append({
            "timestamp": stamp,
            "power_kw": _first_number(item, ("power", "puissance", "value")),
            "interval_duration": item.get("interval") or item.get("pas") or DEFAULT_ITEM_INTERVAL,
        })
    return rows
