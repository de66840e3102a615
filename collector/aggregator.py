"""Weekly average power profile (7 weekdays x 48 half-hour slots) per meter."""

import logging
from collections import defaultdict
from datetime import date
from typing import Dict, List, Tuple

from .clock import half_hour_slots, slot_label
from .models import WeeklyAverageSlot, WeeklyAverageSummary
from .store import WEEKLY_AVG_TABLE

logger = logging.getLogger(__name__)

WEEKDAYS = range(1, 8)  # ISO: 1=Monday .. 7=Sunday


def bucket_key(sample: dict) -> Tuple[int, str]:
    """(ISO weekday, half-hour slot) of a stored load curve row."""
    dow = date.fromisoformat(str(sample["date"])[:10]).isoweekday()
    hour, minute = (int(part) for part in str(sample["time"]).split(":")[:2])
    return dow, slot_label(hour, minute)


def build_grid(prm: str, samples: List[dict]) -> Tuple[List[WeeklyAverageSlot], int]:
    """Average samples into the full 336-cell grid.

    Returns the grid and the number of samples that were used.
    """
    sums: Dict[Tuple[int, str], float] = defaultdict(float)
    counts: Dict[Tuple[int, str], int] = defaultdict(int)
    used = 0

    for sample in samples:
        if sample.get("value") is None:
            continue
        try:
            key = bucket_key(sample)
            value = float(sample["value"])
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed load curve row: {e}")
            continue
        sums[key] += value
        counts[key] += 1
        used += 1

    grid = []
    for dow in WEEKDAYS:
        for slot in half_hour_slots():
            n = counts.get((dow, slot), 0)
            grid.append(WeeklyAverageSlot(
                prm=prm,
                dow=dow,
                time_slot=slot,
                n=n,
                avg_kw=sums[(dow, slot)] / n if n else None,
            ))
    return grid, used


async def recompute_weekly_average(store, prm: str, start: str, end: str) -> WeeklyAverageSummary:
    """Rebuild a meter's weekly grid from stored samples in ``[start, end]``.

    Always a full recompute: all 336 rows are upserted, empty cells included.
    Read or write failures raise ``PersistenceError``.
    """
    samples = await store.get_interval_samples(prm, start, end)
    logger.info(f"Computing weekly average for {prm}: {len(samples)} points from {start} to {end}")

    grid, used = build_grid(prm, samples)
    await store.upsert(WEEKLY_AVG_TABLE, [cell.model_dump() for cell in grid], on_conflict="prm,dow,time_slot")

    filled = sum(1 for cell in grid if cell.n > 0)
    summary = WeeklyAverageSummary(
        total_slots=len(grid),
        slots_with_data=filled,
        null_slots=len(grid) - filled,
        input_points=used,
    )
    logger.info(f"Weekly average for {prm}: {filled}/{len(grid)} slots filled")
    return summary
