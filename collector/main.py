"""Command line entry point for the metering-data collector.

Usage:
    python -m collector.main refresh-token                 # one refresh
    python -m collector.main refresh-token --loop 3000     # refresh every 50 min
    python -m collector.main fetch load_curve 12345678901234 2024-01-01 2024-03-31 --segmented
    python -m collector.main weekly-avg 12345678901234 2024-01-01 2024-12-31
    python -m collector.main loadcurve-order 12345678901234 <consent-id> --product R63_SYNC
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Optional

from .aggregator import recompute_weekly_average
from .config import settings
from .enedis_auth import TokenSupplier
from .enedis_client import EnedisClient
from .errors import PipelineError
from .models import SeriesKind
from .store import SupabaseStore
from .switchgrid_client import SwitchgridClient, product_for

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger("enedis-collector")


def print_json(data):
    print(json.dumps(data, indent=2, default=str))


class TokenRefresher:
    """Keeps a fresh Enedis token in the store, refreshing on a fixed interval."""

    def __init__(self, interval: float):
        self.interval = interval
        self.running = False
        self._wakeup = asyncio.Event()

    async def start(self):
        logger.info("=" * 60)
        logger.info("Enedis token refresher")
        logger.info(f"  Refresh interval: {self.interval:.0f}s")
        logger.info("=" * 60)

        self.running = True
        async with SupabaseStore() as store:
            supplier = TokenSupplier(store)
            try:
                while self.running:
                    try:
                        credential = await supplier.refresh()
                        logger.info(f"Token refreshed, expires at {credential.expires_at.isoformat()}")
                    except PipelineError as e:
                        logger.error(f"Token refresh failed: {e.message}")

                    self._wakeup.clear()
                    try:
                        await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval)
                    except asyncio.TimeoutError:
                        pass
            finally:
                await supplier.close()

    async def stop(self):
        logger.info("Stopping token refresher...")
        self.running = False
        self._wakeup.set()


async def refresh_token(loop_interval: Optional[float]) -> int:
    if loop_interval:
        refresher = TokenRefresher(loop_interval)
        loop = asyncio.get_event_loop()

        def shutdown_handler():
            logger.info("Shutdown signal received")
            asyncio.create_task(refresher.stop())

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, shutdown_handler)
            except NotImplementedError:
                # Windows doesn't support add_signal_handler
                pass

        await refresher.start()
        return 0

    async with SupabaseStore() as store:
        supplier = TokenSupplier(store)
        try:
            credential = await supplier.refresh()
        finally:
            await supplier.close()
    print_json({"success": True, "expires_at": credential.expires_at.isoformat()})
    return 0


async def fetch(kind: str, prm: str, start: str, end: str, segmented: bool) -> int:
    async with SupabaseStore() as store:
        supplier = TokenSupplier(store)
        try:
            async with EnedisClient(store, supplier) as client:
                samples = await client.fetch_series(prm, kind, start, end, segmented=segmented)
        finally:
            await supplier.close()
    print_json({"success": True, "count": len(samples), "data": [s.model_dump() for s in samples]})
    return 0


async def weekly_avg(prm: str, start: str, end: str) -> int:
    async with SupabaseStore() as store:
        summary = await recompute_weekly_average(store, prm, start, end)
    print_json({"success": True, "data": summary.model_dump()})
    return 0


async def loadcurve_order(
    prm: str,
    consent_id: str,
    product: str,
    since: Optional[str],
    until: Optional[str],
    no_rows: bool,
) -> int:
    async with SupabaseStore() as store:
        async with SwitchgridClient(store=store) as client:
            result = await client.create_and_await(
                prm,
                consent_id,
                product_for(product),
                since=since,
                until=until,
                return_rows=not no_rows,
            )
    print_json(dict(result.model_dump(), count=result.count))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="enedis-collector",
        description="Enedis / Switchgrid metering data collector",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("refresh-token", help="Exchange and store a new Enedis token")
    p.add_argument("--loop", type=float, metavar="SECONDS",
                   help="Keep running and refresh every SECONDS")

    p = sub.add_parser("fetch", help="Fetch one Enedis metering stream")
    p.add_argument("kind", choices=[k.value for k in SeriesKind])
    p.add_argument("prm", help="Usage point id")
    p.add_argument("start", help="Start date (YYYY-MM-DD)")
    p.add_argument("end", help="End date (YYYY-MM-DD)")
    p.add_argument("--segmented", action="store_true",
                   help="Fetch the whole range of a load curve in 7-day segments")

    p = sub.add_parser("weekly-avg", help="Recompute the weekly average load curve")
    p.add_argument("prm")
    p.add_argument("start")
    p.add_argument("end")

    p = sub.add_parser("loadcurve-order", help="Order a power curve from Switchgrid and wait for it")
    p.add_argument("prm")
    p.add_argument("consent_id")
    p.add_argument("--product", default="LOADCURVE", choices=["LOADCURVE", "R63_SYNC"])
    p.add_argument("--since")
    p.add_argument("--until")
    p.add_argument("--no-rows", action="store_true", help="Only return the dataset pointer")

    return parser


async def run(args: argparse.Namespace) -> int:
    if args.command == "refresh-token":
        return await refresh_token(args.loop)
    if args.command == "fetch":
        return await fetch(args.kind, args.prm, args.start, args.end, args.segmented)
    if args.command == "weekly-avg":
        return await weekly_avg(args.prm, args.start, args.end)
    if args.command == "loadcurve-order":
        return await loadcurve_order(
            args.prm, args.consent_id, args.product, args.since, args.until, args.no_rows
        )
    return 2


def main(argv=None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(run(args))
    except PipelineError as e:
        logger.error(f"{args.command} failed: {e.message}")
        print_json(e.to_dict())
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
