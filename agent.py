"""
Entry point for the institutional signal worker.

Builds the service objects once (settings, store, resolvers, oracle,
publisher, scanner, monitor) and runs three timers:

* crypto scan every ``scan_interval`` seconds,
* forex scan every ``scan_interval`` seconds,
* monitoring pass every ``monitor_interval`` seconds.

With startup kicks enabled the first crypto scan runs after
``initial_scan_delay``, the forex scan ``forex_scan_offset`` later and the
first monitoring pass ``monitor_offset`` after the crypto kick.  A chat
layer can reuse :func:`build_services` and call
``scanner.run_scan(..., forced=True)``.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Optional

from auto_buy import AutoBuyer
from config import WorkerSettings, load_worker_settings
from log_utils import setup_logger
from notifier import TelegramPublisher
from oracle_client import SignalOracle
from price_resolver import PriceResolver
from signal_monitor import SignalMonitor
from signal_scanner import SignalScanner
from signal_schema import Market
from signal_storage import BaseSignalStore, open_store
from swap_router import SwapRouter
from worker_pools import TaskGroup

logger = setup_logger(__name__)


def handle_exception(exc_type, exc_value, exc_traceback):
    """Log uncaught exceptions with stack traces."""
    if issubclass(exc_type, KeyboardInterrupt):
        return
    logger.error("Uncaught exception", exc_info=(exc_type, exc_value, exc_traceback))


@dataclass
class Services:
    settings: WorkerSettings
    store: BaseSignalStore
    prices: PriceResolver
    oracle: SignalOracle
    publisher: TelegramPublisher
    router: SwapRouter
    buyer: AutoBuyer
    scanner: SignalScanner
    monitor: SignalMonitor


def build_services(settings: Optional[WorkerSettings] = None) -> Services:
    """Wire every component from ``settings`` (loaded from the environment by default)."""

    settings = settings or load_worker_settings()
    store = open_store(settings)
    prices = PriceResolver(timeout=settings.price_timeout)
    oracle = SignalOracle.from_settings(settings)
    publisher = TelegramPublisher(settings.telegram_bot_token)
    router = SwapRouter(
        settings.solana_rpc_url,
        quote_timeout=settings.quote_timeout,
        proxy_timeout=settings.proxy_timeout,
        swap_timeout=settings.swap_timeout,
    )
    return Services(
        settings=settings,
        store=store,
        prices=prices,
        oracle=oracle,
        publisher=publisher,
        router=router,
        buyer=AutoBuyer(router, store),
        scanner=SignalScanner(store, prices, oracle, publisher, settings),
        monitor=SignalMonitor(store, prices, oracle, publisher, settings),
    )


class SignalWorker:
    """Owns the scan/monitor timers for one set of services."""

    def __init__(self, services: Services) -> None:
        self.services = services
        self.group = TaskGroup()

    def scan_crypto(self) -> None:
        self.services.scanner.run_scan(Market.CRYPTO)

    def scan_forex(self) -> None:
        self.services.scanner.run_scan(Market.FOREX)

    def monitor(self) -> None:
        logger.info("Running scheduled monitoring loop for active signals...")
        self.services.monitor.run_pass()

    def start(self) -> None:
        settings = self.services.settings
        if settings.startup_kicks:
            crypto_delay = settings.initial_scan_delay
            forex_delay = crypto_delay + settings.forex_scan_offset
            monitor_delay = crypto_delay + settings.monitor_offset
        else:
            crypto_delay = forex_delay = settings.scan_interval
            monitor_delay = settings.monitor_interval
        self.group.add("scan-crypto", settings.scan_interval, self.scan_crypto, initial_delay=crypto_delay)
        self.group.add("scan-forex", settings.scan_interval, self.scan_forex, initial_delay=forex_delay)
        self.group.add("monitor", settings.monitor_interval, self.monitor, initial_delay=monitor_delay)
        self.group.start()
        logger.info(
            "Signal worker started (scan every %ss, monitor every %ss)",
            settings.scan_interval,
            settings.monitor_interval,
        )

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self.group.shutdown(timeout)
        logger.info("Signal worker stopped")

    def wait(self) -> None:
        self.group.stop_event.wait()


def main() -> None:
    """Program entry point: run the worker until interrupted."""

    sys.excepthook = handle_exception
    services = build_services()
    worker = SignalWorker(services)
    worker.start()
    try:
        worker.wait()
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")
    finally:
        worker.stop()


if __name__ == "__main__":
    main()
