"""
Entry point wiring all components.
"""

from __future__ import annotations

import asyncio
import json
import signal
import sys

from keeper.app import Keeper
from keeper.config.config import Settings
from keeper.infra.logging_cfg import build_logger
from keeper.monitoring import (
    AlertSeverity,
    HealthChecker,
    KeeperMetrics,
    StatusBoard,
    configure_alerts,
    start_metrics_server,
)

log = build_logger("keeper")


async def main() -> None:
    try:
        cfg = Settings.load()
    except ValueError as exc:
        log.error(json.dumps({"event": "config_invalid", "error": str(exc)}))
        sys.exit(1)
    build_logger("keeper", level=cfg.log_level)

    # missing signer keys abort here, before anything connects
    try:
        keeper_account = cfg.resolve_signer()
        price_account = cfg.resolve_price_signer()
    except RuntimeError as exc:
        log.error(json.dumps({"event": "startup_aborted", "error": str(exc)}))
        sys.exit(1)

    alert_manager = configure_alerts(
        webhook_url=cfg.alert_webhook_url,
        webhook_type=cfg.alert_webhook_type,
        min_severity=AlertSeverity.WARNING,
        enabled=cfg.alert_enabled,
        service_name="Keeper",
    )
    health_checker = HealthChecker()
    health_checker.set_component_health("config", True, "Configuration validated")

    metrics = KeeperMetrics()
    status_board = StatusBoard()
    keeper = Keeper(
        cfg,
        keeper_account,
        price_account,
        metrics=metrics,
        status_board=status_board,
        health=health_checker,
        alerts=alert_manager,
    )

    srv = await start_metrics_server(
        metrics.get_registry(),
        cfg.metrics_port,
        status_board,
        auth_token=cfg.metrics_token,
        health_checker=health_checker,
        status_extra=keeper.status_extra(),
    )

    log.info(
        json.dumps(
            {
                "event": "startup",
                "loops": keeper.loop_names,
                "venues": list(keeper.venues),
                "symbols": list(keeper.symbols),
                "keeper_address": keeper_account.address,
                "price_signer": price_account.address,
            }
        )
    )
    await alert_manager.alert_startup(keeper.loop_names, keeper_address=keeper_account.address)

    loop = asyncio.get_running_loop()
    run_task = asyncio.create_task(keeper.run())
    shutdown_reason = "normal"

    def stop_all() -> None:
        # loops finish their in-flight settlement, then return
        nonlocal shutdown_reason
        shutdown_reason = "signal_received"
        log.info(json.dumps({"event": "shutdown_requested"}))
        keeper.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_all)
        except NotImplementedError:
            pass

    try:
        await run_task
    except* Exception as eg:
        shutdown_reason = "loop_crashed"
        for exc in eg.exceptions:
            log.error(json.dumps({"event": "keeper_run_error", "error": str(exc)}))
    finally:
        log.info(json.dumps({"event": "shutdown", "reason": shutdown_reason}))
        await alert_manager.alert_shutdown(shutdown_reason)
        await alert_manager.flush()
        srv.close()
        await srv.wait_closed()
        await keeper.close()
        log.info(json.dumps({"event": "shutdown_complete"}))


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nKeeper stopped by user")
    sys.exit(0)


if __name__ == "__main__":
    run()
