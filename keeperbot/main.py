"""
Entry point wiring all components.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from typing import Sequence

from keeperbot.alerting import AlertConfig, AlertManager
from keeperbot.app import ROLES, build_feeder, build_keeper, build_ledger, check_accounts, run_all
from keeperbot.config.config import Settings
from keeperbot.config.deployment import load_deployment
from keeperbot.infra.clock import Clock
from keeperbot.infra.logging_cfg import build_logger, log_event
from keeperbot.ledger.errors import StartupError
from keeperbot.monitoring.metrics_rich import KeeperMetrics
from keeperbot.monitoring.price_board import PriceBoard

log = build_logger(
    "keeperbot",
    level=os.getenv("KB_LOG_LEVEL", "INFO").upper(),
    file_path=os.getenv("KB_LOG_FILE", "keeperbot.log") or None,
)


async def main(roles: Sequence[str] = ROLES) -> None:
    cfg = Settings.load()
    deployment = load_deployment(cfg.deployment_file)
    signers = {role: cfg.resolve_signer(role) for role in roles}
    check_accounts(signers)

    alerts = AlertManager(AlertConfig(
        webhook_url=cfg.alert_webhook_url,
        webhook_type=cfg.alert_webhook_type,
        enabled=cfg.alert_enabled,
    ))
    metrics = KeeperMetrics()
    if cfg.metrics_port > 0:
        metrics.serve(cfg.metrics_port)

    clock = Clock()
    ledger = build_ledger(cfg, deployment, clock)
    loops = []
    if "keeper" in roles:
        loops.append(build_keeper(cfg, ledger, signers["keeper"], metrics, alerts, clock))
    if "feeder" in roles:
        board = PriceBoard() if cfg.price_board else None
        loops.append(build_feeder(cfg, ledger, signers["feeder"], deployment, metrics, alerts, board, clock))

    stop_event = asyncio.Event()
    reason = "normal"

    def request_stop() -> None:
        nonlocal reason
        if not stop_event.is_set():
            reason = "signal_received"
            log_event(log, "shutdown_requested")
            stop_event.set()

    loop = asyncio.get_running_loop()
    # Windows doesn't support add_signal_handler; Ctrl+C falls back to KeyboardInterrupt
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, request_stop)
        except NotImplementedError:
            pass

    log_event(
        log, "startup",
        roles=list(roles),
        deployment=deployment.source,
        router=deployment.router,
        accounts={role: s.address for role, s in signers.items()},
        metrics_port=cfg.metrics_port,
        settings=cfg.dump(),
    )
    await alerts.alert_startup(list(roles), router=deployment.router)

    try:
        await run_all(loops, stop_event)
    except StartupError:
        reason = "startup_error"
        raise
    except Exception:
        reason = "loop_error"
        raise
    finally:
        log.info("Closing connections...")
        await alerts.alert_shutdown(reason)
        await alerts.close()
        await ledger.close()
        log_event(log, "shutdown_complete", reason=reason)


def run(roles: Sequence[str] = ROLES) -> int:
    """Blocking entry point; returns a process exit code."""
    try:
        asyncio.run(main(roles))
    except StartupError as exc:
        log_event(log, "startup_failed", logging.CRITICAL, err=str(exc))
        return 2
    except ValueError as exc:
        log_event(log, "config_invalid", logging.CRITICAL, err=str(exc))
        return 2
    except KeyboardInterrupt:
        print("\nStopped by user")
    return 0


if __name__ == "__main__":
    sys.exit(run())
