# reconcile_engine/run_drift_watcher.py
"""Run the drift watcher loop."""

import logging
import sys

from reconcile_engine.config import settings
from reconcile_engine.container import local_host, reconcile_service, registry
from reconcile_engine.core.logging_setup import configure_logging
from reconcile_engine.infrastructure.postgres.database import init_db
from reconcile_engine.watcher.drift_watcher import DriftWatcher

configure_logging(settings.log_level, settings.log_format)

logger = logging.getLogger(__name__)


def main():
    """Main entry point."""
    logger.info("=" * 80)
    logger.info("DRIFT WATCHER")
    logger.info("=" * 80)
    logger.info(f"IaC base: {settings.iac_base}")
    logger.info(f"Local host: {local_host}")
    logger.info(f"Remote agents: {', '.join(sorted(settings.runtime_agents)) or 'none'}")
    logger.info(f"Poll interval: {settings.drift_poll_interval}s")
    logger.info("=" * 80)

    init_db()
    summary = registry.scan_iac()
    logger.info(f"Initial scan: {summary}")

    watcher = DriftWatcher(
        service=reconcile_service,
        interval=settings.drift_poll_interval,
        extra_hosts=[local_host, *settings.runtime_agents],
    )

    try:
        watcher.start()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
