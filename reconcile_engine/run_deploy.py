# reconcile_engine/run_deploy.py
"""
Deploy one stack from the command line, streaming events to stdout.

    python -m reconcile_engine.run_deploy host:node-1 myproj [--force]
"""

import argparse
import logging
import signal
import sys
import threading

from reconcile_engine.config import settings
from reconcile_engine.container import reconcile_service
from reconcile_engine.core.errors import ReconcileError
from reconcile_engine.core.logging_setup import configure_logging
from reconcile_engine.infrastructure.postgres.database import init_db

configure_logging(settings.log_level, settings.log_format)

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Deploy a stack with docker compose")
    parser.add_argument("scope", help="host:<name>, group:<name> or a bare host name")
    parser.add_argument("stack", help="stack name")
    parser.add_argument("--force", action="store_true", help="redeploy even if configuration is unchanged")
    parser.add_argument("--host", default=None, help="target host (required for group stacks)")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    cancel = threading.Event()

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}, cancelling deploy...")
        cancel.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    init_db()

    exit_code = 1
    try:
        for event in reconcile_service.deploy_stack(
            args.scope, args.stack, force=args.force, cancel=cancel, host=args.host
        ):
            print(f"[{event.event_type}] {event.message}", flush=True)
            if event.event_type in ("complete", "config_unchanged"):
                exit_code = 0
            elif event.event_type == "error":
                exit_code = event.metadata.get("exit_code") or 1
    except ReconcileError as e:
        print(f"[error] {e}", file=sys.stderr, flush=True)
        return 1

    return exit_code


if __name__ == "__main__":
    sys.exit(main())
