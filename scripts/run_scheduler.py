#!/usr/bin/env python3
"""
Run the scheduled card action tick against a database.

Creates the tables if needed, optionally seeds the default policies and
approval chain rules from the active configuration, then either runs one
tick (``--once``) or polls every ``tick_interval_seconds`` until
interrupted.

Usage:
    DATABASE_URL=sqlite:///spend.db python3 scripts/run_scheduler.py --seed --once
    python3 scripts/run_scheduler.py --url postgresql://... --interval 30
"""

import argparse
import logging
import os
import sys
import time
from pathlib import Path
from uuid import uuid4

# ---------------------------------------------------------------------------
# Project root on sys.path
# ---------------------------------------------------------------------------
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

DEFAULT_DB_URL = "sqlite:///spend.db"


def main() -> int:
    parser = argparse.ArgumentParser(description="Fire due scheduled card actions.")
    parser.add_argument("--url", default=os.environ.get("DATABASE_URL", DEFAULT_DB_URL))
    parser.add_argument("--config", default=None, help="YAML config path")
    parser.add_argument("--interval", type=int, default=None, help="Tick interval (seconds)")
    parser.add_argument("--once", action="store_true", help="Run one tick and exit")
    parser.add_argument("--seed", action="store_true", help="Seed default policies and chain rules")
    parser.add_argument("--verbose", "-v", action="store_true")
    args = parser.parse_args()

    from spend_config import get_active_config
    from spend_kernel.db.engine import create_tables, get_session, init_engine_from_url
    from spend_kernel.logging_config import configure_logging, get_logger
    from spend_kernel.repositories import SqlAlchemyStore
    from spend_services.card_action_executor import SYSTEM_ACTOR_ID, CardActionExecutor
    from spend_services.ruleset_service import RuleSetService
    from spend_services.tick_scheduler import CardActionScheduler

    configure_logging(level=logging.DEBUG if args.verbose else logging.INFO)
    logger = get_logger("scripts.run_scheduler")

    config = get_active_config(args.config)
    init_engine_from_url(args.url)
    create_tables()

    store = SqlAlchemyStore(get_session())
    try:
        if args.seed:
            policies, rules = RuleSetService(store).seed_defaults(config, uuid4())
            logger.info("seed_completed", extra={"policies": policies, "chain_rules": rules})

        executor = CardActionExecutor(store)
        scheduler = CardActionScheduler(
            executor,
            tick_interval_seconds=args.interval or config.tick_interval_seconds,
        )

        if args.once:
            fired = scheduler.tick()
            print(f"Executed {len(fired)} card action(s) as {SYSTEM_ACTOR_ID}")
            return 0

        scheduler.start()
        try:
            while scheduler.is_running:
                time.sleep(1)
        except KeyboardInterrupt:
            print("\nStopping...")
        finally:
            scheduler.stop()
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
