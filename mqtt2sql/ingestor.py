#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
MQTT -> Postgres ingestor.

Subscribes to the configured sensor topics plus a catch-all filter, stores
each changed sensor value as a time-series row and keeps a last-seen record
for every topic on the broker.

Usage:
  mqtt2sql -c /etc/mqtt2sql.ini

Env:
  LOG_LEVEL          INFO|DEBUG (default INFO)
  PAHO_TRACE         "1" to enable paho.mqtt wire-level on_log
  SKIP_SCHEMA_CHECK  "1" to skip startup schema validation
  plus the connection overrides listed in mqtt2sql.config

Exit codes: 1 config / subscription error, 2 database unreachable,
3 MQTT client error.
"""

import argparse
import logging
import os
import sys

import psycopg2

from . import __version__
from .config import DEFAULT_CONFIG_FILE, Settings, load_config
from .detector import ChangeDetector
from .dispatcher import SubscriptionDispatcher
from .errors import (
    CONFIG_ERROR_EXIT_CODE,
    STORE_UNAVAILABLE_EXIT_CODE,
    ConfigError,
    DispatcherError,
    StoreUnavailable,
)
from .registry import TopicRegistry, build_registry
from .store import PostgresStore, connect
from .writer import PersistenceWriter

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PAHO_TRACE = os.getenv("PAHO_TRACE", "0") == "1"
SKIP_SCHEMA_CHECK = os.getenv("SKIP_SCHEMA_CHECK", "0") == "1"

logger = logging.getLogger("mqtt2sql")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="mqtt2sql",
        description="Subscribes to a MQTT broker and stores sensor values in a PostgreSQL database.",
    )
    parser.add_argument(
        "-c",
        "--config",
        default=DEFAULT_CONFIG_FILE,
        help="Path to the config file (default: %(default)s)",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
        help="Show version and exit.",
    )
    return parser.parse_args(argv)


def open_store(settings: Settings) -> PostgresStore:
    """Connect, provision and verify. StoreUnavailable here is fatal."""
    conn = connect(settings.psql.dsn())
    store = PostgresStore(conn, settings.psql.prefix, settings.psql.addressing)
    try:
        if settings.psql.provision:
            store.provision_schema()
        if not SKIP_SCHEMA_CHECK:
            store.check_schema()
        else:
            logger.warning("SKIP_SCHEMA_CHECK=1 - skipping schema validation.")
    except (RuntimeError, psycopg2.Error) as e:
        raise StoreUnavailable(f"Schema check failed: {str(e).strip()}") from e
    return store


def load_registry(settings: Settings, store: PostgresStore) -> TopicRegistry:
    registry = build_registry(
        settings.rules,
        settings.psql.addressing,
        catalog=store if settings.psql.catalog else None,
    )
    if not len(registry):
        logger.warning("No sensor rules configured; only the catch-all subscription is active.")
    for rule in registry.rules:
        logger.info(
            "Sensor %s: %s -> %s (%s%s)",
            rule.sensor_id,
            rule.label(),
            registry.key_for(rule),
            rule.value_type.name.lower(),
            f", scale={rule.scale}" if rule.scale is not None else "",
        )
    return registry


def main(argv=None) -> int:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s [%(levelname)s] %(threadName)s: %(message)s",
    )
    args = parse_args(argv)
    logger.info("mqtt2sql %s starting up", __version__)

    try:
        settings = load_config(args.config)
    except ConfigError as e:
        logger.error("Error while reading config file %s: %s", args.config, e)
        return CONFIG_ERROR_EXIT_CODE

    logger.info("Using Postgres %s, table prefix %s", settings.psql.safe_dsn(), settings.psql.prefix)
    # retention is not implemented; the setting is only reported
    logger.info("maxstoragehours=%s (no cleanup is performed)", settings.psql.max_storage_hours)

    try:
        store = open_store(settings)
        registry = load_registry(settings, store)
    except StoreUnavailable as e:
        logger.error("%s", e)
        return STORE_UNAVAILABLE_EXIT_CODE
    except ConfigError as e:
        logger.error("%s", e)
        return CONFIG_ERROR_EXIT_CODE

    failure: list[DispatcherError] = []

    def on_error(error: DispatcherError) -> None:
        # every dispatcher error is fatal here
        failure.append(error)
        dispatcher.stop()

    dispatcher = SubscriptionDispatcher(
        settings.mqtt,
        registry,
        ChangeDetector(store, settings.ingest.float_tolerance),
        PersistenceWriter(store),
        ingest=settings.ingest,
        on_error=on_error,
        trace=PAHO_TRACE,
    )

    try:
        dispatcher.run_forever()
    except KeyboardInterrupt:
        logger.info("mqtt2sql shutting down due to KeyboardInterrupt")
        dispatcher.stop()
        return 0

    if failure:
        return failure[0].exit_code
    return 0


if __name__ == "__main__":
    sys.exit(main())
