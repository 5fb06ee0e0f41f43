"""
Append-only value rows and the topic last-seen table.
"""

import logging
from datetime import datetime
from typing import Any

import psycopg2
from psycopg2 import sql

from .errors import WriteError
from .registry import PartitionKey
from .store import PostgresStore, column_list
from .values import TypedValue

logger = logging.getLogger(__name__)

# psycopg2 raises ValueError while adapting a str that holds NUL
WRITE_ERRORS = (psycopg2.Error, ValueError)


def strip_nul(value: Any) -> Any:
    """Postgres text columns cannot hold NUL; drop those characters."""
    if isinstance(value, str) and "\x00" in value:
        return value.replace("\x00", "")
    return value


class PersistenceWriter:
    def __init__(self, store: PostgresStore):
        self.store = store

    def persist(self, key: PartitionKey, timestamp: datetime, value: TypedValue) -> None:
        """Insert one row into the table for ``value``'s type."""
        columns = ["timestamp", *key.columns, "value"]
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({})").format(
            self.store.value_table(value.type),
            column_list(columns),
            sql.SQL(", ").join(sql.Placeholder() * len(columns)),
        )
        params = (timestamp, *(strip_nul(v) for v in key.values()), strip_nul(value.value))
        try:
            self.store.execute(query, params)
        except WRITE_ERRORS as e:
            raise WriteError(
                f"Insert into {self.store.table_name(value.type.table_suffix)} failed: {str(e).strip()}"
            ) from e
        logger.debug("Stored %s for %s", value, key)

    def record_seen(self, topic: str, timestamp: datetime, data: str) -> None:
        query = sql.SQL(
            "INSERT INTO {} (lastseen, topic, data) VALUES (%s, %s, %s) "
            "ON CONFLICT (topic) DO UPDATE SET lastseen = EXCLUDED.lastseen, data = EXCLUDED.data"
        ).format(self.store.table("sensors_seen"))
        try:
            self.store.execute(query, (timestamp, strip_nul(topic), strip_nul(data)))
        except WRITE_ERRORS as e:
            raise WriteError(f"Upsert of seen topic {topic} failed: {str(e).strip()}") from e

    def refresh_seen(self, topic: str, timestamp: datetime, data: str) -> None:
        query = sql.SQL("UPDATE {} SET lastseen = %s, data = %s WHERE topic = %s").format(
            self.store.table("sensors_seen")
        )
        try:
            self.store.execute(query, (timestamp, strip_nul(data), strip_nul(topic)))
        except WRITE_ERRORS as e:
            raise WriteError(f"Refresh of seen topic {topic} failed: {str(e).strip()}") from e
