"""
Postgres store handle.

Table layout, with ``<prefix>`` from ``[psql] prefix``:

  <prefix>_string / _boolean / _integer / _double
      ("timestamp", sensorid, value)         sensorid addressing
      ("timestamp", "group", name, value)    groupname addressing
  <prefix>_sensors_seen   (lastseen, topic PRIMARY KEY, data)
  <prefix>_config         rule catalog, sensorid assigned by the database

Identifiers are always composed with psycopg2.sql so reserved names such as
"group" and "timestamp" are quoted.
"""

import logging
from typing import Any, Dict, Iterable, List, Sequence, Tuple

import psycopg2
from psycopg2 import sql
from psycopg2.extras import DictCursor

from .errors import StoreUnavailable
from .registry import Addressing, PartitionKey, TopicRule
from .values import TypedValue, ValueType

logger = logging.getLogger(__name__)

KEY_COLUMNS: Dict[Addressing, Tuple[Tuple[str, str], ...]] = {
    Addressing.SENSOR_ID: (("sensorid", "integer"),),
    Addressing.GROUP_NAME: (("group", "varchar(100)"), ("name", "varchar(100)")),
}

CATALOG_COLUMNS = [
    "sensorid",
    "groupname",
    "sensor",
    "topic",
    "jsonpath",
    "datatype",
    "scaling",
    "unit",
]


def connect(dsn: str) -> psycopg2.extensions.connection:
    """Open the one autocommit connection; unreachable database is fatal to the caller."""
    try:
        logger.info("Connecting to Postgres...")
        conn = psycopg2.connect(dsn)
    except psycopg2.Error as e:
        raise StoreUnavailable(f"Failed to connect to Postgres: {e}") from e
    conn.autocommit = True
    logger.info("Connected to Postgres")
    return conn


def column_list(names: Iterable[str]) -> sql.Composed:
    return sql.SQL(", ").join(sql.Identifier(n) for n in names)


def _key_filter(key: PartitionKey) -> sql.Composed:
    return sql.SQL(" AND ").join(
        sql.SQL("{} = %s").format(sql.Identifier(c)) for c in key.columns
    )


class PostgresStore:
    def __init__(
        self,
        conn,
        prefix: str = "mqtt",
        addressing: Addressing = Addressing.SENSOR_ID,
    ):
        self.conn = conn
        self.prefix = prefix
        self.addressing = addressing

    # ----- naming -----------------------------------------------------------

    def table_name(self, suffix: str) -> str:
        return f"{self.prefix}_{suffix}"

    def table(self, suffix: str) -> sql.Identifier:
        return sql.Identifier(self.table_name(suffix))

    def value_table(self, value_type: ValueType) -> sql.Identifier:
        return self.table(value_type.table_suffix)

    # ----- generic execution ------------------------------------------------

    def execute(self, query: sql.Composable, params: Sequence[Any] = ()) -> int:
        with self.conn.cursor() as cur:
            cur.execute(query, params)
            return cur.rowcount

    def fetchone(self, query: sql.Composable, params: Sequence[Any] = ()):
        try:
            with self.conn.cursor() as cur:
                cur.execute(query, params)
                return cur.fetchone()
        except psycopg2.Error as e:
            raise StoreUnavailable(str(e).strip()) from e

    # ----- schema -----------------------------------------------------------

    def provision_schema(self) -> None:
        """Create missing tables and indexes."""
        key_cols = KEY_COLUMNS[self.addressing]
        key_names = [name for name, _ in key_cols]
        key_defs = sql.SQL(", ").join(
            sql.SQL("{} {} NOT NULL").format(sql.Identifier(n), sql.SQL(t))
            for n, t in key_cols
        )
        statements: List[sql.Composable] = []
        for value_type in ValueType:
            name = self.table_name(value_type.table_suffix)
            statements.append(
                sql.SQL(
                    'CREATE TABLE IF NOT EXISTS {} ("timestamp" timestamptz NOT NULL, {}, value {})'
                ).format(sql.Identifier(name), key_defs, sql.SQL(value_type.sql_type))
            )
            statements.append(
                sql.SQL('CREATE INDEX IF NOT EXISTS {} ON {} ({}, "timestamp" DESC)').format(
                    sql.Identifier(f"{name}_key_idx"), sql.Identifier(name), column_list(key_names)
                )
            )
            statements.append(
                sql.SQL('CREATE INDEX IF NOT EXISTS {} ON {} ("timestamp")').format(
                    sql.Identifier(f"{name}_ts_idx"), sql.Identifier(name)
                )
            )
        statements.append(
            sql.SQL(
                "CREATE TABLE IF NOT EXISTS {} "
                "(lastseen timestamptz, topic text PRIMARY KEY, data text)"
            ).format(self.table("sensors_seen"))
        )
        statements.append(
            sql.SQL(
                "CREATE TABLE IF NOT EXISTS {} ("
                "sensorid integer GENERATED ALWAYS AS IDENTITY PRIMARY KEY, "
                "groupname varchar(100), sensor varchar(100), topic varchar(100), "
                "jsonpath varchar(100), datatype varchar(10), scaling real, "
                "unit varchar(10), lastdata text)"
            ).format(self.table("config"))
        )
        for stmt in statements:
            self.execute(stmt)
        logger.info("Schema provisioned for prefix %s (%s addressing)", self.prefix, self.addressing.value)

    def check_schema(self) -> None:
        """
        Verify required tables and columns exist. Raises RuntimeError with the
        first missing object.
        """
        key_names = [name for name, _ in KEY_COLUMNS[self.addressing]]
        checks: List[Tuple[str, List[str]]] = [
            (self.table_name(vt.table_suffix), ["timestamp", *key_names, "value"])
            for vt in ValueType
        ]
        checks.append((self.table_name("sensors_seen"), ["lastseen", "topic", "data"]))

        with self.conn.cursor() as cur:
            for tbl, cols in checks:
                cur.execute(
                    "SELECT column_name FROM information_schema.columns "
                    "WHERE table_schema = current_schema() AND table_name = %s",
                    (tbl,),
                )
                present = {row[0] for row in cur.fetchall()}
                if not present:
                    raise RuntimeError(f"Required table missing: {tbl}")
                for c in cols:
                    if c not in present:
                        raise RuntimeError(f"Column {c} missing on {tbl}")

    # ----- catalog ----------------------------------------------------------

    def load_catalog(self) -> List[Dict[str, Any]]:
        query = sql.SQL("SELECT {} FROM {} ORDER BY sensorid").format(
            column_list(CATALOG_COLUMNS), self.table("config")
        )
        try:
            with self.conn.cursor(cursor_factory=DictCursor) as cur:
                cur.execute(query)
                return [dict(row) for row in cur.fetchall()]
        except psycopg2.Error as e:
            raise StoreUnavailable(f"Reading catalog failed: {e}") from e

    def register_rule(self, rule: TopicRule) -> int:
        query = sql.SQL(
            "INSERT INTO {} (groupname, sensor, topic, jsonpath, datatype, scaling, unit) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s) RETURNING sensorid"
        ).format(self.table("config"))
        row = self.fetchone(
            query,
            (
                rule.group,
                rule.name,
                rule.pattern,
                rule.jsonpath,
                rule.value_type.table_suffix,
                rule.scale,
                rule.unit,
            ),
        )
        return int(row[0])

    # ----- last value -------------------------------------------------------

    def fetch_last(self, key: PartitionKey, value_type: ValueType) -> TypedValue | None:
        query = sql.SQL('SELECT value FROM {} WHERE {} ORDER BY "timestamp" DESC LIMIT 1').format(
            self.value_table(value_type), _key_filter(key)
        )
        row = self.fetchone(query, key.values())
        if row is None or row[0] is None:
            return None
        return TypedValue(value_type, row[0])
