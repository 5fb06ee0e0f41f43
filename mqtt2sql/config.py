"""
Configuration: defaults, then the INI file, then environment overrides.

INI layout:

  [mqtt]    hostname, port, username, password, version (3|4|5), usetls,
            topic (catch-all filter), client_id_prefix, keepalive
  [psql]    hostname, port, username, password, database, prefix,
            addressing (sensorid|groupname), catalog, provision,
            maxstoragehours
  [ingest]  float_tolerance, refresh_seen, metrics_interval_sec,
            debug_sample_n
  [sensor:<label>]
            topic, jsonpath, datatype, scaling, group, name, unit, sensorid

Env:
  MQTT_HOST / MQTT_PORT / MQTT_USERNAME / MQTT_PASSWORD
  PG_DSN     full libpq DSN, replaces the [psql] connection fields
"""

import configparser
import os
from dataclasses import dataclass, field
from typing import List, Mapping

import paho.mqtt.client as mqtt
from psycopg2.extensions import make_dsn

from .errors import ConfigError
from .registry import Addressing, TopicRule, normalize_scale
from .values import DEFAULT_FLOAT_TOLERANCE, ValueType

DEFAULT_CONFIG_FILE = "mqtt2sql.ini"
SENSOR_SECTION_PREFIX = "sensor:"

MQTT_VERSIONS = {
    3: mqtt.MQTTv31,
    4: mqtt.MQTTv311,
    5: mqtt.MQTTv5,
}


@dataclass
class MqttSettings:
    hostname: str
    port: int = 8883
    username: str = ""
    password: str = ""
    version: int = 3
    use_tls: bool = False
    topic: str = "#"
    client_id_prefix: str = "mqtt2sql"
    keepalive: int = 60

    @property
    def protocol(self) -> int:
        return MQTT_VERSIONS[self.version]


@dataclass
class PostgresSettings:
    hostname: str = ""
    port: int = 5432
    username: str = ""
    password: str = ""
    database: str = ""
    prefix: str = "mqtt"
    addressing: Addressing = Addressing.SENSOR_ID
    catalog: bool = True
    provision: bool = True
    max_storage_hours: int = 7 * 24
    dsn_override: str = ""

    def dsn(self) -> str:
        if self.dsn_override:
            return self.dsn_override
        return make_dsn(
            host=self.hostname or None,
            port=self.port,
            user=self.username or None,
            password=self.password or None,
            dbname=self.database or None,
        )

    def safe_dsn(self) -> str:
        if self.dsn_override:
            return "<PG_DSN>"
        return f"{self.username or '?'}@{self.hostname or 'localhost'}:{self.port}/{self.database}"


@dataclass
class IngestSettings:
    float_tolerance: float = DEFAULT_FLOAT_TOLERANCE
    refresh_seen: bool = True
    metrics_interval_sec: int = 60
    debug_sample_n: int = 0


@dataclass
class Settings:
    mqtt: MqttSettings
    psql: PostgresSettings = field(default_factory=PostgresSettings)
    ingest: IngestSettings = field(default_factory=IngestSettings)
    rules: List[TopicRule] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _get(cp: configparser.ConfigParser, section: str, option: str, conv, default):
    if not cp.has_option(section, option):
        return default
    raw = cp.get(section, option)
    if raw.strip() == "":
        return default
    try:
        if conv is bool:
            return cp.getboolean(section, option)
        return conv(raw)
    except ValueError:
        raise ConfigError(f"[{section}] {option}: invalid value {raw!r}") from None


def parse_rule(cp: configparser.ConfigParser, section: str) -> TopicRule:
    label = section[len(SENSOR_SECTION_PREFIX):].strip()
    topic = _get(cp, section, "topic", str, "").strip()
    if not topic:
        raise ConfigError(f"[{section}] topic is required")
    sensor_id = _get(cp, section, "sensorid", int, None)
    return TopicRule(
        pattern=topic,
        value_type=ValueType.parse(_get(cp, section, "datatype", str, "text")),
        jsonpath=_get(cp, section, "jsonpath", str, "").strip(),
        scale=normalize_scale(_get(cp, section, "scaling", str, None)),
        group=_get(cp, section, "group", str, ""),
        name=_get(cp, section, "name", str, label),
        unit=_get(cp, section, "unit", str, ""),
        sensor_id=sensor_id,
    )


def parse_config(cp: configparser.ConfigParser, env: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if env is None else env

    hostname = env.get("MQTT_HOST") or _get(cp, "mqtt", "hostname", str, "")
    if not hostname:
        raise ConfigError("Error: hostname is empty!")

    version = _get(cp, "mqtt", "version", int, 3)
    if version not in MQTT_VERSIONS:
        raise ConfigError(f"Error: invalid MQTT version: {version}")

    port = env.get("MQTT_PORT") or _get(cp, "mqtt", "port", int, 8883)
    try:
        port = int(port)
    except ValueError:
        raise ConfigError(f"Invalid MQTT_PORT: {port!r}") from None

    mqtt_settings = MqttSettings(
        hostname=hostname,
        port=port,
        username=env.get("MQTT_USERNAME") or _get(cp, "mqtt", "username", str, ""),
        password=env.get("MQTT_PASSWORD") or _get(cp, "mqtt", "password", str, ""),
        version=version,
        use_tls=_get(cp, "mqtt", "usetls", bool, False),
        topic=_get(cp, "mqtt", "topic", str, "#"),
        client_id_prefix=_get(cp, "mqtt", "client_id_prefix", str, "mqtt2sql"),
        keepalive=_get(cp, "mqtt", "keepalive", int, 60),
    )

    psql = PostgresSettings(
        hostname=_get(cp, "psql", "hostname", str, ""),
        port=_get(cp, "psql", "port", int, 5432),
        username=_get(cp, "psql", "username", str, ""),
        password=_get(cp, "psql", "password", str, ""),
        database=_get(cp, "psql", "database", str, ""),
        prefix=_get(cp, "psql", "prefix", str, "mqtt"),
        addressing=Addressing.parse(_get(cp, "psql", "addressing", str, "sensorid")),
        catalog=_get(cp, "psql", "catalog", bool, True),
        provision=_get(cp, "psql", "provision", bool, True),
        max_storage_hours=_get(cp, "psql", "maxstoragehours", int, 7 * 24),
        dsn_override=env.get("PG_DSN", ""),
    )
    if not psql.prefix.replace("_", "").isalnum():
        raise ConfigError(f"Invalid table prefix: {psql.prefix!r}")

    ingest = IngestSettings(
        float_tolerance=_get(cp, "ingest", "float_tolerance", float, DEFAULT_FLOAT_TOLERANCE),
        refresh_seen=_get(cp, "ingest", "refresh_seen", bool, True),
        metrics_interval_sec=_get(cp, "ingest", "metrics_interval_sec", int, 60),
        debug_sample_n=_get(cp, "ingest", "debug_sample_n", int, 0),
    )
    if ingest.float_tolerance < 0:
        raise ConfigError("[ingest] float_tolerance must not be negative")

    rules = [
        parse_rule(cp, section)
        for section in cp.sections()
        if section.startswith(SENSOR_SECTION_PREFIX)
    ]
    return Settings(mqtt=mqtt_settings, psql=psql, ingest=ingest, rules=rules)


def load_config(path: str, env: Mapping[str, str] | None = None) -> Settings:
    cp = configparser.ConfigParser(interpolation=None)
    try:
        read = cp.read(path, encoding="utf-8")
    except configparser.Error as e:
        raise ConfigError(f"Error while reading config file {path}: {e}") from e
    if not read:
        raise ConfigError(f"Config file not found: {path}")
    return parse_config(cp, env)
