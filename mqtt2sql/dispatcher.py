"""
MQTT subscription dispatcher.

Owns the paho client. On connect it subscribes once per distinct rule topic
plus once to the catch-all filter; each subscription keeps the rules it was
made for, and paho routes messages to the per-filter callback that carries
them. Messages are handled inline on paho's network thread, in arrival order.

Connection-level failures are handed to ``on_error`` as a DispatcherError
(message + exit code); the dispatcher never reconnects on its own.
"""

import functools
import json
import logging
import ssl
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Set

import paho.mqtt.client as mqtt

from .config import IngestSettings, MqttSettings
from .detector import ChangeDetector
from .errors import (
    BusProtocolError,
    DispatcherError,
    ExtractionError,
    StoreUnavailable,
    SubscriptionFailed,
    WriteError,
)
from .extractor import decode_text, extract
from .registry import TopicRegistry, TopicRule
from .writer import PersistenceWriter

logger = logging.getLogger(__name__)


class DispatcherState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    FAILED = "failed"


@dataclass
class Subscription:
    topic_filter: str
    rules: List[TopicRule] = field(default_factory=list)
    catch_all: bool = False
    mid: int | None = None
    acked: bool = False


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionDispatcher:
    def __init__(
        self,
        settings: MqttSettings,
        registry: TopicRegistry,
        detector: ChangeDetector,
        writer: PersistenceWriter,
        ingest: IngestSettings | None = None,
        on_error: Callable[[DispatcherError], None] | None = None,
        client: mqtt.Client | None = None,
        clock: Callable[[], datetime] = utc_now,
        trace: bool = False,
    ):
        self.settings = settings
        self.registry = registry
        self.detector = detector
        self.writer = writer
        self.ingest = ingest or IngestSettings()
        self.on_error = on_error
        self.clock = clock

        self.state = DispatcherState.DISCONNECTED
        self.subscriptions: Dict[int, Subscription] = {}
        self.seen_topics: Set[str] = set()

        self.metrics = {
            "msgs_rx": 0,
            "values_inserted": 0,
            "values_unchanged": 0,
            "seen_upserts": 0,
            "seen_refreshes": 0,
            "drop.bad_json": 0,
            "drop.no_path": 0,
            "drop.bad_type": 0,
            "drop.db_fail": 0,
        }
        self._last_metrics_flush = time.time()

        self.client = client if client is not None else self._make_client(trace)
        self.client.on_connect = self.on_connect
        self.client.on_subscribe = self.on_subscribe
        self.client.on_disconnect = self.on_disconnect

    # ----- client setup -----------------------------------------------------

    def _make_client(self, trace: bool) -> mqtt.Client:
        cfg = self.settings
        client_id = f"{cfg.client_id_prefix}-{cfg.hostname}-{int(time.time())}"
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id,
            protocol=cfg.protocol,
        )
        client.enable_logger(logger)

        if trace:
            def _on_log(client, userdata, level, buf):
                # Map Paho levels ~ Python logging
                lvl = logging.DEBUG if level < 20 else level
                logger.log(lvl, "PAHO: %s", buf)
            client.on_log = _on_log

        if cfg.username and cfg.password:
            client.username_pw_set(cfg.username, cfg.password)

        if cfg.use_tls:
            # broker certificates are not verified
            context = ssl.create_default_context()
            context.minimum_version = ssl.TLSVersion.TLSv1_2
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
            client.tls_set_context(context)
        return client

    # ----- lifecycle --------------------------------------------------------

    def start(self) -> None:
        logger.info(
            "Connecting MQTT client to %s:%s (MQTT v%s, tls=%s) ...",
            self.settings.hostname,
            self.settings.port,
            self.settings.version,
            self.settings.use_tls,
        )
        self.state = DispatcherState.CONNECTING
        try:
            self.client.connect(
                self.settings.hostname,
                self.settings.port,
                keepalive=self.settings.keepalive,
            )
        except (OSError, ValueError) as e:
            self._fail(BusProtocolError(f"MQTT connection error: {e}"))

    def run_forever(self) -> None:
        self.start()
        if self.state is not DispatcherState.FAILED:
            self.client.loop_forever(retry_first_connection=False)

    def stop(self) -> None:
        self.client.disconnect()

    def _fail(self, error: DispatcherError) -> None:
        self.state = DispatcherState.FAILED
        logger.error("%s (exit code %s)", error.message, error.exit_code)
        if self.on_error is not None:
            self.on_error(error)

    # ----- MQTT callbacks ---------------------------------------------------

    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            self._fail(BusProtocolError(f"Connection refused by broker: {reason_code}"))
            return
        logger.info(
            "MQTT connection established to %s:%s",
            self.settings.hostname,
            self.settings.port,
        )
        self.state = DispatcherState.SUBSCRIBING
        self.subscribe()

    def subscribe(self) -> None:
        self.subscriptions = {}
        plan: Dict[str, Subscription] = {
            pattern: Subscription(pattern, rules=list(rules))
            for pattern, rules in self.registry.by_pattern().items()
        }
        catch_all = plan.setdefault(self.settings.topic, Subscription(self.settings.topic))
        catch_all.catch_all = True

        logger.info("Subscribing to %d topic filters", len(plan))
        for sub in plan.values():
            self.client.message_callback_add(
                sub.topic_filter, functools.partial(self._on_filter_message, sub)
            )
            res, mid = self.client.subscribe(sub.topic_filter, qos=0)
            logger.info(
                "Subscribe %s -> result=%s mid=%s (%d rules%s)",
                sub.topic_filter,
                res,
                mid,
                len(sub.rules),
                ", catch-all" if sub.catch_all else "",
            )
            if res != mqtt.MQTT_ERR_SUCCESS:
                self._fail(SubscriptionFailed(f"Failed to subscribe to {sub.topic_filter}"))
                return
            sub.mid = mid
            self.subscriptions[mid] = sub

    def on_subscribe(self, client, userdata, mid, reason_code_list, properties=None):
        sub = self.subscriptions.get(mid)
        if sub is None:
            logger.debug("on_subscribe for unknown mid=%s", mid)
            return
        if any(rc.is_failure for rc in reason_code_list):
            self._fail(SubscriptionFailed(f"Failed to subscribe to {sub.topic_filter}"))
            return
        sub.acked = True
        logger.debug("Subscription %s acknowledged", sub.topic_filter)
        if self.state is DispatcherState.SUBSCRIBING and all(
            s.acked for s in self.subscriptions.values()
        ):
            self.state = DispatcherState.ACTIVE
            logger.info("All %d subscriptions active", len(self.subscriptions))

    def on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            self._fail(BusProtocolError(f"Unexpected MQTT disconnect: {reason_code}"))
        else:
            logger.info("Disconnected from MQTT broker")
            if self.state is not DispatcherState.FAILED:
                self.state = DispatcherState.DISCONNECTED

    def _on_filter_message(self, sub: Subscription, client, userdata, msg: mqtt.MQTTMessage):
        self.dispatch(sub, msg.topic, msg.payload)

    # ----- pipeline ---------------------------------------------------------

    def dispatch(self, sub: Subscription, topic: str, payload: bytes) -> None:
        self.metrics["msgs_rx"] += 1
        n = self.ingest.debug_sample_n
        if n and self.metrics["msgs_rx"] % n == 0:
            logger.info("Sample payload @ %s: %s", topic, decode_text(payload)[:512])

        now = self.clock()
        for rule in sub.rules:
            self.handle_rule_message(rule, topic, payload, now)
        if sub.catch_all:
            self.handle_any_message(topic, payload, now)
        self._maybe_flush_metrics()

    def handle_rule_message(
        self, rule: TopicRule, topic: str, payload: bytes, timestamp: datetime
    ) -> bool:
        """Extract, compare and store one value. Returns True if a row was written."""
        key = self.registry.key_for(rule)
        try:
            value = extract(payload, rule)
        except ExtractionError as e:
            self.metrics[f"drop.{e.reason}"] += 1
            logger.warning("Dropping message on %s for %s: %s", topic, key, e)
            return False

        try:
            changed = self.detector.should_persist(key, value)
        except StoreUnavailable as e:
            self.metrics["drop.db_fail"] += 1
            logger.error("Last value lookup for %s failed: %s", key, e)
            return False

        if not changed:
            self.metrics["values_unchanged"] += 1
            logger.debug("Unchanged value %s for %s, skipped", value, key)
            return False

        try:
            self.writer.persist(key, timestamp, value)
        except WriteError as e:
            self.metrics["drop.db_fail"] += 1
            logger.error("%s", e)
            return False

        self.detector.remember(key, value)
        self.metrics["values_inserted"] += 1
        return True

    def handle_any_message(self, topic: str, payload: bytes, timestamp: datetime) -> None:
        data = decode_text(payload)
        if topic in self.seen_topics:
            if not self.ingest.refresh_seen:
                return
            try:
                self.writer.refresh_seen(topic, timestamp, data)
                self.metrics["seen_refreshes"] += 1
            except WriteError as e:
                self.metrics["drop.db_fail"] += 1
                logger.error("%s", e)
            return

        try:
            self.writer.record_seen(topic, timestamp, data)
        except WriteError as e:
            self.metrics["drop.db_fail"] += 1
            logger.error("%s", e)
            return
        self.seen_topics.add(topic)
        self.metrics["seen_upserts"] += 1
        logger.info("New topic seen: %s", topic)

    # ----- diagnostics ------------------------------------------------------

    def _maybe_flush_metrics(self) -> None:
        interval = self.ingest.metrics_interval_sec
        if interval <= 0:
            return
        now = time.time()
        if now - self._last_metrics_flush >= interval:
            self._last_metrics_flush = now
            summary = dict(self.metrics)
            summary["seen_topics"] = len(self.seen_topics)
            summary["cached_keys"] = len(self.detector.last_values)
            summary["state"] = self.state.value
            logger.info("METRICS %s", json.dumps(summary, separators=(",", ":")))
