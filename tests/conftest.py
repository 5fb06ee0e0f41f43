"""
Shared fakes: an in-memory backend standing in for both the Postgres store
and the persistence writer, and a paho-like client that routes messages to
the per-filter callbacks the dispatcher registers.
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import paho.mqtt.client as mqtt
import pytest

from mqtt2sql.config import IngestSettings, MqttSettings
from mqtt2sql.detector import ChangeDetector
from mqtt2sql.dispatcher import SubscriptionDispatcher
from mqtt2sql.errors import WriteError
from mqtt2sql.registry import TopicRegistry
from mqtt2sql.values import TypedValue

SUCCESS = SimpleNamespace(is_failure=False, value=0)
FAILURE = SimpleNamespace(is_failure=True, value=0x80)


class MemoryBackend:
    def __init__(self):
        self.rows = []
        self.seen = {}
        self.fetch_calls = 0
        self.upserts = 0
        self.refreshes = 0
        self.fail_writes = False

    # store side
    def fetch_last(self, key, value_type):
        self.fetch_calls += 1
        for _, k, value in reversed(self.rows):
            if k == key and value.type is value_type:
                return value
        return None

    # writer side
    def persist(self, key, timestamp, value: TypedValue):
        if self.fail_writes:
            raise WriteError("Insert failed: connection closed")
        self.rows.append((timestamp, key, value))

    def record_seen(self, topic, timestamp, data):
        if self.fail_writes:
            raise WriteError("Upsert failed: connection closed")
        self.upserts += 1
        self.seen[topic] = (timestamp, data)

    def refresh_seen(self, topic, timestamp, data):
        self.refreshes += 1
        self.seen[topic] = (timestamp, data)

    def values_for(self, key):
        return [value.value for _, k, value in self.rows if k == key]


class FakeClient:
    def __init__(self):
        self.callbacks = {}
        self.subscribed = []
        self.subscribe_result = mqtt.MQTT_ERR_SUCCESS
        self.connected_to = None
        self.disconnected = False
        self._mid = 0

    def connect(self, host, port, keepalive=60):
        self.connected_to = (host, port)

    def disconnect(self):
        self.disconnected = True

    def message_callback_add(self, sub, callback):
        self.callbacks[sub] = callback

    def subscribe(self, topic, qos=0):
        self._mid += 1
        self.subscribed.append(topic)
        return self.subscribe_result, self._mid

    def deliver(self, topic, payload: bytes):
        msg = SimpleNamespace(topic=topic, payload=payload, qos=0, retain=False)
        for sub, callback in list(self.callbacks.items()):
            if mqtt.topic_matches_sub(sub, topic):
                callback(self, None, msg)


class StepClock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def make_dispatcher(backend, fake_client):
    def _make(rules, addressing=None, topic="#", refresh_seen=True, errors=None, writer=None):
        kwargs = {} if addressing is None else {"addressing": addressing}
        registry = TopicRegistry(rules, **kwargs)
        dispatcher = SubscriptionDispatcher(
            MqttSettings(hostname="broker.test", port=1883, topic=topic),
            registry,
            ChangeDetector(backend),
            writer if writer is not None else backend,
            ingest=IngestSettings(refresh_seen=refresh_seen, metrics_interval_sec=0),
            on_error=errors.append if errors is not None else None,
            client=fake_client,
            clock=StepClock(),
        )
        return dispatcher

    return _make


def connect_and_ack(dispatcher, client):
    dispatcher.start()
    dispatcher.on_connect(client, None, {}, SUCCESS, None)
    for mid in list(dispatcher.subscriptions):
        dispatcher.on_subscribe(client, None, mid, [SUCCESS], None)
