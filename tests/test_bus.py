"""Tests de PahoBusClient con un cliente paho simulado."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import paho.mqtt.client as mqtt
import pytest

from thing_ingest.errors import PublishError
from thing_ingest.mqtt import PahoBusClient


def _publish_info(rc=mqtt.MQTT_ERR_SUCCESS, published=True, wait_error=None):
    info = MagicMock()
    info.rc = rc
    info.is_published.return_value = published
    if wait_error is not None:
        info.wait_for_publish.side_effect = wait_error
    return info


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def bus_client(client):
    return PahoBusClient(client=client)


class TestPublish:

    def test_publish_waits_for_ack(self, bus_client, client):
        info = _publish_info()
        client.publish.return_value = info

        bus_client.publish("s1/value", "21.5", timeout=2.0)

        client.publish.assert_called_once_with("s1/value", "21.5", qos=1)
        info.wait_for_publish.assert_called_once_with(timeout=2.0)

    def test_rc_error(self, bus_client, client):
        client.publish.return_value = _publish_info(rc=mqtt.MQTT_ERR_NO_CONN)

        with pytest.raises(PublishError):
            bus_client.publish("s1/value", "1")

    def test_invalid_topic_is_publish_error(self, bus_client, client):
        client.publish.side_effect = ValueError("Publish topic cannot contain wildcards.")

        with pytest.raises(PublishError):
            bus_client.publish("a/+", "1")

    def test_not_confirmed(self, bus_client, client):
        client.publish.return_value = _publish_info(published=False)

        with pytest.raises(PublishError):
            bus_client.publish("s1/value", "1", timeout=0.1)

    def test_wait_raises(self, bus_client, client):
        client.publish.return_value = _publish_info(wait_error=RuntimeError("queue full"))

        with pytest.raises(PublishError):
            bus_client.publish("s1/value", "1")


class TestSubscriptions:

    def test_resubscribes_on_connect(self, bus_client, client):
        bus_client.subscribe("org/#", lambda topic, payload: None)
        client.subscribe.assert_not_called()

        bus_client._on_connect(client, None, {}, 0)

        assert bus_client.is_connected() is True
        client.subscribe.assert_called_once_with("org/#", qos=1)

    def test_message_dispatch_by_pattern(self, bus_client, client):
        received = []
        bus_client.subscribe("org/#", lambda topic, payload: received.append((topic, payload)))
        bus_client.subscribe("other/#", lambda topic, payload: received.append(("other", payload)))

        bus_client._on_message(client, None, SimpleNamespace(topic="org/o1/s1/value", payload=b"1"))

        assert received == [("org/o1/s1/value", b"1")]

    def test_handler_error_does_not_propagate(self, bus_client, client):
        def broken(topic, payload):
            raise ValueError("boom")

        bus_client.subscribe("org/#", broken)

        bus_client._on_message(client, None, SimpleNamespace(topic="org/x/y", payload=b""))

    def test_disconnect_clears_state(self, bus_client, client):
        bus_client._on_connect(client, None, {}, 0)
        bus_client._on_disconnect(client, None, {}, 1)

        assert bus_client.is_connected() is False
