"""Tests de DevicePacketProcessor (camino push de dispositivos).

Ejecutar:
    pytest tests/test_packet_processor.py -v
"""

from unittest.mock import MagicMock

import paho.mqtt.client as mqtt
import pytest
from pydantic import ValidationError as PydanticValidationError

from thing_ingest.core.domain import ThingType
from thing_ingest.directory import ThingDirectory, ThingStore
from thing_ingest.dispatch import Dispatcher
from thing_ingest.errors import DuplicatePacket, StorageError
from thing_ingest.locks import KeyedLocks
from thing_ingest.mqtt import PahoBusClient
from thing_ingest.packets import DevicePacketProcessor, PacketState
from thing_ingest.schemas import DevicePacket, SensorReading

DEVICE = "device01"
SENSOR = "SensorAddr"


def _packet(device=DEVICE, ssid=None, **reading_fields) -> DevicePacket:
    readings = []
    if reading_fields:
        readings.append(SensorReading(address=SENSOR, **reading_fields))
    return DevicePacket(device=device, wifi_ssid=ssid, readings=readings)


# =============================================================================
# AUTO-APROVISIONAMIENTO
# =============================================================================

class TestPacketRegistration:

    def test_unknown_device_and_sensor_are_registered(self, processor, store, bus):
        outcome = processor.process_packet(None, _packet(temperature=4.5))

        assert outcome.state is PacketState.DONE
        assert outcome.readings == 1

        device = store.find_by_name(DEVICE)
        assert device is not None
        assert device.type is ThingType.DEVICE
        assert device.availability_topic == "available"
        assert device.availability_yes == "yes"
        assert device.availability_no == "no"

        sensor = store.find_by_name(SENSOR)
        assert sensor is not None
        assert sensor.type is ThingType.SENSOR
        assert sensor.sensor.sensor_class == "temperature"
        assert sensor.sensor.measurement_topic == "value"
        assert sensor.sensor.value == "4.5"

        # Sin org: nada se publica
        assert bus.calls == []

    def test_second_packet_does_not_duplicate_things(self, processor, store, clock):
        processor.process_packet(None, _packet(temperature=4.5))
        clock.advance(10)
        processor.process_packet(None, _packet(temperature=5.0))

        assert len(store.find_all()) == 2
        assert store.find_by_name(SENSOR).sensor.value == "5"

    def test_humidity_reading_infers_class(self, processor, store):
        processor.process_packet(None, _packet(humidity=55.5))

        sensor = store.find_by_name(SENSOR)
        assert sensor.sensor.sensor_class == "humidity"
        assert sensor.sensor.effective_unit == "%"

    def test_device_liveness_updated(self, processor, store, clock):
        processor.process_packet(None, _packet())

        device = store.find_by_name(DEVICE)
        assert device.available is True
        assert device.last_seen == int(clock.now)


# =============================================================================
# PUBLICACIONES (ECO)
# =============================================================================

class TestPacketPublishes:

    def test_unassigned_device_publishes_nothing(self, processor, make_sensor, bus):
        make_sensor(DEVICE)

        processor.process_packet(None, _packet())

        assert len(bus.calls) == 0

    def test_assigned_device_publishes_availability_and_ssid(self, processor, make_sensor, make_org, bus):
        org_id = make_org("org1")
        make_sensor(DEVICE, org_id=org_id)

        processor.process_packet(None, _packet(ssid="SSID"))

        assert bus.pairs() == [
            ("available", "yes"),
            ("net/wifi/ssid", "SSID"),
        ]

    def test_unassigned_reading_publishes_nothing(self, processor, make_sensor, bus, store):
        make_sensor(DEVICE)

        processor.process_packet(None, _packet(temperature=4.5))

        assert len(bus.calls) == 0
        assert store.find_by_name(SENSOR).sensor.value == "4.5"

    def test_assigned_device_and_sensor_publish_in_order(self, processor, make_sensor, make_org, bus):
        org_id = make_org("org1")
        make_sensor(DEVICE, org_id=org_id)
        make_sensor(SENSOR, org_id=org_id)

        processor.process_packet(None, _packet(temperature=4.5))

        assert len(bus.calls) == 4
        assert (bus.calls[0].topic, bus.calls[0].payload, bus.calls[0].thing_name) == ("available", "yes", DEVICE)
        assert (bus.calls[1].topic, bus.calls[1].payload, bus.calls[1].thing_name) == ("available", "yes", SENSOR)
        assert (bus.calls[2].topic, bus.calls[2].payload, bus.calls[2].thing_name) == ("value", "4.5", SENSOR)
        assert (bus.calls[3].topic, bus.calls[3].payload, bus.calls[3].thing_name) == ("value/unit", "C", SENSOR)

    def test_configured_unit_overrides_default(self, processor, make_sensor, make_org, bus):
        org_id = make_org("org1")
        make_sensor(DEVICE, org_id=org_id)
        make_sensor(SENSOR, org_id=org_id, unit="F")

        processor.process_packet(None, _packet(temperature=40.1))

        assert bus.pairs()[-1] == ("value/unit", "F")

    def test_packet_path_does_not_write_sinks(self, processor, make_sensor, make_org, timeseries_sink, relational_sink):
        org_id = make_org("org1")
        make_sensor(DEVICE, org_id=org_id)
        make_sensor(SENSOR, org_id=org_id)

        processor.process_packet(None, _packet(temperature=4.5))

        assert timeseries_sink.calls == []
        assert relational_sink.calls == []

    def test_publish_failure_does_not_abort_packet(self, processor, make_sensor, make_org, bus):
        org_id = make_org("org1")
        make_sensor(DEVICE, org_id=org_id)
        make_sensor(SENSOR, org_id=org_id)
        bus.fail_topics.add("value")

        outcome = processor.process_packet(None, _packet(temperature=4.5))

        assert outcome.state is PacketState.DONE
        assert outcome.publish_failures == 1
        assert bus.pairs() == [
            ("available", "yes"),
            ("available", "yes"),
            ("value/unit", "C"),
        ]


# =============================================================================
# PROTECCIÓN DoS (RATE GUARD)
# =============================================================================

class TestPacketRateGuard:

    def test_duplicate_packet_rejected_other_device_accepted(self, processor):
        packet = _packet()

        processor.process_packet(None, packet)

        with pytest.raises(DuplicatePacket) as exc:
            processor.process_packet(None, packet)
        assert exc.value.key == DEVICE

        processor.process_packet(None, _packet(device="device02"))

    def test_packet_accepted_after_window(self, processor, clock):
        processor.process_packet(None, _packet())
        clock.advance(5.0)

        outcome = processor.process_packet(None, _packet())

        assert outcome.state is PacketState.DONE

    def test_rejected_packet_touches_nothing(self, processor, store, clock):
        processor.process_packet(None, _packet())
        first_seen = store.find_by_name(DEVICE).last_seen
        clock.advance(1.0)

        with pytest.raises(DuplicatePacket):
            processor.process_packet(None, _packet())

        assert store.find_by_name(DEVICE).last_seen == first_seen


# =============================================================================
# FALLOS DE ALMACENAMIENTO
# =============================================================================

class TestPacketStorageFailure:

    def test_storage_error_propagates(self, rate_guard, dispatcher, clock):
        broken = MagicMock(spec=ThingStore)
        broken.find_by_name.side_effect = StorageError("document store down")
        processor = DevicePacketProcessor(rate_guard, ThingDirectory(broken, clock=clock), dispatcher, clock=clock)

        with pytest.raises(StorageError):
            processor.process_packet(None, _packet(temperature=4.5))


# =============================================================================
# AISLAMIENTO DE ERRORES POR LECTURA
# =============================================================================

def _wildcard_rejecting_client():
    """Cliente paho simulado que valida topics como paho real."""
    client = MagicMock()

    def publish(topic, payload, qos=0):
        if "+" in topic or "#" in topic:
            raise ValueError("Publish topic cannot contain wildcards.")
        info = MagicMock()
        info.rc = mqtt.MQTT_ERR_SUCCESS
        info.is_published.return_value = True
        return info

    client.publish.side_effect = publish
    return client


class TestPacketErrorIsolation:

    def test_invalid_publish_topic_does_not_abort_packet(self, store, directory, rate_guard, make_org, make_sensor, make_device, clock):
        org_id = make_org("org1")
        make_device(DEVICE, org_id=org_id)
        make_sensor("s-bad", org_id=org_id, measurement_topic="a/+")
        make_sensor("s-ok", org_id=org_id, measurement_topic="ok/value")
        client = _wildcard_rejecting_client()
        dispatcher = Dispatcher(directory, PahoBusClient(client=client), locks=KeyedLocks(), clock=clock)
        processor = DevicePacketProcessor(rate_guard, directory, dispatcher, clock=clock)
        packet = DevicePacket(device=DEVICE, readings=[
            SensorReading(address="s-bad", temperature=1.5),
            SensorReading(address="s-ok", temperature=2.5),
        ])

        outcome = processor.process_packet(None, packet)

        assert outcome.state is PacketState.DONE
        assert outcome.readings == 2
        assert outcome.publish_failures == 2
        assert store.find_by_name("s-ok").sensor.value == "2.5"
        published = [c.args[:2] for c in client.publish.call_args_list if "+" not in c.args[0]]
        assert ("ok/value", "2.5") in published
        assert ("ok/value/unit", "C") in published

    def test_non_finite_reading_is_skipped(self, processor, store, clock):
        bad = SensorReading.model_construct(address="s1", temperature=float("nan"))
        packet = DevicePacket(device=DEVICE, readings=[bad, SensorReading(address="s2", temperature=4.5)])

        outcome = processor.process_packet(None, packet)

        assert outcome.state is PacketState.DONE
        assert outcome.skipped == 1
        assert outcome.readings == 1
        skipped = store.find_by_name("s1")
        assert skipped.sensor.value == ""
        assert skipped.last_seen == int(clock())
        assert store.find_by_name("s2").sensor.value == "4.5"

    def test_non_finite_values_rejected_by_schema(self):
        with pytest.raises(PydanticValidationError):
            SensorReading(address="s1", temperature=float("inf"))
