"""Tests de ThingDirectory: resolución, auto-aprovisionamiento y carreras."""

import threading

import pytest

from thing_ingest.core.domain import Thing, ThingType
from thing_ingest.directory import InMemoryThingStore, ThingDirectory
from thing_ingest.directory.thing_directory import build_new_thing
from thing_ingest.errors import NameConflict, NotFound, StorageError, ValidationError

from conftest import T0


class RacingStore(InMemoryThingStore):
    """Simula que otro proceso crea el Thing entre find_by_name e insert."""

    def __init__(self, rival_type=ThingType.SENSOR):
        super().__init__()
        self.rival_type = rival_type
        self.inserts = 0

    def insert(self, thing):
        self.inserts += 1
        if self.inserts == 1:
            super().insert(Thing(name=thing.name, type=self.rival_type, alias="rival"))
        return super().insert(thing)


class AlwaysConflictStore(InMemoryThingStore):
    def find_by_name(self, name):
        return None

    def insert(self, thing):
        raise NameConflict(thing.name)


# =============================================================================
# RESOLVE
# =============================================================================

class TestResolve:

    def test_missing_thing(self, directory):
        with pytest.raises(NotFound):
            directory.resolve("nope")

    def test_org_scope(self, directory, make_org, make_sensor):
        org1 = make_org("org1")
        org2 = make_org("org2")
        make_sensor("s1", org_id=org1)
        make_sensor("s2")

        assert directory.resolve("s1", org1).name == "s1"
        assert directory.resolve("s1").name == "s1"
        with pytest.raises(NotFound):
            directory.resolve("s1", org2)
        with pytest.raises(NotFound):
            directory.resolve("s2", org1)

    def test_resolve_org_by_id_or_name(self, directory, make_org):
        org_id = make_org("org1")

        assert directory.resolve_org(org_id).name == "org1"
        assert directory.resolve_org("org1").id == org_id
        assert directory.resolve_org("other") is None


# =============================================================================
# RESOLVE OR CREATE
# =============================================================================

class TestResolveOrCreate:

    def test_creates_device_with_availability_defaults(self, directory):
        device = directory.resolve_or_create("dev1", "device")

        assert device.id is not None
        assert device.type is ThingType.DEVICE
        assert (device.availability_topic, device.availability_yes, device.availability_no) == (
            "available", "yes", "no",
        )
        assert device.created == int(T0)
        assert device.org_id is None

    def test_creates_sensor_with_defaults(self, directory):
        sensor = directory.resolve_or_create("28-0001", ThingType.SENSOR, {"sensor.class": "humidity"})

        assert sensor.sensor.measurement_topic == "value"
        assert sensor.sensor.sensor_class == "humidity"
        assert sensor.sensor.effective_unit == "%"

    def test_is_idempotent(self, directory, store):
        first = directory.resolve_or_create("dev1", ThingType.DEVICE)
        second = directory.resolve_or_create("dev1", ThingType.DEVICE)

        assert first.id == second.id
        assert len(store.find_all()) == 1

    def test_existing_thing_keeps_its_type(self, directory, make_switch):
        make_switch("x1")

        thing = directory.resolve_or_create("x1", ThingType.SENSOR)

        assert thing.type is ThingType.SWITCH

    def test_lost_race_returns_winner(self, clock):
        store = RacingStore()
        directory = ThingDirectory(store, clock=clock)

        thing = directory.resolve_or_create("s1", ThingType.SENSOR)

        assert thing.alias == "rival"
        assert len(store.find_all()) == 1

    def test_race_never_converges(self, clock):
        directory = ThingDirectory(AlwaysConflictStore(), clock=clock, max_create_attempts=2)

        with pytest.raises(StorageError):
            directory.resolve_or_create("s1", ThingType.SENSOR)

    def test_concurrent_creation_yields_single_thing(self, directory, store):
        barrier = threading.Barrier(6)
        ids = []

        def worker():
            barrier.wait()
            ids.append(directory.resolve_or_create("dev1", ThingType.DEVICE).id)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(set(ids)) == 1
        assert len(store.find_all()) == 1

    def test_unknown_type(self, directory):
        with pytest.raises(ValidationError):
            directory.resolve_or_create("x", "toaster")


# =============================================================================
# CREATE / RENAME
# =============================================================================

class TestCreateAndRename:

    def test_create_conflict(self, directory):
        directory.create("t1", "sensor")

        with pytest.raises(NameConflict):
            directory.create("t1", "device")

    def test_create_unknown_type(self, directory):
        with pytest.raises(ValidationError):
            directory.create("t1", "lamp")

    def test_rename(self, directory):
        thing = directory.create("t1", "sensor")

        renamed = directory.rename(thing.id, "t2")

        assert renamed.name == "t2"
        assert directory.resolve("t2").id == thing.id
        with pytest.raises(NotFound):
            directory.resolve("t1")

    def test_rename_conflict(self, directory):
        thing = directory.create("t1", "sensor")
        directory.create("t2", "sensor")

        with pytest.raises(NameConflict):
            directory.rename(thing.id, "t2")

    def test_rename_to_same_name(self, directory):
        thing = directory.create("t1", "sensor")

        assert directory.rename(thing.id, "t1").name == "t1"


class TestBuildNewThing:

    def test_defaults_cannot_override_identity(self):
        thing = build_new_thing("s1", "sensor", {"name": "other", "type": "device", "sensor.unit": "K"}, now=T0)

        assert thing.name == "s1"
        assert thing.type is ThingType.SENSOR
        assert thing.sensor.unit == "K"

    def test_switch_has_no_extra_defaults(self):
        thing = build_new_thing("sw", ThingType.SWITCH, now=T0)

        assert thing.switch.state_topic == ""
        assert thing.availability_topic == ""
