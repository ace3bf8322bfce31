import pytest

from authsync.service.devices import DeviceContext, DeviceSessionTracker
from authsync.service.errors import ValidationError
from authsync.storage.errors import ConstraintViolation


@pytest.fixture
def principal(memory_store):
    return memory_store.create_principal("devices@example.com", "hash", status="active")


@pytest.fixture
def tracker(memory_store, clock):
    return DeviceSessionTracker(memory_store, clock=clock)


class TestDeviceContext:
    def test_accepts_camel_case_keys(self):
        device = DeviceContext.from_mapping(
            {"deviceId": " phone-1 ", "deviceName": "Pixel", "appVersion": "2.0.1"}
        )

        assert device.device_id == "phone-1"
        assert device.device_name == "Pixel"
        assert device.app_version == "2.0.1"
        assert device.device_platform is None

    @pytest.mark.parametrize("data", [{}, {"device_id": ""}, {"device_id": 42}])
    def test_requires_device_id(self, data):
        with pytest.raises(ValidationError):
            DeviceContext.from_mapping(data)


class TestDeviceSessionTracker:
    """Tests for device presence upserts."""

    def test_record_then_overwrite(self, tracker, principal, memory_store, clock):
        tracker.record_device(
            principal.id,
            DeviceContext("phone-1", "Pixel", "android", "1.0.0"),
            ip="198.51.100.4",
        )
        clock.advance(hours=1)
        tracker.record_device(principal.id, {"device_id": "phone-1", "app_version": "1.1.0"})

        session = memory_store.get_device_session(principal.id, "phone-1")
        # last write wins for every field
        assert session.app_version == "1.1.0"
        assert session.device_name is None
        assert session.last_ip is None
        assert session.last_active_at == clock.now
        assert len(tracker.list_devices(principal.id)) == 1

    def test_ipv6_is_normalised(self, tracker, principal):
        session = tracker.record_device(
            principal.id, {"device_id": "laptop"}, ip="2001:DB8:0:0:0:0:0:1"
        )

        assert session.last_ip == "2001:db8::1"

    def test_invalid_ip_is_dropped(self, tracker, principal):
        session = tracker.record_device(principal.id, {"device_id": "laptop"}, ip="not-an-ip")

        assert session.last_ip is None

    def test_devices_are_scoped_per_principal(self, tracker, principal, memory_store):
        other = memory_store.create_principal("other@example.com", "hash")
        tracker.record_device(principal.id, {"device_id": "shared"})
        tracker.record_device(other.id, {"device_id": "shared"})

        assert [d.principal_id for d in tracker.list_devices(principal.id)] == [principal.id]

    def test_unknown_principal(self, tracker):
        with pytest.raises(ConstraintViolation):
            tracker.record_device("missing", {"device_id": "x"})
