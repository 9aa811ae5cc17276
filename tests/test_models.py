import pytest

from printops_agent.command_names import CommandNames, normalize_kind
from printops_agent.core.models import Command, DeviceSnapshot, DeviceStatus
from printops_agent.errors import CommandParseError


def test_command_from_dict_accepts_legacy_field_names():
    command = Command.from_dict(
        {"id": "a1", "commandType": "fix_printer", "deviceId": 12, "payload": None}
    )

    assert command.id == "a1"
    assert command.kind == "fix_printer"
    assert command.device_id == "12"
    assert command.payload == {}


@pytest.mark.parametrize(
    "data",
    [
        None,
        [],
        {"kind": "get_status"},
        {"id": True, "kind": "get_status"},
        {"id": "", "kind": "get_status"},
        {"id": 1.5, "kind": "get_status"},
        {"id": 1},
        {"id": 1, "kind": "get_status", "payload": ["x"]},
    ],
)
def test_command_from_dict_rejects_malformed(data):
    with pytest.raises(CommandParseError):
        Command.from_dict(data)


def test_normalize_kind_maps_legacy_names():
    assert normalize_kind("Restart_Spooler") == CommandNames.RESTART_SUBSYSTEM
    assert normalize_kind("fix_printer") == CommandNames.FIX_DEVICE
    assert normalize_kind("test_print") == CommandNames.TEST_OUTPUT
    assert normalize_kind("get_status") == CommandNames.GET_STATUS
    assert normalize_kind("unheard_of") == "unheard_of"


def test_device_snapshot_wire_format():
    snapshot = DeviceSnapshot.from_dict({"name": "LaserJet-1", "status": "error"})

    assert snapshot.as_dict() == {
        "name": "LaserJet-1",
        "model": "Unknown",
        "manufacturer": "Generic",
        "port": "Unknown",
        "status": "error",
        "driverVersion": "",
        "driverStatus": "current",
        "inkLevels": None,
        "jobCount": 0,
    }
    assert DeviceStatus.coerce("ONLINE") is DeviceStatus.ONLINE
