from unittest.mock import AsyncMock, MagicMock

import pytest

from psm import catalog
from psm.aws.pricing import Quote
from psm.config import InstanceClassSettings
from psm.control.manager import ServerManager
from psm.control.state import SlotStatus
from psm.errors import StatusMismatch, StepFailed, UnknownInstanceClass


@pytest.fixture
def manager(config, mock_provision_deps):
    return ServerManager(
        config, scripts=mock_provision_deps.scripts, saves=mock_provision_deps.saves,
    )


def test_manager_seeds_configured_slots(manager):
    assert manager.status() == "palworld Stopped None\n"
    assert manager.status("palworld") == "palworld Stopped None\n"


@pytest.mark.asyncio
async def test_start_then_stop(manager, mock_provision_deps, monkeypatch):
    monkeypatch.setattr("psm.control.decommission.terminate_instance", MagicMock())
    messages = []

    record = await manager.start("palworld", on_status=messages.append)
    assert record.status == SlotStatus.RUNNING
    assert "palworld Running 54.1.2.3:8211" in manager.status("palworld")

    mock_provision_deps.scripts.run.return_value = "palworld-1.tar.gz"
    record = await manager.stop("palworld", on_status=messages.append)
    assert record.status == SlotStatus.STOPPED
    assert record.save_name == "palworld-1.tar.gz"
    assert messages[0] == "Starting palworld"


@pytest.mark.asyncio
async def test_start_failure_is_reported_and_raised(manager, mock_provision_deps):
    mock_provision_deps.scripts.run.side_effect = RuntimeError("boom")
    messages = []

    with pytest.raises(StepFailed):
        await manager.start("palworld", on_status=messages.append)

    assert messages[-1] == "Failed to start palworld: install: boom"


@pytest.mark.asyncio
async def test_stop_stopped_slot_is_reported(manager):
    messages = []

    with pytest.raises(StatusMismatch):
        await manager.stop("palworld", on_status=messages.append)

    assert messages == [
        "Failed to stop palworld: Server slot 'palworld' is Stopped (expected Running)",
    ]


@pytest.mark.asyncio
async def test_price_uses_class_catalog(manager, monkeypatch):
    quote = Quote("us-east-1", "us-east-1a", "t3a.small", 0.006, 0.09)
    find = AsyncMock(return_value=quote)
    monkeypatch.setattr("psm.control.manager.find_cheapest", find)

    assert await manager.price("2c2g") == quote
    assert find.await_args.args[1] == ["t3a.small", "t3.small"]
    assert find.await_args.kwargs["bandwidth_price"] == 0.09


@pytest.mark.asyncio
async def test_price_unknown_class(manager):
    with pytest.raises(UnknownInstanceClass):
        await manager.price("64c1t")


def test_classes_sorted_and_extended_from_config(config, mock_provision_deps):
    plain = config.model_copy()
    config.instance_classes = {
        "1c1g": InstanceClassSettings(vcpus=1, memory_gib=1, instance_types=["t3.micro"]),
    }
    manager = ServerManager(config, scripts=mock_provision_deps.scripts, saves=mock_provision_deps.saves)

    names = [c.name for c in manager.classes()]
    assert names[0] == "1c1g"
    assert names.index("2c2g") < names.index("2c8g") < names.index("4c8g")

    other = ServerManager(plain, scripts=mock_provision_deps.scripts, saves=mock_provision_deps.saves)
    assert "1c1g" not in [c.name for c in other.classes()]
    assert "1c1g" not in [c.name for c in catalog.list_classes()]


@pytest.mark.asyncio
async def test_allow_opens_tunnel_port(manager, put_record, make_slot_record, monkeypatch):
    put_record(make_slot_record(
        status="Running", endpoint="54.1.2.3:8211", region="us-east-2", instance_id="i-1",
    ))
    monkeypatch.setattr(
        "psm.control.manager.find_security_groups", MagicMock(return_value=["sg-1", "sg-2"]),
    )
    allow = MagicMock(side_effect=[True, False])
    monkeypatch.setattr("psm.control.manager.allow_ingress", allow)

    added = await manager.allow("palworld", "203.0.113.9/24")

    assert added == ["sg-1"]
    allow.assert_any_call("us-east-2", "sg-1", 7000, "203.0.113.0/24")


@pytest.mark.asyncio
async def test_allow_requires_region(manager):
    with pytest.raises(StatusMismatch):
        await manager.allow("palworld", "203.0.113.0/24")


@pytest.mark.asyncio
async def test_allow_rejects_bad_cidr(manager):
    with pytest.raises(ValueError):
        await manager.allow("palworld", "not-a-network")


@pytest.mark.asyncio
async def test_rules_lists_all_groups(manager, put_record, make_slot_record, monkeypatch):
    put_record(make_slot_record(
        status="Running", endpoint="54.1.2.3:8211", region="us-east-2", instance_id="i-1",
    ))
    monkeypatch.setattr(
        "psm.control.manager.find_security_groups", MagicMock(return_value=["sg-1", "sg-2"]),
    )
    monkeypatch.setattr(
        "psm.control.manager.list_ingress_rules",
        MagicMock(side_effect=lambda region, sg_id: [{"group_id": sg_id}]),
    )

    assert await manager.rules("palworld") == [{"group_id": "sg-1"}, {"group_id": "sg-2"}]
