from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import boto3
import pytest
from botocore.exceptions import ClientError

from psm.aws.pricing import Quote
from psm.config import PollPolicy, PsmConfig, SlotSettings
from psm.control.state import SlotRecord, SlotState


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "uses_moto: test uses moto @mock_aws (allows boto3 calls)"
    )


@pytest.fixture(autouse=True)
def _block_real_aws(request, monkeypatch):
    """Prevent any test from making real AWS API calls."""
    if request.node.get_closest_marker("uses_moto"):
        return

    def _blocked_client(service, *a, **kw):
        raise RuntimeError(
            f"Unmocked boto3.client('{service}') call! "
            f"Add a @patch or fixture mock for this AWS call."
        )

    monkeypatch.setattr(boto3, "client", _blocked_client)


# ── Config and records ──


@pytest.fixture
def config(tmp_path):
    """Config rooted in tmp_path with zero-interval polling."""
    fast = PollPolicy(interval=0, max_attempts=3)
    return PsmConfig(
        state_dir=tmp_path / "state",
        storage={"local_dir": tmp_path / "storage", "remote_dir": "/home/ubuntu/psm"},
        slots=[SlotSettings(name="palworld", instance_class="4c16g", game_port=8211)],
        readiness=fast,
        script_poll=PollPolicy(interval=0, max_attempts=5),
        ssh_connect=fast,
        discovery_retry=fast,
    )


@pytest.fixture
def state(config):
    return SlotState(state_dir=config.state_dir, slots=config.slots)


@pytest.fixture
def make_slot_record():
    """Factory for SlotRecord with sensible defaults. Override any field via kwargs."""
    def _make(**overrides):
        defaults = dict(name="palworld", instance_class="4c16g")
        defaults.update(overrides)
        return SlotRecord(**defaults)
    return _make


@pytest.fixture
def put_record(state):
    """Write a record straight into the store, bypassing transitions."""
    def _put(record: SlotRecord):
        data = state._load()
        data[record.name] = record.to_dict()
        state._save_all(data)
        return record
    return _put


@pytest.fixture
def make_client_error():
    """Factory for botocore ClientError."""
    def _make(code: str, message: str = "error"):
        return ClientError({"Error": {"Code": code, "Message": message}}, "TestOp")
    return _make


# ── Shared mock fixtures ──


@pytest.fixture
def mock_provision_deps(monkeypatch):
    """Mock every cloud call the Provisioner makes.

    Returns a SimpleNamespace with attributes:
        .scripts   - AsyncMock standing in for RemoteScripts
        .saves     - AsyncMock standing in for SaveSync
        .mocks     - dict of all patched function mocks, keyed by name
    """
    quote = Quote(
        region="us-east-2", zone="us-east-2b", instance_type="m6a.xlarge",
        hourly_price=0.05, bandwidth_price=0.09,
    )
    mocks = {"find_cheapest": AsyncMock(return_value=quote)}
    defaults = {
        "list_key_names": ["psm-key"],
        "find_security_groups": ["sg-psm1"],
        "get_image_id": "ami-test123",
        "launch_spot_instance": "i-test123",
        "describe_instance": {"state": "running", "public_ip": "54.1.2.3"},
        "terminate_instance": None,
    }
    for name, rv in defaults.items():
        mocks[name] = MagicMock(return_value=rv)
    for name, mock in mocks.items():
        monkeypatch.setattr(f"psm.control.provisioner.{name}", mock)

    scripts = AsyncMock()
    scripts.run.return_value = "ok"
    saves = AsyncMock()
    return SimpleNamespace(scripts=scripts, saves=saves, mocks=mocks, quote=quote)
