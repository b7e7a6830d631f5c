import os
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from psm.errors import ConfigError, SlotNotFound


DEFAULT_STATE_DIR = Path.home() / ".psm"
DEFAULT_CONFIG_PATH = DEFAULT_STATE_DIR / "config.yaml"
CONFIG_ENV_VAR = "PSM_CONFIG"

UBUNTU_IMAGE_PARAM = (
    "/aws/service/canonical/ubuntu/server/22.04/stable/current/amd64/hvm/ebs-gp2/ami-id"
)


class PollPolicy(BaseModel):
    """How often to check something and how many checks to make.

    `max_attempts=None` polls until the condition holds.
    """

    model_config = ConfigDict(frozen=True)

    interval: float = 5.0
    max_attempts: int | None = None


class CloudSettings(BaseModel):
    candidate_regions: list[str] = Field(
        default_factory=lambda: ["us-east-1", "us-east-2", "us-west-2"]
    )
    key_name: str | None = None
    security_group_tag: str = "psm"
    image_id: str | None = None
    image_parameter: str = UBUNTU_IMAGE_PARAM
    product_description: str = "Linux/UNIX"
    bandwidth_price: float = 0.09
    tunnel_port: int = 7000
    disk_gb: int = 40


class SshSettings(BaseModel):
    user: str = "ubuntu"
    private_key: str = str(Path.home() / ".ssh" / "psm.pem")
    port: int = 22

    @property
    def key_path(self) -> str:
        return os.path.expanduser(self.private_key)


class StorageSettings(BaseModel):
    local_dir: Path = DEFAULT_STATE_DIR / "storage"
    remote_dir: str = "/home/ubuntu/psm"


class SlotSettings(BaseModel):
    name: str
    instance_class: str = "4c16g"
    game_port: int = 8211


class InstanceClassSettings(BaseModel):
    vcpus: int
    memory_gib: int
    instance_types: list[str]


class PsmConfig(BaseModel):
    state_dir: Path = DEFAULT_STATE_DIR
    cloud: CloudSettings = Field(default_factory=CloudSettings)
    ssh: SshSettings = Field(default_factory=SshSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    slots: list[SlotSettings] = Field(default_factory=lambda: [SlotSettings(name="palworld")])
    instance_classes: dict[str, InstanceClassSettings] = Field(default_factory=dict)
    readiness: PollPolicy = PollPolicy(interval=5.0, max_attempts=12)
    script_poll: PollPolicy = PollPolicy(interval=5.0)
    ssh_connect: PollPolicy = PollPolicy(interval=10.0, max_attempts=12)
    discovery_retry: PollPolicy = PollPolicy(interval=10.0, max_attempts=5)

    def slot(self, name: str) -> SlotSettings:
        for slot in self.slots:
            if slot.name == name:
                return slot
        raise SlotNotFound(name)


def resolve_config_path(path: str | Path | None = None) -> Path:
    if path:
        return Path(path).expanduser()
    if os.environ.get(CONFIG_ENV_VAR):
        return Path(os.environ[CONFIG_ENV_VAR]).expanduser()
    return DEFAULT_CONFIG_PATH


def load_config(path: str | Path | None = None) -> PsmConfig:
    """Load and validate the YAML config. A missing file yields the defaults."""
    config_path = resolve_config_path(path)
    if not config_path.exists():
        return expand_paths(PsmConfig())
    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(config_path, str(e)) from e
    if not isinstance(data, dict):
        raise ConfigError(config_path, "top level must be a mapping")
    try:
        return expand_paths(PsmConfig.model_validate(data))
    except ValidationError as e:
        raise ConfigError(config_path, str(e)) from e


def default_config() -> str:
    return """\
state_dir: ~/.psm
cloud:
  candidate_regions: [us-east-1, us-east-2, us-west-2]
  key_name: psm-key
  security_group_tag: psm
  tunnel_port: 7000
ssh:
  user: ubuntu
  private_key: ~/.ssh/psm.pem
storage:
  local_dir: ~/.psm/storage
  remote_dir: /home/ubuntu/psm
slots:
  - name: palworld
    instance_class: 4c16g
    game_port: 8211
"""


def expand_paths(config: PsmConfig) -> PsmConfig:
    """Return a copy with `~` expanded in local filesystem paths."""
    storage = config.storage.model_copy(
        update={"local_dir": config.storage.local_dir.expanduser()}
    )
    return config.model_copy(
        update={"state_dir": config.state_dir.expanduser(), "storage": storage}
    )
