import asyncio
import ipaddress

from psm.aws.pricing import Quote, find_cheapest
from psm.aws.security_groups import allow_ingress, find_security_groups, list_ingress_rules
from psm.catalog import InstanceClass, classes_from_config, instance_types_for, list_classes
from psm.config import PsmConfig, load_config
from psm.control.decommission import Decommissioner
from psm.control.provisioner import Provisioner
from psm.control.saves import SaveSync
from psm.control.scripts import RemoteScripts
from psm.control.state import SlotRecord, SlotState
from psm.errors import PsmError, StatusMismatch


class ServerManager:
    """Operator-facing verbs over the configured server slots.

    One manager holds the shared config, store and transports; each verb
    builds its orchestrator with the caller's notification sink.
    """

    def __init__(self, config: PsmConfig | None = None, state: SlotState | None = None,
                 on_status=None, scripts: RemoteScripts | None = None,
                 saves: SaveSync | None = None):
        self.config = config or load_config()
        self.extra_classes = classes_from_config(self.config.instance_classes)
        self.state = state or SlotState(state_dir=self.config.state_dir, slots=self.config.slots)
        self.scripts = scripts or RemoteScripts(
            self.config.ssh, self.config.storage.remote_dir, self.config.script_poll,
        )
        self.saves = saves or SaveSync(
            self.config.storage.local_dir, self.config.storage.remote_dir, self.config.ssh,
        )
        self.on_status = on_status

    def provisioner(self, on_status=None) -> Provisioner:
        return Provisioner(
            self.config, self.state, self.scripts, self.saves,
            on_status=on_status or self.on_status,
        )

    def decommissioner(self, on_status=None) -> Decommissioner:
        return Decommissioner(
            self.config, self.state, self.scripts, self.saves,
            on_status=on_status or self.on_status,
        )

    def status(self, name: str | None = None) -> str:
        return self.state.render(name)

    async def start(self, name: str, on_status=None) -> SlotRecord:
        notify = on_status or self.on_status
        try:
            return await self.provisioner(notify).provision(name)
        except PsmError as e:
            if notify:
                notify(f"Failed to start {name}: {e}")
            raise

    async def stop(self, name: str, on_status=None) -> SlotRecord:
        notify = on_status or self.on_status
        try:
            return await self.decommissioner(notify).decommission(name)
        except PsmError as e:
            if notify:
                notify(f"Failed to stop {name}: {e}")
            raise

    async def price(self, instance_class: str) -> Quote:
        cloud = self.config.cloud
        return await find_cheapest(
            cloud.candidate_regions, instance_types_for(instance_class, self.extra_classes),
            product_description=cloud.product_description,
            bandwidth_price=cloud.bandwidth_price,
        )

    def classes(self) -> list[InstanceClass]:
        return sorted(list_classes(self.extra_classes), key=lambda c: (c.vcpus, c.memory_gib))

    async def _slot_groups(self, name: str) -> tuple[str, list[str]]:
        slot = self.state.get(name)
        if not slot.region:
            raise StatusMismatch(name, "Running", slot.status.value)
        sg_ids = await asyncio.to_thread(
            find_security_groups, slot.region, self.config.cloud.security_group_tag,
        )
        return slot.region, sg_ids

    async def allow(self, name: str, cidr: str, port: int | None = None) -> list[str]:
        """Open the tunnel port to `cidr` on the slot's security groups.

        Returns the ids of the groups that gained a rule.
        """
        network = str(ipaddress.ip_network(cidr, strict=False))
        port = port or self.config.cloud.tunnel_port
        region, sg_ids = await self._slot_groups(name)
        added = []
        for sg_id in sg_ids:
            if await asyncio.to_thread(allow_ingress, region, sg_id, port, network):
                added.append(sg_id)
        return added

    async def rules(self, name: str) -> list[dict]:
        region, sg_ids = await self._slot_groups(name)
        rules = []
        for sg_id in sg_ids:
            rules.extend(await asyncio.to_thread(list_ingress_rules, region, sg_id))
        return rules
