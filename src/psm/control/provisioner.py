import asyncio
from contextlib import asynccontextmanager

from loguru import logger

from psm.aws.ec2 import (
    describe_instance,
    get_image_id,
    launch_spot_instance,
    list_key_names,
    terminate_instance,
)
from psm.aws.pricing import Quote, find_cheapest
from psm.aws.security_groups import find_security_groups
from psm.catalog import classes_from_config, instance_types_for
from psm.config import PsmConfig
from psm.control.poll import poll_until, retry
from psm.control.saves import SaveSync
from psm.control.scripts import RemoteScripts, Script
from psm.control.state import InstanceRef, SlotRecord, SlotState, SlotStatus
from psm.errors import PsmError, StatusMismatch, StepFailed, TransientProviderError


@asynccontextmanager
async def step(name: str):
    """Tag any failure inside the block with the step it happened in."""
    try:
        yield
    except StepFailed:
        raise
    except Exception as e:
        raise StepFailed(name, e) from e


async def terminate(ref: InstanceRef, notify) -> bool:
    """Best-effort terminate; failures are logged and reported, never raised."""
    notify(f"Terminating instance {ref.instance_id}")
    try:
        await asyncio.to_thread(terminate_instance, ref.region, ref.instance_id)
        return True
    except Exception as e:
        logger.error(f"Failed to terminate {ref.instance_id} in {ref.region}: {e}")
        notify(f"Failed to terminate {ref.instance_id} in {ref.region}: {e}")
        return False


class Provisioner:
    """Drives a slot from Stopped through Creating to Running."""

    def __init__(
        self, config: PsmConfig, state: SlotState, scripts: RemoteScripts,
        saves: SaveSync, on_status=None,
    ):
        self.config = config
        self.state = state
        self.scripts = scripts
        self.saves = saves
        self.on_status = on_status
        self._created: dict[str, InstanceRef] = {}
        self.extra_classes = classes_from_config(config.instance_classes)

    def _notify(self, message: str) -> None:
        logger.info(message)
        if self.on_status:
            self.on_status(message)

    async def provision(self, name: str) -> SlotRecord:
        slot = self.state.get(name)
        if slot.status != SlotStatus.STOPPED:
            raise StatusMismatch(name, SlotStatus.STOPPED.value, slot.status.value)
        settings = self.config.slot(name)

        self._notify(f"Starting {name}")
        await self.state.begin_create(name)
        # Everything after this point must roll the slot back on failure
        try:
            return await self._provision(slot, settings.game_port)
        except BaseException:
            self._notify("Cleaning up after failure")
            await self._rollback(name)
            raise

    async def _provision(self, slot: SlotRecord, game_port: int) -> SlotRecord:
        async with step("acquire instance"):
            quote, instance_id = await retry(
                lambda: self._acquire(slot), self.config.discovery_retry,
                on=TransientProviderError,
                on_retry=lambda attempt, e: self._notify(f"Attempt {attempt} failed: {e}"),
            )
        region = quote.region

        async with step("wait for instance"):
            self._notify("Waiting for instance to start")
            public_ip = await poll_until(
                lambda: self._public_ip(region, instance_id), self.config.readiness,
                f"instance {instance_id} to run",
            )

        async with step("connect"):
            self._notify(f"Connecting to {public_ip}")
            await self.scripts.wait_reachable(public_ip, self.config.ssh_connect)

        async with step("upload scripts"):
            self._notify("Uploading scripts")
            await self.saves.upload_scripts(public_ip)

        async with step("install"):
            self._notify("Installing server")
            await self.scripts.run(public_ip, Script.INSTALL)

        if slot.save_name:
            async with step("restore save"):
                self._notify(f"Restoring save {slot.save_name}")
                await self.saves.upload_save(slot.save_name, public_ip)
                await self.scripts.run(public_ip, Script.RESTORE_SAVE)

        async with step("start"):
            self._notify("Starting server")
            await self.scripts.run(public_ip, Script.START)

        endpoint = f"{public_ip}:{game_port}"
        async with step("record state"):
            record = await self.state.finish_create(slot.name, endpoint, region, instance_id)
        self._created.pop(slot.name, None)
        self._notify(f"{slot.name} is running at {endpoint}")
        return record

    async def _acquire(self, slot: SlotRecord) -> tuple[Quote, str]:
        """One discovery + launch attempt. Transient failures are retried by the caller."""
        cloud = self.config.cloud
        instance_types = instance_types_for(slot.instance_class, self.extra_classes)
        self._notify(f"Finding cheapest {slot.instance_class} instance")
        quote = await find_cheapest(
            cloud.candidate_regions, instance_types,
            product_description=cloud.product_description,
            bandwidth_price=cloud.bandwidth_price,
        )
        self._notify(
            f"Cheapest is {quote.instance_type} in {quote.zone} "
            f"at ${quote.hourly_price:.4f}/h"
        )
        region = quote.region

        key_names = await asyncio.to_thread(list_key_names, region, cloud.key_name)
        if not key_names:
            raise RuntimeError(f"No usable key pair found in {region}")
        sg_ids = await asyncio.to_thread(find_security_groups, region, cloud.security_group_tag)
        if not sg_ids:
            raise RuntimeError(
                f"No security group matching '{cloud.security_group_tag}' in {region}"
            )
        image_id = cloud.image_id or await asyncio.to_thread(
            get_image_id, region, cloud.image_parameter,
        )

        instance_id = await asyncio.to_thread(
            launch_spot_instance,
            region=region, zone=quote.zone, image_id=image_id,
            instance_type=quote.instance_type, key_name=key_names[0],
            security_group_ids=sg_ids, slot_name=slot.name, disk_gb=cloud.disk_gb,
        )
        # Remembered in memory too, in case the store write below fails
        self._created[slot.name] = InstanceRef(region=region, instance_id=instance_id)
        await self.state.attach_instance(slot.name, region, instance_id)
        self._notify(f"Created instance {instance_id}")
        return quote, instance_id

    async def _public_ip(self, region: str, instance_id: str) -> str | None:
        info = await asyncio.to_thread(describe_instance, region, instance_id)
        if info["state"] in ("shutting-down", "terminated"):
            raise RuntimeError(f"Instance {instance_id} is {info['state']}")
        if info["state"] == "running" and info["public_ip"]:
            return info["public_ip"]
        return None

    async def _rollback(self, name: str) -> None:
        created = self._created.pop(name, None)
        try:
            ref = await self.state.rollback_create(name)
        except PsmError as e:
            logger.error(f"Rollback of {name} failed: {e}")
            self._notify(f"Rollback of {name} failed: {e}")
            ref = None
        ref = ref or created
        if ref:
            await terminate(ref, self._notify)
