import asyncio

from loguru import logger

from psm.aws.ec2 import terminate_instance
from psm.config import PsmConfig
from psm.control.provisioner import step
from psm.control.saves import SaveSync
from psm.control.scripts import RemoteScripts, Script
from psm.control.state import SlotRecord, SlotState, SlotStatus
from psm.errors import PsmError, RemoteExecutionFailure, StatusMismatch


def endpoint_host(endpoint: str) -> str:
    return endpoint.rsplit(":", 1)[0]


class Decommissioner:
    """Backs up a running slot's save, then tears its instance down."""

    def __init__(
        self, config: PsmConfig, state: SlotState, scripts: RemoteScripts,
        saves: SaveSync, on_status=None,
    ):
        self.config = config
        self.state = state
        self.scripts = scripts
        self.saves = saves
        self.on_status = on_status

    def _notify(self, message: str) -> None:
        logger.info(message)
        if self.on_status:
            self.on_status(message)

    async def decommission(self, name: str) -> SlotRecord:
        slot = self.state.get(name)
        if slot.status != SlotStatus.RUNNING:
            raise StatusMismatch(name, SlotStatus.RUNNING.value, slot.status.value)
        host = endpoint_host(slot.endpoint)

        self._notify(f"Stopping {name}")
        async with step("backup save"):
            self._notify("Backing up save")
            save_name = (await self.scripts.run(host, Script.BACKUP_SAVE)).strip()
            if not save_name:
                raise RemoteExecutionFailure(host, Script.BACKUP_SAVE.value, "no save name reported")

        async with step("download save"):
            self._notify(f"Downloading save {save_name}")
            await self.saves.download_save(save_name, host)

        async with step("record save"):
            await self.state.set_save_name(name, save_name)

        async with step("begin stop"):
            ref = await self.state.begin_stop(name)

        try:
            async with step("terminate"):
                self._notify(f"Terminating instance {ref.instance_id}")
                await asyncio.to_thread(terminate_instance, ref.region, ref.instance_id)
        except BaseException:
            # Termination was not confirmed, so the instance is presumed live
            await self._rollback(name)
            raise

        # The instance is gone; a failed write leaves the slot Stopping
        async with step("record state"):
            record = await self.state.finish_stop(name)

        self._notify(f"{name} stopped, save {save_name} stored")
        return record

    async def _rollback(self, name: str) -> None:
        try:
            await self.state.rollback_stop(name)
        except PsmError as e:
            logger.error(f"Rollback of {name} failed: {e}")
            self._notify(f"Rollback of {name} failed: {e}")
