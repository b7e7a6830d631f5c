import asyncio
import shlex
from enum import Enum

import paramiko
from loguru import logger

from psm.config import PollPolicy, SshSettings
from psm.control.poll import poll_until
from psm.control.ssh import SSHClient
from psm.errors import RemoteExecutionFailure

LOG_PATH = "/tmp/psm_shell.log"


class Script(Enum):
    INSTALL = "install_server.sh"
    RESTORE_SAVE = "restore_save.sh"
    START = "start_server.sh"
    BACKUP_SAVE = "backup_save.sh"

    @property
    def status_path(self) -> str:
        return f"/tmp/psm_{self.value.removesuffix('.sh')}.status"


class RemoteScripts:
    """Runs the provisioning scripts installed under `<remote_dir>/scripts`.

    A script is started detached, then polled until its process is gone.
    The last line of the shared log is the script's result; `backup_save.sh`
    uses it to report the name of the save it wrote.
    """

    def __init__(
        self, ssh_settings: SshSettings, remote_dir: str, poll: PollPolicy,
        client_factory=SSHClient.from_settings,
    ):
        self.ssh_settings = ssh_settings
        self.remote_dir = remote_dir.rstrip("/")
        self.poll = poll
        self._client_factory = client_factory

    def script_path(self, script: Script) -> str:
        return f"{self.remote_dir}/scripts/{script.value}"

    def launch_command(self, script: Script) -> str:
        inner = (
            f"sh {shlex.quote(self.script_path(script))} >> {LOG_PATH} 2>&1; "
            f"echo $? > {script.status_path}"
        )
        return f"rm -f {script.status_path}; nohup sh -c {shlex.quote(inner)} > /dev/null 2>&1 &"

    async def wait_reachable(self, host: str, policy: PollPolicy) -> None:
        ssh = self._client_factory(host, self.ssh_settings)
        try:
            await asyncio.to_thread(
                ssh.connect, retries=policy.max_attempts or 1, delay=policy.interval,
            )
        except (paramiko.SSHException, OSError) as e:
            raise RemoteExecutionFailure(host, "ssh", f"not reachable: {e}") from e
        finally:
            ssh.close()

    async def run(self, host: str, script: Script) -> str:
        ssh = self._client_factory(host, self.ssh_settings)
        try:
            await asyncio.to_thread(ssh.connect)
        except (paramiko.SSHException, OSError) as e:
            raise RemoteExecutionFailure(host, script.value, f"connect failed: {e}") from e
        try:
            logger.debug(f"Starting {script.value} on {host}")
            await self._exec(ssh, host, script, self.launch_command(script))
            await poll_until(
                lambda: self._finished(ssh, host, script), self.poll,
                f"{script.value} on {host}",
            )
            status = (await self._exec(ssh, host, script, f"cat {script.status_path}")).strip()
            tail = (await self._exec(ssh, host, script, f"tail -n 1 {LOG_PATH}")).strip()
            if status != "0":
                raise RemoteExecutionFailure(
                    host, script.value, f"exited with status {status or '?'}: {tail}",
                )
            logger.debug(f"{script.value} on {host} finished: {tail}")
            return tail
        finally:
            ssh.close()

    async def _finished(self, ssh: SSHClient, host: str, script: Script) -> bool | None:
        output = await self._exec(
            ssh, host, script, f"ps -ef | grep {script.value} | grep -v grep | wc -l",
        )
        try:
            count = int(output.strip())
        except ValueError:
            raise RemoteExecutionFailure(
                host, script.value, f"unexpected process count: {output.strip()!r}",
            ) from None
        return True if count == 0 else None

    async def _exec(self, ssh: SSHClient, host: str, script: Script, command: str) -> str:
        try:
            exit_code, output = await asyncio.to_thread(ssh.run, command)
        except (paramiko.SSHException, OSError) as e:
            raise RemoteExecutionFailure(host, script.value, str(e)) from e
        if exit_code != 0:
            raise RemoteExecutionFailure(
                host, script.value, f"`{command}` exited {exit_code}: {output.strip()}",
            )
        return output
