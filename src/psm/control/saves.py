import asyncio
import shlex
from pathlib import Path

import paramiko
from loguru import logger

from psm.config import SshSettings
from psm.control.scripts import Script
from psm.control.ssh import SSHClient
from psm.errors import TransferFailure


def _check_name(name: str, host: str) -> None:
    if not name or "/" in name or "\\" in name or name in (".", ".."):
        raise TransferFailure(host, repr(name), "invalid save name")


class SaveSync:
    """Copies scripts and save artifacts between local storage and an instance.

    Local layout is `<local_dir>/{scripts,saves}/<file>`, mirrored under
    `<remote_dir>` on the host. Files are copied whole; an interrupted copy
    has to be redone from scratch.
    """

    def __init__(
        self, local_dir: Path, remote_dir: str, ssh_settings: SshSettings,
        client_factory=SSHClient.from_settings,
    ):
        self.local_dir = Path(local_dir)
        self.remote_dir = remote_dir.rstrip("/")
        self.ssh_settings = ssh_settings
        self._client_factory = client_factory

    def local_path(self, kind: str, name: str) -> Path:
        return self.local_dir / kind / name

    def remote_path(self, kind: str, name: str) -> str:
        return f"{self.remote_dir}/{kind}/{name}"

    async def upload_scripts(self, host: str) -> None:
        files = [("scripts", script.value) for script in Script]
        await asyncio.to_thread(self._transfer, host, files, True)

    async def upload_save(self, name: str, host: str) -> None:
        _check_name(name, host)
        await asyncio.to_thread(self._transfer, host, [("saves", name)], True)

    async def download_save(self, name: str, host: str) -> None:
        _check_name(name, host)
        await asyncio.to_thread(self._transfer, host, [("saves", name)], False)

    def _transfer(self, host: str, files: list[tuple[str, str]], upload: bool) -> None:
        ssh = self._client_factory(host, self.ssh_settings)
        current = ""
        try:
            ssh.connect()
            if upload:
                for kind, name in files:
                    current = str(self.local_path(kind, name))
                    if not self.local_path(kind, name).is_file():
                        raise FileNotFoundError(f"{current} does not exist")
                kinds = sorted({kind for kind, _ in files})
                dirs = " ".join(shlex.quote(f"{self.remote_dir}/{kind}") for kind in kinds)
                exit_code, output = ssh.run(f"mkdir -p {dirs}")
                if exit_code != 0:
                    raise OSError(f"mkdir failed: {output.strip()}")
            for kind, name in files:
                local = self.local_path(kind, name)
                remote = self.remote_path(kind, name)
                if upload:
                    current = str(local)
                    ssh.upload_file(str(local), remote)
                    logger.debug(f"Uploaded {local} -> {host}:{remote}")
                else:
                    current = remote
                    local.parent.mkdir(parents=True, exist_ok=True)
                    ssh.download_file(remote, str(local))
                    logger.debug(f"Downloaded {host}:{remote} -> {local}")
        except (paramiko.SSHException, OSError) as e:
            raise TransferFailure(host, current, str(e)) from e
        finally:
            ssh.close()


def seed_scripts(local_dir: Path, overwrite: bool = False) -> list[Path]:
    """Copy the bundled provisioning scripts into `<local_dir>/scripts`.

    Existing files are left alone unless `overwrite` is set.
    """
    from importlib.resources import files as pkg_files

    target_dir = Path(local_dir) / "scripts"
    target_dir.mkdir(parents=True, exist_ok=True)
    written = []
    for script in Script:
        target = target_dir / script.value
        if target.exists() and not overwrite:
            continue
        ref = pkg_files("psm.scripts").joinpath(script.value)
        target.write_text(ref.read_text(encoding="utf-8"), encoding="utf-8")
        written.append(target)
    return written
