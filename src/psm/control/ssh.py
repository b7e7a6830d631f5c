import time

import paramiko
from loguru import logger

from psm.config import SshSettings


class SSHClient:
    def __init__(self, host: str, key_path: str, username: str = "ubuntu", port: int = 22):
        self.host = host
        self.key_path = key_path
        self.username = username
        self.port = port
        self._client: paramiko.SSHClient | None = None

    @classmethod
    def from_settings(cls, host: str, settings: SshSettings) -> "SSHClient":
        return cls(host=host, key_path=settings.key_path, username=settings.user, port=settings.port)

    def connect(self, retries: int = 1, delay: float = 10) -> None:
        for attempt in range(retries):
            try:
                self._client = paramiko.SSHClient()
                self._client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
                self._client.connect(
                    hostname=self.host, port=self.port, username=self.username,
                    key_filename=self.key_path, timeout=10,
                    banner_timeout=30,
                )
                logger.debug(f"SSH connected to {self.host}")
                return
            except Exception as e:
                logger.debug(
                    f"SSH attempt {attempt + 1}/{retries} to {self.host}: "
                    f"{type(e).__name__}: {e}"
                )
                self._client = None
                if attempt == retries - 1:
                    raise
                time.sleep(delay)

    def run(self, command: str) -> tuple[int, str]:
        if not self._client:
            raise RuntimeError("Not connected. Call connect() first.")
        logger.debug(f"[{self.host}] $ {command}")
        _, stdout, stderr = self._client.exec_command(command)
        output = stdout.read().decode()
        err = stderr.read().decode()
        exit_code = stdout.channel.recv_exit_status()
        if err:
            output = output + err
        logger.debug(f"[{self.host}]   exit={exit_code}" + (f"\n  {output.strip()}" if output.strip() else ""))
        return exit_code, output

    def upload_file(self, local_path: str, remote_path: str) -> None:
        if not self._client:
            raise RuntimeError("Not connected. Call connect() first.")
        sftp = self._client.open_sftp()
        try:
            sftp.put(local_path, remote_path)
        finally:
            sftp.close()

    def download_file(self, remote_path: str, local_path: str) -> None:
        if not self._client:
            raise RuntimeError("Not connected. Call connect() first.")
        sftp = self._client.open_sftp()
        try:
            sftp.get(remote_path, local_path)
        finally:
            sftp.close()

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> "SSHClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
