from unittest.mock import MagicMock

import paramiko
import pytest

from psm.config import SshSettings
from psm.control.saves import SaveSync, seed_scripts
from psm.control.scripts import Script
from psm.errors import TransferFailure


def make_saves(tmp_path, ssh):
    return SaveSync(
        tmp_path / "storage", "/home/ubuntu/psm", SshSettings(),
        client_factory=MagicMock(return_value=ssh),
    )


def make_mock_ssh():
    ssh = MagicMock()
    ssh.run.return_value = (0, "")
    return ssh


def test_paths(tmp_path):
    saves = make_saves(tmp_path, make_mock_ssh())
    assert saves.local_path("saves", "a.tar.gz") == tmp_path / "storage" / "saves" / "a.tar.gz"
    assert saves.remote_path("scripts", "start_server.sh") == "/home/ubuntu/psm/scripts/start_server.sh"


def test_seed_scripts_copies_bundled_files(tmp_path):
    written = seed_scripts(tmp_path)

    assert sorted(p.name for p in written) == sorted(s.value for s in Script)
    backup = (tmp_path / "scripts" / "backup_save.sh").read_text()
    assert backup.startswith("#!/bin/sh")


def test_seed_scripts_keeps_edited_files(tmp_path):
    seed_scripts(tmp_path)
    edited = tmp_path / "scripts" / "start_server.sh"
    edited.write_text("echo custom\n")

    assert seed_scripts(tmp_path) == []
    assert edited.read_text() == "echo custom\n"
    seed_scripts(tmp_path, overwrite=True)
    assert edited.read_text() != "echo custom\n"


@pytest.mark.asyncio
async def test_upload_scripts(tmp_path):
    ssh = make_mock_ssh()
    saves = make_saves(tmp_path, ssh)
    seed_scripts(saves.local_dir)

    await saves.upload_scripts("1.2.3.4")

    ssh.run.assert_called_once_with("mkdir -p /home/ubuntu/psm/scripts")
    uploaded = {c.args[1] for c in ssh.upload_file.call_args_list}
    assert uploaded == {f"/home/ubuntu/psm/scripts/{s.value}" for s in Script}
    ssh.close.assert_called_once()


@pytest.mark.asyncio
async def test_upload_scripts_missing_locally(tmp_path):
    ssh = make_mock_ssh()
    saves = make_saves(tmp_path, ssh)

    with pytest.raises(TransferFailure) as exc:
        await saves.upload_scripts("1.2.3.4")

    assert "install_server.sh" in exc.value.path
    ssh.upload_file.assert_not_called()
    ssh.close.assert_called_once()


@pytest.mark.asyncio
async def test_upload_save(tmp_path):
    ssh = make_mock_ssh()
    saves = make_saves(tmp_path, ssh)
    local = saves.local_path("saves", "world.tar.gz")
    local.parent.mkdir(parents=True)
    local.write_bytes(b"data")

    await saves.upload_save("world.tar.gz", "1.2.3.4")

    ssh.upload_file.assert_called_once_with(str(local), "/home/ubuntu/psm/saves/world.tar.gz")


@pytest.mark.asyncio
async def test_download_save_creates_local_dir(tmp_path):
    ssh = make_mock_ssh()
    saves = make_saves(tmp_path, ssh)

    await saves.download_save("world.tar.gz", "1.2.3.4")

    local = saves.local_path("saves", "world.tar.gz")
    assert local.parent.is_dir()
    ssh.download_file.assert_called_once_with("/home/ubuntu/psm/saves/world.tar.gz", str(local))
    ssh.run.assert_not_called()


@pytest.mark.asyncio
async def test_download_failure_is_transfer_failure(tmp_path):
    ssh = make_mock_ssh()
    ssh.download_file.side_effect = FileNotFoundError("No such file")
    saves = make_saves(tmp_path, ssh)

    with pytest.raises(TransferFailure) as exc:
        await saves.download_save("world.tar.gz", "1.2.3.4")

    assert exc.value.host == "1.2.3.4"
    assert exc.value.path == "/home/ubuntu/psm/saves/world.tar.gz"
    ssh.close.assert_called_once()


@pytest.mark.asyncio
async def test_connect_failure_is_transfer_failure(tmp_path):
    ssh = make_mock_ssh()
    ssh.connect.side_effect = paramiko.SSHException("auth failed")
    saves = make_saves(tmp_path, ssh)

    with pytest.raises(TransferFailure):
        await saves.download_save("world.tar.gz", "1.2.3.4")


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["", "../escape.tar.gz", "a/b", ".."])
async def test_rejects_path_like_save_names(tmp_path, name):
    ssh = make_mock_ssh()
    saves = make_saves(tmp_path, ssh)

    with pytest.raises(TransferFailure):
        await saves.download_save(name, "1.2.3.4")
    ssh.connect.assert_not_called()
