from __future__ import annotations

import argparse

import pytest

from lockbox import cli
from lockbox.errors import LockboxError


@pytest.fixture(autouse=True)
def password(monkeypatch):
    monkeypatch.setenv("LOCKBOX_PASSWORD", "secret123")


def args(**kwargs) -> argparse.Namespace:
    kwargs.setdefault("name", "primary")
    return argparse.Namespace(**kwargs)


def test_format_size():
    assert cli.format_size(512) == "512B"
    assert cli.format_size(5 * 1024 ** 3) == "5.0G"


def test_read_password_confirms_on_terminal(monkeypatch):
    monkeypatch.delenv("LOCKBOX_PASSWORD")
    answers = iter(["one", "two"])
    monkeypatch.setattr(cli, "getpass", lambda prompt: next(answers))

    with pytest.raises(LockboxError):
        cli.read_password(confirm=True)


def test_create_mount_status_unmount(lockbox, capsys):
    assert cli.cmd_create(lockbox, args(size=0.05)) == 0
    assert cli.cmd_mount(lockbox, args()) == 0
    assert cli.cmd_status(lockbox, args()) == 0

    out = capsys.readouterr().out
    assert "created successfully" in out
    assert "mounted" in out
    assert "Mounted without inactivity protection" in out

    assert cli.cmd_unmount(lockbox, args()) == 0
    assert not lockbox.get_status("primary")["mounted"]


def test_start_detached_and_stop(lockbox, capsys):
    cli.cmd_create(lockbox, args(size=0.05))
    cli.cmd_mount(lockbox, args())

    assert cli.cmd_start(lockbox, args(detach=True, wait=False)) == 0
    assert cli.cmd_stop(lockbox, args()) == 0

    out = capsys.readouterr().out
    assert "webapp started successfully" in out
    assert "webapp stopped successfully" in out


def test_status_of_missing_container(lockbox, capsys):
    assert cli.cmd_status(lockbox, args()) == 1
    assert "not found" in capsys.readouterr().err


def test_verify(lockbox, monkeypatch):
    cli.cmd_create(lockbox, args(size=0.05))
    assert cli.cmd_verify(lockbox, args()) == 0

    monkeypatch.setenv("LOCKBOX_PASSWORD", "wrong")
    assert cli.cmd_verify(lockbox, args()) == 1


def test_list_and_delete(lockbox, capsys):
    cli.cmd_create(lockbox, args(size=0.05))
    assert cli.cmd_list(lockbox, args()) == 0
    assert "primary  (51.0M)" in capsys.readouterr().out

    assert cli.cmd_delete(lockbox, args(yes=True)) == 0
    assert lockbox.list_containers() == []


def test_delete_asks_for_confirmation(lockbox, monkeypatch):
    cli.cmd_create(lockbox, args(size=0.05))
    monkeypatch.setattr("builtins.input", lambda prompt: "n")

    assert cli.cmd_delete(lockbox, args(yes=False)) == 1
    assert lockbox.store.exists("primary")
