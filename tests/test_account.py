"""Tests for account provisioning."""

from unittest.mock import patch

import pytest

from ansiblematic import Account, AccountCreationError, HostSystem, fncEnsureAccount, fncParsePasswdLine
from tests.conftest import FakeHost


def test_existing_account_is_left_alone(tmp_path, cfg, account):
    host = FakeHost(tmp_path, accounts={"ansible": account})

    assert fncEnsureAccount(host, cfg) == account
    assert host.calls == []


def test_missing_account_is_created_then_locked(cfg, host):
    result = fncEnsureAccount(host, cfg)

    assert result.name == "ansible"
    assert result.home.endswith("/home/ansible")
    assert host.calls == [
        ("useradd", ["--create-home", "--shell", "/bin/bash", "ansible"]),
        ("passwd", ["--lock", "ansible"]),
    ]


def test_create_failure_propagates_without_locking(tmp_path, cfg):
    host = FakeHost(tmp_path, create_fails=True)

    with pytest.raises(AccountCreationError):
        fncEnsureAccount(host, cfg)
    assert ("passwd", ["--lock", "ansible"]) not in host.calls


def test_unresolvable_after_create_is_fatal(tmp_path, cfg):
    host = FakeHost(tmp_path)
    with patch.object(FakeHost, "lookup_account", return_value=None):
        with pytest.raises(AccountCreationError, match="cannot be resolved"):
            fncEnsureAccount(host, cfg)


def test_parse_passwd_line():
    acct = fncParsePasswdLine("ansible:x:1001:1002:Ansible:/home/ansible:/bin/bash")
    assert acct == Account(name="ansible", uid=1001, gid=1002, home="/home/ansible", shell="/bin/bash")


@pytest.mark.parametrize("line", ["", "ansible:x:1001", "ansible:x:abc:1001::/home/ansible:/bin/bash"])
def test_parse_passwd_line_rejects_junk(line):
    assert fncParsePasswdLine(line) is None


def test_host_lookup_uses_getent():
    host = HostSystem()
    line = "ansible:x:1001:1001::/home/ansible:/bin/bash"
    with patch("ansiblematic.fncRun", return_value=(0, line, "")) as run:
        acct = host.lookup_account("ansible")
    run.assert_called_once_with("getent", ["passwd", "ansible"])
    assert acct.home == "/home/ansible"

    with patch("ansiblematic.fncRun", return_value=(2, "", "")):
        assert host.lookup_account("nobody-here") is None


def test_host_create_and_lock_raise_on_failure():
    host = HostSystem()
    with patch("ansiblematic.fncRun", return_value=(9, "", "useradd: user 'ansible' already exists")):
        with pytest.raises(AccountCreationError, match="already exists"):
            host.create_account("ansible", "/bin/bash")
        with pytest.raises(AccountCreationError):
            host.lock_password("ansible")


@pytest.mark.parametrize("home", ["", "home/ansible"])
def test_existing_account_without_absolute_home_is_fatal(tmp_path, cfg, home):
    broken = Account(name="ansible", uid=1001, gid=1001, home=home, shell="/bin/bash")
    host = FakeHost(tmp_path, accounts={"ansible": broken})

    with pytest.raises(AccountCreationError, match="no usable home directory"):
        fncEnsureAccount(host, cfg)


def test_created_account_without_home_is_fatal_before_locking(tmp_path, cfg):
    host = FakeHost(tmp_path)
    blank = Account(name="ansible", uid=1001, gid=1001, home="", shell="/bin/bash")
    with patch.object(FakeHost, "lookup_account", side_effect=[None, blank]):
        with pytest.raises(AccountCreationError, match="no usable home directory"):
            fncEnsureAccount(host, cfg)
    assert ("passwd", ["--lock", "ansible"]) not in host.calls
