"""
Pytest configuration and fixtures for Ansiblematic tests.
"""

import logging

import pytest

import ansiblematic
from ansiblematic import Account, AccountCreationError, BootstrapConfig, HostSystem

TEST_KEY = b"ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIHk0ntr0ll3rK3yF0rT3sts controller@ansible"
REPO_URL = "https://raw.githubusercontent.com/someone/bootstrap/prod"


class FakeHost(HostSystem):
    """HostSystem that records what it was asked to do instead of touching the box."""

    def __init__(self, tmp_path, euid=0, on_path=("python3", "apt-get"), accounts=None,
                 payload=TEST_KEY + b"\n", fetch_error=None, sudoers_ok=True,
                 run_rc=None, install_provides=True, create_fails=False,
                 route=None, addrs=None):
        self.tmp_path = tmp_path
        self._euid = euid
        self.on_path = set(on_path)
        self.accounts = dict(accounts or {})
        self.payload = payload
        self.fetch_error = fetch_error
        self.sudoers_ok = sudoers_ok
        self.run_rc = dict(run_rc or {})
        self.install_provides = install_provides
        self.create_fails = create_fails
        self.route = route
        self.addrs = addrs

        self.calls = []
        self.chowns = []
        self.validated = []
        self.fetched = []

    @property
    def mutating_calls(self):
        return [c for c in self.calls if c[0] in ("useradd", "passwd", "apt-get", "dnf", "yum")]

    def euid(self):
        return self._euid

    def which(self, name):
        return f"/usr/bin/{name}" if name in self.on_path else None

    def run(self, cmdkey, args=None):
        args = list(args or [])
        self.calls.append((cmdkey, args))
        rc = self.run_rc.get(cmdkey, 0)
        if rc == 0 and "install" in args and self.install_provides:
            self.on_path.add("python3")
        return rc, "", "boom" if rc else ""

    def lookup_account(self, name):
        return self.accounts.get(name)

    def create_account(self, name, shell):
        self.calls.append(("useradd", ["--create-home", "--shell", shell, name]))
        if self.create_fails:
            raise AccountCreationError(f"useradd failed for {name} (rc=9): username already in use")
        home = self.tmp_path / "home" / name
        home.mkdir(parents=True)
        self.accounts[name] = Account(name=name, uid=1001, gid=1001, home=str(home), shell=shell)

    def lock_password(self, name):
        self.calls.append(("passwd", ["--lock", name]))

    def chown(self, path, uid, gid):
        self.chowns.append((str(path), uid, gid))

    def validate_sudoers(self, path):
        with open(path, "rb") as f:
            self.validated.append(f.read())
        if self.sudoers_ok:
            return True, ""
        return False, f'{path}: syntax error near line 1 <<<'

    def fetch_url(self, url, dest, timeout):
        self.fetched.append((url, dest, timeout))
        if self.fetch_error is not None:
            raise self.fetch_error
        with open(dest, "wb") as f:
            f.write(self.payload)
        return len(self.payload)

    def route_source_address(self):
        if isinstance(self.route, Exception):
            raise self.route
        return self.route

    def host_addresses(self):
        return self.addrs


@pytest.fixture(autouse=True)
def reset_logger():
    """Drop handlers fncMain attached so they don't outlive the captured stderr."""
    yield
    for h in list(ansiblematic.log.handlers):
        ansiblematic.log.removeHandler(h)
        h.close()
    ansiblematic.log.setLevel(logging.NOTSET)
    ansiblematic.fncReleaseLock()


@pytest.fixture
def cfg(tmp_path):
    return BootstrapConfig(
        account="ansible",
        repo_raw_base_url=REPO_URL,
        public_key_filename="key",
        sudoers_dir=str(tmp_path / "sudoers.d"),
        lock_path=str(tmp_path / "ansiblematic.lock"),
    )


@pytest.fixture
def host(tmp_path):
    return FakeHost(tmp_path)


@pytest.fixture
def account(tmp_path):
    home = tmp_path / "home" / "ansible"
    home.mkdir(parents=True)
    return Account(name="ansible", uid=1001, gid=1001, home=str(home), shell="/bin/bash")


@pytest.fixture
def env(tmp_path, monkeypatch):
    """Point fncMain's config at tmp_path via the environment."""
    for name in ("ANSIBLE_USER", "PUBLIC_KEY_FILENAME", "PYTHON_COMMAND", "PYTHON_PACKAGE",
                 "FETCH_TIMEOUT", "DEFAULT_SHELL", "ANSIBLEMATIC_LOG_FILE", "NO_COLOR", "FORCE_COLOR"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("REPO_RAW_BASE_URL", REPO_URL)
    monkeypatch.setenv("ANSIBLEMATIC_SUDOERS_DIR", str(tmp_path / "sudoers.d"))
    monkeypatch.setenv("ANSIBLEMATIC_LOCK", str(tmp_path / "ansiblematic.lock"))
    return tmp_path
