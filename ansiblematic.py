#!/usr/bin/env python3
# Script: ansiblematic.py
# Developed by Dean with a bit of love and Irn Bru
#
# What this does (for my future self):
# - Make sure python3 is on the box (apt/dnf/yum, nothing fancier)
# - Create the ansible user if missing, lock its password (keys only)
# - Drop a passwordless sudoers file, visudo-checked, atomic swap
# - Pull the controller's public key from my repo and merge it into authorized_keys
# - Safe to re-run: everything is check-then-change
# - Refuses to run as-is with the placeholder repo URL (fork it, set it, then run)

# ==============================
# Imports
# ==============================

# Standard library
import argparse
import fcntl
import logging
import os
import re
import shutil
import signal
import stat
import subprocess
import sys
import tempfile
from contextlib import contextmanager, suppress
from dataclasses import dataclass
from enum import Enum
from urllib import request as _urlreq
from urllib.error import HTTPError, URLError

# Third-party
from colorama import Fore, Style

#=================#
# Global Settings #
#=================#

VERSION = "1.2.0"
MIN_PYTHON_VERSION = (3, 10)

log = logging.getLogger("ansiblematic")

#-----------------------------#
# Defaults (env-overridable)  #
#-----------------------------#
ANSIBLE_USER = "ansible"            # The control user Ansible will SSH in as
DEFAULT_SHELL = "/bin/bash"

# Raw base URL of YOUR fork/branch, e.g. https://raw.githubusercontent.com/you/repo/prod
# NOTE: left as the placeholder on purpose; the preflight refuses to run with it.
PLACEHOLDER_REPO_URL = "https://raw.githubusercontent.com/YOUR_GITHUB_USERNAME/YOUR_REPO_NAME/main"
REPO_RAW_BASE_URL = PLACEHOLDER_REPO_URL
PUBLIC_KEY_FILENAME = "key"         # Public key file inside that repo

PYTHON_COMMAND = "python3"          # What Ansible needs on the managed node
PYTHON_PACKAGE = "python3"
FETCH_TIMEOUT = 30                  # Seconds; no retries

SUDOERS_DIR = "/etc/sudoers.d"
SUDOERS_MODE = 0o440                # visudo -c insists on 0440
HOME_DIR_MODE = 0o700
SSH_DIR_MODE = 0o700
AUTH_KEYS_MODE = 0o600

LOCK_PATH = "/run/ansiblematic.lock"
LOG_FILE = ""                       # Empty = stderr only

PLACEHOLDER_ADDR = "<TARGET_IP_OR_HOSTNAME>"
ROUTE_PROBE_ADDR = "1.1.1.1"

# Same rules useradd applies by default; no dots so sudo's includedir won't skip the file
USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_-]*$")
USERNAME_MAXLEN = 32
IPV4_RE = re.compile(r"^[0-9]+\.[0-9]+\.[0-9]+\.[0-9]+$")

#------------------------------#
# Pinned binaries for exec     #
#------------------------------#
BIN = {
  "useradd":  "/usr/sbin/useradd",
  "passwd":   "/usr/bin/passwd",
  "visudo":   "/usr/sbin/visudo",
  "getent":   "/usr/bin/getent",
  "apt-get":  "/usr/bin/apt-get",
  "dnf":      "/usr/bin/dnf",
  "yum":      "/usr/bin/yum",
  "ip":       "/usr/sbin/ip",
  "hostname": "/usr/bin/hostname",
}

#==========#
# Errors   #
#==========#

class BootstrapError(Exception):
    """Base for anything that should stop the run. exit_code is what the process returns."""
    exit_code = 1


class PreconditionError(BootstrapError):
    exit_code = 2


class DependencyInstallError(BootstrapError):
    exit_code = 3


class AccountCreationError(BootstrapError):
    exit_code = 4


class PolicyValidationError(BootstrapError):
    exit_code = 5


class CredentialFetchError(BootstrapError):
    exit_code = 6

#==========#
# Models   #
#==========#

@dataclass(frozen=True)
class BootstrapConfig:
    """Everything the run needs, built once in fncMain and handed around."""
    account: str = ANSIBLE_USER
    repo_raw_base_url: str = REPO_RAW_BASE_URL
    public_key_filename: str = PUBLIC_KEY_FILENAME
    python_command: str = PYTHON_COMMAND
    python_package: str = PYTHON_PACKAGE
    shell: str = DEFAULT_SHELL
    fetch_timeout: int = FETCH_TIMEOUT
    sudoers_dir: str = SUDOERS_DIR
    lock_path: str = LOCK_PATH
    log_file: str = LOG_FILE

    @property
    def key_url(self) -> str:
        return f"{self.repo_raw_base_url.rstrip('/')}/{self.public_key_filename.lstrip('/')}"

    @property
    def sudoers_path(self) -> str:
        return os.path.join(self.sudoers_dir, self.account)


@dataclass(frozen=True)
class Account:
    name: str
    uid: int
    gid: int
    home: str
    shell: str


class PackageManager(Enum):
    APT = "apt-get"
    DNF = "dnf"
    YUM = "yum"
    UNSUPPORTED = ""


# Probe order matters: dnf boxes often still ship a yum shim
PACKAGE_MANAGER_PRIORITY = (PackageManager.APT, PackageManager.DNF, PackageManager.YUM)

# Per-manager argument lists; the package name is appended to the install step
INSTALL_STEPS = {
    PackageManager.APT: (["update", "-y"], ["install", "-y"]),
    PackageManager.DNF: (["install", "-y"],),
    PackageManager.YUM: (["install", "-y"],),
}

#===================#
# Utility / Logging #
#===================#

_COLOR_MONO = False

def fncSetColorMode(monochrome: bool):
    """Call once after parsing args to disable colours when needed."""
    global _COLOR_MONO
    _COLOR_MONO = bool(monochrome)

def fncWantColor(stream=None):
    """Decide if we should output ANSI colours."""
    stream = stream or sys.stdout
    if _COLOR_MONO:
        return False
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    try:
        return stream.isatty()
    except Exception:
        return False

# Function: fncPrintMessage
# Purpose : Human-friendly colored console messages.
# Notes   : Used for operator-facing prints (not logs). Plain text when colour is off.
#           warning/error go to stderr so stdout stays the completion report.
def fncPrintMessage(message, msg_type="info"):
    styles = {
        "info":    (Fore.CYAN,  "{~} "),
        "warning": (Fore.RED,   "{!} "),
        "success": (Fore.GREEN, "{=]} "),
        "error":   (Fore.RED,   "{!} "),
    }
    colour, tag = styles.get(msg_type, (Fore.WHITE, ""))
    stream = sys.stderr if msg_type in ("warning", "error") else sys.stdout
    if fncWantColor(stream):
        print(f"{colour}{tag}{message}{Style.RESET_ALL}", file=stream)
    else:
        print(f"{tag}{message}", file=stream)

# Function: fncSetupLogging
# Purpose : Severity-tagged logging to stderr, optionally mirrored to a file.
# Notes   : Safe to call more than once; replaces our own handlers only.
def fncSetupLogging(log_file: str = "", verbose: bool = False):
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    for h in list(log.handlers):
        log.removeHandler(h)
        h.close()
    log.setLevel(logging.DEBUG if verbose else logging.INFO)

    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(fmt)
    log.addHandler(stream)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.isdir(log_dir):
            os.makedirs(log_dir, mode=0o750)
        fh = logging.FileHandler(log_file)
        fh.setFormatter(fmt)
        log.addHandler(fh)
        log.debug("Mirroring log to %s", log_file)

# Function: fncRun
# Purpose : Execute a pinned binary by logical key; capture rc/stdout/stderr.
# Notes   : Falls back to PATH lookup when the pinned path isn't there (ip/hostname move about).
def fncRun(cmdkey: str, args: list[str] | None = None, input: str | None = None) -> tuple[int, str, str]:
    exe = BIN.get(cmdkey)
    if not exe or not os.path.exists(exe):
        exe = shutil.which(cmdkey)
    if not exe:
        return 127, "", f"binary not found: {cmdkey}"
    log.debug("Running: %s %s", exe, " ".join(args or []))
    try:
        p = subprocess.run([exe] + (args or []), input=input, capture_output=True, text=True, check=False)
        return p.returncode, p.stdout.strip(), p.stderr.strip()
    except FileNotFoundError as e:
        return 127, "", str(e)

def _assert_regular_or_missing(p: str | os.PathLike, error=BootstrapError):
    try:
        st = os.lstat(p)
    except FileNotFoundError:
        return
    if not stat.S_ISREG(st.st_mode):
        raise error(f"Refusing to touch {p}: not a regular file (symlink?)")

def _read_bytes_or_none(p: str) -> bytes | None:
    try:
        with open(p, "rb") as f:
            return f.read()
    except FileNotFoundError:
        return None

# Function: fncParsePasswdLine
# Purpose : Turn a getent passwd line into an Account.
# Notes   : name:x:uid:gid:gecos:home:shell; returns None on junk.
def fncParsePasswdLine(line: str) -> Account | None:
    parts = line.strip().split(":")
    if len(parts) < 7:
        return None
    try:
        return Account(name=parts[0], uid=int(parts[2]), gid=int(parts[3]), home=parts[5], shell=parts[6])
    except ValueError:
        return None

#======================#
# Host system adapter  #
#======================#

class HostSystem:
    """
    Everything that pokes the real box (accounts, ownership, visudo, network).
    The reconciliation functions only talk to the OS through this, so the
    tests can swap in a fake.
    """

    def euid(self) -> int:
        return os.geteuid()

    def which(self, name: str) -> str | None:
        return shutil.which(name)

    def run(self, cmdkey: str, args: list[str] | None = None) -> tuple[int, str, str]:
        return fncRun(cmdkey, args)

    def lookup_account(self, name: str) -> Account | None:
        # getent rather than pwd so NSS-backed accounts resolve the same way `id` sees them
        rc, out, _ = self.run("getent", ["passwd", name])
        if rc != 0 or not out:
            return None
        return fncParsePasswdLine(out.splitlines()[0])

    def create_account(self, name: str, shell: str):
        rc, _, err = self.run("useradd", ["--create-home", "--shell", shell, name])
        if rc != 0:
            raise AccountCreationError(f"useradd failed for {name} (rc={rc}): {err}")

    def lock_password(self, name: str):
        rc, _, err = self.run("passwd", ["--lock", name])
        if rc != 0:
            raise AccountCreationError(f"passwd --lock failed for {name} (rc={rc}): {err}")

    def chown(self, path: str, uid: int, gid: int):
        os.chown(path, uid, gid)

    def validate_sudoers(self, path: str) -> tuple[bool, str]:
        rc, out, err = self.run("visudo", ["-cf", path])
        return rc == 0, (err or out)

    def fetch_url(self, url: str, dest: str, timeout: int) -> int:
        """GET url into dest. Returns bytes written; raises CredentialFetchError on any failure."""
        req = _urlreq.Request(url, headers={"User-Agent": f"ansiblematic/{VERSION}"})
        try:
            with _urlreq.urlopen(req, timeout=timeout) as resp:
                status = getattr(resp, "status", 200)
                if not 200 <= status < 300:
                    raise CredentialFetchError(f"HTTP {status} fetching {url}")
                data = resp.read()
        except HTTPError as e:
            raise CredentialFetchError(f"HTTP {e.code} fetching {url}") from e
        except URLError as e:
            raise CredentialFetchError(f"Network error fetching {url}: {e.reason}") from e
        except OSError as e:
            # timeouts and resets that slip past URLError
            raise CredentialFetchError(f"Network error fetching {url}: {e}") from e
        with open(dest, "wb") as f:
            f.write(data)
        return len(data)

    def route_source_address(self) -> str | None:
        rc, out, _ = self.run("ip", ["route", "get", ROUTE_PROBE_ADDR])
        return out if rc == 0 else None

    def host_addresses(self) -> str | None:
        rc, out, _ = self.run("hostname", ["-I"])
        return out if rc == 0 else None

#==================#
# Configuration    #
#==================#

# Single/double-quoted or bare values, trailing comments allowed
ENV_ASSIGN_RE = re.compile(r"""^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(?:'([^']*)'|"([^"]*)"|([^\s#]*))\s*(?:#.*)?$""")

# Function: fncLoadEnvFile
# Purpose : Read KEY=value pairs from an env file.
# Notes   : Blank lines and comments skipped; unparseable lines are logged and ignored.
def fncLoadEnvFile(path: str) -> dict[str, str]:
    try:
        with open(path, "r") as f:
            lines = f.read().splitlines()
    except OSError as e:
        raise PreconditionError(f"Cannot read env file {path}: {e}") from e

    values: dict[str, str] = {}
    for n, line in enumerate(lines, 1):
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        m = ENV_ASSIGN_RE.match(line)
        if not m:
            log.warning("Ignoring unparseable line %d in %s", n, path)
            continue
        values[m.group(1)] = m.group(2) or m.group(3) or m.group(4) or ""
    return values

def _env_str(env: dict, name: str, default: str) -> str:
    v = env.get(name)
    return (v.strip() if v is not None else default)

def _env_int(env: dict, name: str, default: int) -> int:
    v = env.get(name)
    if v is None or not v.strip():
        return default
    try:
        return int(v.strip())
    except ValueError:
        raise PreconditionError(f"{name} must be an integer, got {v!r}") from None

def fncParseArgs(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ansiblematic",
        description="Bootstrap this host for Ansible: user, sudo, SSH key, python3.",
    )
    parser.add_argument("--user", help=f"Account to create (default: {ANSIBLE_USER})")
    parser.add_argument("--repo-url", help="Raw base URL of your fork/branch")
    parser.add_argument("--key-file", help=f"Public key filename in that repo (default: {PUBLIC_KEY_FILENAME})")
    parser.add_argument("--python", help=f"Interpreter Ansible needs (default: {PYTHON_COMMAND})")
    parser.add_argument("--timeout", type=int, help=f"Key download timeout in seconds (default: {FETCH_TIMEOUT})")
    parser.add_argument("--log-file", help="Also write the log here")
    parser.add_argument("--env-file", help="Read settings from a KEY=value file")
    parser.add_argument("--blackandwhite", action="store_true", help="No colours")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    return parser.parse_args(argv)

# Function: fncBuildConfig
# Purpose : Layer defaults < environment < env file < CLI flags into one BootstrapConfig.
# Notes   : Pure; pass environ for tests. Nothing is validated here (see fncValidateConfig).
def fncBuildConfig(args: argparse.Namespace, environ: dict | None = None) -> BootstrapConfig:
    env = dict(os.environ if environ is None else environ)
    if getattr(args, "env_file", None):
        env.update(fncLoadEnvFile(args.env_file))

    account = _env_str(env, "ANSIBLE_USER", ANSIBLE_USER)
    repo_url = _env_str(env, "REPO_RAW_BASE_URL", REPO_RAW_BASE_URL)
    key_file = _env_str(env, "PUBLIC_KEY_FILENAME", PUBLIC_KEY_FILENAME)
    python_cmd = _env_str(env, "PYTHON_COMMAND", PYTHON_COMMAND)
    timeout = _env_int(env, "FETCH_TIMEOUT", FETCH_TIMEOUT)
    log_file = _env_str(env, "ANSIBLEMATIC_LOG_FILE", LOG_FILE)

    if args.user is not None:
        account = args.user.strip()
    if args.repo_url is not None:
        repo_url = args.repo_url.strip()
    if args.key_file is not None:
        key_file = args.key_file.strip()
    if args.python is not None:
        python_cmd = args.python.strip()
    if args.timeout is not None:
        timeout = args.timeout
    if args.log_file is not None:
        log_file = args.log_file.strip()

    return BootstrapConfig(
        account=account,
        repo_raw_base_url=repo_url,
        public_key_filename=key_file,
        python_command=python_cmd,
        python_package=_env_str(env, "PYTHON_PACKAGE", PYTHON_PACKAGE),
        shell=_env_str(env, "DEFAULT_SHELL", DEFAULT_SHELL),
        fetch_timeout=timeout,
        sudoers_dir=_env_str(env, "ANSIBLEMATIC_SUDOERS_DIR", SUDOERS_DIR),
        lock_path=_env_str(env, "ANSIBLEMATIC_LOCK", LOCK_PATH),
        log_file=log_file,
    )

#=============#
# Preflight   #
#=============#

# Function: fncAdminCheck
# Purpose : Ensure the process runs as root.
# Notes   : Read-only; raises before anything is touched.
def fncAdminCheck(host: HostSystem):
    if host.euid() != 0:
        raise PreconditionError("This script must be run as root or with sudo.")

def fncCheckPyVersion():
    if sys.version_info < MIN_PYTHON_VERSION:
        raise PreconditionError(
            f"This script requires Python {'.'.join(map(str, MIN_PYTHON_VERSION))} or higher.")

# Function: fncValidateConfig
# Purpose : Refuse to run unconfigured or with nonsense settings.
# Notes   : The placeholder URL check is the important one: stock values would trust someone else's key.
def fncValidateConfig(cfg: BootstrapConfig):
    if cfg.repo_raw_base_url.rstrip("/") == PLACEHOLDER_REPO_URL:
        bar = "!" * 78
        log.warning(bar)
        log.warning("!!! The REPO_RAW_BASE_URL is still the placeholder URL.")
        log.warning("!!! Set it to your fork/branch (env, --env-file or --repo-url) before running.")
        log.warning(bar)
        raise PreconditionError("REPO_RAW_BASE_URL has not been configured.")

    for label, value in (("account name", cfg.account),
                         ("REPO_RAW_BASE_URL", cfg.repo_raw_base_url),
                         ("PUBLIC_KEY_FILENAME", cfg.public_key_filename),
                         ("python command", cfg.python_command)):
        if not value:
            raise PreconditionError(f"Configuration value '{label}' is empty.")

    if not cfg.repo_raw_base_url.startswith(("https://", "http://")):
        raise PreconditionError(f"REPO_RAW_BASE_URL must be an http(s) URL: {cfg.repo_raw_base_url}")
    if len(cfg.account) > USERNAME_MAXLEN or not USERNAME_RE.match(cfg.account):
        raise PreconditionError(f"'{cfg.account}' is not a valid Unix username.")
    if cfg.fetch_timeout <= 0:
        raise PreconditionError("FETCH_TIMEOUT must be positive.")

#===========#
# Locking   #
#===========#

# Lockfile so two runs don't stampede each other
_LOCK_FH = None

def fncAcquireLock(path: str):
    """Acquire an exclusive lock to prevent concurrent runs."""
    global _LOCK_FH
    try:
        fh = open(path, "w")
        os.chmod(path, 0o600)
    except OSError as e:
        raise PreconditionError(f"Failed to open lock file ({path}): {e}") from e
    try:
        fcntl.lockf(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        fh.close()
        raise PreconditionError(f"Another ansiblematic run holds {path}; refusing to race it.")
    _LOCK_FH = fh
    log.debug("Acquired lock: %s", path)

def fncReleaseLock():
    global _LOCK_FH
    if _LOCK_FH is not None:
        _LOCK_FH.close()
        _LOCK_FH = None

#=========================#
# Interruption handling   #
#=========================#

def _fncSignalExit(signum, frame):
    log.error("Interrupted by %s; cleaning up.", signal.Signals(signum).name)
    sys.exit(128 + signum)

# Function: fncInstallSignalHandlers
# Purpose : Turn HUP/TERM/QUIT into SystemExit so finally blocks (temp files) still run.
# Notes   : SIGINT already raises KeyboardInterrupt. Returns the old handlers for restoring.
def fncInstallSignalHandlers() -> dict:
    previous = {}
    for sig in (signal.SIGHUP, signal.SIGTERM, signal.SIGQUIT):
        previous[sig] = signal.signal(sig, _fncSignalExit)
    return previous

def fncRestoreSignalHandlers(previous: dict):
    for sig, handler in previous.items():
        signal.signal(sig, handler)

#=====================#
# Runtime (python3)   #
#=====================#

# Function: fncDetectPackageManager
# Purpose : First of apt-get/dnf/yum found on PATH.
# Notes   : UNSUPPORTED when none; we don't try anything cleverer.
def fncDetectPackageManager(host: HostSystem) -> PackageManager:
    for pm in PACKAGE_MANAGER_PRIORITY:
        if host.which(pm.value):
            return pm
    return PackageManager.UNSUPPORTED

def fncInstallPackage(host: HostSystem, pm: PackageManager, package: str):
    steps = INSTALL_STEPS.get(pm)
    if steps is None:
        raise DependencyInstallError(f"No install procedure for {pm.name}.")
    last = len(steps) - 1
    for i, step in enumerate(steps):
        args = list(step) + ([package] if i == last else [])
        log.info("Running %s %s", pm.value, " ".join(args))
        rc, _, err = host.run(pm.value, args)
        if rc != 0:
            raise DependencyInstallError(f"{pm.value} {' '.join(args)} failed (rc={rc}): {err}")

# Function: fncEnsureRuntime
# Purpose : Make sure the interpreter Ansible needs is resolvable; install it if not.
# Notes   : Installed-but-still-missing is a hard error, not a shrug.
def fncEnsureRuntime(host: HostSystem, cfg: BootstrapConfig):
    log.info("Checking for %s...", cfg.python_command)
    found = host.which(cfg.python_command)
    if found:
        log.info("%s found: %s", cfg.python_command, found)
        return

    log.warning("%s not found. Attempting installation...", cfg.python_command)
    pm = fncDetectPackageManager(host)
    if pm is PackageManager.UNSUPPORTED:
        raise DependencyInstallError(
            f"Could not detect apt, dnf, or yum. Please install {cfg.python_package} manually.")

    log.info("Using package manager: %s", pm.value)
    fncInstallPackage(host, pm, cfg.python_package)

    found = host.which(cfg.python_command)
    if not found:
        raise DependencyInstallError(
            f"{cfg.python_package} installed via {pm.value} but {cfg.python_command} still isn't on PATH.")
    log.info("%s installed successfully: %s", cfg.python_command, found)

#===========#
# Account   #
#===========#

# ~/.ssh is built from the passwd home field; a blank or relative one would land under the cwd
def _assert_usable_home(account: Account):
    if not account.home or not os.path.isabs(account.home):
        raise AccountCreationError(
            f"User {account.name} has no usable home directory in passwd: {account.home!r}"
        )

# Function: fncEnsureAccount
# Purpose : Create the control user if missing and lock its password.
# Notes   : Existing user = previous run; left completely alone.
def fncEnsureAccount(host: HostSystem, cfg: BootstrapConfig) -> Account:
    log.info("Checking for user: %s...", cfg.account)
    existing = host.lookup_account(cfg.account)
    if existing is not None:
        log.info("User %s already exists (home %s). Skipping creation.", cfg.account, existing.home)
        _assert_usable_home(existing)
        return existing

    log.info("Creating user %s...", cfg.account)
    host.create_account(cfg.account, cfg.shell)
    account = host.lookup_account(cfg.account)
    if account is None:
        raise AccountCreationError(f"useradd reported success but {cfg.account} cannot be resolved.")
    _assert_usable_home(account)
    log.info("User %s created with home directory %s.", cfg.account, account.home)

    # No password exists yet, but lock it so nobody can set one and log in with it later
    host.lock_password(cfg.account)
    log.info("Password authentication locked for %s.", cfg.account)
    return account

#===========#
# Sudoers   #
#===========#

def fncRenderSudoers(user: str) -> str:
    return f"{user} ALL=(ALL) NOPASSWD: ALL\n"

# Function: fncEnsureSudoers
# Purpose : Ensure /etc/sudoers.d/<user> grants passwordless sudo.
# Notes   : Temp file sits beside the target (dot-prefixed, sudo ignores it), is visudo-checked,
#           then os.replace'd. Identical target = no-op. Returns True when the file changed.
def fncEnsureSudoers(host: HostSystem, cfg: BootstrapConfig) -> bool:
    log.info("Configuring passwordless sudo for %s...", cfg.account)
    path = cfg.sudoers_path
    expected = fncRenderSudoers(cfg.account).encode()

    os.makedirs(cfg.sudoers_dir, mode=0o750, exist_ok=True)
    _assert_regular_or_missing(path, PolicyValidationError)

    fd, tmp = tempfile.mkstemp(prefix=".ansiblematic-", dir=cfg.sudoers_dir)
    committed = False
    try:
        try:
            os.write(fd, expected)
            os.fsync(fd)
        finally:
            os.close(fd)
        os.chmod(tmp, SUDOERS_MODE)

        ok, detail = host.validate_sudoers(tmp)
        if not ok:
            log.error("Sudoers syntax check failed for generated content:")
            log.error("%s", expected.decode().rstrip("\n"))
            if detail:
                log.error("visudo: %s", detail)
            raise PolicyValidationError("Aborting due to invalid sudoers configuration.")
        log.info("Sudoers syntax check passed.")

        if _read_bytes_or_none(path) == expected:
            log.info("Sudoers file %s already exists and is up-to-date.", path)
            return False

        _assert_regular_or_missing(path, PolicyValidationError)
        os.replace(tmp, path)
        committed = True
        log.info("Sudoers file created/updated at %s.", path)
        return True
    finally:
        if not committed:
            with suppress(FileNotFoundError):
                os.remove(tmp)

#============#
# SSH keys   #
#============#

# Function: fncEnsureSshDir
# Purpose : ~/.ssh (0700) and authorized_keys (0600), both owned by the account.
# Notes   : Runs before any content check so perms are right even on a no-op run.
def fncEnsureSshDir(host: HostSystem, account: Account) -> tuple[str, str]:
    ssh_dir = os.path.join(account.home, ".ssh")
    auth_keys = os.path.join(ssh_dir, "authorized_keys")

    # Account can exist without its home (useradd without -m); root would otherwise own it
    if not os.path.isdir(account.home):
        log.warning("Home directory %s for %s is missing. Creating it.", account.home, account.name)
        os.makedirs(account.home, mode=HOME_DIR_MODE)
        os.chmod(account.home, HOME_DIR_MODE)
        host.chown(account.home, account.uid, account.gid)

    log.info("Ensuring SSH directory exists: %s", ssh_dir)
    os.makedirs(ssh_dir, exist_ok=True)
    os.chmod(ssh_dir, SSH_DIR_MODE)
    host.chown(ssh_dir, account.uid, account.gid)

    log.info("Ensuring authorized_keys file exists with correct permissions: %s", auth_keys)
    _assert_regular_or_missing(auth_keys, CredentialFetchError)
    with open(auth_keys, "ab"):
        pass
    os.chmod(auth_keys, AUTH_KEYS_MODE)
    host.chown(auth_keys, account.uid, account.gid)
    return ssh_dir, auth_keys

# Function: fncTempDownload
# Purpose : Private temp file for the key download that always goes away.
# Notes   : finally covers normal exit, exceptions, Ctrl-C and the SystemExit our signal handler raises.
@contextmanager
def fncTempDownload(prefix: str = "ssh_key."):
    fd, tmp = tempfile.mkstemp(prefix=prefix)
    os.close(fd)
    try:
        yield tmp
    finally:
        with suppress(FileNotFoundError):
            os.remove(tmp)

def fncKeyLines(payload: bytes) -> list[bytes]:
    """Non-blank lines of a downloaded key file, CRs trimmed, in order, no repeats."""
    lines: list[bytes] = []
    for line in payload.splitlines():
        line = line.rstrip(b"\r")
        if line.strip() and line not in lines:
            lines.append(line)
    return lines

# Function: fncKeysToAppend
# Purpose : Work out exactly what to append to authorized_keys.
# Notes   : b"" when every key line is already present (exact line match).
#           Adds a separating newline if the existing file doesn't end with one,
#           and always ends with exactly one newline.
def fncKeysToAppend(existing: bytes, payload: bytes) -> bytes:
    present = set(existing.splitlines())
    missing = [line for line in fncKeyLines(payload) if line not in present]
    if not missing:
        return b""
    lead = b"\n" if existing and not existing.endswith(b"\n") else b""
    return lead + b"\n".join(missing) + b"\n"

# Function: fncEnsureAuthorizedKey
# Purpose : Fetch the controller key and merge it into the account's authorized_keys.
# Notes   : Fetch failure / empty body is fatal, no retry. Returns True when the file changed.
def fncEnsureAuthorizedKey(host: HostSystem, cfg: BootstrapConfig, account: Account) -> bool:
    log.info("Setting up SSH key authentication...")
    ssh_dir, auth_keys = fncEnsureSshDir(host, account)

    with fncTempDownload() as tmp:
        log.info("Downloading public key from %s...", cfg.key_url)
        host.fetch_url(cfg.key_url, tmp, cfg.fetch_timeout)
        with open(tmp, "rb") as f:
            payload = f.read()
        log.debug("Key downloaded to temporary file: %s (%d bytes)", tmp, len(payload))

    if not fncKeyLines(payload):
        raise CredentialFetchError(
            f"Downloaded key file is empty. Check URL and file content: {cfg.key_url}")

    with open(auth_keys, "rb") as f:
        existing = f.read()

    extra = fncKeysToAppend(existing, payload)
    if not extra:
        log.info("Public key already present in %s.", auth_keys)
        return False

    if extra.startswith(b"\n"):
        log.info("Existing %s does not end with a newline. Adding one.", auth_keys)
    with open(auth_keys, "ab") as f:
        f.write(extra)
        f.flush()
        os.fsync(f.fileno())

    host.chown(ssh_dir, account.uid, account.gid)
    host.chown(auth_keys, account.uid, account.gid)
    log.info("Public key added successfully to %s.", auth_keys)
    return True

#==============#
# Completion   #
#==============#

def _first_ipv4(candidates) -> str | None:
    for c in candidates:
        if IPV4_RE.match(c):
            return c
    return None

# Function: fncDetectAddress
# Purpose : Best guess at the address the controller should SSH to.
# Notes   : ip route src first, then hostname -I. Never raises; falls back to a placeholder.
def fncDetectAddress(host: HostSystem) -> str:
    try:
        out = host.route_source_address() or ""
        tokens = out.split()
        if "src" in tokens:
            i = tokens.index("src")
            ip = _first_ipv4(tokens[i + 1:i + 2])
            if ip:
                log.info("Detected likely primary IP: %s (Verify reachability from control node)", ip)
                return ip
        log.info("Could not reliably detect primary IP via 'ip route'.")

        out = host.host_addresses() or ""
        ip = _first_ipv4(out.split()[:1])
        if ip:
            log.info("Detected IP via 'hostname -I': %s (Might have multiple; verify reachability)", ip)
            return ip
    except Exception as e:
        log.warning("Address detection failed: %s", e)
    log.info("Could not detect an IP automatically. Using placeholder.")
    return PLACEHOLDER_ADDR

def fncPrintCompletion(cfg: BootstrapConfig, addr: str):
    bar = "=" * 58
    fncPrintMessage(bar, "success")
    fncPrintMessage(f">>> Bootstrap process complete for user '{cfg.account}'!", "success")
    fncPrintMessage(">>> Target system should now be ready for Ansible management.", "success")
    fncPrintMessage(">>> Test SSH access (from your control node):", "info")
    fncPrintMessage(f"    ssh -i /path/to/your/private_key {cfg.account}@{addr}", "info")
    fncPrintMessage(bar, "success")

#=================#
# Script harness  #
#=================#

# Function: fncBootstrap
# Purpose : The whole run, in order. Each step is a precondition for the next.
# Notes   : Guards first (no side effects), then lock, then changes.
def fncBootstrap(host: HostSystem, cfg: BootstrapConfig):
    fncCheckPyVersion()
    fncAdminCheck(host)
    fncValidateConfig(cfg)
    fncAcquireLock(cfg.lock_path)
    try:
        if cfg.log_file:
            fncSetupLogging(cfg.log_file, verbose=log.level == logging.DEBUG)
        log.info("Starting Ansible target bootstrap process for user: %s", cfg.account)
        fncEnsureRuntime(host, cfg)
        account = fncEnsureAccount(host, cfg)
        fncEnsureSudoers(host, cfg)
        fncEnsureAuthorizedKey(host, cfg, account)
        log.info("SSH key setup process finished.")
        fncPrintCompletion(cfg, fncDetectAddress(host))
    finally:
        fncReleaseLock()

# Function: fncMain
# Purpose : Program entrypoint; args, logging, run, map errors to exit codes.
# Notes   : Uses umask(077) so nothing we create is briefly world-readable.
def fncMain(argv: list[str] | None = None, host: HostSystem | None = None) -> int:
    args = fncParseArgs(argv)
    fncSetColorMode(args.blackandwhite)
    fncSetupLogging(verbose=args.verbose)

    previous_handlers = fncInstallSignalHandlers()
    old_umask = os.umask(0o077)
    try:
        cfg = fncBuildConfig(args)
        fncBootstrap(host or HostSystem(), cfg)
    except KeyboardInterrupt:
        fncPrintMessage("Bye then...", "error")
        sys.exit(130)
    except BootstrapError as e:
        log.error("%s", e)
        sys.exit(e.exit_code)
    except Exception as e:
        log.exception("Unhandled exception: %s", e)
        sys.exit(1)
    finally:
        os.umask(old_umask)
        fncRestoreSignalHandlers(previous_handlers)
    return 0

if __name__ == "__main__":
    sys.exit(fncMain())
