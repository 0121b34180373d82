#!/usr/bin/env python3
# Script: usermatic.py
#
# What this does:
# - Read a batch file of "username; group1,group2" lines (one user per line)
# - Skip blanks and comments, warn about malformed lines (with line numbers)
# - Make sure every referenced group exists, plus a primary group per user
# - Create missing users, or append groups to existing ones (never removes)
# - Fix home directory ownership/permissions on every run
# - Set a random password and keep username:password in a 0600 store
# - Log every decision to /var/log/user_management.log and the console

# ==============================
# Imports
# ==============================

# Standard library
import argparse
import enum
import fcntl
import logging
import os
import re
import secrets
import stat
import string
import subprocess
import sys
from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

# Third-party
from colorama import Fore, Style

VERSION = "1.0.0"

#=================#
# Global Settings #
#=================#

#-----------------------------#
# Defaults (env-overridable)  #
#-----------------------------#
PASSWORD_STORE = "/var/secure/user_passwords.txt"
LOG_FILE = "/var/log/user_management.log"
LOCK_FILE = "/run/usermatic.lock"
HOME_ROOT = "/home"
DEFAULT_SHELL = "/bin/bash"

PASSWORD_LENGTH = 12
MIN_PASSWORD_LENGTH = 8
PASSWORD_ALPHABET = string.ascii_letters + string.digits

HOME_MODE = 0o700
SECURE_FILE_MODE = 0o600
SECURE_DIR_MODE = 0o700

USERNAME_RE = re.compile(r"[A-Za-z0-9_.-]+")
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
SEPARATOR = "-" * 61

#------------------------------#
# Exit codes                   #
#------------------------------#
EXIT_OK = 0
EXIT_NOT_ROOT = 1
EXIT_USAGE = 2
EXIT_INPUT_MISSING = 3
EXIT_LOCKED = 4
EXIT_INTERRUPTED = 130

#------------------------------#
# Pinned binaries for exec     #
#------------------------------#
BIN = {
  "id":       "/usr/bin/id",
  "getent":   "/usr/bin/getent",
  "groupadd": "/usr/sbin/groupadd",
  "useradd":  "/usr/sbin/useradd",
  "usermod":  "/usr/sbin/usermod",
  "chpasswd": "/usr/sbin/chpasswd",
  "chown":    "/usr/bin/chown",
}

#==========#
# Errors   #
#==========#

class UsermaticError(Exception):
    """Base class for everything usermatic raises on purpose."""


class ConfigError(UsermaticError):
    """Bad invocation or environment. Fatal, raised before any record runs."""

    def __init__(self, message: str, exit_code: int = EXIT_USAGE):
        super().__init__(message)
        self.exit_code = exit_code


class IdentityStoreError(UsermaticError):
    """An OS identity mutation (groupadd, useradd, chpasswd, ...) failed."""

#===========================#
# Environment Overlay Utils #
#===========================#

# Function: _env_str
# Purpose : Return stripped string from env with default fallback.
# Notes   : Blank values fall back to the default too.
def _env_str(env: Mapping[str, str], name: str, default: str) -> str:
    v = env.get(name)
    if v is None or not v.strip():
        return default
    return v.strip()

# Function: _env_int
# Purpose : Parse an integer from env with default fallback.
# Notes   : Garbage is a ConfigError rather than a silent default.
def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    v = env.get(name, "").strip()
    if not v:
        return default
    try:
        return int(v)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {v!r}", EXIT_USAGE) from None


@dataclass(frozen=True)
class Settings:
    password_store: Path = Path(PASSWORD_STORE)
    log_file: Path = Path(LOG_FILE)
    lock_file: Path = Path(LOCK_FILE)
    password_length: int = PASSWORD_LENGTH
    home_root: Path = Path(HOME_ROOT)
    shell: str = DEFAULT_SHELL

# Function: fncLoadSettings
# Purpose : Build Settings from the module defaults plus USERMATIC_* env vars.
# Notes   : Defaults to os.environ; tests pass their own mapping.
def fncLoadSettings(env: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if env is None else env
    length = _env_int(env, "USERMATIC_PASSWORD_LENGTH", PASSWORD_LENGTH)
    if length < MIN_PASSWORD_LENGTH:
        raise ConfigError(
            f"USERMATIC_PASSWORD_LENGTH must be at least {MIN_PASSWORD_LENGTH}, got {length}",
            EXIT_USAGE,
        )
    return Settings(
        password_store=Path(_env_str(env, "USERMATIC_PASSWORD_STORE", PASSWORD_STORE)),
        log_file=Path(_env_str(env, "USERMATIC_LOG_FILE", LOG_FILE)),
        lock_file=Path(_env_str(env, "USERMATIC_LOCK_FILE", LOCK_FILE)),
        password_length=length,
        home_root=Path(_env_str(env, "USERMATIC_HOME_ROOT", HOME_ROOT)),
        shell=_env_str(env, "USERMATIC_SHELL", DEFAULT_SHELL),
    )

#===================#
# Console output    #
#===================#

_COLOR_MONO = False

_LEVEL_COLORS = {
    logging.INFO: Fore.CYAN,
    logging.WARNING: Fore.YELLOW,
    logging.ERROR: Fore.RED,
}

def fncSetColorMode(monochrome: bool):
    """Call once after parsing args to disable colours when needed."""
    global _COLOR_MONO
    _COLOR_MONO = bool(monochrome)

def fncWantColor(stream=None) -> bool:
    """Decide if we should output ANSI colours on *stream* (stdout by default)."""
    stream = sys.stdout if stream is None else stream
    if _COLOR_MONO:
        return False
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    try:
        return stream.isatty()
    except (AttributeError, ValueError):
        return False

# Function: fncPrintMessage
# Purpose : Human-friendly coloured console messages.
# Notes   : Used for user-facing prints that are not audit log entries.
def fncPrintMessage(message, msg_type="info", stream=None):
    stream = sys.stdout if stream is None else stream
    styles = {
        "info":    (Fore.CYAN,  "{~} "),
        "warning": (Fore.YELLOW, "{!} "),
        "success": (Fore.GREEN, "{=]} "),
        "error":   (Fore.RED,   "{!} "),
    }
    colour, prefix = styles.get(msg_type, (Fore.WHITE, ""))
    if fncWantColor(stream):
        print(f"{colour}{prefix}{message}{Style.RESET_ALL}", file=stream)
    else:
        print(f"{prefix}{message}", file=stream)

#====================#
# Audit + cred sinks #
#====================#

def _assert_regular_or_missing(p: str | os.PathLike):
    try:
        st = os.lstat(p)
    except FileNotFoundError:
        return
    if not stat.S_ISREG(st.st_mode):
        raise UsermaticError(f"{p} is not a regular file")

# Function: fncEnsureSecureFile
# Purpose : Create a file (and missing parents) owned by us with mode 0600.
# Notes   : Never truncates; existing parent dirs are left alone (think /var/log).
def fncEnsureSecureFile(path: Path) -> None:
    path = Path(path)
    if not path.parent.exists():
        os.makedirs(path.parent, mode=SECURE_DIR_MODE, exist_ok=True)
    _assert_regular_or_missing(path)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND | os.O_NOFOLLOW, SECURE_FILE_MODE)
    os.close(fd)
    os.chmod(path, SECURE_FILE_MODE)
    os.chown(path, os.geteuid(), os.getegid())


class _AuditFormatter(logging.Formatter):
    """``YYYY-MM-DD HH:MM:SS [LEVEL] message`` with WARNING spelled WARN."""

    _TAGS = {logging.WARNING: "WARN"}

    def __init__(self, colour: bool = False):
        super().__init__("%(asctime)s [%(levelname)s] %(message)s", datefmt=TIMESTAMP_FORMAT)
        self.colour = colour

    def format(self, record: logging.LogRecord) -> str:
        record.levelname = self._TAGS.get(record.levelno, record.levelname)
        line = super().format(record)
        if self.colour:
            return f"{_LEVEL_COLORS.get(record.levelno, '')}{line}{Style.RESET_ALL}"
        return line


class LogSink:
    """Append-only audit log, mirrored to the console.

    Every entry goes through a dedicated, non-propagating logger with one
    ``FileHandler`` and one ``StreamHandler``. Both handlers flush on each
    record, so an entry is on disk before the next one is timestamped.
    """

    LEVELS = {"INFO": logging.INFO, "WARN": logging.WARNING, "ERROR": logging.ERROR}

    def __init__(self, path: Path, console=None):
        self.path = Path(path)
        self.console = sys.stdout if console is None else console
        _assert_regular_or_missing(self.path)

        self._logger = logging.getLogger(f"usermatic.audit.{self.path}")
        self._logger.setLevel(logging.INFO)
        self._logger.propagate = False
        self._drop_handlers()

        file_handler = logging.FileHandler(self.path, mode="a", encoding="utf-8")
        file_handler.setFormatter(_AuditFormatter())
        console_handler = logging.StreamHandler(self.console)
        console_handler.setFormatter(_AuditFormatter(colour=fncWantColor(self.console)))
        self._logger.addHandler(file_handler)
        self._logger.addHandler(console_handler)

    def log(self, level: str, message: str) -> None:
        self._logger.log(self.LEVELS[level], message)

    append = log

    def info(self, message: str) -> None:
        self.log("INFO", message)

    def warn(self, message: str) -> None:
        self.log("WARN", message)

    def error(self, message: str) -> None:
        self.log("ERROR", message)

    def separator(self) -> None:
        # console only, the log file stays one line per event
        print(SEPARATOR, file=self.console, flush=True)

    def close(self) -> None:
        self._drop_handlers()

    def _drop_handlers(self) -> None:
        for handler in list(self._logger.handlers):
            self._logger.removeHandler(handler)
            handler.close()


@dataclass(frozen=True)
class Credential:
    username: str
    password: str = field(repr=False)
    issued_at: datetime = field(default_factory=datetime.now)

    def store_line(self) -> str:
        return f"{self.username}:{self.password}  # {self.issued_at.strftime(TIMESTAMP_FORMAT)}\n"


class CredentialSink:
    """Write-only ``username:password`` store. Each append is fsynced."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def append(self, credential: Credential) -> None:
        _assert_regular_or_missing(self.path)
        fd = os.open(
            self.path,
            os.O_WRONLY | os.O_APPEND | os.O_CREAT | os.O_NOFOLLOW,
            SECURE_FILE_MODE,
        )
        try:
            os.write(fd, credential.store_line().encode())
            os.fsync(fd)
        finally:
            os.close(fd)

#====================#
# Record parsing     #
#====================#

@dataclass(frozen=True)
class InputRecord:
    line_number: int
    raw_text: str


@dataclass(frozen=True)
class ProvisionRequest:
    line_number: int
    username: str
    groups: tuple[str, ...] = ()


@dataclass(frozen=True)
class RecordSkip:
    """A line that will not be provisioned, and why.

    ``username`` holds the text before ';' when the line has one, so an
    invalid name can still be reported per user; it is empty otherwise.
    """

    line_number: int
    reason: str
    message: str
    level: str = "INFO"
    username: str = ""

# Function: fncParseLine
# Purpose : Turn one raw input line into a ProvisionRequest or a RecordSkip.
# Notes   : Pure text handling; splits on the first ';' only.
def fncParseLine(line_number: int, raw_text: str) -> ProvisionRequest | RecordSkip:
    line = raw_text.lstrip("\ufeff").strip()

    if not line:
        return RecordSkip(line_number, "empty", f"Line {line_number}: empty, skipped")
    if line.startswith("#"):
        return RecordSkip(line_number, "comment", f"Line {line_number}: comment, skipped")
    if ";" not in line:
        return RecordSkip(
            line_number, "missing separator",
            f"Line {line_number}: invalid format (missing ';'), skipped", level="WARN",
        )

    username_part, groups_part = line.split(";", 1)
    username = username_part.strip()
    if not USERNAME_RE.fullmatch(username):
        return RecordSkip(
            line_number, "invalid username",
            f"Line {line_number}: invalid username '{username}', skipped",
            level="WARN", username=username,
        )

    groups = tuple(g.strip() for g in groups_part.strip().split(",") if g.strip())
    return ProvisionRequest(line_number, username, groups)

# Function: fncReadRecords
# Purpose : Yield InputRecords (1-based line numbers) from the batch file.
# Notes   : utf-8-sig drops a file-level BOM; undecodable bytes fail validation later.
def fncReadRecords(path: Path) -> Iterator[InputRecord]:
    with open(path, encoding="utf-8-sig", errors="replace") as f:
        for line_number, raw in enumerate(f, start=1):
            yield InputRecord(line_number, raw.rstrip("\r\n"))

#====================#
# Identity store     #
#====================#

class IdentityStore(ABC):
    """Everything usermatic needs from the OS user/group database."""

    @abstractmethod
    def user_exists(self, username: str) -> bool: ...

    @abstractmethod
    def group_exists(self, name: str) -> bool: ...

    @abstractmethod
    def create_group(self, name: str) -> None: ...

    @abstractmethod
    def create_user(self, username: str, primary_group: str, groups: Sequence[str],
                    home: Path, shell: str) -> None: ...

    @abstractmethod
    def add_user_to_groups(self, username: str, groups: Sequence[str]) -> None: ...

    @abstractmethod
    def set_password(self, username: str, password: str) -> None: ...

    @abstractmethod
    def ensure_directory(self, path: Path) -> None: ...

    @abstractmethod
    def set_ownership(self, path: Path, user: str, group: str) -> None: ...

    @abstractmethod
    def set_permissions(self, path: Path, mode: int) -> None: ...

# Function: fncRun
# Purpose : Execute a pinned binary by logical key; capture rc/stdout/stderr.
# Notes   : Returns (returncode, stdout, stderr). stdin is never logged (passwords).
def fncRun(cmdkey: str, args: list[str] | None = None, input: str | None = None) -> tuple[int, str, str]:
    exe = BIN.get(cmdkey)
    if not exe or not os.path.exists(exe):
        return 127, "", f"binary not found: {cmdkey} -> {exe}"
    logging.debug("Running %s %s", exe, " ".join(args or []))
    try:
        p = subprocess.run([exe] + (args or []), input=input, capture_output=True, text=True, check=False)
    except OSError as e:
        return 127, "", str(e)
    logging.debug("%s exited %d", cmdkey, p.returncode)
    return p.returncode, p.stdout.strip(), p.stderr.strip()


class SystemIdentityStore(IdentityStore):
    """IdentityStore backed by the shadow-utils binaries in BIN.

    Names always follow "--" so one starting with "-" is never read as an option.
    """

    def _check(self, cmdkey: str, args: list[str], input: str | None = None) -> None:
        rc, _, err = fncRun(cmdkey, args, input=input)
        if rc != 0:
            raise IdentityStoreError(f"{cmdkey} exited {rc}: {err}" if err else f"{cmdkey} exited {rc}")

    def user_exists(self, username: str) -> bool:
        rc, _, _ = fncRun("id", ["-u", "--", username])
        return rc == 0

    def group_exists(self, name: str) -> bool:
        rc, _, _ = fncRun("getent", ["group", "--", name])
        return rc == 0

    def create_group(self, name: str) -> None:
        self._check("groupadd", ["--", name])

    def create_user(self, username, primary_group, groups, home, shell):
        args = ["-m", "-d", str(home), "-s", shell, "-g", primary_group]
        if groups:
            args += ["-G", ",".join(groups)]
        self._check("useradd", args + ["--", username])

    def add_user_to_groups(self, username, groups):
        self._check("usermod", ["-a", "-G", ",".join(groups), "--", username])

    def set_password(self, username, password):
        self._check("chpasswd", [], input=f"{username}:{password}\n")

    def ensure_directory(self, path):
        try:
            os.makedirs(path, mode=HOME_MODE, exist_ok=True)
        except OSError as e:
            raise IdentityStoreError(f"mkdir {path}: {e}") from e

    def set_ownership(self, path, user, group):
        self._check("chown", ["--", f"{user}:{group}", str(path)])

    def set_permissions(self, path, mode):
        try:
            os.chmod(path, mode)
        except OSError as e:
            raise IdentityStoreError(f"chmod {mode:o} {path}: {e}") from e

#====================#
# Reconciliation     #
#====================#

class OutcomeKind(enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    username: str
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.kind in (OutcomeKind.CREATED, OutcomeKind.UPDATED)

    @classmethod
    def failed(cls, username: str, reason: str) -> "Outcome":
        return cls(OutcomeKind.FAILED, username, reason)


class GroupState(enum.Enum):
    ALREADY_EXISTS = "already exists"
    CREATED = "created"
    FAILED = "failed"


class GroupReconciler:
    def __init__(self, store: IdentityStore, audit: LogSink):
        self.store = store
        self.audit = audit

    def ensure_group(self, name: str) -> GroupState:
        if self.store.group_exists(name):
            self.audit.info(f"Group '{name}' already exists")
            return GroupState.ALREADY_EXISTS
        try:
            self.store.create_group(name)
        except IdentityStoreError as e:
            self.audit.error(f"Failed to create group '{name}': {e}")
            return GroupState.FAILED
        self.audit.info(f"Created group '{name}'")
        return GroupState.CREATED


class UserReconciler:
    """Create or update one account so it matches a ProvisionRequest.

    Groups are ensured first (primary group = username, then the listed
    ones). A missing user is created with a home under ``home_root``; an
    existing one only ever gains memberships. Either way the home directory
    is then forced to ``username:username`` and mode 0700.

    Failures are logged here at ERROR and reported as ``Outcome.failed``.
    """

    def __init__(self, store: IdentityStore, groups: GroupReconciler, audit: LogSink,
                 home_root: Path = Path(HOME_ROOT), shell: str = DEFAULT_SHELL):
        self.store = store
        self.groups = groups
        self.audit = audit
        self.home_root = Path(home_root)
        self.shell = shell

    def home_for(self, username: str) -> Path:
        return self.home_root / username

    def reconcile(self, request: ProvisionRequest) -> Outcome:
        username = request.username

        # dict.fromkeys keeps first-seen order
        for name in dict.fromkeys((username, *request.groups)):
            if self.groups.ensure_group(name) is GroupState.FAILED:
                return Outcome.failed(username, f"group '{name}' is unavailable")

        if self.store.user_exists(username):
            outcome = self._update(request)
        else:
            outcome = self._create(request)
        if outcome.kind is OutcomeKind.FAILED:
            return outcome
        return self._secure_home(username) or outcome

    def _create(self, request: ProvisionRequest) -> Outcome:
        username = request.username
        try:
            self.store.create_user(username, username, request.groups,
                                   self.home_for(username), self.shell)
        except IdentityStoreError as e:
            self.audit.error(f"Failed to create user '{username}': {e}")
            return Outcome.failed(username, str(e))
        if request.groups:
            self.audit.info(f"Created user '{username}' with groups ({','.join(request.groups)})")
        else:
            self.audit.info(f"Created user '{username}' (no additional groups)")
        return Outcome(OutcomeKind.CREATED, username)

    def _update(self, request: ProvisionRequest) -> Outcome:
        username = request.username
        self.audit.info(f"User '{username}' already exists, updating groups")
        if request.groups:
            try:
                self.store.add_user_to_groups(username, request.groups)
            except IdentityStoreError as e:
                self.audit.error(f"Failed to add '{username}' to groups ({','.join(request.groups)}): {e}")
                return Outcome.failed(username, str(e))
            self.audit.info(f"Added '{username}' to groups ({','.join(request.groups)})")
        return Outcome(OutcomeKind.UPDATED, username)

    def _secure_home(self, username: str) -> Outcome | None:
        home = self.home_for(username)
        try:
            self.store.ensure_directory(home)
            self.store.set_ownership(home, username, username)
            self.store.set_permissions(home, HOME_MODE)
        except IdentityStoreError as e:
            self.audit.error(f"Failed to secure home directory {home} for '{username}': {e}")
            return Outcome.failed(username, str(e))
        self.audit.info(f"Home directory set with correct ownership and permissions for '{username}'")
        return None

#====================#
# Credentials        #
#====================#

# Function: fncGeneratePassword
# Purpose : Generate a random alphanumeric password.
# Notes   : secrets.choice only; random.* is not acceptable here.
def fncGeneratePassword(length: int = PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


class CredentialIssuer:
    def __init__(self, store: IdentityStore, sink: CredentialSink, audit: LogSink,
                 length: int = PASSWORD_LENGTH):
        self.store = store
        self.sink = sink
        self.audit = audit
        self.length = length

    def issue(self, username: str) -> Credential | None:
        """Set a fresh password on *username* and record it.

        Returns None (after logging an ERROR) when the password could not be
        applied or stored; nothing is appended in the first case.
        """
        password = fncGeneratePassword(self.length)
        try:
            self.store.set_password(username, password)
        except IdentityStoreError as e:
            self.audit.error(f"Failed to set password for '{username}': {e}")
            return None
        self.audit.info(f"Password assigned to user '{username}'")

        credential = Credential(username, password)
        try:
            self.sink.append(credential)
        except (OSError, UsermaticError) as e:
            self.audit.error(f"Failed to store credentials for '{username}' in {self.sink.path}: {e}")
            return None
        self.audit.info(f"Credentials stored securely in {self.sink.path}")
        return credential

#====================#
# Run controller     #
#====================#

@dataclass
class BatchSummary:
    outcomes: list[Outcome] = field(default_factory=list)

    def add(self, outcome: Outcome) -> None:
        self.outcomes.append(outcome)

    def count(self, kind: OutcomeKind) -> int:
        return sum(1 for o in self.outcomes if o.kind is kind)

    def __str__(self) -> str:
        return " ".join(f"{kind.value}={self.count(kind)}" for kind in OutcomeKind)

# Function: fncProcessRecord
# Purpose : Run one input line through parse -> reconcile -> credential.
# Notes   : Always returns an Outcome and logs it against its line number.
#           A failed record's ERROR comes from the step that failed; the
#           line-numbered outcome entry is INFO.
def fncProcessRecord(record: InputRecord, users: UserReconciler,
                     issuer: CredentialIssuer, audit: LogSink) -> Outcome:
    parsed = fncParseLine(record.line_number, record.raw_text)
    if isinstance(parsed, RecordSkip):
        audit.log(parsed.level, parsed.message)
        return Outcome(OutcomeKind.SKIPPED, parsed.username, parsed.reason)

    outcome = users.reconcile(parsed)
    if outcome.kind is not OutcomeKind.FAILED and issuer.issue(parsed.username) is None:
        outcome = Outcome.failed(parsed.username, "password could not be issued")

    if outcome.kind is OutcomeKind.FAILED:
        audit.info(f"Line {record.line_number}: failed user '{parsed.username}' ({outcome.reason})")
    else:
        audit.info(f"Line {record.line_number}: {outcome.kind.value} user '{parsed.username}'")
    return outcome

# Function: fncRunBatch
# Purpose : Process every line of the input file in order.
# Notes   : Per-record failures are logged and counted, never fatal.
def fncRunBatch(input_path: Path, store: IdentityStore, audit: LogSink,
                credentials: CredentialSink, settings: Settings) -> BatchSummary:
    groups = GroupReconciler(store, audit)
    users = UserReconciler(store, groups, audit, settings.home_root, settings.shell)
    issuer = CredentialIssuer(store, credentials, audit, settings.password_length)

    summary = BatchSummary()
    audit.info(f"Starting user import from '{input_path}'")
    for record in fncReadRecords(input_path):
        outcome = fncProcessRecord(record, users, issuer, audit)
        summary.add(outcome)
        if outcome.kind is not OutcomeKind.SKIPPED:
            audit.separator()
    audit.info(f"User import completed ({summary})")
    return summary

#=================#
# Preflight       #
#=================#

def fncIsPrivileged() -> bool:
    return os.geteuid() == 0

# Function: fncPreflight
# Purpose : Check privilege, then the input argument, then the input file.
# Notes   : Raises ConfigError carrying exit code 1, 2 or 3 respectively.
def fncPreflight(input_file: str | None) -> Path:
    if not fncIsPrivileged():
        raise ConfigError("This script must be run as root.", EXIT_NOT_ROOT)
    if not input_file:
        raise ConfigError("Usage: usermatic /path/to/user_list.txt", EXIT_USAGE)
    path = Path(input_file)
    if not path.is_file():
        raise ConfigError(f"Input file not found: {path}", EXIT_INPUT_MISSING)
    return path

# Function: fncAcquireLock
# Purpose : Take an exclusive lock so two runs never share the store/log.
# Notes   : Non-blocking; caller keeps the returned handle open for the run.
def fncAcquireLock(path: Path):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fh = open(path, "w")
    os.chmod(path, SECURE_FILE_MODE)
    try:
        fcntl.flock(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        fh.close()
        raise ConfigError(f"Another usermatic run is in progress ({path})", EXIT_LOCKED) from None
    logging.debug("Acquired lock: %s", path)
    return fh

#=================#
# Script harness  #
#=================#

def fncParseArgs(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="usermatic",
        description="Create or update Linux users and groups from a 'username; group1,group2' file",
    )
    # optional here so a missing path gets our own exit code, after the root check
    parser.add_argument("input_file", nargs="?", help="Path to the user list")
    parser.add_argument("--no-color", action="store_true", help="Disable coloured console output")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log executed commands at DEBUG")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    return parser.parse_args(argv)

# Function: fncMain
# Purpose : Program entrypoint; preflight, secure files, lock, batch run.
# Notes   : Returns the exit code. umask 077 while running.
def fncMain(argv: Sequence[str] | None = None, store: IdentityStore | None = None) -> int:
    args = fncParseArgs(argv)
    fncSetColorMode(args.no_color)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(message)s",
    )

    old_umask = os.umask(0o077)
    lock = None
    audit = None
    try:
        input_path = fncPreflight(args.input_file)
        settings = fncLoadSettings()
        lock = fncAcquireLock(settings.lock_file)
        fncEnsureSecureFile(settings.password_store)
        fncEnsureSecureFile(settings.log_file)
        audit = LogSink(settings.log_file)
        fncRunBatch(
            input_path,
            store if store is not None else SystemIdentityStore(),
            audit,
            CredentialSink(settings.password_store),
            settings,
        )
    except ConfigError as e:
        fncPrintMessage(str(e), "error", stream=sys.stderr)
        return e.exit_code
    except UsermaticError as e:
        fncPrintMessage(str(e), "error", stream=sys.stderr)
        return 1
    except KeyboardInterrupt:
        fncPrintMessage("Interrupted, stopping.", "error", stream=sys.stderr)
        return EXIT_INTERRUPTED
    except Exception as e:
        logging.exception("Unhandled exception: %s", e)
        return 1
    finally:
        if audit is not None:
            audit.close()
        if lock is not None:
            lock.close()
        os.umask(old_umask)
    return EXIT_OK

if __name__ == "__main__":
    sys.exit(fncMain())
