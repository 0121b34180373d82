from __future__ import annotations

import io
import re
from pathlib import Path

import pytest

import usermatic

LOG_LINE_RE = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2} \[(INFO|WARN|ERROR)\] (.*)$")


class FakeIdentityStore(usermatic.IdentityStore):
    """In-memory user/group database.

    ``fail_on("create_user", "bob")`` makes that call raise
    IdentityStoreError for that name (username, group name or path).
    """

    def __init__(self, users=None, groups=()):
        self.users: dict[str, set[str]] = {}
        self.primary: dict[str, str] = {}
        self.groups: set[str] = set(groups)
        self.passwords: dict[str, str] = {}
        self.dirs: dict[Path, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[str, set[str]] = {}
        for name, member_of in (users or {}).items():
            self.users[name] = set(member_of)
            self.primary[name] = name
            self.groups.add(name)

    def fail_on(self, method: str, name) -> None:
        self._failures.setdefault(method, set()).add(str(name))

    def _record(self, method: str, name) -> None:
        self.calls.append((method, str(name)))
        if str(name) in self._failures.get(method, ()):
            raise usermatic.IdentityStoreError(f"{method} refused {name}")

    def user_exists(self, username):
        return username in self.users

    def group_exists(self, name):
        return name in self.groups

    def create_group(self, name):
        self._record("create_group", name)
        self.groups.add(name)

    def create_user(self, username, primary_group, groups, home, shell):
        self._record("create_user", username)
        missing = [g for g in (primary_group, *groups) if g not in self.groups]
        if missing:
            raise usermatic.IdentityStoreError(f"group '{missing[0]}' does not exist")
        self.users[username] = set(groups)
        self.primary[username] = primary_group
        self.dirs.setdefault(Path(home), {"owner": (username, primary_group), "mode": 0o755})

    def add_user_to_groups(self, username, groups):
        self._record("add_user_to_groups", username)
        self.users[username].update(groups)

    def set_password(self, username, password):
        self._record("set_password", username)
        self.passwords[username] = password

    def ensure_directory(self, path):
        self._record("ensure_directory", path)
        self.dirs.setdefault(Path(path), {"owner": ("root", "root"), "mode": 0o755})

    def set_ownership(self, path, user, group):
        self._record("set_ownership", path)
        self.dirs[Path(path)]["owner"] = (user, group)

    def set_permissions(self, path, mode):
        self._record("set_permissions", path)
        self.dirs[Path(path)]["mode"] = mode


def read_log(path: Path) -> list[tuple[str, str]]:
    """Return (level, message) pairs, asserting every line is well formed."""
    entries = []
    for line in Path(path).read_text().splitlines():
        m = LOG_LINE_RE.match(line)
        assert m, f"malformed log line: {line!r}"
        entries.append((m.group(1), m.group(2)))
    return entries


def read_credentials(path: Path) -> list[str]:
    return [line.split(":", 1)[0] for line in Path(path).read_text().splitlines()]


@pytest.fixture
def store() -> FakeIdentityStore:
    return FakeIdentityStore()


@pytest.fixture
def console() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def audit(tmp_path, console):
    sink = usermatic.LogSink(tmp_path / "user_management.log", console=console)
    yield sink
    sink.close()


@pytest.fixture
def credentials(tmp_path) -> usermatic.CredentialSink:
    return usermatic.CredentialSink(tmp_path / "user_passwords.txt")


@pytest.fixture
def settings(tmp_path) -> usermatic.Settings:
    return usermatic.Settings(
        password_store=tmp_path / "user_passwords.txt",
        log_file=tmp_path / "user_management.log",
        lock_file=tmp_path / "usermatic.lock",
        home_root=Path("/home"),
    )


@pytest.fixture
def write_input(tmp_path):
    def _write(text: str, name: str = "users.txt") -> Path:
        path = tmp_path / name
        path.write_text(text, encoding="utf-8")
        return path
    return _write


@pytest.fixture(autouse=True)
def _reset_colour_mode(monkeypatch):
    monkeypatch.setattr(usermatic, "_COLOR_MONO", False)
    monkeypatch.delenv("FORCE_COLOR", raising=False)
