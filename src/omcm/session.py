"""Session identity: one stable id per terminal.

Resolution order:
1. ``OMCM_SESSION_ID`` environment variable
2. active-session registry lookup by TTY
3. freshly generated id, registered against the TTY
4. None (CI, background processes) -> callers use global state only
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from omcm.config import OmcmPaths
from omcm.storage import atomic_write_json, locked_update, read_json_file

logger = logging.getLogger(__name__)

SESSION_ENV_VAR = "OMCM_SESSION_ID"
MAX_ANCESTOR_DEPTH = 5
DEFAULT_MAX_AGE_DAYS = 7
PROC_ROOT = Path("/proc")


def get_tty(proc_root: Path = PROC_ROOT, start_pid: int | None = None) -> str | None:
    """Find the controlling terminal without touching stdin.

    Walks up to five ancestors through ``/proc/<pid>/fd/0`` (Linux) and then
    falls back to ``SSH_TTY``. Running ``tty`` is avoided on purpose: it
    blocks when stdin is a pipe, which is always the case inside a hook.
    """
    pid = start_pid if start_pid is not None else os.getppid()
    depth = 0
    while depth < MAX_ANCESTOR_DEPTH and pid and pid > 1:
        try:
            target = os.readlink(proc_root / str(pid) / "fd" / "0")
        except OSError:
            target = ""
        if target.startswith("/dev/pts/") or target.startswith("/dev/tty"):
            return target
        try:
            stat = (proc_root / str(pid) / "stat").read_text()
        except OSError:
            break
        # comm may contain spaces; ppid is the second field after ") "
        _, sep, rest = stat.rpartition(") ")
        parts = rest.split()
        if not sep or len(parts) < 2:
            break
        try:
            pid = int(parts[1])
        except ValueError:
            break
        depth += 1

    return os.environ.get("SSH_TTY") or None


def generate_session_id(tty: str | None = None) -> str:
    """Session id in ``YYYYMMDD_HHMMSS_<hash6>`` form."""
    now = datetime.now()
    seed = f"{tty or ''}_{os.getpid()}_{int(time.time() * 1000)}"
    digest = hashlib.md5(seed.encode()).hexdigest()[:6]
    return f"{now.strftime('%Y%m%d_%H%M%S')}_{digest}"


def _default_registry() -> dict:
    return {"sessions": {}, "lastCleanup": datetime.now(timezone.utc).isoformat()}


@dataclass
class SessionContext:
    """Session resolved once at the process entry point and passed down."""

    session_id: str | None
    paths: OmcmPaths = field(default_factory=OmcmPaths)
    tty: str | None = None

    @property
    def session_dir(self) -> Path | None:
        if not self.session_id:
            return None
        return self.paths.sessions_dir / self.session_id

    @property
    def is_global(self) -> bool:
        return self.session_id is None


class SessionRegistry:
    """Active-session registry (``active-session.json``) keyed by TTY path."""

    def __init__(self, paths: OmcmPaths | None = None, tty_resolver=get_tty):
        self.paths = paths or OmcmPaths()
        self._tty_resolver = tty_resolver

    def get_tty(self) -> str | None:
        try:
            return self._tty_resolver()
        except Exception as e:
            logger.debug(f"TTY detection failed: {e}")
            return None

    def read_active_sessions(self) -> dict | None:
        data = read_json_file(self.paths.active_session)
        return data if isinstance(data, dict) else None

    def register_session(self, session_id: str, tty: str | None = None) -> str | None:
        """Register ``session_id`` against the current TTY (no-op without one).

        Returns the id that owns the TTY afterwards: an entry written by a
        concurrent process wins over ``session_id``.
        """
        tty = tty or self.get_tty()
        if not tty:
            return None
        now_ms = int(time.time() * 1000)
        with locked_update(self.paths.active_session, _default_registry) as data:
            if not isinstance(data.get("sessions"), dict):
                data["sessions"] = {}
            entry = data["sessions"].get(tty)
            if isinstance(entry, dict) and entry.get("sessionId"):
                return entry["sessionId"]
            data["sessions"][tty] = {
                "sessionId": session_id,
                "pid": os.getpid(),
                "startTime": now_ms,
                "lastActivity": now_ms,
            }
        return session_id

    def get_session_id_from_tty(self, tty: str | None = None) -> str | None:
        tty = tty or self.get_tty()
        if not tty:
            return None
        data = self.read_active_sessions()
        if not data or not isinstance(data.get("sessions"), dict):
            return None
        entry = data["sessions"].get(tty)
        if not isinstance(entry, dict):
            return None
        return entry.get("sessionId") or None

    def get_session_id(self) -> str | None:
        """Resolve the session id by env var, registry, then generation."""
        env_id = os.environ.get(SESSION_ENV_VAR)
        if env_id:
            return env_id

        tty = self.get_tty()
        if not tty:
            return None

        existing = self.get_session_id_from_tty(tty)
        if existing:
            return existing

        session_id = self.register_session(generate_session_id(tty), tty)
        self.initialize_session(session_id, tty)
        logger.info(f"Registered new session {session_id} for {tty}")
        return session_id

    def resolve(self) -> SessionContext:
        """Resolve once for the whole process; failures mean global mode."""
        try:
            session_id = self.get_session_id()
        except Exception as e:
            logger.debug(f"Session resolution failed, using global state: {e}")
            session_id = None
        return SessionContext(session_id=session_id, paths=self.paths)

    def get_session_dir(self, session_id: str) -> Path:
        return self.paths.sessions_dir / session_id

    def initialize_session(self, session_id: str, tty: str | None = None) -> Path:
        """Create the session directory and write ``session-info.json`` once."""
        session_dir = self.get_session_dir(session_id)
        session_dir.mkdir(parents=True, exist_ok=True)
        info_file = session_dir / "session-info.json"
        if not info_file.exists():
            atomic_write_json(info_file, {
                "sessionId": session_id,
                "startTime": datetime.now(timezone.utc).isoformat(),
                "tty": tty if tty is not None else self.get_tty(),
                "pid": os.getpid(),
            })
        return session_dir

    def update_session_activity(self, session_id: str | None = None) -> None:
        tty = self.get_tty()
        if not tty:
            return
        data = self.read_active_sessions()
        if not data or tty not in (data.get("sessions") or {}):
            return
        with locked_update(self.paths.active_session, _default_registry) as data:
            entry = (data.get("sessions") or {}).get(tty)
            if isinstance(entry, dict) and (session_id is None or entry.get("sessionId") == session_id):
                entry["lastActivity"] = int(time.time() * 1000)

    def cleanup_old_sessions(self, max_age_days: float = DEFAULT_MAX_AGE_DAYS) -> dict:
        """Remove session directories and registry entries older than ``max_age_days``.

        Maintenance only; the hook path never calls this.
        """
        max_age = max_age_days * 24 * 60 * 60
        now = time.time()
        removed_dirs: list[str] = []
        removed_entries: list[str] = []

        sessions_dir = self.paths.sessions_dir
        if sessions_dir.is_dir():
            for child in sessions_dir.iterdir():
                if not child.is_dir():
                    continue
                try:
                    if now - child.stat().st_mtime > max_age:
                        shutil.rmtree(child, ignore_errors=True)
                        removed_dirs.append(child.name)
                except OSError as e:
                    logger.debug(f"Skipping session dir {child}: {e}")

        if self.read_active_sessions() is not None:
            with locked_update(self.paths.active_session, _default_registry) as data:
                sessions = data.get("sessions")
                if isinstance(sessions, dict):
                    for tty, entry in list(sessions.items()):
                        last = entry.get("lastActivity") if isinstance(entry, dict) else None
                        if last and (now * 1000 - last) > max_age * 1000:
                            del sessions[tty]
                            removed_entries.append(tty)
                if removed_entries:
                    data["lastCleanup"] = datetime.now(timezone.utc).isoformat()

        if removed_dirs or removed_entries:
            logger.info(
                f"Session cleanup removed {len(removed_dirs)} dirs, "
                f"{len(removed_entries)} registry entries"
            )
        return {"removedDirs": removed_dirs, "removedEntries": removed_entries}
