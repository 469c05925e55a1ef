from __future__ import annotations

import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

_SUBPROCESS_TIMEOUT = 30


@dataclass
class AgentSession:
    name: str
    worktree: Path
    busy: bool = False
    last_used: float = field(default_factory=time.time)


class AgentPool:
    """Warm tmux sessions running the coding agent, reused across stages."""

    def __init__(
        self,
        max_sessions: int = 3,
        idle_ttl_seconds: int = 60,
        agent_command: str = "claude --dangerously-skip-permissions",
    ) -> None:
        self._max_sessions = max_sessions
        self._idle_ttl = idle_ttl_seconds
        self._agent_command = agent_command
        self._sessions: dict[str, AgentSession] = {}
        self._next_id = 0
        self._lock = threading.Lock()

    def _run(
        self, args: list[str], **kwargs: object
    ) -> subprocess.CompletedProcess[str]:
        kwargs.setdefault("timeout", _SUBPROCESS_TIMEOUT)
        return subprocess.run(args, **kwargs)

    def _make_name(self) -> str:
        name = f"issueflow-agent-{self._next_id}"
        self._next_id += 1
        return name

    def _create_session(self, name: str, worktree: Path) -> None:
        self._run(
            [
                "tmux",
                "new-session",
                "-d",
                "-s",
                name,
                "-c",
                str(worktree),
                self._agent_command,
            ],
            check=True,
        )

    def _kill_session(self, name: str) -> None:
        try:
            self._run(
                ["tmux", "kill-session", "-t", name],
                capture_output=True,
                timeout=5,
            )
        except (subprocess.TimeoutExpired, FileNotFoundError):
            logger.warning("Failed to kill tmux session %s", name)

    def acquire(self, worktree: Path) -> AgentSession:
        """Hand out a session rooted in *worktree*.

        Idle sessions are only reused when they already sit in the same
        worktree; an agent's working directory cannot be moved.
        """
        with self._lock:
            for session in self._sessions.values():
                if not session.busy and session.worktree == worktree:
                    session.busy = True
                    session.last_used = time.time()
                    return session

            if len(self._sessions) >= self._max_sessions:
                self._evict_idle_locked()
            if len(self._sessions) >= self._max_sessions:
                msg = f"Pool at max capacity ({self._max_sessions}), all sessions busy"
                raise RuntimeError(msg)

            name = self._make_name()
            self._create_session(name, worktree)
            session = AgentSession(
                name=name,
                worktree=worktree,
                busy=True,
                last_used=time.time(),
            )
            self._sessions[name] = session
            return session

    def _evict_idle_locked(self) -> None:
        idle = sorted(
            (s for s in self._sessions.values() if not s.busy),
            key=lambda s: s.last_used,
        )
        if idle:
            self._kill_session(idle[0].name)
            del self._sessions[idle[0].name]

    def release(self, session: AgentSession) -> None:
        session.busy = False
        session.last_used = time.time()

    def send(self, session: AgentSession, text: str) -> None:
        """Type *text* literally into the session, then submit it."""
        self._run(["tmux", "send-keys", "-t", session.name, "-l", text], check=True)
        self._run(["tmux", "send-keys", "-t", session.name, "Enter"], check=True)

    def clear_context(self, session: AgentSession) -> None:
        self.send(session, "/clear")

    def is_alive(self, session: AgentSession) -> bool:
        try:
            result = self._run(
                ["tmux", "has-session", "-t", session.name],
                capture_output=True,
            )
        except (subprocess.TimeoutExpired, FileNotFoundError):
            return False
        return result.returncode == 0

    def discard(self, session: AgentSession) -> None:
        with self._lock:
            self._kill_session(session.name)
            self._sessions.pop(session.name, None)

    def drain_idle(self) -> int:
        now = time.time()
        with self._lock:
            expired = [
                name
                for name, s in self._sessions.items()
                if not s.busy and (now - s.last_used) >= self._idle_ttl
            ]
            for name in expired:
                self._kill_session(name)
                del self._sessions[name]
        return len(expired)

    def shutdown(self) -> None:
        with self._lock:
            for name in list(self._sessions):
                self._kill_session(name)
            self._sessions.clear()

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    @property
    def busy_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.busy)
