from __future__ import annotations

import time
from pathlib import Path
from unittest.mock import MagicMock, call

import pytest

from issueflow.pool import AgentPool


@pytest.fixture()
def pool() -> AgentPool:
    p = AgentPool(max_sessions=2, idle_ttl_seconds=10, agent_command="claude")
    p._run = MagicMock(return_value=MagicMock(returncode=0))
    return p


@pytest.fixture()
def worktree(tmp_path: Path) -> Path:
    return tmp_path / "qx-7-fix-login"


class TestAcquire:
    def test_creates_new_session(self, pool: AgentPool, worktree: Path) -> None:
        session = pool.acquire(worktree)
        assert session.name == "issueflow-agent-0"
        assert session.worktree == worktree
        assert session.busy is True
        assert pool.active_count == 1

    def test_reuses_idle_session_in_same_worktree(
        self, pool: AgentPool, worktree: Path
    ) -> None:
        s1 = pool.acquire(worktree)
        pool.release(s1)
        s2 = pool.acquire(worktree)
        assert s2.name == s1.name
        assert pool.active_count == 1

    def test_idle_session_elsewhere_is_evicted_when_full(
        self, pool: AgentPool, tmp_path: Path
    ) -> None:
        s0 = pool.acquire(tmp_path / "a")
        pool.acquire(tmp_path / "b")
        pool.release(s0)
        s2 = pool.acquire(tmp_path / "c")
        assert s2.name == "issueflow-agent-2"
        assert pool.active_count == 2

    def test_raises_when_full(self, pool: AgentPool, worktree: Path) -> None:
        pool.acquire(worktree)
        pool.acquire(worktree)
        with pytest.raises(RuntimeError, match="max capacity"):
            pool.acquire(worktree)

    def test_calls_tmux_new_session(self, pool: AgentPool, worktree: Path) -> None:
        pool.acquire(worktree)
        pool._run.assert_any_call(
            [
                "tmux",
                "new-session",
                "-d",
                "-s",
                "issueflow-agent-0",
                "-c",
                str(worktree),
                "claude",
            ],
            check=True,
        )


class TestRelease:
    def test_updates_last_used(self, pool: AgentPool, worktree: Path) -> None:
        s = pool.acquire(worktree)
        old_ts = s.last_used
        time.sleep(0.01)
        pool.release(s)
        assert s.busy is False
        assert s.last_used > old_ts


class TestSend:
    def test_send_keys(self, pool: AgentPool, worktree: Path) -> None:
        s = pool.acquire(worktree)
        pool._run.reset_mock()
        pool.send(s, "hello world")
        target = ["tmux", "send-keys", "-t", "issueflow-agent-0"]
        assert pool._run.call_args_list == [
            call([*target, "-l", "hello world"], check=True),
            call([*target, "Enter"], check=True),
        ]

    def test_key_names_are_sent_literally(self, pool: AgentPool, worktree: Path) -> None:
        s = pool.acquire(worktree)
        pool._run.reset_mock()
        pool.send(s, "C-c")
        assert "-l" in pool._run.call_args_list[0].args[0]

    def test_clear_context(self, pool: AgentPool, worktree: Path) -> None:
        s = pool.acquire(worktree)
        pool._run.reset_mock()
        pool.clear_context(s)
        assert pool._run.call_args_list[0].args[0][-1] == "/clear"


class TestLiveness:
    def test_is_alive(self, pool: AgentPool, worktree: Path) -> None:
        s = pool.acquire(worktree)
        pool._run.return_value = MagicMock(returncode=1)
        assert pool.is_alive(s) is False

    def test_discard_forgets_session(self, pool: AgentPool, worktree: Path) -> None:
        s = pool.acquire(worktree)
        pool.discard(s)
        assert pool.active_count == 0


class TestDrainAndShutdown:
    def test_drain_idle_kills_expired(self, pool: AgentPool, worktree: Path) -> None:
        s = pool.acquire(worktree)
        pool.release(s)
        s.last_used = time.time() - 60
        assert pool.drain_idle() == 1
        assert pool.active_count == 0

    def test_drain_keeps_busy(self, pool: AgentPool, worktree: Path) -> None:
        s = pool.acquire(worktree)
        s.last_used = time.time() - 60
        assert pool.drain_idle() == 0

    def test_shutdown_kills_all(self, pool: AgentPool, worktree: Path) -> None:
        pool.acquire(worktree)
        pool.acquire(worktree)
        pool.shutdown()
        assert pool.active_count == 0
        assert pool.busy_count == 0
