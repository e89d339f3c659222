from __future__ import annotations

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from devdeck.integrations import code_context
from devdeck.integrations.git import GitError, GitRepo, branch_name_for, slugify, toplevel
from devdeck.integrations.panes import PaneError, TmuxPaneLauncher


# ── git ──────────────────────────────────────────────────────


class TestGit:
    def test_slugify(self):
        assert slugify("Add OAuth login + tests!") == "add-oauth-login-tests-"
        assert len(slugify("x" * 80)) == 30

    def test_branch_name(self):
        assert branch_name_for("codex", "Fix bug", "20260101_010101") == "delegate/codex/fix-bug-20260101_010101"

    def test_repo_queries(self, git_repo):
        repo = GitRepo(str(git_repo))
        assert repo.is_repo()
        base = repo.current_branch()
        assert toplevel(str(git_repo)) is not None

        repo.create_branch("work")
        (git_repo / "new.txt").write_text("x\n", encoding="utf-8")
        subprocess.run(["git", "-C", str(git_repo), "add", "new.txt"], check=True)
        subprocess.run(["git", "-C", str(git_repo), "commit", "-q", "-m", "new"], check=True)

        assert repo.current_branch() == "work"
        assert repo.commit_count(base, "work") == 1
        assert repo.diff_stat(base).startswith("1 file changed")

    def test_create_existing_branch_raises(self, git_repo):
        repo = GitRepo(str(git_repo))
        repo.create_branch("dup")
        with pytest.raises(GitError):
            repo.create_branch("dup")

    def test_stash_reports_whether_anything_was_saved(self, git_repo):
        repo = GitRepo(str(git_repo))
        assert repo.stash("nothing") is False
        (git_repo / "README.md").write_text("changed\n", encoding="utf-8")
        assert repo.stash("dirty") is True
        assert (git_repo / "README.md").read_text(encoding="utf-8") == "hello\n"

    def test_non_repo(self, plain_dir):
        assert not GitRepo(str(plain_dir)).is_repo()
        assert toplevel(str(plain_dir)) is None


# ── code context ─────────────────────────────────────────────


class TestCodeContext:
    def test_no_tldr_binary(self, plain_dir):
        with patch("devdeck.integrations.code_context.shutil.which", return_value=None):
            assert code_context.gather_context(str(plain_dir), "x") == ""

    def test_no_index_directory(self, plain_dir):
        with patch("devdeck.integrations.code_context.shutil.which", return_value="/usr/bin/tldr"):
            assert code_context.gather_context(str(plain_dir), "x") == ""

    def test_semantic_search_when_indexed(self, plain_dir):
        index = plain_dir / ".tldr" / "cache" / "semantic"
        index.mkdir(parents=True)
        (index / "index.faiss").write_bytes(b"")
        done = subprocess.CompletedProcess([], 0, stdout="\n".join(f"hit {i}" for i in range(60)), stderr="")
        with patch("devdeck.integrations.code_context.shutil.which", return_value="/usr/bin/tldr"), \
             patch("devdeck.integrations.code_context.subprocess.run", return_value=done) as run:
            context = code_context.gather_context(str(plain_dir), "add cart", timeout=3)
        args = run.call_args[0][0]
        assert args[1:4] == ["semantic", "search", "add cart"]
        assert run.call_args[1]["timeout"] == 3
        assert len(context.splitlines()) == code_context.SEMANTIC_LINES

    def test_structure_fallback_and_timeout(self, plain_dir):
        (plain_dir / ".tldr").mkdir()
        with patch("devdeck.integrations.code_context.shutil.which", return_value="/usr/bin/tldr"), \
             patch(
                 "devdeck.integrations.code_context.subprocess.run",
                 side_effect=subprocess.TimeoutExpired("tldr", 1),
             ) as run:
            assert code_context.gather_context(str(plain_dir), "x") == ""
        assert run.call_args[0][0][1] == "structure"


# ── tmux panes ───────────────────────────────────────────────


class TestPanes:
    def test_unavailable_outside_tmux(self, monkeypatch):
        monkeypatch.delenv("TMUX", raising=False)
        launcher = TmuxPaneLauncher()
        assert not launcher.available()
        with pytest.raises(PaneError):
            launcher.open_pane(["echo", "hi"], "/tmp")

    def test_open_pane(self, monkeypatch):
        monkeypatch.setenv("TMUX", "/tmp/tmux-1000/default,1,0")
        done = MagicMock(stdout="%7\n")
        with patch("devdeck.integrations.panes.shutil.which", return_value="/usr/bin/tmux"), \
             patch("devdeck.integrations.panes.subprocess.run", return_value=done) as run:
            pane = TmuxPaneLauncher(target="main").open_pane(["devdeck", "supervise", "web", "npm run dev"], "/src")
        assert pane == "%7"
        cmd = run.call_args[0][0]
        assert cmd[:3] == ["tmux", "split-window", "-h"]
        assert cmd[cmd.index("-c") + 1] == "/src"
        assert cmd[cmd.index("-t") + 1] == "main"
        assert cmd[-1] == "devdeck supervise web 'npm run dev'"

    def test_open_pane_failure(self, monkeypatch):
        monkeypatch.setenv("TMUX", "/tmp/tmux-1000/default,1,0")
        error = subprocess.CalledProcessError(1, ["tmux"])
        with patch("devdeck.integrations.panes.shutil.which", return_value="/usr/bin/tmux"), \
             patch("devdeck.integrations.panes.subprocess.run", side_effect=error):
            with pytest.raises(PaneError):
                TmuxPaneLauncher().open_pane(["x"], "/src", vertical=True)
