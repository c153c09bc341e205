"""Tests for the git CLI collaborator, with subprocess patched out."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from sessionsync.errors import CommitNotFound, GitCommandError
from sessionsync.git import GitRepository, capture_git_context, current_git_state

HEAD = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"


def _fake_git(responses: dict[tuple[str, ...], tuple[int, str]]):
    """Build a subprocess.run replacement answering by git argv prefix."""

    def run(cmd, **kwargs):
        args = tuple(cmd[1:])
        for prefix, (code, out) in responses.items():
            if args[: len(prefix)] == prefix:
                return subprocess.CompletedProcess(cmd, code, stdout=out, stderr="boom")
        return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="unknown")

    return run


CLEAN_REPO = {
    ("rev-parse", "--is-inside-work-tree"): (0, "true\n"),
    ("rev-parse", "HEAD"): (0, HEAD + "\n"),
    ("symbolic-ref",): (0, "main\n"),
    ("remote", "get-url"): (0, "git@example.com:team/project.git\n"),
    ("remote",): (0, "origin\nupstream\n"),
    ("status", "--porcelain"): (0, ""),
    ("rev-list",): (0, "0\t0\n"),
}


class TestStatus:
    """Parsing ``git`` output into a RepoStatus."""

    def test_not_a_repo(self, tmp_path: Path):
        fake = _fake_git({("rev-parse", "--is-inside-work-tree"): (128, "")})
        with patch("sessionsync.git.subprocess.run", side_effect=fake):
            status = GitRepository(tmp_path).status()
        assert not status.is_repo

    def test_git_missing(self, tmp_path: Path):
        with patch("sessionsync.git.subprocess.run", side_effect=FileNotFoundError("git")):
            assert not GitRepository(tmp_path).status().is_repo

    def test_clean_repo(self, tmp_path: Path):
        with patch("sessionsync.git.subprocess.run", side_effect=_fake_git(CLEAN_REPO)):
            status = GitRepository(tmp_path).status()

        assert status.is_repo
        assert status.commit == HEAD
        assert status.branch == "main"
        assert not status.detached
        assert status.remotes == ["origin", "upstream"]
        assert status.remote_url == "git@example.com:team/project.git"
        assert not status.dirty
        assert (status.ahead, status.behind) == (0, 0)

    def test_modified_files_keep_leading_status_column(self, tmp_path: Path):
        responses = dict(CLEAN_REPO)
        responses[("status", "--porcelain")] = (0, " M src/app.py\n?? notes.txt\n")
        with patch("sessionsync.git.subprocess.run", side_effect=_fake_git(responses)):
            status = GitRepository(tmp_path).status()
        assert status.modified_files == ["src/app.py", "notes.txt"]

    def test_divergence_counts(self, tmp_path: Path):
        responses = dict(CLEAN_REPO)
        responses[("rev-list",)] = (0, "2\t5\n")
        with patch("sessionsync.git.subprocess.run", side_effect=_fake_git(responses)):
            status = GitRepository(tmp_path).status()
        assert (status.ahead, status.behind) == (2, 5)
        assert status.diverged

    def test_detached_head(self, tmp_path: Path):
        responses = dict(CLEAN_REPO)
        responses[("symbolic-ref",)] = (1, "")
        with patch("sessionsync.git.subprocess.run", side_effect=_fake_git(responses)):
            status = GitRepository(tmp_path).status()
        assert status.detached
        assert status.branch is None
        assert status.ahead is None

    def test_no_remote(self, tmp_path: Path):
        responses = dict(CLEAN_REPO)
        responses[("remote",)] = (0, "")
        with patch("sessionsync.git.subprocess.run", side_effect=_fake_git(responses)):
            status = GitRepository(tmp_path).status()
        assert not status.has_remote
        assert status.remote_url is None


class TestCommands:
    def test_rev_parse(self, tmp_path: Path):
        fake = _fake_git({("rev-parse", "--verify"): (0, HEAD + "\n")})
        with patch("sessionsync.git.subprocess.run", side_effect=fake):
            assert GitRepository(tmp_path).rev_parse("main") == HEAD

    def test_rev_parse_unknown(self, tmp_path: Path):
        fake = _fake_git({("rev-parse", "--verify"): (1, "")})
        with patch("sessionsync.git.subprocess.run", side_effect=fake):
            with pytest.raises(CommitNotFound):
                GitRepository(tmp_path).rev_parse("nope")

    def test_failed_checkout_raises(self, tmp_path: Path):
        fake = _fake_git({("checkout",): (1, "")})
        with patch("sessionsync.git.subprocess.run", side_effect=fake):
            with pytest.raises(GitCommandError) as exc_info:
                GitRepository(tmp_path).checkout("feature")
        assert exc_info.value.context["command"] == ["checkout", "feature"]

    def test_commit_returns_new_head(self, tmp_path: Path):
        fake = _fake_git({
            ("add",): (0, ""),
            ("commit",): (0, ""),
            ("rev-parse", "HEAD"): (0, HEAD + "\n"),
        })
        with patch("sessionsync.git.subprocess.run", side_effect=fake) as run:
            assert GitRepository(tmp_path).commit("wip") == HEAD
        assert [c.args[0][1] for c in run.call_args_list] == ["add", "commit", "rev-parse"]


class TestContext:
    def test_capture_git_context(self, tmp_path: Path):
        responses = dict(CLEAN_REPO)
        responses[("status", "--porcelain")] = (0, " M a.py\n")
        with patch("sessionsync.git.subprocess.run", side_effect=_fake_git(responses)):
            context = capture_git_context(GitRepository(tmp_path))
        assert context.commit == HEAD
        assert context.modified_files == ("a.py",)

    def test_current_git_state_outside_repo(self, tmp_path: Path):
        fake = _fake_git({})
        with patch("sessionsync.git.subprocess.run", side_effect=fake):
            assert current_git_state(GitRepository(tmp_path)) is None
