"""Integration tests for GitTransport against a real bare repository.

Each test gets a bare "remote" and two clones (two nodes).  Skipped when
the git binary is not installed.
"""

from __future__ import annotations

import shutil
import subprocess

import pytest

from tbd_sync.config import Config
from tbd_sync.core.git import GitTransport, validate_git_name
from tbd_sync.errors import ConfigError, TransportError, TransportRejected
from tbd_sync.tracker import Tracker

pytestmark = pytest.mark.skipif(
    shutil.which("git") is None, reason="git is not installed"
)

META = b"schema_version: 1\n"


def _git(cwd, *args):
    return subprocess.run(
        ["git", *args], cwd=str(cwd), check=True, capture_output=True
    ).stdout.decode()


@pytest.fixture
def clones(tmp_path):
    bare = tmp_path / "remote.git"
    _git(tmp_path, "init", "--bare", "--quiet", str(bare))
    result = []
    for name in ("a", "b"):
        _git(tmp_path, "clone", "--quiet", str(bare), name)
        clone = tmp_path / name
        _git(clone, "config", "user.name", f"Node {name}")
        _git(clone, "config", "user.email", f"{name}@example.com")
        _git(clone, "config", "commit.gpgsign", "false")
        result.append(clone)
    return result


class TestValidateGitName:
    def test_accepts_plain_names(self):
        assert validate_git_name("branch", "team/tbd-sync") == "team/tbd-sync"
        assert validate_git_name("remote", "origin") == "origin"

    @pytest.mark.parametrize("name", ["--force", "a..b", "x y", "main.lock"])
    def test_rejects_unsafe_names(self, name):
        with pytest.raises(ConfigError):
            validate_git_name("branch", name)

    def test_constructor_validates(self, tmp_path):
        with pytest.raises(ConfigError):
            GitTransport(tmp_path, remote="--upload-pack=x")


class TestFetchAndPush:
    def test_fetch_missing_branch(self, clones):
        a, _ = clones
        assert GitTransport(a).fetch() is None

    def test_push_then_fetch_from_other_clone(self, clones):
        a, b = clones
        ta, tb = GitTransport(a), GitTransport(b)

        commit = ta.build_revision(
            None, {"meta.yml": META, "issues/is-a1b2c3.md": b"---\n"}, [], "first"
        )
        ta.push(commit)

        assert tb.fetch() == commit
        assert tb.read_file(commit, "meta.yml") == META
        assert tb.read_file(commit, "issues/missing.md") is None
        assert tb.list_files(commit) == ["issues/is-a1b2c3.md", "meta.yml"]
        assert tb.list_files(commit, "issues") == ["issues/is-a1b2c3.md"]
        assert _git(a, "rev-parse", ta.tracking_ref).strip() == commit

    def test_stale_parent_is_rejected(self, clones):
        a, b = clones
        ta, tb = GitTransport(a), GitTransport(b)
        ta.push(ta.build_revision(None, {"meta.yml": META}, [], "first"))

        stale = tb.build_revision(None, {"other.yml": b"x: 1\n"}, [], "racing")
        with pytest.raises(TransportRejected):
            tb.push(stale)

        tip = tb.fetch()
        rebuilt = tb.build_revision(tip, {"other.yml": b"x: 1\n"}, [], "retry")
        tb.push(rebuilt)
        assert ta.fetch() == rebuilt

    def test_unknown_remote(self, clones):
        a, _ = clones
        with pytest.raises(TransportError):
            GitTransport(a, remote="nowhere").fetch()


class TestBuildRevision:
    def test_unchanged_tree_returns_none(self, clones):
        a, _ = clones
        ta = GitTransport(a)
        first = ta.build_revision(None, {"meta.yml": META}, [], "first")
        assert ta.build_revision(first, {"meta.yml": META}, [], "again") is None

    def test_removals_and_additions(self, clones):
        a, _ = clones
        ta = GitTransport(a)
        first = ta.build_revision(
            None, {"meta.yml": META, "issues/is-a1b2c3.md": b"x"}, [], "first"
        )
        second = ta.build_revision(
            first,
            {"archive/issues/is-a1b2c3.md": b"x"},
            ["issues/is-a1b2c3.md"],
            "archive",
        )
        assert ta.list_files(second) == ["archive/issues/is-a1b2c3.md", "meta.yml"]
        assert _git(a, "rev-parse", f"{second}^").strip() == first

    def test_operator_checkout_untouched(self, clones):
        a, _ = clones
        ta = GitTransport(a)
        ta.push(ta.build_revision(None, {"meta.yml": META}, [], "first"))

        assert _git(a, "status", "--porcelain") == ""
        assert not list((a / ".git").glob("tbd-index-*"))
        assert not (a / "meta.yml").exists()


class TestTrackerOverGit:
    def test_two_nodes_converge(self, clones):
        a, b = clones
        node_a = Tracker(Config(repo_root=a))
        node_b = Tracker(Config(repo_root=b))

        issue = node_a.create("Fix auth", labels=["urgent"])
        first = node_a.sync()
        assert first.commit is not None

        pulled = node_b.sync()
        assert pulled.commit is None
        assert node_b.get(issue.id) == issue

        node_b.close(issue.id, reason="fixed")
        node_b.sync()
        node_a.sync()
        assert node_a.get(issue.id).status == "closed"
        assert node_a.sync().commit is None
