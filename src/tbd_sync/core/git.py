"""Git transport for the sync branch.

``GitTransport`` drives the ``git`` binary with ``subprocess`` and never
touches the operator's working checkout or staging area:

* remote state is fetched into the remote-tracking ref
  ``refs/remotes/{remote}/{branch}`` and read straight from object storage;
* new revisions are built in a per-process index file
  (``GIT_INDEX_FILE={git_dir}/tbd-index-{pid}``) with ``read-tree`` /
  ``update-index`` / ``write-tree`` / ``commit-tree``;
* pushes are never forced, so a concurrent writer makes the push fail
  with ``TransportRejected`` instead of overwriting their work.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from pathlib import Path
from typing import Iterable

from tbd_sync.errors import ConfigError, TransportError, TransportRejected

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60
FILE_MODE = "100644"
NULL_SHA = "0" * 40

BRANCH_PATTERN = re.compile(r"^[a-zA-Z0-9._/-]+$")
REMOTE_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+$")

_REJECTION_MARKERS = ("rejected", "non-fast-forward", "fetch first")
_MISSING_REF_MARKERS = ("couldn't find remote ref", "could not find remote ref")


def validate_git_name(kind: str, value: str) -> str:
    """Validate a branch or remote name before it reaches a git command line.

    Raises:
        ConfigError: If the name is empty, starts with ``-``, contains
            ``..`` or characters outside the allowed set.
    """
    pattern = BRANCH_PATTERN if kind == "branch" else REMOTE_PATTERN
    if (
        not value
        or value.startswith("-")
        or ".." in value
        or value.endswith((".lock", "/"))
        or not pattern.match(value)
    ):
        raise ConfigError(
            f"Invalid git {kind} name: {value!r}",
            hint=f"Set sync.{kind} to a plain name such as "
            f"'{'tbd-sync' if kind == 'branch' else 'origin'}'.",
        )
    return value


class GitTransport:
    """Transport log backed by a git branch on a remote.

    Args:
        repo_root: Any directory inside the operator's repository.
        branch: Sync branch name.
        remote: Remote name.
        timeout: Seconds before a git command is abandoned.
    """

    def __init__(
        self,
        repo_root: Path,
        branch: str = "tbd-sync",
        remote: str = "origin",
        timeout: int = DEFAULT_TIMEOUT,
    ) -> None:
        self.repo_root = repo_root
        self.branch = validate_git_name("branch", branch)
        self.remote = validate_git_name("remote", remote)
        self.timeout = timeout
        self._git_dir: Path | None = None

    # ------------------------------------------------------------------
    # Refs
    # ------------------------------------------------------------------

    @property
    def tracking_ref(self) -> str:
        return f"refs/remotes/{self.remote}/{self.branch}"

    @property
    def branch_ref(self) -> str:
        return f"refs/heads/{self.branch}"

    @property
    def git_dir(self) -> Path:
        if self._git_dir is None:
            out = self._git("rev-parse", "--absolute-git-dir")
            self._git_dir = Path(out.stdout.decode().strip())
        return self._git_dir

    def _index_path(self) -> Path:
        return self.git_dir / f"tbd-index-{os.getpid()}"

    # ------------------------------------------------------------------
    # Subprocess
    # ------------------------------------------------------------------

    def _git(
        self,
        *args: str,
        input: bytes | None = None,
        env: dict[str, str] | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        cmd = ["git", *args]
        logger.debug("Running %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self.repo_root),
                input=input,
                env=env,
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise TransportError(
                f"git {args[0]} timed out after {self.timeout}s"
            ) from exc
        except FileNotFoundError as exc:
            raise TransportError(
                "git executable not found",
                hint="Install git and make sure it is on PATH.",
            ) from exc
        if check and result.returncode != 0:
            raise TransportError(
                f"git {args[0]} failed: {_stderr(result)}"
            )
        return result

    def _rev_parse(self, rev: str) -> str | None:
        result = self._git(
            "rev-parse", "--verify", "--quiet", rev, check=False
        )
        if result.returncode != 0:
            return None
        return result.stdout.decode().strip() or None

    # ------------------------------------------------------------------
    # Transport protocol
    # ------------------------------------------------------------------

    def fetch(self) -> str | None:
        """Fetch the sync branch into its remote-tracking ref.

        Returns:
            The remote tip commit, or ``None`` if the branch does not
            exist on the remote yet.
        """
        refspec = f"+{self.branch_ref}:{self.tracking_ref}"
        result = self._git(
            "fetch", "--no-tags", "--quiet", self.remote, refspec, check=False
        )
        if result.returncode != 0:
            message = _stderr(result)
            if any(m in message.lower() for m in _MISSING_REF_MARKERS):
                logger.info(
                    "Remote %s has no branch %s yet", self.remote, self.branch
                )
                return None
            raise TransportError(f"git fetch failed: {message}")
        tip = self._rev_parse(f"{self.tracking_ref}^{{commit}}")
        logger.debug("Fetched %s -> %s", self.tracking_ref, tip)
        return tip

    def read_file(self, ref: str, path: str) -> bytes | None:
        """Return the content of *path* at *ref*, or ``None`` if absent."""
        result = self._git("cat-file", "blob", f"{ref}:{path}", check=False)
        if result.returncode != 0:
            return None
        return result.stdout

    def list_files(self, ref: str, prefix: str = "") -> list[str]:
        """Return sorted paths of all files under *prefix* at *ref*."""
        args = ["ls-tree", "-r", "-z", "--name-only", ref]
        if prefix:
            args += ["--", prefix]
        result = self._git(*args)
        names = result.stdout.decode("utf-8").split("\0")
        return sorted(name for name in names if name)

    def build_revision(
        self,
        parent: str | None,
        files: dict[str, bytes],
        removals: Iterable[str],
        message: str,
    ) -> str | None:
        """Build a commit on top of *parent* in an isolated index.

        Args:
            parent: Parent commit, or ``None`` for the first commit.
            files: Tree path -> content to add or replace.
            removals: Tree paths to remove.
            message: Commit message.

        Returns:
            The new commit, or ``None`` if its tree would equal the
            parent's tree (nothing to publish).
        """
        removals = sorted(set(removals))
        if parent is None and not files:
            return None
        index = self._index_path()
        env = {**os.environ, "GIT_INDEX_FILE": str(index)}
        try:
            if parent is None:
                self._git("read-tree", "--empty", env=env)
            else:
                self._git("read-tree", parent, env=env)

            lines: list[str] = []
            for path in sorted(files):
                blob = self._git(
                    "hash-object", "-w", "--stdin", input=files[path]
                ).stdout.decode().strip()
                lines.append(f"{FILE_MODE} {blob}\t{path}")
            for path in removals:
                lines.append(f"0 {NULL_SHA}\t{path}")
            if lines:
                self._git(
                    "update-index",
                    "--index-info",
                    input=("\n".join(lines) + "\n").encode("utf-8"),
                    env=env,
                )

            tree = self._git("write-tree", env=env).stdout.decode().strip()
            if parent is not None and tree == self._rev_parse(
                f"{parent}^{{tree}}"
            ):
                logger.debug("Tree unchanged from %s; nothing to commit", parent)
                return None

            args = ["commit-tree", tree, "-m", message]
            if parent is not None:
                args += ["-p", parent]
            commit = self._git(*args, env=env).stdout.decode().strip()
        finally:
            index.unlink(missing_ok=True)
        logger.info(
            "Built revision %s (%d files, %d removals)",
            commit[:12],
            len(files),
            len(removals),
        )
        return commit

    def push(self, commit: str) -> None:
        """Advance the remote branch to *commit* (never forced).

        Raises:
            TransportRejected: If the remote advanced concurrently.
            TransportError: On any other failure.
        """
        result = self._git(
            "push",
            "--porcelain",
            self.remote,
            f"{commit}:{self.branch_ref}",
            check=False,
        )
        if result.returncode != 0:
            output = (
                result.stdout.decode(errors="replace")
                + _stderr(result)
            ).lower()
            if any(marker in output for marker in _REJECTION_MARKERS):
                raise TransportRejected(
                    f"Push to {self.remote}/{self.branch} rejected: "
                    "remote advanced"
                )
            raise TransportError(f"git push failed: {_stderr(result)}")
        self._git("update-ref", self.tracking_ref, commit)
        self._git("update-ref", self.branch_ref, commit)
        logger.info("Pushed %s to %s/%s", commit[:12], self.remote, self.branch)


def _stderr(result: subprocess.CompletedProcess) -> str:
    return (result.stderr or b"").decode(errors="replace").strip()
