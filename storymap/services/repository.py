"""
Storymap Repository Manager

Per-project clones of the connected repository: clone/fetch, feature branch
creation, branch push and read-only inspection of what a build produced
(changed files, diffs, file content, file tree).

Every operation returns a result dataclass; expected git failures never
raise. Checkout-mutating operations are serialized per clone path and git
index.lock contention is retried with exponential backoff.
"""

import os
import re
import subprocess
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, TypeVar
from urllib.parse import urlsplit, urlunsplit

from storymap.errors import GitCommandError, GitLockError
from storymap.logging import get_logger
from storymap.services.base import Service, ServiceContext

logger = get_logger(__name__)

T = TypeVar("T")

_URL_CREDENTIALS = re.compile(r"://[^/@\s]+@")
_AUTH_FAILURE_MARKERS = (
    "authentication failed",
    "could not read username",
    "could not read password",
    "invalid username or password",
    "permission denied",
    "access denied",
    "the requested url returned error: 401",
    "the requested url returned error: 403",
)


def run_process(
    cmd: List[str],
    *,
    cwd: Optional[Path] = None,
    check: bool = True,
    **kwargs,
) -> subprocess.CompletedProcess:
    """
    Run a subprocess with captured text output.

    Raises:
        subprocess.CalledProcessError: If check=True and the command fails
    """
    env = kwargs.pop("env", None) or {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
    result = subprocess.run(
        cmd,
        cwd=cwd,
        capture_output=True,
        text=True,
        env=env,
        **kwargs,
    )
    if check and result.returncode != 0:
        raise subprocess.CalledProcessError(result.returncode, cmd, result.stdout, result.stderr)
    return result


def is_git_lock_error(error: Exception) -> bool:
    """Check if an exception is related to git index.lock contention."""
    error_str = str(error).lower()
    lock_indicators = [
        "index.lock",
        "another git process seems to be running",
        "lock file exists",
        "could not lock",
    ]
    return any(indicator in error_str for indicator in lock_indicators)


def with_git_lock_retry(
    func: Callable[[], T],
    max_retries: int = 5,
    retry_delay: float = 1.0,
    repo_root: Optional[Path] = None,
) -> T:
    """
    Execute a git operation, retrying on index.lock contention.

    Raises:
        GitLockError: lock contention persisted through every attempt
        Exception: other exceptions are re-raised immediately
    """
    last_error: Optional[Exception] = None

    for attempt in range(max_retries + 1):
        try:
            return func()
        except Exception as exc:
            if not is_git_lock_error(exc):
                raise
            last_error = exc
            if attempt < max_retries:
                delay = retry_delay * (2 ** attempt)
                logger.warning(
                    "git_lock_contention",
                    extra={"attempt": attempt + 1, "max_retries": max_retries, "delay_seconds": delay},
                )
                if repo_root:
                    _cleanup_stale_lock(repo_root)
                time.sleep(delay)

    raise GitLockError(
        f"Git operation failed after {max_retries + 1} attempts due to lock contention: {last_error}"
    )


def _cleanup_stale_lock(repo_root: Path) -> bool:
    """Remove .git/index.lock when it is older than five minutes."""
    lock_file = repo_root / ".git" / "index.lock"
    if not lock_file.exists():
        return False
    try:
        lock_age = time.time() - lock_file.stat().st_mtime
        if lock_age < 300:
            return False
        lock_file.unlink()
    except OSError as exc:
        logger.warning("git_stale_lock_cleanup_failed", extra={"lock_file": str(lock_file), "error": str(exc)})
        return False
    logger.info("git_stale_lock_removed", extra={"lock_file": str(lock_file), "age_seconds": lock_age})
    return True


_clone_locks_guard = threading.Lock()
_clone_locks: Dict[str, threading.RLock] = {}


@contextmanager
def clone_lock(path: Path) -> Iterator[None]:
    """Serialize checkout-mutating work on one clone within this process."""
    key = str(Path(path).resolve())
    with _clone_locks_guard:
        lock = _clone_locks.setdefault(key, threading.RLock())
    with lock:
        yield


def redact(text: str, token: Optional[str] = None) -> str:
    """Strip URL credentials and any literal token from git output."""
    cleaned = _URL_CREDENTIALS.sub("://", text or "")
    if token:
        cleaned = cleaned.replace(token, "***")
    return cleaned.strip()


def _is_https_url(url: str) -> bool:
    return url.startswith("https://")


def _is_remote_url(url: str) -> bool:
    return "://" in url or url.startswith("git@")


def repo_url_to_clone_url(url: str, token: Optional[str] = None) -> str:
    """
    Normalize a repository URL for ``git clone``.

    Trims whitespace and trailing slashes, appends ``.git`` to remote URLs
    (not to ``file://`` URLs or local paths) and injects ``token`` as the
    userinfo of https URLs only; a credential never goes into a cleartext URL.

    Example:
        repo_url_to_clone_url("https://github.com/u/r", "secret")
        # -> "https://secret@github.com/u/r.git"
    """
    cleaned = url.strip().rstrip("/")
    if _is_remote_url(cleaned) and not cleaned.startswith("file://") and not cleaned.endswith(".git"):
        cleaned += ".git"
    if token and _is_https_url(cleaned):
        parts = urlsplit(cleaned)
        host = parts.netloc.rsplit("@", 1)[-1]
        cleaned = urlunsplit((parts.scheme, f"{token}@{host}", parts.path, parts.query, parts.fragment))
    return cleaned


def _normalize_path(path: str) -> str:
    return "/" + path.strip().lstrip("/")


# Results

@dataclass
class RepoResult:
    success: bool
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class CloneResult(RepoResult):
    path: Optional[Path] = None
    cloned: bool = False


@dataclass
class PushResult(RepoResult):
    branch: Optional[str] = None


@dataclass
class ChangedFile:
    path: str
    status: str


@dataclass
class ChangedFilesResult(RepoResult):
    files: List[ChangedFile] = field(default_factory=list)


@dataclass
class ContentResult(RepoResult):
    content: Optional[str] = None


@dataclass
class FileNode:
    name: str
    type: str
    path: str
    status: Optional[str] = None
    children: Optional[List["FileNode"]] = None


@dataclass
class FileTreeResult(RepoResult):
    tree: List[FileNode] = field(default_factory=list)


def parse_name_status(output: str) -> List[ChangedFile]:
    """
    Parse ``git diff --name-status`` output.

    Renames are reported as a delete of the old path plus an add of the new
    one; copies as an add; type changes as a modification.
    """
    files: List[ChangedFile] = []
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 2 or not parts[0]:
            continue
        code = parts[0][0]
        if code == "A":
            files.append(ChangedFile(_normalize_path(parts[1]), "added"))
        elif code in ("M", "T"):
            files.append(ChangedFile(_normalize_path(parts[1]), "modified"))
        elif code == "D":
            files.append(ChangedFile(_normalize_path(parts[1]), "deleted"))
        elif code == "R" and len(parts) >= 3:
            files.append(ChangedFile(_normalize_path(parts[1]), "deleted"))
            files.append(ChangedFile(_normalize_path(parts[2]), "added"))
        elif code == "C" and len(parts) >= 3:
            files.append(ChangedFile(_normalize_path(parts[2]), "added"))
    return files


def build_file_tree(paths: List[str], status_by_path: Optional[Dict[str, str]] = None) -> List[FileNode]:
    """Nest flat repository paths into folders, children sorted by name."""
    status_by_path = status_by_path or {}
    roots: List[FileNode] = []
    folders: Dict[str, FileNode] = {}

    for raw in paths:
        segments = [s for s in raw.strip().split("/") if s]
        siblings = roots
        current = ""
        for index, segment in enumerate(segments):
            current = f"{current}/{segment}"
            if index == len(segments) - 1:
                siblings.append(FileNode(segment, "file", current, status=status_by_path.get(current)))
                break
            folder = folders.get(current)
            if folder is None:
                folder = FileNode(segment, "folder", current, children=[])
                folders[current] = folder
                siblings.append(folder)
            siblings = folder.children  # type: ignore[assignment]

    def _sort(nodes: List[FileNode]) -> None:
        nodes.sort(key=lambda n: n.name)
        for node in nodes:
            if node.children:
                _sort(node.children)

    _sort(roots)
    return roots


class RepositoryManager(Service):
    """
    Git operations on per-project clones under ``<data_dir>/repos``.

    Example:
        repos = RepositoryManager(context)
        clone = repos.ensure_clone(project.id, project.repo_url)
        if clone.success:
            repos.create_feature_branch(clone.path, "feat/login", "main")
    """

    def __init__(self, context: ServiceContext) -> None:
        super().__init__(context)

    def get_clone_path(self, project_id: str) -> Path:
        return self.config.repos_dir / project_id

    def _git(self, args: List[str], cwd: Optional[Path], *, token: Optional[str] = None) -> str:
        """
        Run git, retrying on index.lock contention.

        Raises:
            GitCommandError: git exited non-zero or could not be started
            GitLockError: lock contention persisted
        """
        def _run() -> str:
            return run_process(["git", *args], cwd=cwd).stdout.strip()

        try:
            return with_git_lock_retry(
                _run,
                max_retries=self.config.git_lock_max_retries,
                retry_delay=self.config.git_lock_retry_delay,
                repo_root=cwd,
            )
        except subprocess.CalledProcessError as exc:
            message = (exc.stderr or exc.stdout or "").strip() or f"git exited with {exc.returncode}"
            raise GitCommandError(redact(message, token), metadata={"command": args[0]}) from exc
        except OSError as exc:
            raise GitCommandError(f"git could not be started: {exc}") from exc

    def ensure_clone(self, project_id: str, repo_url: str, token: Optional[str] = None) -> CloneResult:
        """
        Make sure the project clone exists.

        An existing clone is reused after a best-effort fetch. A fresh clone
        keeps the token-free URL as its ``origin``.
        """
        token = token or self.config.github_token
        path = self.get_clone_path(project_id)
        clone_url = repo_url_to_clone_url(repo_url, token)

        with clone_lock(path):
            if (path / ".git").exists():
                try:
                    self._git(["fetch", "--prune", clone_url, "+refs/heads/*:refs/remotes/origin/*"], path, token=token)
                except (GitCommandError, GitLockError) as exc:
                    self.logger.warning(
                        "repo_fetch_failed",
                        extra=self.log_extra(project_id=project_id, error=str(exc)),
                    )
                return CloneResult(success=True, path=path, cloned=False)

            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                self._git(["clone", "--depth", "1", "--no-single-branch", clone_url, str(path)], None, token=token)
                self._git(["remote", "set-url", "origin", repo_url_to_clone_url(repo_url)], path)
            except (GitCommandError, GitLockError, OSError) as exc:
                self.logger.error(
                    "repo_clone_failed",
                    extra=self.log_extra(project_id=project_id, error=str(exc)),
                )
                return CloneResult(success=False, error=f"Repo clone/fetch failed: {exc}", error_code="clone_failed")

        self.logger.info("repo_cloned", extra=self.log_extra(project_id=project_id, path=str(path)))
        return CloneResult(success=True, path=path, cloned=True)

    def create_feature_branch(self, clone_path: Path, branch: str, base_branch: str) -> RepoResult:
        """
        Check out ``branch`` at the tip of ``origin/<base_branch>``.

        Falls back to the local base branch when the clone has no such
        remote-tracking ref. An existing branch of that name is reset.
        """
        clone_path = Path(clone_path)
        with clone_lock(clone_path):
            try:
                self._git(["fetch", "origin", base_branch], clone_path)
            except (GitCommandError, GitLockError) as exc:
                self.logger.debug("base_branch_fetch_skipped", extra=self.log_extra(error=str(exc)))

            start_point = base_branch
            try:
                self._git(["rev-parse", "--verify", "--quiet", f"refs/remotes/origin/{base_branch}"], clone_path)
                start_point = f"origin/{base_branch}"
            except GitCommandError:
                pass

            try:
                self._git(["checkout", "-B", branch, start_point], clone_path)
            except (GitCommandError, GitLockError) as exc:
                return RepoResult(success=False, error=f"Create branch failed: {exc}", error_code="branch_failed")

        self.logger.info(
            "feature_branch_created",
            extra=self.log_extra(branch=branch, base_branch=base_branch, start_point=start_point),
        )
        return RepoResult(success=True)

    def push_branch(
        self,
        project_id: str,
        branch: str,
        repo_url: str,
        token: Optional[str] = None,
    ) -> PushResult:
        """
        Push ``branch`` from the project clone to ``repo_url``.

        error_code is ``auth_required`` when an https remote has no token,
        ``auth_failed`` when git reports an authentication failure and
        ``push_failed`` otherwise.
        """
        token = token or self.config.github_token
        path = self.get_clone_path(project_id)
        if not (path / ".git").exists():
            return PushResult(success=False, branch=branch, error="Repository has not been cloned", error_code="push_failed")
        if _is_https_url(repo_url.strip()) and not token:
            return PushResult(
                success=False,
                branch=branch,
                error="GITHUB_TOKEN is required to push over https",
                error_code="auth_required",
            )

        push_url = repo_url_to_clone_url(repo_url, token)
        with clone_lock(path):
            try:
                self._git(["push", push_url, f"refs/heads/{branch}:refs/heads/{branch}"], path, token=token)
            except (GitCommandError, GitLockError) as exc:
                message = str(exc)
                auth = any(marker in message.lower() for marker in _AUTH_FAILURE_MARKERS)
                self.logger.warning(
                    "branch_push_failed",
                    extra=self.log_extra(project_id=project_id, branch=branch, error=message),
                )
                return PushResult(
                    success=False,
                    branch=branch,
                    error=f"Push failed: {message}",
                    error_code="auth_failed" if auth else "push_failed",
                )

        self.logger.info("branch_pushed", extra=self.log_extra(project_id=project_id, branch=branch))
        return PushResult(success=True, branch=branch)

    # Read-only inspection -------------------------------------------------

    def get_changed_files(self, worktree_root: Path, base_branch: str, feature_branch: str) -> ChangedFilesResult:
        try:
            out = self._git(["diff", "--name-status", f"{base_branch}...{feature_branch}"], Path(worktree_root))
        except (GitCommandError, GitLockError) as exc:
            return ChangedFilesResult(success=False, error=str(exc), error_code="diff_failed")
        return ChangedFilesResult(success=True, files=parse_name_status(out))

    def get_file_diff(self, clone_path: Path, base_branch: str, feature_branch: str, file_path: str) -> ContentResult:
        try:
            diff = self._git(
                ["diff", f"{base_branch}...{feature_branch}", "--", file_path.lstrip("/")],
                Path(clone_path),
            )
        except (GitCommandError, GitLockError) as exc:
            return ContentResult(success=False, error=str(exc), error_code="diff_failed")
        return ContentResult(success=True, content=diff)

    def get_file_content(self, clone_path: Path, branch: str, file_path: str) -> ContentResult:
        try:
            content = self._git(["show", f"{branch}:{file_path.lstrip('/')}"], Path(clone_path))
        except (GitCommandError, GitLockError) as exc:
            return ContentResult(success=False, error=str(exc), error_code="not_found")
        return ContentResult(success=True, content=content)

    def get_repo_file_tree(
        self,
        clone_path: Path,
        branch: str,
        base_branch: Optional[str] = None,
    ) -> FileTreeResult:
        """File tree of ``branch``; with ``base_branch`` nodes carry their diff status."""
        try:
            out = self._git(["ls-tree", "-r", "--name-only", branch], Path(clone_path))
        except (GitCommandError, GitLockError) as exc:
            return FileTreeResult(success=False, error=str(exc), error_code="tree_failed")

        statuses: Dict[str, str] = {}
        if base_branch:
            changed = self.get_changed_files(Path(clone_path), base_branch, branch)
            statuses = {f.path: f.status for f in changed.files}
        paths = [line for line in out.splitlines() if line]
        return FileTreeResult(success=True, tree=build_file_tree(paths, statuses))
