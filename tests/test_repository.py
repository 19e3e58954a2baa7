import shutil
import subprocess
from pathlib import Path

import pytest

from storymap.errors import GitLockError
from storymap.services.repository import (
    RepositoryManager,
    build_file_tree,
    is_git_lock_error,
    parse_name_status,
    redact,
    repo_url_to_clone_url,
    run_process,
    with_git_lock_retry,
)

needs_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")

_IDENTITY = ["-c", "user.name=Storymap Tests", "-c", "user.email=tests@example.com"]


def test_repo_url_to_clone_url() -> None:
    assert repo_url_to_clone_url("https://github.com/u/r", "secret") == "https://secret@github.com/u/r.git"
    assert repo_url_to_clone_url(" https://github.com/u/r.git/ ") == "https://github.com/u/r.git"
    assert repo_url_to_clone_url("git@github.com:u/r", "secret") == "git@github.com:u/r.git"
    assert repo_url_to_clone_url("file:///srv/repos/r") == "file:///srv/repos/r"
    assert repo_url_to_clone_url("/srv/repos/r") == "/srv/repos/r"
    assert repo_url_to_clone_url("https://old@github.com/u/r", "new") == "https://new@github.com/u/r.git"
    assert repo_url_to_clone_url("http://git.internal/u/r", "secret") == "http://git.internal/u/r.git"


def test_redact_strips_credentials() -> None:
    text = "fatal: unable to access 'https://s3cr3t@github.com/u/r.git/': denied s3cr3t"
    cleaned = redact(text, "s3cr3t")

    assert "s3cr3t" not in cleaned
    assert "https://github.com/u/r.git/" in cleaned


def test_parse_name_status() -> None:
    output = "A\tsrc/new.py\nM\tsrc/app.py\nD\told.txt\nR100\tsrc/a.py\tsrc/b.py\nC75\tx.py\ty.py\nT\tlink\n"

    files = [(f.path, f.status) for f in parse_name_status(output)]

    assert files == [
        ("/src/new.py", "added"),
        ("/src/app.py", "modified"),
        ("/old.txt", "deleted"),
        ("/src/a.py", "deleted"),
        ("/src/b.py", "added"),
        ("/y.py", "added"),
        ("/link", "modified"),
    ]


def test_build_file_tree_nests_and_sorts() -> None:
    tree = build_file_tree(["src/b.py", "README.md", "src/a.py", "docs/guide/intro.md"], {"/src/a.py": "added"})

    assert [n.name for n in tree] == ["README.md", "docs", "src"]
    src = tree[2]
    assert src.type == "folder"
    assert src.path == "/src"
    assert [(c.name, c.path, c.status) for c in src.children] == [
        ("a.py", "/src/a.py", "added"),
        ("b.py", "/src/b.py", None),
    ]
    assert tree[1].children[0].children[0].path == "/docs/guide/intro.md"


def test_lock_retry_gives_up_after_retries() -> None:
    calls = []

    def locked():
        calls.append(1)
        raise RuntimeError("fatal: Unable to create '.git/index.lock': File exists")

    with pytest.raises(GitLockError):
        with_git_lock_retry(locked, max_retries=2, retry_delay=0.0)
    assert len(calls) == 3


def test_lock_retry_reraises_other_errors_immediately() -> None:
    def broken():
        raise ValueError("not a lock problem")

    with pytest.raises(ValueError):
        with_git_lock_retry(broken, max_retries=3, retry_delay=0.0)
    assert is_git_lock_error(RuntimeError("Another git process seems to be running"))


def test_push_requires_clone_and_token(context) -> None:
    repos = RepositoryManager(context)

    missing = repos.push_branch("p1", "feat/x", "https://github.com/u/r")
    assert missing.error_code == "push_failed"

    (repos.get_clone_path("p1") / ".git").mkdir(parents=True)
    no_token = repos.push_branch("p1", "feat/x", "https://github.com/u/r")
    assert no_token.error_code == "auth_required"
    assert no_token.error == "GITHUB_TOKEN is required to push over https"


def _git(*args: str, cwd: Path) -> str:
    return run_process(["git", *_IDENTITY, *args], cwd=cwd).stdout


@pytest.fixture
def origin(tmp_path: Path) -> Path:
    repo = tmp_path / "origin"
    repo.mkdir()
    _git("init", cwd=repo)
    _git("symbolic-ref", "HEAD", "refs/heads/main", cwd=repo)
    (repo / "README.md").write_text("# shop\n")
    _git("add", "README.md", cwd=repo)
    _git("commit", "-m", "init", cwd=repo)
    return repo


@needs_git
def test_clone_branch_inspect_and_push(context, origin: Path) -> None:
    repos = RepositoryManager(context)

    clone = repos.ensure_clone("p1", str(origin))
    assert clone.success, clone.error
    assert clone.cloned
    assert clone.path == repos.get_clone_path("p1")

    branch = repos.create_feature_branch(clone.path, "feat/card-entry", "main")
    assert branch.success, branch.error

    (clone.path / "src").mkdir()
    (clone.path / "src" / "app.py").write_text("print('hi')\n")
    _git("add", "src/app.py", cwd=clone.path)
    _git("commit", "-m", "Add app", cwd=clone.path)

    changed = repos.get_changed_files(clone.path, "main", "feat/card-entry")
    assert [(f.path, f.status) for f in changed.files] == [("/src/app.py", "added")]

    content = repos.get_file_content(clone.path, "feat/card-entry", "/src/app.py")
    assert content.content == "print('hi')"
    assert repos.get_file_content(clone.path, "feat/card-entry", "/nope.py").error_code == "not_found"

    diff = repos.get_file_diff(clone.path, "main", "feat/card-entry", "/src/app.py")
    assert "+print('hi')" in diff.content

    tree = repos.get_repo_file_tree(clone.path, "feat/card-entry", "main")
    assert [n.name for n in tree.tree] == ["README.md", "src"]
    assert tree.tree[1].children[0].status == "added"

    pushed = repos.push_branch("p1", "feat/card-entry", str(origin))
    assert pushed.success, pushed.error
    assert "feat/card-entry" in _git("branch", "--list", "feat/card-entry", cwd=origin)

    again = repos.ensure_clone("p1", str(origin))
    assert again.success
    assert not again.cloned


@needs_git
def test_clone_failure_is_reported(context, tmp_path: Path) -> None:
    result = RepositoryManager(context).ensure_clone("p2", str(tmp_path / "does-not-exist"))

    assert not result.success
    assert result.error_code == "clone_failed"
    assert result.error.startswith("Repo clone/fetch failed:")


@needs_git
def test_create_feature_branch_failure(context, origin: Path) -> None:
    result = RepositoryManager(context).create_feature_branch(origin, "feat/x", "no-such-base")

    assert not result.success
    assert result.error_code == "branch_failed"


@needs_git
def test_run_process_raises_on_failure(tmp_path: Path) -> None:
    with pytest.raises(subprocess.CalledProcessError):
        run_process(["git", "show", "no-such-ref"], cwd=tmp_path)

    result = run_process(["git", "show", "no-such-ref"], cwd=tmp_path, check=False)
    assert result.returncode != 0
