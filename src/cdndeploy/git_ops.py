# src/cdndeploy/git_ops.py
from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path

from cdndeploy.errors import UnclassifiedCommandError

logger = logging.getLogger(__name__)


def run(cmd: list[str], cwd: str | None = None) -> str:
    logger.info("%s%s", " ".join(cmd), f" (cwd={cwd})" if cwd else "")
    p = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True)
    if p.returncode != 0:
        raise UnclassifiedCommandError(cmd, returncode=p.returncode, stdout=p.stdout, stderr=p.stderr)
    return p.stdout.strip()


def current_branch(repo_dir: str) -> str:
    branch = run(["git", "rev-parse", "--abbrev-ref", "HEAD"], cwd=repo_dir)
    if branch == "HEAD":
        raise RuntimeError(f"Repository at {repo_dir} is in detached HEAD state; pass --branch explicitly.")
    return branch


def last_commit_hash(cwd: str, ref: str, path: str) -> str:
    """Short id of the last commit on `ref` touching `path`. A path with no commit on `ref` is an error."""
    cmd = ["git", "rev-list", "-1", ref, "--", path]
    sha = run(cmd, cwd=cwd)
    if not sha:
        raise UnclassifiedCommandError(cmd, returncode=0, message=f"{path} has no commit on {ref}; commit it before deploying")
    return run(["git", "rev-parse", "--short=1", sha], cwd=cwd)


def remove_worktree(repo_dir: str, worktree_dir: str) -> None:
    wt = Path(worktree_dir)
    if not wt.exists():
        return
    try:
        run(["git", "worktree", "remove", "--force", str(wt)], cwd=repo_dir)
    except UnclassifiedCommandError:
        # not a registered worktree (e.g. left over from a crashed run): clear it by hand
        logger.warning("git worktree remove failed for %s; deleting directory and pruning", wt)
        shutil.rmtree(wt)
        run(["git", "worktree", "prune"], cwd=repo_dir)


def prepare_worktree(repo_dir: str, worktree_dir: str, branch: str) -> str:
    """
    Fresh detached working copy of origin/<branch> at worktree_dir.

    Contract:
    - a stale worktree from an earlier run is removed first
    - the checkout is exactly origin/<branch> after a fetch (no local-only commits)
    Returns the ref whose history the content hashes are read from.
    """
    remove_worktree(repo_dir, worktree_dir)
    run(["git", "fetch", "origin", branch], cwd=repo_dir)
    ref = f"origin/{branch}"
    run(["git", "worktree", "add", "--detach", str(Path(worktree_dir).resolve()), ref], cwd=repo_dir)
    return ref


def commit_and_push_manifest(
        worktree_dir: str,
        manifest_path: str,
        branch: str,
        *,
        message: str = "CDN",
        push: bool = True,
) -> bool:
    """
    Commit the manifest and push it back to <branch>.
    Returns False when the manifest had no changes to commit.
    """
    run(["git", "add", "--", manifest_path], cwd=worktree_dir)
    status = run(["git", "status", "--porcelain", "--", manifest_path], cwd=worktree_dir)
    if not status:
        logger.info("manifest unchanged; nothing to commit")
        return False
    run(["git", "commit", "-m", message, "--", manifest_path], cwd=worktree_dir)
    if push:
        run(["git", "push", "origin", f"HEAD:{branch}"], cwd=worktree_dir)
    return True
