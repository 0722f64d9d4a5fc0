# src/cdndeploy/main.py
from __future__ import annotations

from typing import Any, Dict

from cdndeploy.config import DeployConfig


def run(config: DeployConfig) -> Dict[str, Any]:
    """
    Core entrypoint used by cdndeploy.cli.

    cdndeploy.graph owns the full workflow
    (worktree -> manifest -> resolve/version/upload -> commit manifest -> emit result).
    """
    from cdndeploy.graph import run_deploy_graph

    # Let DeployStageError bubble up so the CLI can render stage-aware JSON.
    return run_deploy_graph(config=config)
