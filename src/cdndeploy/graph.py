# src/cdndeploy/graph.py
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, TypedDict

from cdndeploy.config import DeployConfig
from cdndeploy.gate import CommandGate
from cdndeploy.git_ops import commit_and_push_manifest, current_branch, prepare_worktree, remove_worktree
from cdndeploy.hasher import ContentHasher
from cdndeploy.manifest import Manifest, load_manifest
from cdndeploy.resolver import DeploySession
from cdndeploy.s3_uploader import DryRunUploader, S3Uploader
from cdndeploy.scanner import RegexImportScanner

try:
    from langgraph.graph import END, StateGraph
except Exception as e:  # pragma: no cover
    raise RuntimeError("LangGraph is required. Install 'langgraph'.") from e

logger = logging.getLogger(__name__)


# -----------------------------
# Stages (canonical)
# -----------------------------
STAGE_INIT = "init"
STAGE_LOAD_CONFIG = "load_config"
STAGE_PREPARE_WORKTREE = "prepare_worktree"
STAGE_LOAD_MANIFEST = "load_manifest"
STAGE_DEPLOY = "deploy"
STAGE_PUBLISH_MANIFEST = "publish_manifest"
STAGE_EMIT_RESULT = "emit_result"
STAGE_DONE = "done"
STAGE_DONE_DRY_RUN = "done_dry_run"


class DeployStageError(RuntimeError):
    def __init__(self, stage: str, inner: Exception):
        super().__init__(str(inner))
        self.stage = stage
        self.inner = inner


class DeployState(TypedDict, total=False):
    config: DeployConfig
    gate: CommandGate
    stage: str

    branch: str | None
    hash_ref: str
    repo_root: str
    manifest_path: str
    manifest: Manifest
    deploy_root: str

    entry_version: int
    deployed: list[dict[str, Any]]
    committed: bool
    result: dict[str, Any]


async def node_load_config(state: DeployState) -> DeployState:
    stage = STAGE_LOAD_CONFIG
    try:
        cfg = state["config"]
        branch = cfg.branch
        if not branch and cfg.use_worktree:
            branch = await state["gate"].run(current_branch, cfg.repo_dir)
        state["stage"] = stage
        state["branch"] = branch
        return state
    except Exception as e:
        raise DeployStageError(stage, e) from e


async def node_prepare_worktree(state: DeployState) -> DeployState:
    stage = STAGE_PREPARE_WORKTREE
    try:
        cfg = state["config"]
        if cfg.use_worktree:
            state["hash_ref"] = await state["gate"].run(
                prepare_worktree, cfg.repo_dir, cfg.worktree_dir, state["branch"]
            )
            state["repo_root"] = cfg.worktree_dir
        else:
            state["hash_ref"] = state.get("branch") or "HEAD"
            state["repo_root"] = cfg.repo_dir
        state["stage"] = stage
        return state
    except Exception as e:
        raise DeployStageError(stage, e) from e


async def node_load_manifest(state: DeployState) -> DeployState:
    stage = STAGE_LOAD_MANIFEST
    try:
        manifest_path = Path(state["repo_root"]) / state["config"].manifest_path
        manifest = load_manifest(manifest_path)
        state["stage"] = stage
        state["manifest_path"] = str(manifest_path)
        state["manifest"] = manifest
        state["deploy_root"] = str(manifest.root_for(state["repo_root"]))
        return state
    except Exception as e:
        raise DeployStageError(stage, e) from e


async def node_deploy(state: DeployState) -> DeployState:
    stage = STAGE_DEPLOY
    try:
        cfg = state["config"]
        gate = state["gate"]
        manifest = state["manifest"]

        if cfg.dry_run:
            uploader = DryRunUploader(target=manifest.target, target_url=manifest.target_url)
        else:
            uploader = S3Uploader(
                gate=gate,
                target=manifest.target,
                target_url=manifest.target_url,
                region=cfg.aws_region,
                retry_delay=cfg.retry_delay,
            )

        session = DeploySession(
            root=state["deploy_root"],
            manifest=manifest,
            manifest_path=None if cfg.dry_run else state["manifest_path"],
            hasher=ContentHasher(state["deploy_root"], state["hash_ref"], gate),
            uploader=uploader,
            scanner=RegexImportScanner(cfg.import_marker),
        )
        entry_version = await session.deploy_entry()
        session.flush()

        state["stage"] = stage
        state["entry_version"] = entry_version
        state["deployed"] = [
            {"file": d.file, "version": d.version, "destination": d.destination, "url": d.url}
            for d in session.deployed
        ]
        return state
    except Exception as e:
        raise DeployStageError(stage, e) from e


async def node_publish_manifest(state: DeployState) -> DeployState:
    stage = STAGE_PUBLISH_MANIFEST
    try:
        cfg = state["config"]
        gate = state["gate"]
        committed = False
        if cfg.use_worktree:
            if not cfg.dry_run:
                committed = await gate.run(
                    commit_and_push_manifest,
                    state["repo_root"],
                    cfg.manifest_path,
                    state["branch"],
                    message=cfg.commit_message,
                    push=cfg.push,
                )
            await gate.run(remove_worktree, cfg.repo_dir, cfg.worktree_dir)
        state["stage"] = stage
        state["committed"] = committed
        return state
    except Exception as e:
        raise DeployStageError(stage, e) from e


async def node_emit_result(state: DeployState) -> DeployState:
    stage = STAGE_EMIT_RESULT
    try:
        cfg = state["config"]
        state["result"] = {
            "ok": True,
            "stage": STAGE_DONE_DRY_RUN if cfg.dry_run else STAGE_DONE,
            "entry": state["manifest"].entry,
            "entry_version": state["entry_version"],
            "branch": state.get("branch"),
            "deployed": state.get("deployed", []),
            "manifest": cfg.manifest_path,
            "committed": bool(state.get("committed", False)),
        }
        state["stage"] = stage
        return state
    except Exception as e:
        raise DeployStageError(stage, e) from e


def build_deploy_graph():
    g = StateGraph(DeployState)

    g.add_node("load_config", node_load_config)
    g.add_node("prepare_worktree", node_prepare_worktree)
    g.add_node("load_manifest", node_load_manifest)
    g.add_node("deploy", node_deploy)
    g.add_node("publish_manifest", node_publish_manifest)
    g.add_node("emit_result", node_emit_result)

    g.set_entry_point("load_config")
    g.add_edge("load_config", "prepare_worktree")
    g.add_edge("prepare_worktree", "load_manifest")
    g.add_edge("load_manifest", "deploy")
    g.add_edge("deploy", "publish_manifest")
    g.add_edge("publish_manifest", "emit_result")
    g.add_edge("emit_result", END)

    return g.compile()


async def _recover_worktree(config: DeployConfig, gate: CommandGate, failed_stage: str) -> None:
    """
    Cleanup after a failed stage in worktree mode.

    Records written by a failed deploy stage point at live artifacts; they
    are committed and pushed before the worktree goes.    """
    if not config.use_worktree or failed_stage not in (STAGE_LOAD_MANIFEST, STAGE_DEPLOY):
        return
    if failed_stage == STAGE_DEPLOY and not config.dry_run:
        manifest_file = Path(config.worktree_dir) / config.manifest_path
        if manifest_file.is_file():
            branch = config.branch or await gate.run(current_branch, config.repo_dir)
            logger.warning("deploy failed; publishing partial manifest to %s", branch)
            await gate.run(
                commit_and_push_manifest,
                config.worktree_dir,
                config.manifest_path,
                branch,
                message=config.commit_message,
                push=config.push,
            )
    await gate.run(remove_worktree, config.repo_dir, config.worktree_dir)


async def _invoke(app, state: DeployState) -> DeployState:
    try:
        return await app.ainvoke(state)
    except DeployStageError as e:
        try:
            await _recover_worktree(state["config"], state["gate"], e.stage)
        except Exception:
            # the deploy failure is what gets reported; the worktree is replaced on the next run
            logger.exception("worktree cleanup after failed stage %s failed", e.stage)
        raise


def run_deploy_graph(*, config: DeployConfig) -> dict[str, Any]:
    app = build_deploy_graph()
    with CommandGate(config.max_in_flight) as gate:
        state: DeployState = {
            "config": config,
            "gate": gate,
            "stage": STAGE_INIT,
        }
        final_state = asyncio.run(_invoke(app, state))
    logger.info("deploy finished: %d file(s) deployed", len(final_state.get("deployed", [])))
    return final_state["result"]
