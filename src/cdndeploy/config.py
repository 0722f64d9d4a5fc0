# src/cdndeploy/config.py
from __future__ import annotations

import os
from typing import Any, Mapping

from pydantic import BaseModel, Field

from cdndeploy.gate import DEFAULT_MAX_IN_FLIGHT
from cdndeploy.s3_uploader import DEFAULT_RETRY_DELAY
from cdndeploy.scanner import DEFAULT_IMPORT_MARKER

ENV_PREFIX = "CDNDEPLOY_"


class DeployConfig(BaseModel):
    repo_dir: str = "."
    # None -> current branch of repo_dir
    branch: str | None = None
    # relative to the repository root (not to the manifest "base")
    manifest_path: str = "cdn.json"

    use_worktree: bool = True
    worktree_dir: str = "/tmp/cdn"
    push: bool = True
    commit_message: str = "CDN"

    max_in_flight: int = Field(default=DEFAULT_MAX_IN_FLIGHT, ge=1)
    retry_delay: float = Field(default=DEFAULT_RETRY_DELAY, ge=0)
    import_marker: str = DEFAULT_IMPORT_MARKER

    aws_region: str | None = None
    dry_run: bool = False
    log_file: str | None = None

    @classmethod
    def from_sources(cls, overrides: Mapping[str, Any] | None = None, environ: Mapping[str, str] | None = None) -> "DeployConfig":
        """
        Precedence (low -> high): field defaults, CDNDEPLOY_* env vars, explicit overrides.
        None-valued overrides are ignored so unset CLI flags do not mask env vars.
        """
        env = os.environ if environ is None else environ
        data: dict[str, Any] = {}
        for name in cls.model_fields:
            raw = env.get(ENV_PREFIX + name.upper())
            if raw is not None and raw.strip():
                data[name] = raw.strip()
        for k, v in (overrides or {}).items():
            if v is not None:
                data[k] = v
        cfg = cls.model_validate(data)
        if not cfg.aws_region:
            # default region discovery (AWS commonly sets one of these)
            cfg.aws_region = env.get("AWS_REGION") or env.get("AWS_DEFAULT_REGION") or None
        return cfg
