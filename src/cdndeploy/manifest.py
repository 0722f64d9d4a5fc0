# src/cdndeploy/manifest.py
from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from cdndeploy.utils import norm_base, write_json_atomic


class FileRecord(BaseModel):
    version: int = Field(default=0, ge=0)
    hash: str = ""
    # dependency identity -> that dependency's version as of this file's last deploy
    dependencies: dict[str, int] = Field(default_factory=dict)
    url: str | None = None


class Manifest(BaseModel):
    """
    The persisted ledger (cdn.json).

    Contract:
    - keys on disk are camelCase ("targetUrl") to stay compatible with existing manifests
    - unknown top-level keys survive a load/save cycle
    - records are created lazily and never deleted
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    entry: str
    target: str
    target_url: str | None = Field(default=None, alias="targetUrl")
    base: str | None = None
    files: dict[str, FileRecord] = Field(default_factory=dict)

    def record(self, identity: str) -> FileRecord:
        rec = self.files.get(identity)
        if rec is None:
            rec = self.files[identity] = FileRecord()
        return rec

    def root_for(self, repo_root: str | Path) -> Path:
        base = norm_base(self.base)
        root = Path(repo_root)
        return root / base if base else root

    def to_json_obj(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def load_manifest(path: str | Path) -> Manifest:
    p = Path(path)
    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise RuntimeError(f"Manifest not found: {p}") from e
    if not isinstance(raw, dict):
        raise TypeError(f"Manifest must be a JSON object: {p}")
    if raw.get("files") is None:
        raw["files"] = {}
    return Manifest.model_validate(raw)


def save_manifest(path: str | Path, manifest: Manifest) -> None:
    write_json_atomic(path, manifest.to_json_obj())
