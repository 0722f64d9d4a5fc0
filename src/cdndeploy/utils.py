# src/cdndeploy/utils.py
from __future__ import annotations

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any

_DUP_SLASH_RE = re.compile(r"/{2,}")
_PATH_SEP_RE = re.compile(r"[\\]+")


def collapse_slashes(path: str) -> str:
    return _DUP_SLASH_RE.sub("/", path)


def norm_base(base: str | None) -> str:
    """
    Repository subdirectory normalization for the manifest "base" key.
    - converts backslashes to forward slashes
    - strips leading "./", "." and "/" characters and trailing slashes
    """
    b = _PATH_SEP_RE.sub("/", (base or "").strip())
    b = re.sub(r"^[./]+", "", b)
    return b.rstrip("/")


def to_identity(relpath: str) -> str:
    # "a/b.js" -> "./a/b.js"
    p = _PATH_SEP_RE.sub("/", relpath)
    while p.startswith("./"):
        p = p[2:]
    return "./" + collapse_slashes(p.lstrip("/"))


def identity_relpath(identity: str) -> str:
    # "./a/b.js" -> "a/b.js"
    return identity[2:] if identity.startswith("./") else identity.lstrip("/")


def stable_json_dumps(obj: Any) -> str:
    """Deterministic, human-diffable JSON (the manifest is committed to git)."""
    return json.dumps(obj, indent=2, ensure_ascii=False) + "\n"


def write_json_atomic(path: str | Path, obj: Any) -> None:
    """
    Write JSON via a temp file in the same directory + os.replace, so a crash
    mid-write never leaves a truncated manifest behind.
    """
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{p.name}.", dir=str(p.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(stable_json_dumps(obj))
        os.replace(tmp, p)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise
