# src/cdndeploy/rewriter.py
from __future__ import annotations

import os
import re
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping

from cdndeploy.scanner import DependencyEdge, read_source
from cdndeploy.utils import collapse_slashes

_SCHEME_HOST_RE = re.compile(r"^[a-z][a-z0-9+.-]*://[^/]+")


@dataclass(frozen=True)
class Artifact:
    path: str
    filename: str


def versioned_name(name: str, version: int) -> str:
    """
    "./foo.js" -> "./foo-2.js", "../lib/x.min.css" -> "../lib/x.min-2.css", "./foo" -> "./foo-2".
    Only the last path segment is considered when looking for the extension.
    """
    seg_start = name.rfind("/") + 1
    dot = name.rfind(".")
    if dot < seg_start:
        return f"{name}-{version}"
    return f"{name[:dot]}-{version}{name[dot:]}"


def rewrite_text(text: str, versions: Mapping[str, int]) -> str:
    """
    Replace every literal occurrence of each raw specifier with its versioned form.

    Exact-text substitution, not syntax-aware: unrelated occurrences of the same
    substring are rewritten too. Single pass, longest specifier first, so
    "../a.js" is never half-rewritten by "./a.js".
    """
    if not versions:
        return text
    ordered = sorted(versions, key=len, reverse=True)
    rx = re.compile("|".join(re.escape(raw) for raw in ordered))
    return rx.sub(lambda m: versioned_name(m.group(0), versions[m.group(0)]), text)


def build_artifact(
        root: str | Path,
        identity: str,
        edges: Iterable[DependencyEdge],
        snapshot: Mapping[str, int],
        version: int,
) -> Artifact:
    """
    Deploy-ready copy of `identity` in a temp file.
    `snapshot` maps dependency identity -> version the references must point at.
    """
    versions = {e.raw: snapshot[e.identity] for e in edges}
    contents = rewrite_text(read_source(root, identity), versions)

    filename = versioned_name(identity.rsplit("/", 1)[-1], version)
    fd, path = tempfile.mkstemp(suffix=f"--{filename}")
    with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
        f.write(contents)
    return Artifact(path=path, filename=filename)


def destination_for(target: str, identity: str, filename: str) -> str:
    # "gs://b/cdn" + "./js/app.js" + "app-3.js" -> "gs://b/cdn/js/app-3.js"
    directory = identity[2 : identity.rfind("/")] if identity.startswith("./") else identity[: identity.rfind("/")]
    return target.rstrip("/") + collapse_slashes(f"/{directory}/{filename}")


def public_url(target: str, target_url: str | None, destination: str) -> str:
    if target_url:
        return _SCHEME_HOST_RE.sub(lambda _m: target_url, destination, count=1)
    return destination[len(target.rstrip("/")) :]
