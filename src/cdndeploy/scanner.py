# src/cdndeploy/scanner.py
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from cdndeploy.errors import ResolveError
from cdndeploy.utils import identity_relpath, to_identity

DEFAULT_IMPORT_MARKER = "cdn-import"

RELATIVE_PREFIXES = ("./", "../")

# --------------------------------------------------------------------------------------
# Import extraction (tolerant regex matching; deterministic)
#
# No comment stripping: pseudo-import markers usually live inside comments
# (e.g. /* cdn-import(./theme.css) */) and every literal occurrence is
# rewritten later anyway.
# --------------------------------------------------------------------------------------

JS_IMPORT_EXPORT_FROM_RE = re.compile(
    r"""(?x)
    \b(?:import|export)\s+
    (?:type\s+)?                 # "import type ..." / "export type ..."
    [\w*${}\s,]*?                # bindings (may be multiline)
    \bfrom\s*
    ["'](?P<spec>[^"'\r\n]+)["']
    """
)

JS_IMPORT_SIDE_EFFECT_RE = re.compile(r"""\bimport\s*["'](?P<spec>[^"'\r\n]+)["']""")

JS_DYNAMIC_IMPORT_RE = re.compile(r"""\bimport\s*\(\s*["'`](?P<spec>[^"'`\r\n]+)["'`]\s*[,)]""")


def _marker_re(marker: str) -> re.Pattern[str]:
    return re.compile(
        re.escape(marker) + r"""\(\s*["'`]?(?P<spec>[^"'`()\s]+)["'`]?\s*\)"""
    )


def is_relative_specifier(spec: str) -> bool:
    return spec.startswith(RELATIVE_PREFIXES)


def scan_specifiers(text: str, marker: str = DEFAULT_IMPORT_MARKER) -> list[str]:
    """
    Relative import specifiers in source order.

    Covers static imports/re-exports, bare side-effect imports, dynamic
    import() calls and the pseudo-import marker. Duplicates are kept: each
    literal occurrence is a separate specifier.
    """
    spans: dict[int, str] = {}
    for rx in (JS_IMPORT_EXPORT_FROM_RE, JS_IMPORT_SIDE_EFFECT_RE, JS_DYNAMIC_IMPORT_RE, _marker_re(marker)):
        for m in rx.finditer(text):
            spec = m.group("spec")
            # "cdn-import(" also satisfies the dynamic import pattern; key by span
            spans.setdefault(m.start("spec"), spec)
    return [spans[pos] for pos in sorted(spans) if is_relative_specifier(spans[pos])]


class ImportScanner(Protocol):
    def scan(self, text: str) -> list[str]: ...


@dataclass(frozen=True)
class RegexImportScanner:
    marker: str = DEFAULT_IMPORT_MARKER

    def scan(self, text: str) -> list[str]:
        return scan_specifiers(text, self.marker)


@dataclass(frozen=True)
class DependencyEdge:
    raw: str
    identity: str


def read_source(root: str | Path, identity: str) -> str:
    # surrogateescape + no newline translation: assets round-trip byte-for-byte through rewriting
    with open(Path(root) / identity_relpath(identity), encoding="utf-8", errors="surrogateescape", newline="") as f:
        return f.read()


def canonical_identity(root: str | Path, path: str) -> str:
    """
    Identity of `path` (relative to root, or absolute). Symlinks and ".." are
    resolved; the result must stay inside root.
    """
    root_real = os.path.realpath(root)
    target = os.path.realpath(os.path.join(root_real, path))
    rel = os.path.relpath(target, root_real)
    if rel == os.pardir or rel.startswith(os.pardir + os.sep) or os.path.isabs(rel):
        raise ResolveError(f"{path!r} resolves outside the deploy root ({target})")
    return to_identity(rel.replace(os.sep, "/"))


def resolve_specifier(root: str | Path, referrer: str, raw: str) -> str:
    """Canonical identity of `raw` as written in file `referrer`."""
    referrer_dir = os.path.dirname(identity_relpath(referrer))
    try:
        return canonical_identity(root, os.path.join(referrer_dir, raw))
    except ResolveError as e:
        raise ResolveError(f"{referrer}: import {raw!r}: {e}") from e


class DependencyScanner:
    """Per-run cache of identity -> resolved dependency edges."""

    def __init__(self, root: str | Path, scanner: ImportScanner | None = None) -> None:
        self.root = Path(root)
        self.scanner: ImportScanner = scanner or RegexImportScanner()
        self._cache: dict[str, list[DependencyEdge]] = {}

    def dependencies(self, identity: str) -> list[DependencyEdge]:
        cached = self._cache.get(identity)
        if cached is not None:
            return cached

        text = read_source(self.root, identity)
        edges: list[DependencyEdge] = []
        for raw in self.scanner.scan(text):
            dep = resolve_specifier(self.root, identity, raw)
            if not (self.root / identity_relpath(dep)).is_file():
                raise ResolveError(f"{identity}: import {raw!r} does not resolve to a file ({dep})")
            edges.append(DependencyEdge(raw=raw, identity=dep))

        self._cache[identity] = edges
        return edges
