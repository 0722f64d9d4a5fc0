# src/cdndeploy/resolver.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from cdndeploy.errors import CycleError, ResolveError
from cdndeploy.hasher import Hasher
from cdndeploy.manifest import FileRecord, Manifest, save_manifest
from cdndeploy.rewriter import build_artifact, destination_for
from cdndeploy.s3_uploader import Uploader
from cdndeploy.scanner import DependencyEdge, DependencyScanner, ImportScanner, canonical_identity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Deployed:
    file: str
    version: int
    destination: str
    url: str


class DeploySession:
    """
    Process-scoped state of one deploy run.

    Lifecycle: construct with a loaded manifest -> resolve the entry ->
    flush. The manifest is also flushed after every changed file, so an
    aborted run keeps its progress.
    """

    def __init__(
            self,
            *,
            root: str | Path,
            manifest: Manifest,
            manifest_path: str | Path | None,
            hasher: Hasher,
            uploader: Uploader,
            scanner: ImportScanner | None = None,
    ) -> None:
        self.root = Path(root)
        self.manifest = manifest
        self.manifest_path = Path(manifest_path) if manifest_path is not None else None
        self.hasher = hasher
        self.uploader = uploader
        self.deps = DependencyScanner(self.root, scanner)
        self.deployed: list[Deployed] = []

    def flush(self) -> None:
        if self.manifest_path is None:
            return
        save_manifest(self.manifest_path, self.manifest)

    async def deploy_entry(self) -> int:
        # manifest "entry" is relative to the deploy root; canonicalize like any import
        entry = canonical_identity(self.root, self.manifest.entry.lstrip("/"))
        return await DependencyResolver(self).resolve(entry)


class DependencyResolver:
    """
    Post-order graph evaluation with one memoized task per file.

    resolve() first walks the whole reachable graph to reject cycles (before
    any hashing or upload), then evaluates nodes: every dependency of a file
    is fully resolved, siblings concurrently, before the file's own change
    detection runs.
    """

    def __init__(self, session: DeploySession) -> None:
        self.session = session
        self._walked: set[str] = set()
        self._tasks: dict[str, asyncio.Task[int]] = {}

    async def resolve(self, identity: str, call_tree: Sequence[str] = ()) -> int:
        self.walk(identity, tuple(call_tree))
        return await self._evaluate(identity)

    def walk(self, identity: str, call_tree: tuple[str, ...] = ()) -> None:
        if identity in call_tree:
            raise CycleError(call_tree, identity)
        if identity in self._walked:
            return
        path = call_tree + (identity,)
        for edge in self.session.deps.dependencies(identity):
            self.walk(edge.identity, path)
        self._walked.add(identity)

    def _evaluate(self, identity: str) -> asyncio.Task[int]:
        task = self._tasks.get(identity)
        if task is None:
            task = self._tasks[identity] = asyncio.ensure_future(self._deploy(identity))
        return task

    async def _deploy(self, me: str) -> int:
        session = self.session
        manifest = session.manifest
        record = manifest.record(me)

        edges = session.deps.dependencies(me)
        unique = list(dict.fromkeys(e.identity for e in edges))
        await asyncio.gather(*(self._evaluate(d) for d in unique))

        my_hash = await session.hasher.hash(me)
        if not my_hash:
            # an empty hash equals a fresh record and would never be shipped
            raise ResolveError(f"{me} has no content hash; is it committed on the deploy ref?")
        snapshot = {d: manifest.files[d].version for d in unique}

        me_changed = my_hash != record.hash
        dependency_changed = any(record.dependencies.get(d) != v for d, v in snapshot.items())
        if not (me_changed or dependency_changed):
            logger.debug("%s unchanged at version %d", me, record.version)
            return record.version

        version = record.version + 1
        logger.info(
            "%s -> version %d (%s)",
            me,
            version,
            "content changed" if me_changed else "dependency changed",
        )
        url = await self._ship(me, edges, snapshot, version)

        # replaced only after a successful upload: a persisted version is always live
        manifest.files[me] = FileRecord(
            version=version,
            hash=my_hash,
            dependencies=snapshot,
            url=url if manifest.target_url else None,
        )
        session.flush()
        return version

    async def _ship(self, me: str, edges: list[DependencyEdge], snapshot: dict[str, int], version: int) -> str:
        session = self.session
        artifact = await asyncio.to_thread(build_artifact, session.root, me, edges, snapshot, version)
        try:
            destination = destination_for(session.manifest.target, me, artifact.filename)
            url = await session.uploader.upload(artifact.path, destination)
        finally:
            Path(artifact.path).unlink(missing_ok=True)
        session.deployed.append(Deployed(file=me, version=version, destination=destination, url=url))
        return url
