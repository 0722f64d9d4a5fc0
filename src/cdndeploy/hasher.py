# src/cdndeploy/hasher.py
from __future__ import annotations

from pathlib import Path
from typing import Protocol

from cdndeploy import git_ops
from cdndeploy.gate import CommandGate
from cdndeploy.utils import identity_relpath


class Hasher(Protocol):
    async def hash(self, identity: str) -> str: ...


class ContentHasher:
    """
    Content identity = short id of the last commit on `ref` touching the file.
    Working-tree edits that were never committed do not change the hash;
    a file that was never committed fails the run.
    """

    def __init__(self, root: str | Path, ref: str, gate: CommandGate) -> None:
        self.root = str(root)
        self.ref = ref
        self.gate = gate

    async def hash(self, identity: str) -> str:
        return await self.gate.run(git_ops.last_commit_hash, self.root, self.ref, identity_relpath(identity))
