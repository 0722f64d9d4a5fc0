from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Callable

import pytest

from cdndeploy.manifest import Manifest

TARGET = "s3://bucket/cdn"

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


class FakeHasher:
    """identity -> hash; unknown files hash to "h0"."""

    def __init__(self, hashes: dict[str, str] | None = None) -> None:
        self.hashes = dict(hashes or {})
        self.calls: list[str] = []

    async def hash(self, identity: str) -> str:
        self.calls.append(identity)
        return self.hashes.get(identity, "h0")


class FakeUploader:
    """Records (destination, artifact text); artifacts are deleted right after upload."""

    def __init__(self, on_upload: Callable[[str], None] | None = None, fail_on: str | None = None) -> None:
        self.uploads: list[tuple[str, str]] = []
        self.on_upload = on_upload
        self.fail_on = fail_on

    async def upload(self, local_path: str, destination: str) -> str:
        if self.fail_on and destination.endswith(self.fail_on):
            raise RuntimeError(f"upload of {destination} failed")
        if self.on_upload:
            self.on_upload(destination)
        self.uploads.append((destination, Path(local_path).read_text(encoding="utf-8")))
        return destination

    @property
    def destinations(self) -> list[str]:
        return [d for d, _ in self.uploads]

    def text_of(self, suffix: str) -> str:
        matches = [t for d, t in self.uploads if d.endswith(suffix)]
        assert len(matches) == 1, (suffix, self.destinations)
        return matches[0]


def write_files(root: Path, files: dict[str, str]) -> None:
    for rel, text in files.items():
        p = root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(text, encoding="utf-8")


def make_manifest(entry: str = "index.js", **kw) -> Manifest:
    return Manifest.model_validate({"entry": entry, "target": TARGET, **kw})


def git(cwd: Path, *args: str) -> str:
    p = subprocess.run(["git", *args], cwd=str(cwd), capture_output=True, text=True, check=True)
    return p.stdout.strip()


def init_repo(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init", "-q")
    git(path, "checkout", "-q", "-b", "main")
    git(path, "config", "user.email", "deploy@example.com")
    git(path, "config", "user.name", "Deploy Test")
    git(path, "config", "commit.gpgsign", "false")
    return path


def commit_all(path: Path, message: str = "update") -> None:
    git(path, "add", "-A")
    git(path, "commit", "-q", "-m", message)


@pytest.fixture
def hasher() -> FakeHasher:
    return FakeHasher()


@pytest.fixture
def uploader() -> FakeUploader:
    return FakeUploader()
