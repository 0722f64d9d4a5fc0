import json

import pytest
from botocore.exceptions import ClientError

from cdndeploy import s3_uploader
from cdndeploy.config import DeployConfig
from cdndeploy.errors import CycleError
from cdndeploy.graph import STAGE_DEPLOY, STAGE_LOAD_MANIFEST, DeployStageError, run_deploy_graph

from conftest import commit_all, git, init_repo, requires_git, write_files

pytestmark = requires_git


class RecordingS3:
    def __init__(self):
        self.keys = []
        self.bodies = {}
        self.fail_keys = set()

    def put_object(self, **kw):
        if kw["Key"] in self.fail_keys:
            raise ClientError({"Error": {"Code": "InternalError", "Message": "boom"}}, "PutObject")
        if kw["Key"] in self.bodies:
            raise ClientError({"Error": {"Code": "PreconditionFailed", "Message": "exists"}}, "PutObject")
        self.keys.append(kw["Key"])
        self.bodies[kw["Key"]] = kw["Body"]

    def head_object(self, **kw):
        return {}

    def copy_object(self, **kw):
        pass

    def put_object_acl(self, **kw):
        pass


@pytest.fixture
def fake_s3(monkeypatch):
    client = RecordingS3()
    monkeypatch.setattr(s3_uploader.boto3, "client", lambda *a, **k: client)
    return client


@pytest.fixture
def site(tmp_path):
    repo = init_repo(tmp_path / "site")
    write_files(
        repo,
        {
            "web/index.js": 'import "./a.js"\n',
            "web/a.js": "export {}\n",
            "cdn.json": json.dumps(
                {
                    "entry": "index.js",
                    "target": "s3://bucket/cdn",
                    "targetUrl": "https://cdn.example.com",
                    "base": "web",
                }
            ),
        },
    )
    commit_all(repo)
    return repo


def config(repo, **kw):
    return DeployConfig(repo_dir=str(repo), use_worktree=False, retry_delay=0, **kw)


def test_deploys_then_skips_unchanged_graph(site, fake_s3):
    result = run_deploy_graph(config=config(site))

    assert result["ok"] is True
    assert result["stage"] == "done"
    assert result["entry_version"] == 1
    assert [d["url"] for d in result["deployed"]] == [
        "https://cdn.example.com/cdn/a-1.js",
        "https://cdn.example.com/cdn/index-1.js",
    ]
    assert fake_s3.keys == ["cdn/a-1.js", "cdn/index-1.js"]

    manifest = json.loads((site / "cdn.json").read_text(encoding="utf-8"))
    assert manifest["files"]["./index.js"]["dependencies"] == {"./a.js": 1}
    assert manifest["files"]["./a.js"]["url"] == "https://cdn.example.com/cdn/a-1.js"

    again = run_deploy_graph(config=config(site))
    assert again["deployed"] == []
    assert again["entry_version"] == 1
    assert fake_s3.keys == ["cdn/a-1.js", "cdn/index-1.js"]


def test_dry_run_writes_nothing(site, fake_s3):
    before = (site / "cdn.json").read_text(encoding="utf-8")

    result = run_deploy_graph(config=config(site, dry_run=True))

    assert result["stage"] == "done_dry_run"
    assert [d["file"] for d in result["deployed"]] == ["./a.js", "./index.js"]
    assert fake_s3.keys == []
    assert (site / "cdn.json").read_text(encoding="utf-8") == before


def test_cycle_surfaces_as_deploy_stage_error(site, fake_s3):
    write_files(site, {"web/a.js": 'import "./index.js"\n'})
    commit_all(site)

    with pytest.raises(DeployStageError) as ei:
        run_deploy_graph(config=config(site))

    assert ei.value.stage == STAGE_DEPLOY
    assert isinstance(ei.value.inner, CycleError)
    assert fake_s3.keys == []


def test_missing_manifest_fails_in_load_stage(tmp_path):
    with pytest.raises(DeployStageError) as ei:
        run_deploy_graph(config=config(tmp_path))
    assert ei.value.stage == STAGE_LOAD_MANIFEST


@pytest.fixture
def published(tmp_path):
    origin = tmp_path / "origin.git"
    origin.mkdir()
    git(origin, "init", "-q", "--bare")
    work = init_repo(tmp_path / "work")
    git(work, "remote", "add", "origin", str(origin))
    write_files(
        work,
        {
            "index.js": 'import "./c.js"\n',
            "c.js": "export const c = 1\n",
            "cdn.json": json.dumps({"entry": "index.js", "target": "s3://bucket/cdn"}),
        },
    )
    commit_all(work, "init")
    git(work, "push", "-q", "origin", "HEAD:main")
    return origin, work


def worktree_config(work, tmp_path):
    return DeployConfig(repo_dir=str(work), branch="main", worktree_dir=str(tmp_path / "wt"), retry_delay=0)


def test_aborted_run_keeps_its_versions_for_the_next_run(published, tmp_path, fake_s3):
    origin, work = published
    fake_s3.fail_keys.add("cdn/index-1.js")

    with pytest.raises(DeployStageError) as ei:
        run_deploy_graph(config=worktree_config(work, tmp_path))

    assert ei.value.stage == STAGE_DEPLOY
    assert fake_s3.keys == ["cdn/c-1.js"]
    assert not (tmp_path / "wt").exists()
    pushed = json.loads(git(origin, "show", "main:cdn.json"))
    assert pushed["files"]["./c.js"]["version"] == 1
    assert "./index.js" not in pushed["files"] or pushed["files"]["./index.js"]["version"] == 0

    git(work, "pull", "-q", "--ff-only", "origin", "main")
    write_files(work, {"c.js": "export const c = 2\n"})
    commit_all(work, "change c")
    git(work, "push", "-q", "origin", "HEAD:main")
    fake_s3.fail_keys.clear()

    result = run_deploy_graph(config=worktree_config(work, tmp_path))

    assert result["ok"] is True
    assert result["committed"] is True
    assert fake_s3.keys == ["cdn/c-1.js", "cdn/c-2.js", "cdn/index-1.js"]
    assert json.loads(git(origin, "show", "main:cdn.json"))["files"]["./c.js"]["version"] == 2
    assert not (tmp_path / "wt").exists()


def test_failed_manifest_stage_removes_the_worktree(published, tmp_path, fake_s3):
    origin, work = published
    git(work, "rm", "-q", "cdn.json")
    commit_all(work, "drop manifest")
    git(work, "push", "-q", "origin", "HEAD:main")

    with pytest.raises(DeployStageError) as ei:
        run_deploy_graph(config=worktree_config(work, tmp_path))

    assert ei.value.stage == STAGE_LOAD_MANIFEST
    assert not (tmp_path / "wt").exists()
