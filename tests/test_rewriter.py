from pathlib import Path

import pytest

from cdndeploy.rewriter import build_artifact, destination_for, public_url, rewrite_text, versioned_name
from cdndeploy.scanner import DependencyEdge

from conftest import write_files


@pytest.mark.parametrize(
    "name,version,expected",
    [
        ("./foo.js", 2, "./foo-2.js"),
        ("../lib/x.min.css", 1, "../lib/x.min-1.css"),
        ("./foo", 3, "./foo-3"),
        ("../foo", 1, "../foo-1"),
        ("./dir.v2/foo", 1, "./dir.v2/foo-1"),
        ("index.js", 0, "index-0.js"),
    ],
)
def test_versioned_name(name, version, expected):
    assert versioned_name(name, version) == expected


def test_rewrite_replaces_every_literal_occurrence():
    text = 'import a from "./foo.js"; load("./foo.js")'
    assert rewrite_text(text, {"./foo.js": 2}) == 'import a from "./foo-2.js"; load("./foo-2.js")'


def test_rewrite_prefers_longest_specifier_at_a_position():
    text = 'import "../a.js"; import "./a.js"'
    assert rewrite_text(text, {"./a.js": 1, "../a.js": 5}) == 'import "../a-5.js"; import "./a-1.js"'


def test_rewrite_without_dependencies_is_identity():
    assert rewrite_text("plain", {}) == "plain"


def test_build_artifact_writes_rewritten_temp_file(tmp_path):
    write_files(tmp_path, {"js/app.js": 'import u from "./util.js"\n', "js/util.js": ""})

    art = build_artifact(
        tmp_path,
        "./js/app.js",
        [DependencyEdge("./util.js", "./js/util.js")],
        {"./js/util.js": 4},
        7,
    )
    try:
        assert art.filename == "app-7.js"
        assert art.path.endswith("--app-7.js")
        assert Path(art.path).read_text(encoding="utf-8") == 'import u from "./util-4.js"\n'
        # the source file is untouched
        assert (tmp_path / "js/app.js").read_text(encoding="utf-8") == 'import u from "./util.js"\n'
    finally:
        Path(art.path).unlink()


def test_build_artifact_preserves_non_utf8_bytes(tmp_path):
    raw = b"\xff\xfe\x00binary /* cdn-import(./a.js) */ \x80"
    (tmp_path / "blob.bin").write_bytes(raw)

    art = build_artifact(tmp_path, "./blob.bin", [DependencyEdge("./a.js", "./a.js")], {"./a.js": 1}, 1)
    try:
        assert Path(art.path).read_bytes() == raw.replace(b"./a.js", b"./a-1.js")
    finally:
        Path(art.path).unlink()


def test_destination_for_collapses_duplicate_separators():
    assert destination_for("s3://b/cdn", "./index.js", "index-1.js") == "s3://b/cdn/index-1.js"
    assert destination_for("s3://b/cdn/", "./js/app.js", "app-2.js") == "s3://b/cdn/js/app-2.js"


def test_public_url_with_and_without_prefix():
    dest = "s3://b/cdn/js/app-2.js"
    assert public_url("s3://b/cdn", "https://cdn.example.com", dest) == "https://cdn.example.com/cdn/js/app-2.js"
    assert public_url("s3://b/cdn", None, dest) == "/js/app-2.js"
