# src/cdndeploy/cli.py
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from . import __version__
from . import main as main_module
from .config import DeployConfig

STAGE_CONFIG = "config"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _parse_dotenv_line(line: str) -> tuple[str, str] | None:
    """
    Minimal .env line parser: KEY=VALUE, optional "export ", optional
    matching quotes around the value, trailing # comments on unquoted values.
    No variable expansion.
    """
    s = line.strip()
    if not s or s.startswith("#"):
        return None
    if s.startswith("export "):
        s = s[len("export ") :].lstrip()

    key, sep, val = s.partition("=")
    key = key.strip()
    if not sep or not key:
        return None

    val = val.strip()
    if val[:1] in ("'", '"'):
        end = val.find(val[0], 1)
        return key, val[1:end] if end != -1 else val[1:]
    return key, val.split("#", 1)[0].strip()


def _load_dotenv_file(path: str, *, override: bool = False) -> bool:
    """
    Loads key/value pairs from a .env file into os.environ.
    Returns True if the file existed and was read.
    """
    p = Path(path)
    if not p.is_file():
        return False

    for raw_line in p.read_text(encoding="utf-8").splitlines():
        parsed = _parse_dotenv_line(raw_line)
        if not parsed:
            continue
        k, v = parsed
        if not override and k in os.environ:
            continue
        os.environ[k] = v
    return True


def _configure_logging(verbose: int, log_file: str | None) -> None:
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose > 0 else logging.INFO)
    for h in list(root.handlers):
        root.removeHandler(h)

    # stdout is reserved for the JSON result
    stderr = logging.StreamHandler(sys.stderr)
    stderr.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(stderr)

    if log_file:
        fh = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        fh.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(fh)

    # botocore is chatty at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _print_success(obj: dict[str, Any]) -> None:
    print(json.dumps(obj, separators=(",", ":")), file=sys.stdout)


def _print_failure(stage: str, err: Exception) -> None:
    out = {
        "ok": False,
        "stage": stage,
        "error_code": f"CDNDEPLOY_FAILED_{stage.upper()}",
        "error_type": type(err).__name__,
        "error_message": str(err),
    }
    print(json.dumps(out, separators=(",", ":")), file=sys.stdout)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="cdndeploy",
        description="Incremental, content-addressed deploy of a static asset graph.",
    )
    parser.add_argument("--repo", dest="repo_dir", metavar="PATH", help="Source repository (default: .).")
    parser.add_argument("--branch", metavar="NAME", help="Branch to deploy (default: current branch).")
    parser.add_argument(
        "--manifest",
        dest="manifest_path",
        metavar="PATH",
        help="Manifest path relative to the repository root (default: cdn.json).",
    )
    parser.add_argument("--worktree", dest="worktree_dir", metavar="PATH", help="Worktree location (default: /tmp/cdn).")
    parser.add_argument(
        "--no-worktree",
        dest="use_worktree",
        action="store_const",
        const=False,
        default=None,
        help="Deploy straight from --repo without a fresh worktree; the manifest is written but not committed.",
    )
    parser.add_argument(
        "--no-push",
        dest="push",
        action="store_const",
        const=False,
        default=None,
        help="Commit the manifest but do not push it.",
    )
    parser.add_argument("--max-in-flight", dest="max_in_flight", type=int, metavar="N", help="External command cap (default: 40).")
    parser.add_argument("--retry-delay", dest="retry_delay", type=float, metavar="SECONDS", help="Metadata/ACL retry delay.")
    parser.add_argument("--import-marker", dest="import_marker", metavar="NAME", help="Pseudo-import call name (default: cdn-import).")
    parser.add_argument(
        "--dry-run",
        action="store_const",
        const=True,
        default=None,
        help="Compute versions and artifacts without uploading, writing or pushing anything.",
    )
    parser.add_argument(
        "--aws-region",
        dest="aws_region",
        metavar="REGION",
        help="Optional AWS region override (otherwise AWS_REGION/AWS_DEFAULT_REGION are used).",
    )
    parser.add_argument("--log-file", dest="log_file", metavar="PATH", help="Append the command log to this file.")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Debug logging.")
    parser.add_argument(
        "--dotenv",
        nargs="?",
        const=".env",
        default=None,
        metavar="PATH",
        help="Optional: load CDNDEPLOY_* env vars from a local .env file (default: ./.env).",
    )
    parser.add_argument(
        "--dotenv-override",
        action="store_true",
        help="Optional: allow .env values to override already-set environment variables.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"cdndeploy {__version__}",
    )
    return parser.parse_args(argv)


_CONFIG_FLAGS = (
    "repo_dir",
    "branch",
    "manifest_path",
    "worktree_dir",
    "use_worktree",
    "push",
    "max_in_flight",
    "retry_delay",
    "import_marker",
    "dry_run",
    "aws_region",
    "log_file",
)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    if args.dotenv:
        _load_dotenv_file(str(args.dotenv), override=bool(args.dotenv_override))

    try:
        config = DeployConfig.from_sources({k: getattr(args, k) for k in _CONFIG_FLAGS})
    except Exception as e:  # noqa: BLE001 - config errors are rendered, not raised
        _print_failure(STAGE_CONFIG, e)
        return 1

    _configure_logging(args.verbose, config.log_file)
    logging.getLogger(__name__).info("======= NEW DEPLOY: %s", os.path.abspath(config.repo_dir))

    try:
        result = main_module.run(config)
        _print_success(result)
        return 0

    except Exception as e:  # noqa: BLE001 - top-level CLI error handler
        from cdndeploy.graph import DeployStageError

        logging.getLogger(__name__).exception("deploy failed")
        if isinstance(e, DeployStageError):
            _print_failure(e.stage, e.inner)
            return 1

        _print_failure("unknown", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
