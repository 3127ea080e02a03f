"""Shared fixtures for nurl tests."""

import json

import pytest
import yaml
from click.testing import CliRunner

from nurl.core import Workspace
from nurl.executor import RequestResult


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    """An empty workspace in a temp dir, also exported as $NURL_HOME."""
    home = tmp_path / "nurl_home"
    home.mkdir()
    monkeypatch.setenv("NURL_HOME", str(home))
    monkeypatch.chdir(tmp_path)
    return Workspace(home)


def write_yaml(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data, sort_keys=False))


def make_collection(workspace, name, requests=None, environments=None, active=None):
    """Write a collection with request files and environment files."""
    cdir = workspace.collection_dir(name)
    meta = {"name": name}
    if active:
        meta["active_environment"] = active
    write_yaml(cdir / "collection.yaml", meta)
    for env_name, env_vars in (environments or {}).items():
        write_yaml(cdir / "environments" / f"{env_name}.yaml", env_vars)
    for req in requests or []:
        write_yaml(cdir / "requests" / f"{req['name']}.yaml", req)
    return cdir


def make_request_result(
    status_code=200,
    body=None,
    headers=None,
    elapsed_ms=42.0,
    error=None,
    raw_text="",
    reason="",
):
    """Factory for mock RequestResult objects."""
    r = RequestResult()
    r.status_code = status_code
    r.reason = reason
    r.headers = headers or {}
    r.body = body
    r.elapsed_ms = elapsed_ms
    r.error = error
    r.raw_text = raw_text or (
        json.dumps(body) if isinstance(body, dict | list) else str(body or "")
    )
    r.size_bytes = len(r.raw_text)
    return r
