"""nurl core - config loading, workspace stores, request definitions."""

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import dotenv_values

from nurl.auth import CredentialStore
from nurl.exceptions import ChainNotFound, NurlError, RequestNotFound

logger = logging.getLogger(__name__)

GLOBAL_DIR = Path.home() / ".nurl"

CWD_CONFIG_CANDIDATES = [
    ".nurl.yaml",
    ".nurl.yml",
    "nurl.yaml",
    "nurl.yml",
]

DEFAULT_CONFIG: dict[str, Any] = {
    "default_headers": {
        "Content-Type": "application/json",
        "Accept": "application/json",
    },
    "timeout_seconds": 30,
    "history_retention_days": 30,
    "env_file": None,
}

YAML_EXTENSIONS = (".yaml", ".yml")


def default_home() -> Path:
    """$NURL_HOME if set, else ~/.nurl."""
    env_home = os.environ.get("NURL_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return GLOBAL_DIR


def resolve_path(
    candidates: list[Path],
    default: Path | None = None,
) -> Path | None:
    """Return the first existing path from candidates, else default."""
    for p in candidates:
        if p.exists():
            return p.resolve()
    return default


def resolve_config_path(config_file: str | None, home: Path) -> Path | None:
    """Find the config file to use.

    Resolution order:
      1. Explicit -c flag (no fallthrough if missing)
      2. .nurl.yaml (variants) in CWD
      3. <home>/config.yaml
    """
    if config_file:
        return resolve_path([Path(config_file)])
    return resolve_path(
        [Path(c) for c in CWD_CONFIG_CANDIDATES] + [home / "config.yaml"],
    )


def load_env(env_file: str | None, base_dir: str | Path = ".") -> dict[str, str]:
    """Load .env file and merge with os.environ.

    .env values take precedence over os.environ.
    """
    env = dict(os.environ)
    if env_file:
        dotenv_path = Path(base_dir) / env_file
        if dotenv_path.exists():
            dotenv_vars = dotenv_values(str(dotenv_path))
            env.update({k: v for k, v in dotenv_vars.items() if v is not None})
    return env


def resolve_value(value: Any, env: dict[str, str]) -> Any:
    """Resolve $VAR and ${VAR} references in a string value.

    Unknown names are left as written. Non-strings pass through.
    """
    if not isinstance(value, str):
        return value

    def _replace(m: re.Match) -> str:
        var_name = m.group(1) or m.group(2)
        return env.get(var_name, m.group(0))

    return re.sub(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)", _replace, value)


def load_config(config_path: str | Path | None) -> dict:
    """Load the YAML config over DEFAULT_CONFIG.

    ${VAR} references in string values are expanded from the environment
    and the configured env_file (relative to the config file).
    """
    config = {k: (dict(v) if isinstance(v, dict) else v) for k, v in DEFAULT_CONFIG.items()}
    config["_config_dir"] = None
    if config_path is None:
        return config
    path = Path(config_path)
    if not path.exists():
        return config

    data = _read_yaml(path)
    if not isinstance(data, dict):
        return config
    config["_config_dir"] = path.resolve().parent

    env = load_env(data.get("env_file"), config["_config_dir"])
    for key, value in data.items():
        if isinstance(value, dict):
            config[key] = {k: resolve_value(v, env) for k, v in value.items()}
        else:
            config[key] = resolve_value(value, env)
    return config


def _read_yaml(path: Path) -> Any:
    """Read a YAML file, None when unreadable or malformed."""
    try:
        with open(path) as f:
            return yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Could not read %s: %s", path, e)
        return None


def _write_yaml(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")


def _find_yaml(directory: Path, name: str) -> Path | None:
    """Look for name.yaml or name.yml in a directory."""
    for ext in YAML_EXTENSIONS:
        candidate = directory / (name + ext)
        if candidate.is_file():
            return candidate
    return None


def _yaml_stems(directory: Path) -> list[str]:
    if not directory.is_dir():
        return []
    return sorted(f.stem for f in directory.iterdir() if f.suffix in YAML_EXTENSIONS and f.is_file())


# ── Request definitions ──────────────────────────────────────────────────


@dataclass
class RequestDefinition:
    name: str
    method: str = "GET"
    url: str = ""
    headers: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    auth: dict | str | None = None
    extract: dict[str, str] = field(default_factory=dict)
    description: str = ""
    collection: str | None = None

    @classmethod
    def from_dict(cls, data: dict, name: str | None = None, collection: str | None = None):
        return cls(
            name=data.get("name") or name or "",
            method=str(data.get("method") or "GET").upper(),
            url=data.get("url") or "",
            headers=dict(data.get("headers") or {}),
            body=data.get("body"),
            auth=data.get("auth"),
            extract=dict(data.get("extract") or {}),
            description=data.get("description") or "",
            collection=collection,
        )

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "name": self.name,
            "method": self.method,
            "url": self.url,
            "headers": self.headers,
        }
        if self.description:
            data["description"] = self.description
        if self.body is not None:
            data["body"] = self.body
        if self.auth:
            data["auth"] = self.auth
        if self.extract:
            data["extract"] = self.extract
        return data


# ── Workspace (variable store, request store, chain source) ──────────────


class Workspace:
    """File-backed state under the nurl home directory.

        config.yaml
        variables.yaml                           global variables
        secrets.yaml                             tokens / api_keys / basic_auth
        collections/<c>/collection.yaml          {name, active_environment}
        collections/<c>/environments/<e>.yaml    environment variables
        collections/<c>/requests/<r>.yaml        request definitions
        chains/<name>.yaml                       chain definitions
        history/history.json
    """

    def __init__(self, home: Path | str | None = None):
        self.home = Path(home) if home else default_home()

    @property
    def variables_file(self) -> Path:
        return self.home / "variables.yaml"

    @property
    def secrets_file(self) -> Path:
        return self.home / "secrets.yaml"

    @property
    def collections_dir(self) -> Path:
        return self.home / "collections"

    @property
    def chains_dir(self) -> Path:
        return self.home / "chains"

    @property
    def history_file(self) -> Path:
        return self.home / "history" / "history.json"

    # -- global variables

    def get_global_vars(self) -> dict:
        data = _read_yaml(self.variables_file) if self.variables_file.exists() else None
        return dict(data) if isinstance(data, dict) else {}

    def set_global_var(self, key: str, value: Any) -> None:
        data = self.get_global_vars()
        data[key] = value
        _write_yaml(self.variables_file, data)

    # -- collections and environments

    def collection_dir(self, collection: str) -> Path:
        return self.collections_dir / collection

    def list_collections(self) -> list[str]:
        if not self.collections_dir.is_dir():
            return []
        return sorted(d.name for d in self.collections_dir.iterdir() if d.is_dir())

    def _require_collection(self, collection: str) -> Path:
        cdir = self.collection_dir(collection)
        if not cdir.is_dir():
            raise NurlError(f"Collection '{collection}' not found in {self.collections_dir}")
        return cdir

    def load_collection_meta(self, collection: str) -> dict:
        path = _find_yaml(self.collection_dir(collection), "collection")
        data = _read_yaml(path) if path else None
        return dict(data) if isinstance(data, dict) else {}

    def active_environment(self, collection: str) -> str | None:
        return self.load_collection_meta(collection).get("active_environment")

    def list_environments(self, collection: str) -> list[str]:
        return _yaml_stems(self._require_collection(collection) / "environments")

    def use_environment(self, collection: str, environment: str) -> None:
        if environment not in self.list_environments(collection):
            raise NurlError(f"Environment '{environment}' not found in collection '{collection}'")
        meta = self.load_collection_meta(collection)
        meta.setdefault("name", collection)
        meta["active_environment"] = environment
        _write_yaml(self.collection_dir(collection) / "collection.yaml", meta)

    def _environment_path(self, collection: str, environment: str) -> Path:
        env_dir = self.collection_dir(collection) / "environments"
        return _find_yaml(env_dir, environment) or env_dir / f"{environment}.yaml"

    def get_collection_env_vars(self, collection: str | None) -> dict:
        """Variables of the collection's active environment, {} if none."""
        if not collection:
            return {}
        environment = self.active_environment(collection)
        if not environment:
            return {}
        path = self._environment_path(collection, environment)
        data = _read_yaml(path) if path.exists() else None
        if not isinstance(data, dict):
            logger.debug("No variables for %s/%s", collection, environment)
            return {}
        # environments may nest their values under a "variables" key
        if isinstance(data.get("variables"), dict):
            return dict(data["variables"])
        return dict(data)

    def set_env_var(self, collection: str, key: str, value: Any) -> None:
        self._require_collection(collection)
        environment = self.active_environment(collection)
        if not environment:
            raise NurlError(f"Collection '{collection}' has no active environment")
        path = self._environment_path(collection, environment)
        data = _read_yaml(path) if path.exists() else None
        if not isinstance(data, dict):
            data = {}
        # keep the file's shape: nested "variables" stays nested
        if isinstance(data.get("variables"), dict):
            data["variables"][key] = value
        else:
            data[key] = value
        _write_yaml(path, data)

    # -- requests

    def list_requests(self, collection: str) -> list[str]:
        return _yaml_stems(self._require_collection(collection) / "requests")

    def get_request_by_name(self, name: str, collection: str | None = None) -> RequestDefinition:
        """Load a saved request.

        ``collection/name`` addresses a request explicitly. Without a
        collection every collection is searched in name order.
        """
        if collection is None and "/" in name:
            collection, name = name.split("/", 1)
        collections = [collection] if collection else self.list_collections()
        for coll in collections:
            path = _find_yaml(self.collection_dir(coll) / "requests", name)
            if path is None:
                continue
            data = _read_yaml(path)
            if isinstance(data, dict):
                return RequestDefinition.from_dict(data, name=name, collection=coll)
        raise RequestNotFound(name, collection)

    def save_request(self, collection: str, request: RequestDefinition) -> Path:
        path = self.collection_dir(collection) / "requests" / f"{request.name}.yaml"
        _write_yaml(path, request.to_dict())
        return path

    def request_store(self, collection: str | None = None) -> "RequestStore":
        return RequestStore(self, collection)

    # -- chains

    def list_chains(self) -> list[str]:
        return _yaml_stems(self.chains_dir)

    def load_chain(self, name_or_path: str) -> dict:
        """Load a chain by file path or by name under chains/."""
        p = Path(name_or_path)
        path = p if p.is_file() else _find_yaml(self.chains_dir, name_or_path)
        if path is None:
            raise ChainNotFound(name_or_path)
        data = _read_yaml(path)
        if isinstance(data, list):
            data = {"steps": data}
        if not isinstance(data, dict):
            raise ChainNotFound(name_or_path)
        data.setdefault("name", path.stem)
        return data

    def save_chain(self, name: str, chain: dict) -> Path:
        path = self.chains_dir / f"{name}.yaml"
        _write_yaml(path, chain)
        return path

    # -- secrets

    def load_secrets(self) -> dict:
        data = _read_yaml(self.secrets_file) if self.secrets_file.exists() else None
        return dict(data) if isinstance(data, dict) else {}

    def credential_store(self) -> CredentialStore:
        return CredentialStore(self.load_secrets())


class RequestStore:
    """Request lookups bound to one collection (or all of them)."""

    def __init__(self, workspace: Workspace, collection: str | None = None):
        self.workspace = workspace
        self.collection = collection

    def get_request_by_name(self, name: str) -> RequestDefinition:
        return self.workspace.get_request_by_name(name, self.collection)


# ── Scaffolding ──────────────────────────────────────────────────────────

EXAMPLE_COLLECTION = "jsonplaceholder"

EXAMPLE_REQUESTS = [
    {
        "name": "get-posts",
        "description": "List all posts",
        "method": "GET",
        "url": "{{base_url}}/posts",
    },
    {
        "name": "get-post",
        "description": "Fetch one post",
        "method": "GET",
        "url": "{{base_url}}/posts/{{post_id}}",
    },
    {
        "name": "create-post",
        "description": "Create a post",
        "method": "POST",
        "url": "{{base_url}}/posts",
        "body": {"title": "hello {{$random_string}}", "body": "created at {{$timestamp}}", "userId": 1},
        "extract": {"post_id": "body.id"},
    },
    {
        "name": "get-comments",
        "description": "Comments on a post",
        "method": "GET",
        "url": "{{base_url}}/posts/{{post_id}}/comments",
    },
]

EXAMPLE_CHAIN = {
    "name": "example-workflow",
    "description": "Fetch a post, then its first comment's author",
    "collection": EXAMPLE_COLLECTION,
    "stop_on_error": True,
    "steps": [
        {"request": "get-posts", "extract": {"post_id": "body.0.id"}},
        {"request": "get-comments", "extract": {"author": "body[0].email"}, "delay_ms": 100},
        {
            "name": "echo-author",
            "method": "GET",
            "url": "{{base_url}}/comments?email={{author}}",
        },
    ],
}


def init_workspace(workspace: Workspace) -> list[tuple[Path, bool]]:
    """Scaffold the workspace; existing files are left untouched.

    Returns (path, created) pairs.
    """
    config = {k: v for k, v in DEFAULT_CONFIG.items() if v is not None}
    coll_dir = workspace.collection_dir(EXAMPLE_COLLECTION)
    files: list[tuple[Path, Any]] = [
        (workspace.home / "config.yaml", config),
        (workspace.variables_file, {}),
        (workspace.secrets_file, {"tokens": {}, "oauth": {}, "api_keys": {}, "basic_auth": {}}),
        (
            coll_dir / "collection.yaml",
            {"name": EXAMPLE_COLLECTION, "active_environment": "default"},
        ),
        (
            coll_dir / "environments" / "default.yaml",
            {"base_url": "https://jsonplaceholder.typicode.com", "post_id": 1},
        ),
        (
            coll_dir / "environments" / "dev.yaml",
            {"base_url": "http://localhost:3000", "post_id": 1},
        ),
        (
            coll_dir / "environments" / "staging.yaml",
            {"base_url": "https://jsonplaceholder.typicode.com", "post_id": 2},
        ),
        (workspace.chains_dir / "example-workflow.yaml", EXAMPLE_CHAIN),
    ]
    for req in EXAMPLE_REQUESTS:
        files.append((coll_dir / "requests" / f"{req['name']}.yaml", req))

    created: list[tuple[Path, bool]] = []
    for path, data in files:
        if path.exists():
            created.append((path, False))
            continue
        _write_yaml(path, data)
        created.append((path, True))

    workspace.history_file.parent.mkdir(parents=True, exist_ok=True)
    return created
