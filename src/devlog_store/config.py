"""Storage configuration and its TOML/JSON loader.

A config file carries one ``[storage]`` table whose ``type`` selects the
provider; provider-specific settings live in sub-tables::

    [storage]
    type = "git"

    [storage.git]
    repository = "acme/devlog"
    branch = "main"

    [storage.git.credentials]
    type = "token"
    token = "ghp_..."
"""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .errors import UnsupportedStorageError

STORAGE_TYPES = ("json", "sqlite", "postgres", "mysql", "git", "github")

CONFLICT_STRATEGIES = ("local-wins", "remote-wins", "timestamp-wins", "interactive")


@dataclass
class JsonStorageConfig:
    """Local file tree settings."""
    directory: Path = field(default_factory=lambda: Path(".devlog"))
    # str.format template over ``id``, ``padded_id`` (zero-filled to
    # ``min_padding``) and ``slug``; may include a subdirectory
    file_pattern: str = "{id}.json"
    min_padding: int = 3


@dataclass
class GitCredentials:
    """Credentials for the git remote."""
    type: str = "token"  # token, ssh, basic
    token: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    key_path: Optional[Path] = None


@dataclass
class GitStorageConfig:
    """Git-backed storage settings."""
    repository: str = ""  # URL or "owner/repo"
    branch: str = "main"
    path: str = ".devlog"  # devlog root inside the repository
    credentials: Optional[GitCredentials] = None
    auto_sync: bool = True
    conflict_resolution: str = "timestamp-wins"
    local_path: Optional[Path] = None

    def repository_name(self) -> str:
        name = self.repository.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
        return name[:-4] if name.endswith(".git") else name

    def get_local_path(self) -> Path:
        """Working copy location, ``~/.devlog/repos/<repo-name>`` by default."""
        if self.local_path is not None:
            return Path(self.local_path)
        return Path.home() / ".devlog" / "repos" / self.repository_name()


@dataclass
class RateLimitConfig:
    requests_per_hour: int = 5000
    retry_delay: float = 1.0
    max_retries: int = 3


@dataclass
class CacheConfig:
    enabled: bool = True
    ttl: float = 300.0  # seconds
    max_size: int = 100


@dataclass
class GitHubStorageConfig:
    """GitHub Issues storage settings."""
    owner: str = ""
    repo: str = ""
    token: str = ""
    api_url: str = "https://api.github.com"
    labels_prefix: str = "devlog"
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    timeout: float = 30.0


@dataclass
class StorageConfig:
    """Discriminated storage configuration consumed by the provider factory."""
    type: str = "json"
    json: JsonStorageConfig = field(default_factory=JsonStorageConfig)
    file_path: Optional[Path] = None  # sqlite database file
    connection_string: Optional[str] = None  # postgres / mysql URL
    options: dict[str, Any] = field(default_factory=dict)
    git: Optional[GitStorageConfig] = None
    github: Optional[GitHubStorageConfig] = None

    def __post_init__(self) -> None:
        if self.type not in STORAGE_TYPES:
            raise UnsupportedStorageError(
                f"Unsupported storage type: {self.type!r} "
                f"(expected one of {', '.join(STORAGE_TYPES)})"
            )


def load_toml_config(path: Path) -> dict[str, Any]:
    """Load configuration from TOML file."""
    with open(path, "rb") as f:
        return tomllib.load(f)


def load_json_config(path: Path) -> dict[str, Any]:
    """Load configuration from JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _resolve(value: Any, base_dir: Path) -> Path:
    path = Path(value).expanduser()
    return path if path.is_absolute() else base_dir / path


def _git_from_dict(data: dict[str, Any], base_dir: Path) -> GitStorageConfig:
    git = GitStorageConfig(repository=data.get("repository", ""))
    if "branch" in data:
        git.branch = data["branch"]
    if "path" in data:
        git.path = data["path"]
    if "auto_sync" in data:
        git.auto_sync = bool(data["auto_sync"])
    if "conflict_resolution" in data:
        strategy = data["conflict_resolution"]
        if strategy not in CONFLICT_STRATEGIES:
            raise ValueError(f"Unknown conflict resolution strategy: {strategy!r}")
        git.conflict_resolution = strategy
    if "local_path" in data:
        git.local_path = _resolve(data["local_path"], base_dir)

    creds = data.get("credentials")
    if isinstance(creds, dict):
        git.credentials = GitCredentials(
            type=creds.get("type", "token"),
            token=creds.get("token"),
            username=creds.get("username"),
            password=creds.get("password"),
            key_path=_resolve(creds["key_path"], base_dir) if creds.get("key_path") else None,
        )
    return git


def _github_from_dict(data: dict[str, Any]) -> GitHubStorageConfig:
    github = GitHubStorageConfig(
        owner=data.get("owner", ""),
        repo=data.get("repo", ""),
        token=data.get("token", ""),
    )
    if "api_url" in data:
        github.api_url = data["api_url"].rstrip("/")
    if "labels_prefix" in data:
        github.labels_prefix = data["labels_prefix"]
    if "timeout" in data:
        github.timeout = float(data["timeout"])

    rate = data.get("rate_limit") or {}
    if "requests_per_hour" in rate:
        github.rate_limit.requests_per_hour = int(rate["requests_per_hour"])
    if "retry_delay" in rate:
        github.rate_limit.retry_delay = float(rate["retry_delay"])
    if "max_retries" in rate:
        github.rate_limit.max_retries = int(rate["max_retries"])

    cache = data.get("cache") or {}
    if "enabled" in cache:
        github.cache.enabled = bool(cache["enabled"])
    if "ttl" in cache:
        github.cache.ttl = float(cache["ttl"])
    if "max_size" in cache:
        github.cache.max_size = int(cache["max_size"])
    return github


def dict_to_config(data: dict[str, Any], base_dir: Path) -> StorageConfig:
    """Convert a loaded config document to StorageConfig.

    Relative paths resolve against ``base_dir``.

    Raises:
        UnsupportedStorageError: If ``storage.type`` is unknown
    """
    storage = data.get("storage", {})
    config = StorageConfig(
        type=storage.get("type", "json"),
        json=JsonStorageConfig(directory=base_dir / ".devlog"),
    )

    if "json" in storage:
        js = storage["json"]
        if "directory" in js:
            config.json.directory = _resolve(js["directory"], base_dir)
        if "file_pattern" in js:
            config.json.file_pattern = js["file_pattern"]
        if "min_padding" in js:
            config.json.min_padding = int(js["min_padding"])

    if "file_path" in storage:
        config.file_path = _resolve(storage["file_path"], base_dir)
    if "connection_string" in storage:
        config.connection_string = storage["connection_string"]
    if "options" in storage:
        config.options = dict(storage["options"])
    if "git" in storage:
        config.git = _git_from_dict(storage["git"], base_dir)
    if "github" in storage:
        config.github = _github_from_dict(storage["github"])

    return config


def find_config_file(root: Path) -> Optional[Path]:
    """Find configuration file in ``root``.

    Search order:
    1. devlog.toml
    2. devlog.json
    3. .devlog.toml
    4. .devlog.json
    """
    candidates = [
        "devlog.toml",
        "devlog.json",
        ".devlog.toml",
        ".devlog.json",
    ]

    for name in candidates:
        path = root / name
        if path.is_file():
            return path

    return None


def load_config(root: Path, config_path: Optional[Path] = None) -> StorageConfig:
    """Load storage configuration.

    Args:
        root: Directory to search and to resolve relative paths against
        config_path: Optional explicit path to config file

    Returns:
        StorageConfig instance (JSON storage under ``root/.devlog`` if no file)
    """
    if config_path is None:
        config_path = find_config_file(root)

    if config_path is None:
        return StorageConfig(json=JsonStorageConfig(directory=root / ".devlog"))

    suffix = config_path.suffix.lower()
    if suffix == ".toml":
        data = load_toml_config(config_path)
    elif suffix == ".json":
        data = load_json_config(config_path)
    else:
        raise ValueError(f"Unsupported config file type: {suffix}")

    return dict_to_config(data, config_path.parent)
