from __future__ import annotations

import tomllib

import requests
import structlog
from pydantic import ValidationError

from ..core.errors import ConfigError, FetchRepositoryConfig
from ..core.models import Repository, RepositoryConfig

log = structlog.get_logger(__name__)

CONFIG_FILE = "ixy-ci.toml"
RAW_CONTENT_URL = "https://raw.githubusercontent.com/{repository}/{branch}/{file}"
FETCH_TIMEOUT_S = 30


def config_url(repository: Repository, branch: str) -> str:
    return RAW_CONTENT_URL.format(repository=repository, branch=branch, file=CONFIG_FILE)


def parse_repository_config(text: str) -> RepositoryConfig:
    try:
        return RepositoryConfig.model_validate(tomllib.loads(text))
    except (tomllib.TOMLDecodeError, ValidationError) as e:
        raise ConfigError(e) from e


def fetch_repository_config(repository: Repository, branch: str) -> RepositoryConfig:
    url = config_url(repository, branch)
    log.debug("fetching_repository_config", url=url)
    try:
        r = requests.get(url, timeout=FETCH_TIMEOUT_S)
        r.raise_for_status()
    except requests.RequestException as e:
        raise FetchRepositoryConfig(e) from e
    return parse_repository_config(r.text)
