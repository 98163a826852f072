"""Layered configuration.

Order of priorities, later layers win:

1. built-in defaults
2. the profile for the running environment (``<config_dir>/<env>.json``)
3. ``<config_dir>/overrides.json``
4. a few selected environment variables named ``<section>__<key>``

Nested sections are merged recursively.  Missing files are skipped so a bare
checkout runs on defaults alone.
"""

import copy
import json
import logging
import os
from typing import Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

CONFIG_DIR = os.environ.get(
    'BANDREC_CONFIG_DIR',
    os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))), 'config'),
)

APP_ENV_VARS = [
    'store__project',
    'store__token',
    'store__dataset',
    'store__asset_base_url',
    'site__tokensecret',
]

# Seven days, as for cached profiles and project views
DEFAULT_CACHE_TTL = 7 * 24 * 3600
DEFAULT_TOKEN_SECRET = 'change-this-secret'

DEFAULTS = {
    'store': {
        'project': 'bandrec',
        'token': '',
        'dataset': 'development',
        'asset_base_url': '/api/assets',
        'connect_timeout': 10,
    },
    'site': {
        'hostname': 'localhost',
        'tokensecret': DEFAULT_TOKEN_SECRET,
        'token_ttl_seconds': None,
        'session_ttl_seconds': 7 * 24 * 3600,
    },
    'cache': {
        'ttl_seconds': DEFAULT_CACHE_TTL,
        'cache_projects': False,
    },
    'instruments': [
        {'value': 'trumpet', 'label': 'Trumpet'},
        {'value': 'cornet', 'label': 'Cornet'},
        {'value': 'flugelhorn', 'label': 'Flugelhorn'},
        {'value': 'trombone', 'label': 'Trombone'},
        {'value': 'euphonium', 'label': 'Euphonium'},
        {'value': 'tuba', 'label': 'Tuba'},
        {'value': 'horn', 'label': 'Horn'},
        {'value': 'flute', 'label': 'Flute'},
        {'value': 'clarinet', 'label': 'Clarinet'},
        {'value': 'saxophone', 'label': 'Saxophone'},
        {'value': 'drums', 'label': 'Drums'},
        {'value': 'percussion', 'label': 'Percussion'},
    ],
}


class StoreSettings(BaseModel):
    project: str
    token: str = ''
    dataset: str
    asset_base_url: str = '/api/assets'
    connect_timeout: int = 10


class SiteSettings(BaseModel):
    hostname: str = 'localhost'
    tokensecret: str
    token_ttl_seconds: Optional[int] = None
    session_ttl_seconds: int = 7 * 24 * 3600


class CacheSettings(BaseModel):
    ttl_seconds: int = DEFAULT_CACHE_TTL
    cache_projects: bool = False


class Instrument(BaseModel):
    value: str
    label: str


class Settings(BaseModel):
    env: str = 'development'
    store: StoreSettings
    site: SiteSettings
    cache: CacheSettings = CacheSettings()
    instruments: list[Instrument] = []


def deep_merge(base: dict, other: dict) -> dict:
    """Merge ``other`` into ``base`` recursively and return ``base``."""
    for key, value in other.items():
        if isinstance(base.get(key), dict) and isinstance(value, dict):
            deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _read_json(path: str) -> dict:
    if not os.path.isfile(path):
        return {}
    with open(path, encoding='utf-8') as f:
        data = json.load(f)
    logger.debug("Loaded configuration layer %s", path)
    return data


def env_layer(environ) -> dict:
    """Build a config layer from the selected ``section__key`` variables."""
    layer: dict = {}
    for name in APP_ENV_VARS:
        value = environ.get(name)
        if not value:
            continue
        section, key = name.split('__', 1)
        layer.setdefault(section, {})[key] = value
    return layer


def load_settings(env: str | None = None, config_dir: str | None = None, environ=None) -> Settings:
    """Return validated settings for ``env`` (default ``BANDREC_ENV``)."""
    environ = os.environ if environ is None else environ
    env = env or environ.get('BANDREC_ENV', 'development')
    config_dir = config_dir or CONFIG_DIR

    config = copy.deepcopy(DEFAULTS)
    deep_merge(config, _read_json(os.path.join(config_dir, f'{env}.json')))
    deep_merge(config, _read_json(os.path.join(config_dir, 'overrides.json')))
    deep_merge(config, env_layer(environ))
    config['env'] = env
    settings = Settings.model_validate(config)
    if env == 'production' and settings.site.tokensecret == DEFAULT_TOKEN_SECRET:
        raise ValueError('site.tokensecret must be set in production (site__tokensecret)')
    return settings
