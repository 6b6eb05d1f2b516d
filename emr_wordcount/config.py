# emr_wordcount/config.py

import json
import os
from pathlib import Path
from typing import Dict, Mapping, Optional

from .dataclasses import ReadinessPolicy, ServiceSpec
from .errors import ConfigurationError

DEFAULT_PROVIDER = "aws"
SUPPORTED_PROVIDERS = ("aws",)
DEFAULT_CLUSTER_NAME = "wordcountdemo"
DEFAULT_RELEASE_LABEL = "emr-6.15.0"
DEFAULT_PROXY_PORT = 6666

REQUIRED_KEYS = ("key_pair_name", "work_uri")


def load_config(config_path: str) -> Dict:
    """Load the configuration JSON file."""
    try:
        with open(config_path, 'r') as f:
            return json.load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found at {config_path}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON format in {config_path}: {e}")


def validate_config(config: Dict) -> None:
    """Validates required keys."""
    for key in REQUIRED_KEYS:
        if not config.get(key):
            raise ConfigurationError(f"Missing required key '{key}' in configuration")
    if not str(config['work_uri']).startswith('s3://'):
        raise ConfigurationError(f"'work_uri' must be an s3:// URI, got {config['work_uri']!r}")
    try:
        int(config.get('proxy_port', DEFAULT_PROXY_PORT))
    except (TypeError, ValueError):
        raise ConfigurationError(f"'proxy_port' must be an integer, got {config['proxy_port']!r}")


def resolve_setting(name: str, overrides: Mapping, env: Mapping[str, str],
                    env_vars=(), default: Optional[str] = None) -> Optional[str]:
    """Resolve one setting: explicit override, then environment, then default.

    Empty strings count as unset at every level.
    """
    value = overrides.get(name)
    if value not in (None, ""):
        return str(value)
    for var in env_vars:
        value = env.get(var)
        if value:
            return value
    return default


def default_key_file(home: Optional[str] = None) -> str:
    home = home if home is not None else str(Path.home())
    return os.path.join(home, ".ssh", "id_rsa")


def resolve_service_spec(config: Mapping, env: Optional[Mapping[str, str]] = None,
                         home: Optional[str] = None) -> ServiceSpec:
    """Build the ServiceSpec from the config file, the environment and defaults.

    ``env`` defaults to ``os.environ``; pass a dict to resolve independently of
    the process environment.
    """
    env = os.environ if env is None else env

    provider = resolve_setting('provider', config, env, ('CLUSTER_PROVIDER',), DEFAULT_PROVIDER)
    if provider not in SUPPORTED_PROVIDERS:
        raise ConfigurationError(
            f"Unsupported provider '{provider}' (supported: {', '.join(SUPPORTED_PROVIDERS)})")

    account = resolve_setting('account', config, env, ('CLUSTER_ACCOUNT', 'AWS_ACCESS_KEY_ID'))
    if not account:
        raise ConfigurationError(
            "No account identifier: set 'account' in the config or CLUSTER_ACCOUNT")

    key = resolve_setting('key', config, env, ('CLUSTER_KEY', 'AWS_SECRET_ACCESS_KEY'))
    if not key:
        raise ConfigurationError(
            "No credential key: set 'key' in the config or CLUSTER_KEY")

    secret_key_file = resolve_setting('ssh_keyfile', config, env, ('CLUSTER_SSH_KEYFILE',),
                                      default_key_file(home))
    cluster_name = resolve_setting('cluster_name', config, {}, (), DEFAULT_CLUSTER_NAME)

    return ServiceSpec(
        provider=provider,
        account=account,
        key=key,
        secret_key_file=os.path.expanduser(secret_key_file),
        cluster_name=cluster_name,
    )


def resolve_readiness_policy(config: Mapping) -> ReadinessPolicy:
    section = config.get('readiness') or {}
    if not isinstance(section, Mapping):
        raise ConfigurationError("'readiness' must be an object")
    defaults = ReadinessPolicy()
    try:
        policy = ReadinessPolicy(
            initial_interval=float(section.get('initial_interval', defaults.initial_interval)),
            backoff=float(section.get('backoff', defaults.backoff)),
            max_interval=float(section.get('max_interval', defaults.max_interval)),
            timeout=float(section.get('timeout', defaults.timeout)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid 'readiness' section: {e}")

    if min(policy.initial_interval, policy.max_interval, policy.timeout) <= 0:
        raise ConfigurationError("'readiness' intervals and timeout must be positive")
    if policy.backoff < 1:
        raise ConfigurationError("'readiness.backoff' must be >= 1")
    return policy
