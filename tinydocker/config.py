"""Settings read from the environment.

Every value has a default that talks to Docker Hub, so a plain
``tinydocker run alpine true`` needs no configuration at all.
"""

import os
import sys
from dataclasses import dataclass
from typing import Optional

DEFAULT_AUTH_URL = "https://auth.docker.io/token"
DEFAULT_REGISTRY = "registry-1.docker.io"
DEFAULT_HELPER_PATH = "/usr/local/bin/docker-explorer"
DEFAULT_MAX_REDIRECTS = 5

AUTH_SERVICE = "registry.docker.io"
INDEX_MEDIA_TYPE = "application/vnd.oci.image.index.v1+json"


def get_auth_url():
    """Get the token endpoint from environment or default"""
    return os.environ.get('TINYDOCKER_AUTH_URL', DEFAULT_AUTH_URL)


def get_registry():
    """Get the registry host from environment or default"""
    return os.environ.get('TINYDOCKER_REGISTRY', DEFAULT_REGISTRY)


def get_helper_path() -> Optional[str]:
    """Get the helper binary to inject, or None when injection is disabled"""
    path = os.environ.get('TINYDOCKER_HELPER_PATH', DEFAULT_HELPER_PATH)
    return path or None


def get_max_redirects():
    """Get the redirect hop limit, falling back to the default on bad input"""
    raw = os.environ.get('TINYDOCKER_MAX_REDIRECTS')
    if raw is None:
        return DEFAULT_MAX_REDIRECTS
    try:
        value = int(raw)
    except ValueError:
        return DEFAULT_MAX_REDIRECTS
    return value if value >= 0 else DEFAULT_MAX_REDIRECTS


def is_verbose():
    return os.environ.get('TINYDOCKER_VERBOSE', '').lower() in ('1', 'true', 'yes')


@dataclass(frozen=True)
class Settings:
    auth_url: str = DEFAULT_AUTH_URL
    registry: str = DEFAULT_REGISTRY
    helper_path: Optional[str] = DEFAULT_HELPER_PATH
    max_redirects: int = DEFAULT_MAX_REDIRECTS
    verbose: bool = False


def load_settings() -> Settings:
    return Settings(
        auth_url=get_auth_url(),
        registry=get_registry(),
        helper_path=get_helper_path(),
        max_redirects=get_max_redirects(),
        verbose=is_verbose(),
    )


def report(settings: Settings, message: str) -> None:
    """Print a progress line to stderr when verbose output is enabled.

    stdout is left alone because it belongs to the sandboxed command.
    """
    if settings.verbose:
        print(message, file=sys.stderr, flush=True)
