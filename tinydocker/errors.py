"""Error types raised while pulling an image or launching a sandbox."""

from typing import Optional


class TinyDockerError(Exception):
    """Base class for every failure tinydocker reports to the user."""


class AuthError(TinyDockerError):
    """The token endpoint failed or returned something we cannot use."""


class RegistryError(TinyDockerError):
    """A manifest or blob request did not complete at the transport level."""


class ManifestError(TinyDockerError):
    """A manifest document could not be decoded into a known shape."""


class UnsupportedSchemaError(ManifestError):
    def __init__(self, schema_version):
        super().__init__(f"unknown schema version: {schema_version}")
        self.schema_version = schema_version


class UnexpectedStatusError(TinyDockerError):
    def __init__(self, status_code: int, url: Optional[str] = None):
        message = f"unexpected status code: {status_code}"
        if url:
            message += f" ({url})"
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class RedirectLoopError(TinyDockerError):
    def __init__(self, max_redirects: int, url: Optional[str] = None):
        super().__init__(f"more than {max_redirects} redirects while fetching {url}")
        self.max_redirects = max_redirects
        self.url = url


class LayerExtractionError(TinyDockerError):
    """tar could not unpack a layer into the sandbox root."""


class SandboxSetupError(TinyDockerError):
    """The sandbox root or its skeleton could not be prepared."""


class ConfinementError(TinyDockerError):
    """chroot, the PID namespace, or the exec itself failed in the child."""
