"""Pull a container image from a registry and run a command inside it."""

from .errors import (
    AuthError,
    ConfinementError,
    LayerExtractionError,
    ManifestError,
    RedirectLoopError,
    RegistryError,
    SandboxSetupError,
    TinyDockerError,
    UnexpectedStatusError,
    UnsupportedSchemaError,
)
from .reference import ImageReference, parse_image_reference
from .registry import RegistryClient, pull
from .sandbox import Confiner, LinuxConfiner, SandboxLauncher

__version__ = "0.1.0"
