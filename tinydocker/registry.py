"""Client for the registry's image pull protocol.

A pull is three kinds of request, always in this order:

1. GET the token endpoint for a pull-scoped bearer token
2. GET ``/v2/<name>/manifests/<ref>`` (once, or twice for schema 2)
3. GET ``/v2/<name>/blobs/<digest>`` for every layer, in manifest order
"""

from typing import Callable, Dict, List, Optional

import requests

from .config import AUTH_SERVICE, INDEX_MEDIA_TYPE, Settings, load_settings, report
from .errors import (
    AuthError,
    ManifestError,
    RegistryError,
    UnexpectedStatusError,
)
from .layers import LayerInstaller
from .manifest import (
    ImageManifest,
    LayerInfo,
    Manifest,
    ManifestV1,
    ManifestV2,
    parse_image_manifest,
    parse_manifest,
)
from .reference import ImageReference

# Sent when an index entry does not say which media type it points at
IMAGE_MANIFEST_MEDIA_TYPES = ", ".join([
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.v2+json",
])


class Authenticator:
    def __init__(self, session: requests.Session, settings: Settings):
        self.session = session
        self.settings = settings

    def get_access_token(self, repository: str) -> str:
        """
        Exchange a repository path for a pull-scoped bearer token.

        Args:
            repository: Repository path, e.g. "library/alpine"

        Returns:
            The bearer token

        Raises:
            AuthError: the request failed, the body is not JSON, or it
                carries no token
        """
        params = {
            'service': AUTH_SERVICE,
            'scope': f'repository:{repository}:pull',
        }
        try:
            resp = self.session.get(self.settings.auth_url, params=params)
        except requests.RequestException as e:
            raise AuthError(f"token request for {repository} failed: {e}") from e

        if resp.status_code != 200:
            raise AuthError(f"token request for {repository} returned status {resp.status_code}")

        try:
            body = resp.json()
        except ValueError as e:
            raise AuthError(f"token response for {repository} is not JSON") from e

        if not isinstance(body, dict):
            raise AuthError(f"token response for {repository} is not a JSON object")

        # Docker Hub sends the same value as both access_token and token
        token = body.get('access_token')
        if token is None:
            token = body.get('token')
        if not isinstance(token, str) or not token:
            raise AuthError(f"token response for {repository} has no access_token")
        return token


class ManifestResolver:
    def __init__(self, session: requests.Session, settings: Settings,
                 auth_headers: Callable[[], Dict[str, str]]):
        self.session = session
        self.settings = settings
        self.auth_headers = auth_headers

    def manifest_url(self, name: str, reference: str) -> str:
        return f"https://{self.settings.registry}/v2/{name}/manifests/{reference}"

    def _get_json(self, url: str, accept: str):
        headers = dict(self.auth_headers())
        headers['Accept'] = accept
        try:
            resp = self.session.get(url, headers=headers)
        except requests.RequestException as e:
            raise RegistryError(f"GET {url} failed: {e}") from e

        if resp.status_code != 200:
            raise UnexpectedStatusError(resp.status_code, url)

        try:
            return resp.json()
        except ValueError as e:
            raise ManifestError(f"manifest at {url} is not valid JSON") from e

    def get_manifest(self, name: str, tag: str) -> Manifest:
        url = self.manifest_url(name, tag)
        report(self.settings, f"Fetching manifest from: {url}")
        return parse_manifest(self._get_json(url, INDEX_MEDIA_TYPE))

    def get_image_manifest(self, name: str, entry: LayerInfo) -> ImageManifest:
        url = self.manifest_url(name, entry.digest)
        report(self.settings, f"Fetching image manifest from: {url}")
        accept = entry.media_type or IMAGE_MANIFEST_MEDIA_TYPES
        return parse_image_manifest(self._get_json(url, accept))

    def layer_digests(self, name: str, manifest: Manifest) -> List[str]:
        """Ordered layer digests for a decoded top-level manifest."""
        if isinstance(manifest, ManifestV1):
            return list(manifest.fs_layers)

        if isinstance(manifest, ManifestV2):
            image_manifest = manifest.image_manifest
            if image_manifest is None:
                # No platform matching: the first entry is the target
                image_manifest = self.get_image_manifest(name, manifest.manifests[0])
            return [layer.digest for layer in image_manifest.layers]

        raise TypeError(f"expected ManifestV1 or ManifestV2, got {type(manifest).__name__}")


class RegistryClient:
    """
    Pulls one image into a root directory.

    The bearer token lives on the instance and only for as long as the
    instance does; nothing is cached between invocations.
    """

    def __init__(self, root: str, settings: Optional[Settings] = None,
                 session: Optional[requests.Session] = None,
                 download_dir: Optional[str] = None):
        self.root = root
        self.settings = settings or load_settings()
        self.session = session or requests.Session()
        self.access_token: Optional[str] = None

        self.authenticator = Authenticator(self.session, self.settings)
        self.resolver = ManifestResolver(self.session, self.settings, self.auth_headers)
        self.installer = LayerInstaller(self.session, self.settings, root, download_dir)

    def close(self):
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def auth_headers(self) -> Dict[str, str]:
        if self.access_token is None:
            raise AuthError("not authenticated: call authenticate() before pulling")
        return {'Authorization': f'Bearer {self.access_token}'}

    def authenticate(self, repository: str) -> None:
        report(self.settings, f"Requesting pull token for {repository}")
        self.access_token = self.authenticator.get_access_token(repository)

    def pull_image(self, name: str, tag: str) -> None:
        """
        Resolve ``name:tag`` and unpack every layer into the root.

        Args:
            name: Repository path, e.g. "library/alpine"
            tag: Tag to resolve, e.g. "latest"

        Raises:
            TinyDockerError: on the first failing request or layer; later
                layers are not attempted
        """
        self.auth_headers()
        manifest = self.resolver.get_manifest(name, tag)
        self.pull_layers(manifest, name)

    def pull_layers(self, manifest: Manifest, name: str) -> None:
        digests = self.resolver.layer_digests(name, manifest)
        report(self.settings, f"Number of layers: {len(digests)}")
        for i, digest in enumerate(digests):
            report(self.settings, f"Processing layer {i + 1}/{len(digests)}: {digest}")
            self.pull_layer(name, digest)

    def pull_layer(self, name: str, digest: str) -> None:
        self.installer.pull_layer(name, digest, self.auth_headers())


def pull(reference: ImageReference, root: str, settings: Optional[Settings] = None,
         session: Optional[requests.Session] = None) -> None:
    """Authenticate for ``reference`` and unpack its layers into ``root``."""
    with RegistryClient(root, settings=settings, session=session) as client:
        client.authenticate(reference.repository)
        client.pull_image(reference.repository, reference.tag)
