"""Blob download and layer extraction."""

import os
import subprocess
import tarfile
import tempfile
from typing import Dict, Optional
from urllib.parse import urljoin

import requests

from .config import Settings, report
from .errors import (
    LayerExtractionError,
    RedirectLoopError,
    RegistryError,
    UnexpectedStatusError,
)
from .manifest import validate_digest

CHUNK_SIZE = 64 * 1024


def download_file(session: requests.Session, url: str, destination: str,
                  headers: Optional[Dict[str, str]] = None) -> Optional[str]:
    """
    Issue one GET and either save the body or hand back a redirect.

    Args:
        session: Session used for the request
        url: Blob URL
        destination: File to create (overwritten if present)
        headers: Request headers, e.g. the bearer token

    Returns:
        The Location of a 307 response (nothing is written), or None once
        the body has been saved

    Raises:
        UnexpectedStatusError: any status other than 200 or 307
        RegistryError: the request itself failed
    """
    try:
        resp = session.get(url, headers=headers or {}, stream=True, allow_redirects=False)
    except requests.RequestException as e:
        raise RegistryError(f"GET {url} failed: {e}") from e

    with resp:
        if resp.status_code == 307:
            location = resp.headers.get('Location')
            if not location:
                raise RegistryError(f"redirect from {url} has no Location header")
            return location
        if resp.status_code != 200:
            raise UnexpectedStatusError(resp.status_code, url)

        try:
            with open(destination, 'wb') as f:
                for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
        except requests.RequestException as e:
            raise RegistryError(f"reading {url} failed: {e}") from e

    return None


def fetch_blob(session: requests.Session, url: str, destination: str,
               headers: Optional[Dict[str, str]] = None,
               max_redirects: int = 5) -> None:
    """Download a blob, following redirects to the storage host.

    Redirect targets are pre-signed URLs, so the follow-up requests are
    sent without the registry's Authorization header.
    """
    redirect = download_file(session, url, destination, headers)
    hops = 0
    while redirect:
        if hops >= max_redirects:
            raise RedirectLoopError(max_redirects, url)
        hops += 1
        url = urljoin(url, redirect)
        redirect = download_file(session, url, destination)


MAX_SYMLINK_HOPS = 40


def _is_within(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def _host_path(root: str, name: str, links: Dict[str, str]) -> str:
    """
    Where the host would put ``name`` when tar writes it under ``root``.

    tar runs outside the sandbox, so every symlink on the way is followed
    as the host kernel sees it: an absolute target really does point at
    the host's filesystem. ``links`` holds symlinks created earlier in the
    same archive, which are not on disk yet.
    """
    current = root
    pending = name.split('/')
    hops = 0
    while pending:
        part = pending.pop(0)
        if part in ('', '.'):
            continue
        if part == '..':
            current = os.path.dirname(current)
            continue

        candidate = os.path.join(current, part)
        target = links.get(candidate)
        if target is None and os.path.islink(candidate):
            target = os.readlink(candidate)
        if target is None:
            current = candidate
            continue

        hops += 1
        if hops > MAX_SYMLINK_HOPS:
            raise LayerExtractionError(f"too many levels of symbolic links in {name}")
        if os.path.isabs(target):
            current = os.sep
        pending = target.split('/') + pending
    return current


def _check_member_name(name: str, what: str) -> None:
    if os.path.isabs(name) or '..' in name.split('/'):
        raise LayerExtractionError(f"{what} {name!r} points outside the sandbox root")


def check_layer_members(archive: str, root: str) -> None:
    """
    Refuse a layer if any entry would be written outside ``root``.

    Earlier layers may have left symlinks such as ``var/run -> /run`` in the
    root; tar would happily follow them onto the host.
    """
    root = os.path.realpath(root)
    links = {}
    try:
        with tarfile.open(archive, 'r:*') as tar:
            for member in tar:
                name = member.name
                _check_member_name(name, "layer entry")
                parent, base = os.path.split(name.rstrip('/'))
                if not base or base == '.':
                    continue

                # Directory entries get their mode applied to whatever the
                # path resolves to, so the whole path has to stay inside.
                if member.isdir():
                    destination = _host_path(root, name, links)
                else:
                    destination = os.path.join(_host_path(root, parent, links), base)
                if not _is_within(destination, root):
                    raise LayerExtractionError(f"layer entry {name!r} resolves outside the sandbox root")

                if member.issym():
                    links[destination] = member.linkname
                else:
                    links.pop(destination, None)

                if member.islnk():
                    _check_member_name(member.linkname, "hard link target")
                    if not _is_within(_host_path(root, member.linkname, links), root):
                        raise LayerExtractionError(
                            f"hard link {name!r} resolves outside the sandbox root")
    except (tarfile.TarError, OSError, EOFError) as e:
        raise LayerExtractionError(f"could not read layer {archive}: {e}") from e


def extract_layer(archive: str, root: str) -> None:
    """Unpack a gzipped layer tarball over the sandbox root with tar."""
    check_layer_members(archive, root)
    try:
        result = subprocess.run(
            ['tar', '-xzf', archive, '-C', root],
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
        )
    except OSError as e:
        raise LayerExtractionError(f"could not run tar for {archive}: {e}") from e

    if result.returncode != 0:
        detail = result.stderr.strip()
        message = f"tar exited with status {result.returncode} for {archive}"
        raise LayerExtractionError(f"{message}: {detail}" if detail else message)


class LayerInstaller:
    """
    Downloads layers one at a time and unpacks them into a root.

    Archives land in ``download_dir`` when one is given, otherwise in a
    throwaway directory per layer. Either way they never sit inside the
    root the command will see.
    """

    def __init__(self, session: requests.Session, settings: Settings,
                 root: str, download_dir: Optional[str] = None):
        self.session = session
        self.settings = settings
        self.root = root
        self.download_dir = download_dir

    def blob_url(self, image_name: str, digest: str) -> str:
        return f"https://{self.settings.registry}/v2/{image_name}/blobs/{digest}"

    def pull_layer(self, image_name: str, digest: str,
                   headers: Dict[str, str]) -> None:
        validate_digest(digest)
        if not os.path.isdir(self.root):
            raise LayerExtractionError(f"sandbox root {self.root} does not exist")

        if self.download_dir is not None:
            self._install(image_name, digest, headers, self.download_dir)
            return

        with tempfile.TemporaryDirectory(prefix="tinydocker-layer-") as tmp_dir:
            self._install(image_name, digest, headers, tmp_dir)

    def _install(self, image_name, digest, headers, download_dir):
        artifact = os.path.join(download_dir, f"{digest}.tar.gz")
        report(self.settings, f"Downloading layer {digest}")
        fetch_blob(
            self.session,
            self.blob_url(image_name, digest),
            artifact,
            headers=headers,
            max_redirects=self.settings.max_redirects,
        )

        report(self.settings, f"  Extracting to {self.root}...")
        extract_layer(artifact, self.root)
        os.remove(artifact)
