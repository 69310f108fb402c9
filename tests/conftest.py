import io
import json
import shutil
import tarfile

import pytest

from tinydocker.config import Settings


class FakeResponse:
    """Just enough of requests.Response for the registry client."""

    def __init__(self, status_code=200, body=b'', headers=None, json_body=None):
        if json_body is not None:
            body = json.dumps(json_body).encode('utf-8')
        self.status_code = status_code
        self.content = body
        self.headers = headers or {}
        self.closed = False

    def json(self):
        return json.loads(self.content.decode('utf-8'))

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start:start + chunk_size]

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class FakeSession:
    """
    Scripted stand-in for requests.Session.

    Responses are queued per URL and handed out in order; the last one
    queued for a URL keeps being returned. Unknown URLs get a 404.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []
        self.closed = False

    def add(self, url, *responses):
        self.routes.setdefault(url, []).extend(responses)

    def get(self, url, headers=None, params=None, **kwargs):
        self.calls.append({
            'url': url,
            'headers': dict(headers or {}),
            'params': dict(params or {}),
            'kwargs': kwargs,
        })
        queue = self.routes.get(url)
        if not queue:
            return FakeResponse(404)
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response

    def urls(self):
        return [call['url'] for call in self.calls]

    def close(self):
        self.closed = True


def make_layer(files):
    """Build a gzipped tar layer from a {path: bytes} mapping."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode='w:gz') as tar:
        for path, data in files.items():
            info = tarfile.TarInfo(path)
            info.size = len(data)
            info.mode = 0o644
            info.mtime = 0
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


requires_tar = pytest.mark.skipif(shutil.which("tar") is None, reason="tar is not installed")

REGISTRY = "registry.test"
AUTH_URL = "https://auth.test/token"


@pytest.fixture
def settings():
    return Settings(
        auth_url=AUTH_URL,
        registry=REGISTRY,
        helper_path=None,
        max_redirects=5,
        verbose=False,
    )


@pytest.fixture
def session():
    return FakeSession()


def blob_url(name, digest):
    return f"https://{REGISTRY}/v2/{name}/blobs/{digest}"


def manifest_url(name, reference):
    return f"https://{REGISTRY}/v2/{name}/manifests/{reference}"


def serve_image(session, name, tag, layers, token="t0ken"):
    """Script a schema 2 image made of the given layer blobs."""
    session.add(AUTH_URL, FakeResponse(json_body={'access_token': token}))
    session.add(manifest_url(name, tag), FakeResponse(json_body={
        'schemaVersion': 2,
        'mediaType': 'application/vnd.oci.image.index.v1+json',
        'manifests': [{
            'digest': 'sha256:platform',
            'size': 100,
            'mediaType': 'application/vnd.oci.image.manifest.v1+json',
            'platform': {'architecture': 'amd64', 'os': 'linux'},
        }],
    }))
    session.add(manifest_url(name, 'sha256:platform'), FakeResponse(json_body={
        'schemaVersion': 2,
        'config': {'digest': 'sha256:config', 'size': 10,
                   'mediaType': 'application/vnd.oci.image.config.v1+json'},
        'layers': [
            {'digest': digest, 'size': len(blob),
             'mediaType': 'application/vnd.oci.image.layer.v1.tar+gzip'}
            for digest, blob in layers
        ],
    }))
    for digest, blob in layers:
        session.add(blob_url(name, digest), FakeResponse(body=blob))

