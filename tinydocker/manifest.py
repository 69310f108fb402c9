"""Manifest documents served by the registry.

The top-level manifest comes in two shapes. Schema 1 lists its layers
directly under ``fsLayers``. Schema 2 (and the OCI index) lists one entry
per platform under ``manifests``, and each entry points at an image
manifest whose ``layers`` are the blobs to unpack.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .errors import ManifestError, UnsupportedSchemaError

# algorithm ":" encoded, as in the OCI image spec
DIGEST_PATTERN = re.compile(r"^[a-z0-9]+(?:[+._-][a-z0-9]+)*:[A-Za-z0-9=_-]+$")


@dataclass(frozen=True)
class LayerInfo:
    digest: str
    size: int = 0
    media_type: str = ""
    platform: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ManifestV1:
    fs_layers: List[str]
    schema_version: int = 1


@dataclass(frozen=True)
class ManifestV2:
    manifests: List[LayerInfo]
    media_type: str = ""
    # Set when the registry answered with a single-platform image manifest
    # instead of an index.
    image_manifest: Optional["ImageManifest"] = None
    schema_version: int = 2


@dataclass(frozen=True)
class ImageManifest:
    config: Optional[LayerInfo]
    layers: List[LayerInfo]
    media_type: str = ""


Manifest = Union[ManifestV1, ManifestV2]


def _require_object(document, what):
    if not isinstance(document, dict):
        raise ManifestError(f"{what} is not a JSON object")
    return document


def _require_list(document, key, what):
    value = document.get(key)
    if not isinstance(value, list):
        raise ManifestError(f"{what} has no '{key}' list")
    return value


def validate_digest(digest, what="digest") -> str:
    """Reject digests that are not of the form algorithm:encoded.

    Digests end up in URLs and local file names, so anything else from the
    registry is refused.
    """
    if not isinstance(digest, str) or not DIGEST_PATTERN.fullmatch(digest):
        raise ManifestError(f"{what} is not a valid digest: {digest!r}")
    return digest


def parse_layer_info(entry, what="layer entry") -> LayerInfo:
    entry = _require_object(entry, what)
    digest = entry.get('digest')
    if not isinstance(digest, str) or not digest:
        raise ManifestError(f"{what} has no digest")
    validate_digest(digest, what)

    size = entry.get('size', 0)
    platform = entry.get('platform') or {}
    return LayerInfo(
        digest=digest,
        size=size if isinstance(size, int) else 0,
        media_type=entry.get('mediaType') or "",
        platform=platform if isinstance(platform, dict) else {},
    )


def parse_image_manifest(document) -> ImageManifest:
    document = _require_object(document, "image manifest")
    layers = [
        parse_layer_info(layer, "image manifest layer")
        for layer in _require_list(document, 'layers', "image manifest")
    ]
    config = document.get('config')
    return ImageManifest(
        config=parse_layer_info(config, "image manifest config") if config else None,
        layers=layers,
        media_type=document.get('mediaType') or "",
    )


def parse_manifest(document) -> Manifest:
    """
    Decode a top-level manifest by its ``schemaVersion`` discriminant.

    Args:
        document: Decoded JSON body of ``/v2/<name>/manifests/<tag>``

    Returns:
        ManifestV1 or ManifestV2

    Raises:
        UnsupportedSchemaError: the discriminant is missing or unknown
        ManifestError: the variant's required fields are missing
    """
    document = _require_object(document, "manifest")
    schema_version = document.get('schemaVersion')

    # bool is an int subclass; True must not pass for schema 1
    if isinstance(schema_version, bool) or schema_version not in (1, 2):
        raise UnsupportedSchemaError(schema_version)

    if schema_version == 1:
        fs_layers = []
        for entry in _require_list(document, 'fsLayers', "schema 1 manifest"):
            entry = _require_object(entry, "fsLayers entry")
            blob_sum = entry.get('blobSum')
            if not isinstance(blob_sum, str) or not blob_sum:
                raise ManifestError("fsLayers entry has no blobSum")
            validate_digest(blob_sum, "fsLayers blobSum")
            fs_layers.append(blob_sum)
        return ManifestV1(fs_layers=fs_layers)

    media_type = document.get('mediaType') or ""
    if 'manifests' not in document and 'layers' in document:
        return ManifestV2(
            manifests=[],
            media_type=media_type,
            image_manifest=parse_image_manifest(document),
        )

    manifests = [
        parse_layer_info(entry, "manifest list entry")
        for entry in _require_list(document, 'manifests', "schema 2 manifest")
    ]
    if not manifests:
        raise ManifestError("schema 2 manifest lists no platform manifests")
    return ManifestV2(manifests=manifests, media_type=media_type)
