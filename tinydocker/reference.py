"""Parsing of ``name[:tag]`` image references."""

from dataclasses import dataclass

DEFAULT_TAG = "latest"
LIBRARY_NAMESPACE = "library"


@dataclass(frozen=True)
class ImageReference:
    repository: str
    tag: str = DEFAULT_TAG

    def __str__(self):
        return f"{self.repository}:{self.tag}"


def parse_image_reference(image_ref: str) -> ImageReference:
    """
    Parse a user supplied image string.

    Args:
        image_ref: Docker Hub format, e.g. "alpine", "alpine:3.20" or
            "someuser/tool:1.0"

    Returns:
        ImageReference with the tag defaulted to "latest" and official
        images placed under the "library/" namespace
    """
    if not image_ref:
        raise ValueError("image reference must not be empty")

    # The tag is everything after the first colon
    if ':' in image_ref:
        name, tag = image_ref.split(':', 1)
    else:
        name, tag = image_ref, DEFAULT_TAG

    if not name or not tag:
        raise ValueError(f"invalid image reference: {image_ref!r}")

    if '/' not in name:
        name = f"{LIBRARY_NAMESPACE}/{name}"

    return ImageReference(repository=name, tag=tag)
