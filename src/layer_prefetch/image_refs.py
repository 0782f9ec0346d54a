from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .digests import normalize_digest
from .errors import InvalidReference

DEFAULT_REGISTRY = "docker.io"
DEFAULT_TAG = "latest"


@dataclass(frozen=True)
class ImageReference:
    registry: str
    repository: str
    tag: str = DEFAULT_TAG
    digest: Optional[str] = None  # including algorithm prefix (e.g. "sha256:<hex>")

    def reference(self) -> str:
        """The manifest reference sent to the registry: digest if pinned, else tag."""
        return self.digest or self.tag

    def canonical(self) -> str:
        if self.digest:
            return f"{self.registry}/{self.repository}@{self.digest}"
        return f"{self.registry}/{self.repository}:{self.tag}"

    def with_digest(self, digest: str) -> "ImageReference":
        return ImageReference(registry=self.registry, repository=self.repository, tag=self.tag, digest=digest)

    def __str__(self) -> str:
        return self.canonical()


def _looks_like_registry(part: str) -> bool:
    return "." in part or ":" in part or part == "localhost"


def parse_image_ref(raw: str, *, default_registry: str = DEFAULT_REGISTRY) -> ImageReference:
    """
    Parse an image reference string.

    Supported forms:
      - "repo", "owner/repo", "owner/repo:tag"
      - "registry.example.com[:port]/owner/repo[:tag]"
      - any of the above with "@sha256:<hex>" (or another supported digest)

    Docker Hub names without an owner get the "library/" prefix.
    """
    s = (raw or "").strip()
    if not s:
        raise InvalidReference("empty image reference")

    digest = None
    if "@" in s:
        s, dig = s.split("@", 1)
        digest = normalize_digest(dig)

    registry = default_registry
    first, sep, rest = s.partition("/")
    if sep and _looks_like_registry(first):
        registry = first.lower()
        s = rest

    tag = DEFAULT_TAG
    last_slash = s.rfind("/")
    colon = s.rfind(":")
    if colon > last_slash:
        s, tag = s[:colon], s[colon + 1:].strip()
        if not tag:
            raise InvalidReference(f"empty tag in image reference: {raw!r}")

    repository = s.strip().strip("/")
    if not repository:
        raise InvalidReference(f"missing repository in image reference: {raw!r}")
    if repository != repository.lower():
        raise InvalidReference(f"repository must be lowercase: {raw!r}")
    if any(not part for part in repository.split("/")):
        raise InvalidReference(f"invalid repository path: {raw!r}")
    if registry == DEFAULT_REGISTRY and "/" not in repository:
        repository = f"library/{repository}"

    return ImageReference(registry=registry, repository=repository, tag=tag, digest=digest)
