"""
Narrow interfaces for the external tools a pipeline drives.

Stages talk to build tools, image builders, registries, clusters and
scanners only through these protocols. Implementations raise ``AuthError`` for
rejected credentials and ``NetworkError`` / ``TransientInfraError`` for
failures worth retrying; everything else is a ``StageExecutionError``.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from conduit_ci.domain.models import Finding


@dataclass(frozen=True, slots=True)
class ImageRef:
    """Container image coordinates, ``registry/repository:tag``."""

    repository: str
    tag: str = "latest"
    registry: str | None = None
    digest: str | None = None

    def __post_init__(self) -> None:
        if not self.repository.strip():
            raise ValueError("ImageRef.repository cannot be empty")
        if not self.tag.strip():
            raise ValueError("ImageRef.tag cannot be empty")

    @property
    def name(self) -> str:
        base = f"{self.registry}/{self.repository}" if self.registry else self.repository
        return f"{base}:{self.tag}"

    @classmethod
    def parse(cls, value: str) -> ImageRef:
        """Parse ``[registry/]repository[:tag]``."""

        text = value.strip()
        if not text:
            raise ValueError("image reference cannot be empty")
        registry: str | None = None
        first, _, rest = text.partition("/")
        # A first segment with a dot, a port or "localhost" names a registry.
        if rest and ("." in first or ":" in first or first == "localhost"):
            registry, text = first, rest
        repository, sep, tag = text.rpartition(":")
        if not sep or "/" in tag:
            repository, tag = text, "latest"
        return cls(repository=repository, tag=tag, registry=registry)

    def to_dict(self) -> dict[str, str | None]:
        return {
            "registry": self.registry,
            "repository": self.repository,
            "tag": self.tag,
            "digest": self.digest,
        }


@dataclass(frozen=True, slots=True)
class RolloutStatus:
    """Outcome of applying manifests and waiting for the rollout."""

    ready: bool
    applied: tuple[str, ...] = ()
    message: str = ""
    details: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "ready": self.ready,
            "applied": list(self.applied),
            "message": self.message,
            "details": dict(self.details),
        }


@runtime_checkable
class BuildTool(Protocol):
    async def build(self, source_ref: str) -> bytes: ...


@runtime_checkable
class ImageBuilder(Protocol):
    async def build_image(self, artifact_bytes: bytes, manifest: Mapping[str, str]) -> ImageRef: ...


@runtime_checkable
class RegistryClient(Protocol):
    async def push(self, image_ref: ImageRef) -> ImageRef: ...


@runtime_checkable
class ClusterClient(Protocol):
    async def apply_manifests(self, manifests: Sequence[str]) -> RolloutStatus: ...


@runtime_checkable
class VulnerabilityScanner(Protocol):
    async def scan(self, target: str) -> tuple[Finding, ...]: ...


__all__ = [
    "BuildTool",
    "ClusterClient",
    "ImageBuilder",
    "ImageRef",
    "RegistryClient",
    "RolloutStatus",
    "VulnerabilityScanner",
]
