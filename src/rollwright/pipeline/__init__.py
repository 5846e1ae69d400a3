"""External collaborators of the orchestration core.

Docker image builder and registry client, Trivy compliance scanner, the
git-backed manifest store and the Kubernetes API client.
"""

from __future__ import annotations

from rollwright.pipeline.builder import (
    ArtifactBuilder,
    BuiltImage,
    DockerImageBuilder,
    ImageBuildError,
)
from rollwright.pipeline.cluster import (
    KINDS,
    ClusterClient,
    ClusterError,
    KubernetesClusterClient,
)
from rollwright.pipeline.manifest_store import (
    GitManifestStore,
    ManifestStore,
    ManifestStoreError,
)
from rollwright.pipeline.registry import (
    ArtifactRegistry,
    DockerArtifactRegistry,
    RegistryError,
)
from rollwright.pipeline.scanner import ScanPolicy, TrivyScanner

__all__ = [
    # Builder
    "ArtifactBuilder",
    "BuiltImage",
    "DockerImageBuilder",
    "ImageBuildError",
    # Cluster
    "KINDS",
    "ClusterClient",
    "ClusterError",
    "KubernetesClusterClient",
    # Manifest store
    "GitManifestStore",
    "ManifestStore",
    "ManifestStoreError",
    # Registry
    "ArtifactRegistry",
    "DockerArtifactRegistry",
    "RegistryError",
    # Scanner
    "ScanPolicy",
    "TrivyScanner",
]
