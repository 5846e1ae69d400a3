"""Artifact registry client backed by docker-py.

The orchestration core talks to the registry through the ``ArtifactRegistry``
protocol: ``push`` publishes a built image under one or more tags and returns
its content digest, ``pull`` fetches by digest, and ``exists`` resolves the
commit tag of a component to a digest (the content-addressed cache lookup
behind idempotent builds).

Example usage:
    >>> from rollwright.config import RegistryConfig
    >>> from rollwright.pipeline.registry import DockerArtifactRegistry
    >>>
    >>> registry = DockerArtifactRegistry(RegistryConfig(registry="ghcr.io"))
    >>> digest = await registry.exists(component, commit_id="3f9c2e1")
    >>> if digest is None:
    ...     digest = await registry.push(image, tags=["3f9c2e1", "latest"])
"""

from __future__ import annotations

import asyncio
import os
import re
from typing import Protocol

from docker.errors import APIError, DockerException, NotFound
from pydantic import BaseModel, Field

import docker
from rollwright.config import RegistryConfig
from rollwright.logging import get_logger
from rollwright.models import ComponentSpec
from rollwright.pipeline.builder import BuiltImage

_DIGEST_PATTERN = re.compile(r"digest:\s*(sha256:[a-f0-9]{64})")


class RegistryError(Exception):
    """Registry unreachable or rejected an operation."""


class RegistryAuth(BaseModel):
    """Authentication credentials for a Docker registry.

    Attributes:
        registry: Registry URL (e.g., 'ghcr.io', 'docker.io')
        username: Registry username or organization
        password: Registry password or access token
    """

    registry: str = Field(description="Registry URL")
    username: str = Field(description="Registry username")
    password: str = Field(description="Registry password or token")


class ArtifactRegistry(Protocol):
    """Interface the Build Coordinator consumes."""

    async def exists(self, component: ComponentSpec, commit_id: str) -> str | None:
        ...

    async def push(self, image: BuiltImage, tags: list[str]) -> str:
        ...

    async def pull(self, reference: str) -> str:
        ...


class DockerArtifactRegistry:
    """docker-py implementation of ``ArtifactRegistry``.

    Every docker-py call runs in a worker thread via ``asyncio.to_thread``.
    A single ``push`` is one attempt; retries belong to the caller.

    Attributes:
        config: Registry configuration
        logger: Structured logger instance
    """

    def __init__(self, config: RegistryConfig, auth: RegistryAuth | None = None) -> None:
        self.config = config
        self.logger = get_logger(__name__)
        self._client: docker.DockerClient | None = None
        self._auth = auth
        self._logged_in = False

    def _get_client(self) -> docker.DockerClient:
        if self._client is None:
            docker_host = os.environ.get("DOCKER_HOST")
            if docker_host:
                self._client = docker.DockerClient(base_url=docker_host)
            elif self.config.rootless:
                runtime_dir = os.environ.get("XDG_RUNTIME_DIR", f"/run/user/{os.getuid()}")
                self._client = docker.DockerClient(base_url=f"unix://{runtime_dir}/docker.sock")
            else:
                self._client = docker.DockerClient.from_env()
            self.logger.info("docker_client_connected", rootless=self.config.rootless)
        return self._client

    def _auth_from_env(self) -> RegistryAuth | None:
        username = os.environ.get("DOCKER_REGISTRY_USERNAME")
        password = os.environ.get("DOCKER_REGISTRY_PASSWORD") or os.environ.get(
            "DOCKER_REGISTRY_TOKEN"
        )
        if username and password:
            return RegistryAuth(registry=self.config.registry, username=username, password=password)
        return None

    async def _ensure_login(self) -> None:
        if self._logged_in:
            return
        auth = self._auth or self._auth_from_env()
        if auth is None:
            # Anonymous access or credentials from the docker config file
            self._logged_in = True
            return
        client = await asyncio.to_thread(self._get_client)
        try:
            await asyncio.to_thread(
                client.login,
                username=auth.username,
                password=auth.password,
                registry=auth.registry,
            )
        except (APIError, DockerException) as e:
            self.logger.error("registry_login_failed", registry=auth.registry, error=str(e))
            raise RegistryError(f"Login to {auth.registry} failed: {e}") from e
        self._logged_in = True
        self.logger.info("registry_login_succeeded", registry=auth.registry)

    async def exists(self, component: ComponentSpec, commit_id: str) -> str | None:
        """Resolve ``repository:<commit>`` to its digest, if published.

        Args:
            component: Component whose repository is queried
            commit_id: Commit tag to look up

        Returns:
            Content digest, or None when the tag does not exist

        Raises:
            RegistryError: If the registry cannot be queried
        """
        await self._ensure_login()
        name = f"{component.repository}:{commit_id}"
        try:
            client = await asyncio.to_thread(self._get_client)
            data = await asyncio.to_thread(client.images.get_registry_data, name)
        except NotFound:
            return None
        except (APIError, DockerException) as e:
            self.logger.warning("registry_lookup_failed", image=name, error=str(e))
            raise RegistryError(f"Lookup of {name} failed: {e}") from e
        self.logger.debug("registry_lookup_hit", image=name, digest=data.id)
        return data.id

    async def push(self, image: BuiltImage, tags: list[str]) -> str:
        """Tag a built image and push every tag, returning the digest.

        Args:
            image: Locally built image
            tags: Tags to publish (commit id first, then aliases)

        Returns:
            Content digest reported by the registry

        Raises:
            RegistryError: If any tag fails to push or no digest is reported
        """
        await self._ensure_login()
        digest: str | None = None
        try:
            client = await asyncio.to_thread(self._get_client)
            local = await asyncio.to_thread(client.images.get, image.image_id)
            for tag in tags:
                await asyncio.to_thread(local.tag, image.repository, tag=tag)
                stream = await asyncio.to_thread(
                    client.images.push, image.repository, tag=tag, stream=True, decode=True
                )
                pushed = await asyncio.to_thread(_consume_push_stream, stream)
                digest = digest or pushed
        except (APIError, DockerException) as e:
            self.logger.warning(
                "registry_push_failed",
                repository=image.repository,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise RegistryError(f"Push of {image.repository} failed: {e}") from e

        if digest is None:
            raise RegistryError(f"Registry reported no digest for {image.repository}")

        self.logger.info(
            "registry_push_succeeded",
            repository=image.repository,
            tags=tags,
            digest=digest,
        )
        return digest

    async def pull(self, reference: str) -> str:
        """Pull an image by digest reference and return its local image id."""
        await self._ensure_login()
        try:
            client = await asyncio.to_thread(self._get_client)
            pulled = await asyncio.to_thread(client.images.pull, reference)
        except (APIError, DockerException) as e:
            raise RegistryError(f"Pull of {reference} failed: {e}") from e
        return pulled.id

    async def close(self) -> None:
        """Close the Docker client connection."""
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
            self._client = None


def _consume_push_stream(stream: object) -> str | None:
    """Drain a docker push stream, returning the digest and raising on errors."""
    digest: str | None = None
    for entry in stream:  # type: ignore[attr-defined]
        if not isinstance(entry, dict):
            continue
        if "error" in entry:
            raise APIError(entry["error"])
        aux = entry.get("aux")
        if isinstance(aux, dict):
            digest = aux.get("Digest") or aux.get("digest") or digest
        elif entry.get("status"):
            match = _DIGEST_PATTERN.search(entry["status"])
            if match:
                digest = match.group(1)
    return digest
