"""Docker image builds for release components.

Builds one component of a unit at one commit. When a source repository is
configured, the commit is checked out into a detached git worktree first so
concurrent builds of different commits never share a working tree.

Example usage:
    >>> from rollwright.config import BuildConfig
    >>> from rollwright.pipeline.builder import DockerImageBuilder
    >>>
    >>> builder = DockerImageBuilder(BuildConfig(), source_repo=Path("/src/shop"))
    >>> image = await builder.build(component, commit)
    >>> image.image_id
    'sha256:5d41...'
"""

from __future__ import annotations

import asyncio
import os
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Protocol

import git
from docker.errors import APIError, BuildError, DockerException
from pydantic import BaseModel, Field

import docker
from rollwright.config import BuildConfig
from rollwright.logging import get_logger
from rollwright.models import Commit, ComponentSpec


class ImageBuildError(Exception):
    """Compile or package failure of a component image.

    Attributes:
        build_log: Collected build output up to the failure
    """

    def __init__(self, message: str, build_log: list[str] | None = None) -> None:
        self.build_log = list(build_log or [])
        super().__init__(message)


class BuiltImage(BaseModel):
    """A locally built, not yet published image.

    Attributes:
        component: Component name
        commit_id: Commit the image was built from
        repository: Registry repository the image will be pushed to
        image_id: Local Docker image ID
        build_log: Collected build output
        duration_seconds: Build time
    """

    component: str
    commit_id: str
    repository: str
    image_id: str
    build_log: list[str] = Field(default_factory=list)
    duration_seconds: float = Field(default=0.0, ge=0.0)

    @property
    def local_tag(self) -> str:
        return f"{self.repository}:{self.commit_id}"


class ArtifactBuilder(Protocol):
    """Turns a component at a commit into a local image."""

    async def build(self, component: ComponentSpec, commit: Commit) -> BuiltImage:
        ...


class DockerImageBuilder:
    """docker-py implementation of ``ArtifactBuilder``.

    Attributes:
        config: Build configuration
        source_repo: Git repository holding component sources (None builds
            from the component context paths as they are on disk)
    """

    def __init__(self, config: BuildConfig, source_repo: Path | None = None) -> None:
        self.config = config
        self.source_repo = source_repo
        self.logger = get_logger(__name__)
        self._client: docker.DockerClient | None = None

    def _get_client(self) -> docker.DockerClient:
        if self._client is None:
            docker_host = os.environ.get("DOCKER_HOST")
            if docker_host:
                self._client = docker.DockerClient(base_url=docker_host)
            else:
                self._client = docker.DockerClient.from_env()
        return self._client

    @contextmanager
    def _checkout(self, commit_id: str) -> Iterator[Path]:
        """Yield a source root at ``commit_id``."""
        if self.source_repo is None:
            yield Path.cwd()
            return

        repo = git.Repo(self.source_repo)
        with tempfile.TemporaryDirectory(prefix=f"rollwright-{commit_id[:12]}-") as tmp:
            worktree = Path(tmp) / "src"
            repo.git.worktree("add", "--detach", str(worktree), commit_id)
            try:
                yield worktree
            finally:
                repo.git.worktree("remove", "--force", str(worktree))

    def _build_sync(self, component: ComponentSpec, commit: Commit) -> BuiltImage:
        start_time = time.monotonic()
        tag = f"{component.repository}:{commit.id}"

        with self._checkout(commit.id) as root:
            context = component.context if component.context.is_absolute() else root / component.context
            if not (context / component.dockerfile).exists():
                raise ImageBuildError(f"Dockerfile not found: {context / component.dockerfile}")

            build_kwargs: dict[str, Any] = {
                "path": str(context),
                "dockerfile": component.dockerfile,
                "tag": tag,
                "rm": True,
                "timeout": self.config.build_timeout_seconds,
                "labels": {
                    "org.opencontainers.image.revision": commit.id,
                    "rollwright.io/component": component.name,
                },
            }
            try:
                image, raw_log = self._get_client().images.build(**build_kwargs)
            except BuildError as e:
                lines = _collect_log(e.build_log)
                raise ImageBuildError(str(e), lines) from e
            except (APIError, DockerException) as e:
                raise ImageBuildError(f"Docker daemon error: {e}") from e

        return BuiltImage(
            component=component.name,
            commit_id=commit.id,
            repository=component.repository,
            image_id=image.id or "",
            build_log=_collect_log(raw_log),
            duration_seconds=time.monotonic() - start_time,
        )

    async def build(self, component: ComponentSpec, commit: Commit) -> BuiltImage:
        """Build ``component`` at ``commit``.

        Raises:
            ImageBuildError: On compile/package failure or daemon errors
        """
        self.logger.info(
            "image_build_started",
            component=component.name,
            commit_id=commit.id,
            context=str(component.context),
        )
        try:
            built = await asyncio.to_thread(self._build_sync, component, commit)
        except ImageBuildError as e:
            self.logger.error(
                "image_build_failed",
                component=component.name,
                commit_id=commit.id,
                error=str(e),
                log_tail=e.build_log[-5:],
            )
            raise
        self.logger.info(
            "image_build_succeeded",
            component=component.name,
            image_id=built.image_id[:19],
            duration_seconds=round(built.duration_seconds, 2),
        )
        return built


def _collect_log(entries: Any) -> list[str]:
    lines: list[str] = []
    for entry in entries or []:
        if isinstance(entry, dict):
            line = entry.get("stream") or entry.get("error") or ""
            if line.strip():
                lines.append(line.strip())
    return lines
