"""Build Coordinator: turns a commit into published, digest-pinned artifacts.

The work is split into the three stages the Release Coordinator reports on:

1. ``prepare`` + ``build_images`` (building): registry lookups of the commit
   tag, then image builds for every component not already published.
2. ``scan`` (scanning): the vulnerability/compliance gate under ``ScanPolicy``.
3. ``publish`` (publishing): push with bounded exponential backoff, tagging
   each artifact with the commit id and the advisory ``latest`` alias.

Builds are idempotent per commit: a component whose commit tag already exists
in the registry is never rebuilt or re-pushed, so duplicate webhook deliveries
resolve to the same digests.
"""

from __future__ import annotations

import asyncio

from pydantic import BaseModel, Field

from rollwright.config import RegistryConfig
from rollwright.errors import BuildError, BuildErrorKind
from rollwright.logging import get_logger
from rollwright.models import Artifact, ArtifactSet, Commit, ComponentSpec
from rollwright.orchestrator.backoff import BackoffConfig, ExponentialBackoff
from rollwright.pipeline.builder import ArtifactBuilder, BuiltImage, ImageBuildError
from rollwright.pipeline.registry import ArtifactRegistry, RegistryError
from rollwright.pipeline.scanner import (
    Finding,
    ScanDecision,
    ScanError,
    ScanPolicy,
    ScanVerdict,
    VulnerabilityScanner,
)

logger = get_logger(__name__)


class BuildPlan(BaseModel):
    """Mutable working set of one build, carried across the three stages."""

    commit: Commit
    components: list[ComponentSpec]
    cached: dict[str, Artifact] = Field(default_factory=dict)
    images: dict[str, BuiltImage] = Field(default_factory=dict)
    verdicts: dict[str, ScanVerdict] = Field(default_factory=dict)

    @property
    def pending(self) -> list[ComponentSpec]:
        """Components that still need a build."""
        return [c for c in self.components if c.name not in self.cached]


class BuildCoordinator:
    """Coordinates builder, scanner and registry for one commit at a time.

    Args:
        registry: Artifact registry client
        builder: Image builder
        scanner: Optional vulnerability scanner (None disables the gate)
        policy: Severity policy applied to scan findings
        registry_config: Publish retry and alias settings
    """

    def __init__(
        self,
        registry: ArtifactRegistry,
        builder: ArtifactBuilder,
        scanner: VulnerabilityScanner | None = None,
        policy: ScanPolicy | None = None,
        registry_config: RegistryConfig | None = None,
    ) -> None:
        self.registry = registry
        self.builder = builder
        self.scanner = scanner
        self.policy = policy or ScanPolicy()
        self.registry_config = registry_config or RegistryConfig()
        self._publish_backoff = ExponentialBackoff(
            BackoffConfig(
                initial_delay_seconds=self.registry_config.push_initial_delay_seconds,
                max_delay_seconds=self.registry_config.push_max_delay_seconds,
                multiplier=self.registry_config.push_backoff_multiplier,
                max_retries=self.registry_config.push_max_attempts - 1,
            )
        )
        # One lock per (repository, commit) so concurrent duplicates serialize;
        # an entry lives only while some publish holds or awaits it
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._lock_users: dict[tuple[str, str], int] = {}
        self._logger = logger.bind(coordinator="build")

    async def build(self, commit: Commit, components: list[ComponentSpec]) -> ArtifactSet:
        """Run all three stages: ``build(commit) -> artifacts | BuildError``."""
        plan = await self.prepare(commit, components)
        await self.build_images(plan)
        await self.scan(plan)
        return await self.publish(plan)

    async def prepare(self, commit: Commit, components: list[ComponentSpec]) -> BuildPlan:
        """Resolve components already published for this commit."""
        plan = BuildPlan(commit=commit, components=list(components))
        for component in components:
            digest = await self._lookup(component, commit.id)
            if digest is not None:
                plan.cached[component.name] = Artifact(
                    component=component.name,
                    commit_id=commit.id,
                    repository=component.repository,
                    digest=digest,
                    tag=commit.id,
                )
        if plan.cached:
            self._logger.info(
                "build_cache_hit",
                commit_id=commit.id,
                components=sorted(plan.cached),
                pending=[c.name for c in plan.pending],
            )
        return plan

    async def build_images(self, plan: BuildPlan) -> None:
        """Build every component without a published artifact.

        Raises:
            BuildError: ``compile_failure`` for the first component that fails
        """
        for component in plan.pending:
            try:
                plan.images[component.name] = await self.builder.build(component, plan.commit)
            except ImageBuildError as e:
                raise BuildError(
                    BuildErrorKind.COMPILE_FAILURE,
                    str(e),
                    component=component.name,
                    partial=list(plan.cached.values()),
                ) from e

    async def scan(self, plan: BuildPlan) -> None:
        """Apply the scan gate to every built image; records verdicts on the plan."""
        for name, image in plan.images.items():
            if self.scanner is None:
                plan.verdicts[name] = ScanVerdict(component=name, decision=ScanDecision.PASS)
                continue
            try:
                findings = await self.scanner.scan(image)
            except ScanError as e:
                # A broken scanner is judged by the policy like an unknown finding
                self._logger.warning("scan_error", component=name, error=str(e))
                findings = [Finding(id="scanner-error", severity="UNKNOWN", title=str(e))]
            verdict = self.policy.evaluate(name, findings)
            plan.verdicts[name] = verdict
            log = self._logger.warning if verdict.decision != ScanDecision.PASS else self._logger.info
            log(
                "scan_verdict",
                component=name,
                decision=verdict.decision.value,
                counts=verdict.counts,
                blocking=[f.id for f in verdict.blocking],
            )

    async def publish(self, plan: BuildPlan) -> ArtifactSet:
        """Publish every non-rejected image and return the complete artifact set.

        Siblings of a rejected image are still published; the build as a whole
        fails with ``policy_rejected``.

        Raises:
            BuildError: ``policy_rejected`` or ``publish_failure``
        """
        published: dict[str, Artifact] = dict(plan.cached)
        rejected: list[str] = []

        for name, image in plan.images.items():
            verdict = plan.verdicts.get(name)
            if verdict is not None and verdict.decision == ScanDecision.BLOCK:
                rejected.append(name)
                continue
            component = next(c for c in plan.components if c.name == name)
            try:
                published[name] = await self._publish_one(component, image)
            except RegistryError as e:
                raise BuildError(
                    BuildErrorKind.PUBLISH_FAILURE,
                    str(e),
                    component=name,
                    partial=list(published.values()),
                ) from e

        if rejected:
            blocking = {n: [f.id for f in plan.verdicts[n].blocking] for n in rejected}
            raise BuildError(
                BuildErrorKind.POLICY_REJECTED,
                f"scan policy blocked {blocking}",
                component=rejected[0],
                partial=list(published.values()),
            )

        artifacts = ArtifactSet(commit_id=plan.commit.id, artifacts=published)
        self._logger.info(
            "artifacts_published",
            commit_id=plan.commit.id,
            artifacts=artifacts.references(),
        )
        return artifacts

    async def _lookup(self, component: ComponentSpec, commit_id: str) -> str | None:
        try:
            return await self.registry.exists(component, commit_id)
        except RegistryError as e:
            # Treated as a miss; publish re-checks under the lock with retries
            self._logger.warning(
                "registry_lookup_unavailable", component=component.name, error=str(e)
            )
            return None

    async def _publish_one(self, component: ComponentSpec, image: BuiltImage) -> Artifact:
        commit_id = image.commit_id
        key = (component.repository, commit_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                digest = await self._lookup(component, commit_id)
                if digest is None:
                    digest = await self._push_with_retry(image)
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]
        return Artifact(
            component=component.name,
            commit_id=commit_id,
            repository=component.repository,
            digest=digest,
            tag=commit_id,
        )

    async def _push_with_retry(self, image: BuiltImage) -> str:
        tags = [image.commit_id, self.registry_config.latest_alias]
        max_attempts = self._publish_backoff.max_retries + 1
        attempt = 0
        while True:
            try:
                return await self.registry.push(image, tags)
            except RegistryError as e:
                self._logger.warning(
                    "publish_attempt_failed",
                    component=image.component,
                    attempt=attempt + 1,
                    max_attempts=max_attempts,
                    error=str(e),
                )
                if attempt + 1 >= max_attempts:
                    self._logger.error("publish_retries_exhausted", component=image.component)
                    raise
            await self._publish_backoff.wait(attempt)
            attempt += 1
