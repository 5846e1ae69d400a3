"""Manifest Updater: artifact digests in, new manifest revision out.

A new revision is the prior revision's resources with container images
replaced by digest-pinned artifact references. Every other field (replicas,
resource limits, secret references) is carried over untouched.

Appends are compare-and-append against the store head. ``append`` makes a
single attempt and surfaces ``ConflictError``; ``append_latest`` re-reads
the head and retries immediately, without backoff, because a conflict means
another writer made progress, not that the store is down.
"""

from __future__ import annotations

import asyncio
import copy
from typing import Any

from rollwright.config import ManifestConfig
from rollwright.errors import ConflictError
from rollwright.logging import get_logger
from rollwright.models import ManifestRevision
from rollwright.pipeline.manifest_store import ManifestStore

logger = get_logger(__name__)

_POD_TEMPLATE_PATH = ("spec", "template", "spec")


def image_repository(image: str) -> str:
    """Strip digest and tag from an image reference."""
    name = image.split("@", 1)[0]
    slash = name.rfind("/")
    colon = name.rfind(":")
    if colon > slash:
        name = name[:colon]
    return name


def _pod_spec(resource: dict[str, Any]) -> dict[str, Any] | None:
    if resource.get("kind") == "Pod":
        return resource.get("spec")
    node: Any = resource
    for key in _POD_TEMPLATE_PATH:
        if not isinstance(node, dict) or key not in node:
            return None
        node = node[key]
    return node if isinstance(node, dict) else None


def render(resources: list[dict[str, Any]], artifacts: dict[str, str]) -> list[dict[str, Any]]:
    """Substitute artifact references into resource templates.

    A container is matched to a component by image repository first and by
    container name second. Unmatched containers keep their image.

    Args:
        resources: Template documents (not modified)
        artifacts: Component name to ``repository@digest`` reference

    Returns:
        New documents in the same order
    """
    by_repository = {image_repository(ref): ref for ref in artifacts.values()}
    rendered: list[dict[str, Any]] = []
    for resource in resources:
        document = copy.deepcopy(resource)
        pod_spec = _pod_spec(document)
        if pod_spec is not None:
            for key in ("initContainers", "containers"):
                for container in pod_spec.get(key) or []:
                    current = container.get("image")
                    if current is not None and image_repository(current) in by_repository:
                        container["image"] = by_repository[image_repository(current)]
                    elif container.get("name") in artifacts:
                        container["image"] = artifacts[container["name"]]
        rendered.append(document)
    return rendered


class ManifestUpdater:
    """Appends artifact-substituted revisions to the manifest store.

    Args:
        store: Manifest store client
        config: Conflict retry settings
    """

    def __init__(self, store: ManifestStore, config: ManifestConfig | None = None) -> None:
        self.store = store
        self.config = config or ManifestConfig()

    async def append(
        self,
        unit: str,
        prior: ManifestRevision | None,
        artifacts: dict[str, str],
        commit_id: str,
        *,
        template: list[dict[str, Any]] | None = None,
        rollback_of: int | None = None,
    ) -> ManifestRevision:
        """``append(prior, artifacts) -> revision | ConflictError``.

        Args:
            unit: Deployable unit
            prior: Current head the new revision builds on (None when the
                unit has no history; the store's base templates are used)
            artifacts: Component name to digest-pinned reference. Merged over
                the prior revision's artifacts unless ``template`` is given,
                in which case they are used as-is.
            commit_id: Commit the revision is released from
            template: Resources to render instead of the prior revision's
                (rollback builds on the failed revision's predecessor)
            rollback_of: Sequence number whose artifacts are being restored

        Returns:
            The appended revision, or ``prior`` if it already is this release

        Raises:
            ConflictError: If the store head is no longer ``prior``
        """
        if template is not None:
            resources_in = template
            merged = dict(artifacts)
        elif prior is not None:
            resources_in = prior.resources
            merged = {**prior.artifacts, **artifacts}
        else:
            resources_in = await self.store.templates(unit)
            merged = dict(artifacts)

        if (
            prior is not None
            and rollback_of is None
            and prior.commit_id == commit_id
            and prior.artifacts == merged
        ):
            logger.info("manifest_append_skipped", unit=unit, seq=prior.seq, commit_id=commit_id)
            return prior

        expected_seq = prior.seq if prior is not None else 0
        revision = ManifestRevision(
            unit=unit,
            seq=expected_seq + 1,
            parent_seq=prior.seq if prior is not None else None,
            commit_id=commit_id,
            artifacts=merged,
            resources=render(resources_in, merged),
            rollback_of=rollback_of,
        )
        # The store write runs to completion even if our caller is cancelled,
        # so the head either has the revision recorded or not at all
        await asyncio.shield(self.store.append(unit, expected_seq, revision))
        return revision

    async def append_latest(
        self,
        unit: str,
        artifacts: dict[str, str],
        commit_id: str,
        *,
        template: list[dict[str, Any]] | None = None,
        rollback_of: int | None = None,
    ) -> ManifestRevision:
        """Append on top of the current head, re-reading it after each conflict.

        Raises:
            ConflictError: If every attempt lost the race
        """
        attempt = 1
        while True:
            prior = await self.store.head(unit)
            try:
                return await self.append(
                    unit,
                    prior,
                    artifacts,
                    commit_id,
                    template=template,
                    rollback_of=rollback_of,
                )
            except ConflictError as e:
                logger.info(
                    "manifest_append_conflict",
                    unit=unit,
                    attempt=attempt,
                    expected_seq=e.expected_seq,
                    actual_seq=e.actual_seq,
                )
                if attempt >= self.config.max_conflict_retries:
                    raise
            attempt += 1
