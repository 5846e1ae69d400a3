"""Git-backed manifest store.

Repository layout, one directory per deployable unit::

    <unit>/base.json                  base resource templates (list of documents)
    <unit>/revisions/00000001.json    ManifestRevision seq 1
    <unit>/revisions/00000002.json    ManifestRevision seq 2

Every append is a single git commit. Appends are compare-and-append: the
caller passes the sequence number it expects at the head and the store
refuses the write with ``ConflictError`` if the head moved. With a remote
configured, the store fast-forwards before checking and a rejected push is
undone locally and reported as a conflict, so history is never
force-overwritten.

Example usage:
    >>> store = GitManifestStore(ManifestConfig(repo_path=Path("/srv/manifests")))
    >>> head = await store.head("shop")
    >>> seq = await store.append("shop", head.seq, next_revision)
"""

from __future__ import annotations

import asyncio
import json
import os
import threading
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any, Protocol

import git
from git import GitCommandError
from pydantic import BaseModel

from rollwright.config import ManifestConfig
from rollwright.errors import ConflictError
from rollwright.logging import get_logger
from rollwright.models import ManifestRevision


class ManifestStoreError(Exception):
    """The manifest store is unreadable or inconsistent."""


class HeadChanged(BaseModel):
    """A head-changed event from ``watch``."""

    unit: str
    seq: int


class ManifestStore(Protocol):
    """Interface consumed by the orchestration core."""

    async def templates(self, unit: str) -> list[dict[str, Any]]:
        ...

    async def head(self, unit: str) -> ManifestRevision | None:
        ...

    async def read(self, unit: str, seq: int) -> ManifestRevision:
        ...

    async def history(self, unit: str, limit: int | None = None) -> list[ManifestRevision]:
        ...

    async def append(self, unit: str, expected_seq: int, revision: ManifestRevision) -> int:
        ...

    def watch(self, unit: str, interval_seconds: float) -> AsyncIterator[HeadChanged]:
        ...


def validate_append(unit: str, expected_seq: int, head_seq: int, revision: ManifestRevision) -> None:
    """Shared compare-and-append precondition.

    Raises:
        ConflictError: If the head is not at ``expected_seq``
        ValueError: If the revision does not extend ``expected_seq`` by one
    """
    if head_seq != expected_seq:
        raise ConflictError(unit, expected_seq, head_seq)
    if revision.unit != unit:
        raise ValueError(f"Revision belongs to {revision.unit}, not {unit}")
    if revision.seq != expected_seq + 1:
        raise ValueError(f"Revision seq {revision.seq} does not follow {expected_seq}")
    expected_parent = expected_seq if expected_seq > 0 else None
    if revision.parent_seq != expected_parent:
        raise ValueError(f"Revision parent {revision.parent_seq} != {expected_parent}")


class GitManifestStore:
    """GitPython implementation of ``ManifestStore``.

    Attributes:
        config: Manifest store configuration
        repo: GitPython Repo object
    """

    def __init__(self, config: ManifestConfig) -> None:
        self.config = config
        self.logger = get_logger(__name__)
        try:
            self.repo = git.Repo(config.repo_path)
        except (git.InvalidGitRepositoryError, git.NoSuchPathError) as e:
            self.logger.error("manifest_repo_invalid", repo_path=str(config.repo_path), error=str(e))
            raise
        # Held by the worker thread, so a cancelled caller cannot interleave writes
        self._write_lock = threading.Lock()

    @property
    def root(self) -> Path:
        return Path(self.repo.working_tree_dir or self.config.repo_path)

    def _revision_dir(self, unit: str) -> Path:
        return self.root / unit / "revisions"

    def _revision_path(self, unit: str, seq: int) -> Path:
        return self._revision_dir(unit) / f"{seq:08d}.json"

    def _head_seq_sync(self, unit: str) -> int:
        directory = self._revision_dir(unit)
        if not directory.exists():
            return 0
        seqs = [int(p.stem) for p in directory.glob("*.json") if p.stem.isdigit()]
        return max(seqs, default=0)

    def _read_sync(self, unit: str, seq: int) -> ManifestRevision:
        path = self._revision_path(unit, seq)
        try:
            return ManifestRevision.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise ManifestStoreError(f"Revision {seq} of {unit} not found") from e

    def _sync_remote(self) -> None:
        if self.config.remote is None:
            return
        self.repo.git.pull(self.config.remote, self.config.branch, "--ff-only")

    def _refresh_sync(self, unit: str) -> None:
        """Fast-forward from the remote before a read; a failed pull keeps the local view."""
        if self.config.remote is None:
            return
        with self._write_lock:
            try:
                self._sync_remote()
            except GitCommandError as e:
                self.logger.warning("manifest_remote_pull_failed", unit=unit, error=str(e))

    async def templates(self, unit: str) -> list[dict[str, Any]]:
        """Base resource templates used when a unit has no revision yet."""
        path = self.root / unit / "base.json"

        def _load() -> list[dict[str, Any]]:
            try:
                documents = json.loads(path.read_text(encoding="utf-8"))
            except FileNotFoundError as e:
                raise ManifestStoreError(f"No base templates for {unit} at {path}") from e
            if not isinstance(documents, list):
                raise ManifestStoreError(f"{path} must contain a list of resource documents")
            return documents

        return await asyncio.to_thread(_load)

    async def head(self, unit: str) -> ManifestRevision | None:
        def _head() -> ManifestRevision | None:
            self._refresh_sync(unit)
            seq = self._head_seq_sync(unit)
            return self._read_sync(unit, seq) if seq else None

        return await asyncio.to_thread(_head)

    async def read(self, unit: str, seq: int) -> ManifestRevision:
        return await asyncio.to_thread(self._read_sync, unit, seq)

    async def history(self, unit: str, limit: int | None = None) -> list[ManifestRevision]:
        """Revisions of ``unit`` oldest first (the newest ``limit`` if given)."""

        def _history() -> list[ManifestRevision]:
            self._refresh_sync(unit)
            head = self._head_seq_sync(unit)
            start = 1 if limit is None else max(1, head - limit + 1)
            return [self._read_sync(unit, seq) for seq in range(start, head + 1)]

        return await asyncio.to_thread(_history)

    async def append(self, unit: str, expected_seq: int, revision: ManifestRevision) -> int:
        """Compare-and-append one revision.

        Args:
            unit: Deployable unit
            expected_seq: Head sequence number the caller based its revision on
                (0 for an empty history)
            revision: Revision with ``seq == expected_seq + 1``

        Returns:
            The new head sequence number

        Raises:
            ConflictError: If another writer advanced the head
        """
        return await asyncio.to_thread(self._append_sync, unit, expected_seq, revision)

    def _append_sync(self, unit: str, expected_seq: int, revision: ManifestRevision) -> int:
        with self._write_lock:
            try:
                self._sync_remote()
            except GitCommandError as e:
                self.logger.warning("manifest_remote_pull_failed", unit=unit, error=str(e))
            validate_append(unit, expected_seq, self._head_seq_sync(unit), revision)

            path = self._revision_path(unit, revision.seq)
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".json.tmp")
            tmp_path.write_text(revision.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp_path, path)

            relative = str(path.relative_to(self.root))
            message = f"{unit}: revision {revision.seq} ({revision.commit_id})"
            if revision.rollback_of is not None:
                message += f" rollback to artifacts of {revision.rollback_of}"
            try:
                self.repo.index.add([relative])
                self.repo.index.commit(message)
            except Exception:
                path.unlink(missing_ok=True)
                self.repo.index.remove([relative], working_tree=False, ignore_unmatch=True)
                raise

            if self.config.remote is not None:
                try:
                    self.repo.git.push(self.config.remote, self.config.branch)
                except GitCommandError as e:
                    # Someone else pushed first: drop our commit, adopt theirs
                    self.repo.git.reset("--hard", "HEAD~1")
                    self._sync_remote()
                    actual = self._head_seq_sync(unit)
                    self.logger.warning(
                        "manifest_push_rejected", unit=unit, seq=revision.seq, error=str(e)
                    )
                    raise ConflictError(unit, expected_seq, actual) from e

        self.logger.info(
            "manifest_revision_appended",
            unit=unit,
            seq=revision.seq,
            parent_seq=revision.parent_seq,
            commit_id=revision.commit_id,
            rollback_of=revision.rollback_of,
        )
        return revision.seq

    async def watch(self, unit: str, interval_seconds: float) -> AsyncIterator[HeadChanged]:
        """Yield an event whenever the head of ``unit`` changes.

        The current head (if any) is reported first.
        """
        last_seq: int | None = None
        while True:
            await asyncio.to_thread(self._refresh_sync, unit)
            seq = await asyncio.to_thread(self._head_seq_sync, unit)
            if seq and seq != last_seq:
                last_seq = seq
                yield HeadChanged(unit=unit, seq=seq)
            await asyncio.sleep(interval_seconds)
