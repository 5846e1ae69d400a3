"""Kubernetes cluster client over the REST API.

The reconciler and health verifier only need a narrow slice of the API:
server-side apply (an idempotent upsert by resource identity), get, a
label-selected listing of the resources a unit manages, delete for the
explicitly gated prune path, and pod listings for restart accounting.

Example usage:
    >>> from rollwright.config import ClusterConfig
    >>> from rollwright.pipeline.cluster import KubernetesClusterClient
    >>>
    >>> client = KubernetesClusterClient(ClusterConfig(api_url="https://10.0.0.1:6443"))
    >>> live = await client.apply(deployment_manifest)
    >>> await client.close()
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, NamedTuple, Protocol

import httpx

from rollwright.config import ClusterConfig
from rollwright.logging import get_logger
from rollwright.models import MANAGED_BY_LABEL, MANAGED_BY_VALUE, UNIT_LABEL, ResourceRef


class ClusterError(Exception):
    """The API server rejected a request or could not be reached.

    Attributes:
        status_code: HTTP status (None for transport errors)
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class KindInfo(NamedTuple):
    api_version: str
    plural: str
    namespaced: bool

    @property
    def prefix(self) -> str:
        return f"/api/{self.api_version}" if "/" not in self.api_version else f"/apis/{self.api_version}"


KINDS: dict[str, KindInfo] = {
    "Namespace": KindInfo("v1", "namespaces", False),
    "Secret": KindInfo("v1", "secrets", True),
    "ConfigMap": KindInfo("v1", "configmaps", True),
    "ServiceAccount": KindInfo("v1", "serviceaccounts", True),
    "PersistentVolumeClaim": KindInfo("v1", "persistentvolumeclaims", True),
    "StatefulSet": KindInfo("apps/v1", "statefulsets", True),
    "Deployment": KindInfo("apps/v1", "deployments", True),
    "DaemonSet": KindInfo("apps/v1", "daemonsets", True),
    "Job": KindInfo("batch/v1", "jobs", True),
    "Service": KindInfo("v1", "services", True),
    "Ingress": KindInfo("networking.k8s.io/v1", "ingresses", True),
}

POD_KIND = KindInfo("v1", "pods", True)


def kind_info(kind: str) -> KindInfo:
    try:
        return KINDS[kind]
    except KeyError as e:
        raise ClusterError(f"Unsupported resource kind: {kind}") from e


def managed_selector(unit: str) -> dict[str, str]:
    """Labels identifying resources rollwright manages for ``unit``."""
    return {MANAGED_BY_LABEL: MANAGED_BY_VALUE, UNIT_LABEL: unit}


class ClusterClient(Protocol):
    """Interface the reconciler and health verifier consume."""

    async def apply(self, manifest: dict[str, Any]) -> dict[str, Any]:
        ...

    async def get(self, ref: ResourceRef) -> dict[str, Any] | None:
        ...

    async def list_managed(self, unit: str, namespace: str) -> list[dict[str, Any]]:
        ...

    async def delete(self, ref: ResourceRef) -> None:
        ...

    async def list_pods(self, namespace: str, selector: dict[str, str]) -> list[dict[str, Any]]:
        ...


class KubernetesClusterClient:
    """httpx implementation of ``ClusterClient``.

    Attributes:
        config: Cluster configuration
        logger: Structured logger instance
    """

    def __init__(self, config: ClusterConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.config = config
        self.logger = get_logger(__name__)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _token(self) -> str | None:
        if self.config.token:
            return self.config.token
        token_file: Path | None = self.config.token_file
        if token_file is not None and token_file.exists():
            return token_file.read_text(encoding="utf-8").strip()
        return None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Accept": "application/json"}
            token = self._token()
            if token:
                headers["Authorization"] = f"Bearer {token}"
            verify: bool | str = self.config.verify_tls
            if self.config.verify_tls and self.config.ca_file is not None:
                verify = str(self.config.ca_file)
            self._client = httpx.AsyncClient(
                base_url=self.config.api_url,
                headers=headers,
                verify=verify,
                timeout=self.config.request_timeout_seconds,
                transport=self._transport,
            )
        return self._client

    def _path(self, info: KindInfo, name: str | None = None, namespace: str | None = None) -> str:
        path = info.prefix
        if info.namespaced:
            path += f"/namespaces/{namespace or 'default'}"
        path += f"/{info.plural}"
        if name is not None:
            path += f"/{name}"
        return path

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            self.logger.warning("cluster_request_failed", method=method, path=path, error=str(e))
            raise ClusterError(f"{method} {path} failed: {e}") from e
        return response

    @staticmethod
    def _raise_for_status(response: httpx.Response, action: str) -> None:
        if response.is_success:
            return
        try:
            message = response.json().get("message", response.text)
        except ValueError:
            message = response.text
        raise ClusterError(f"{action} rejected ({response.status_code}): {message}", response.status_code)

    async def apply(self, manifest: dict[str, Any]) -> dict[str, Any]:
        """Server-side apply one resource document.

        Raises:
            ClusterError: If the API server rejects the document
        """
        ref = ResourceRef.from_manifest(manifest)
        info = kind_info(ref.kind)
        document = dict(manifest)
        document.setdefault("apiVersion", info.api_version)
        response = await self._request(
            "PATCH",
            self._path(info, ref.name, ref.namespace),
            params={"fieldManager": self.config.field_manager, "force": "true"},
            content=json.dumps(document),
            headers={"Content-Type": "application/apply-patch+yaml"},
        )
        self._raise_for_status(response, f"apply {ref}")
        self.logger.debug("cluster_resource_applied", resource=str(ref))
        return response.json()

    async def get(self, ref: ResourceRef) -> dict[str, Any] | None:
        info = kind_info(ref.kind)
        response = await self._request("GET", self._path(info, ref.name, ref.namespace))
        if response.status_code == 404:
            return None
        self._raise_for_status(response, f"get {ref}")
        return response.json()

    async def list_managed(self, unit: str, namespace: str) -> list[dict[str, Any]]:
        """All live resources labelled as managed by rollwright for ``unit``."""
        selector = ",".join(f"{k}={v}" for k, v in managed_selector(unit).items())
        resources: list[dict[str, Any]] = []
        for kind, info in KINDS.items():
            response = await self._request(
                "GET", self._path(info, namespace=namespace), params={"labelSelector": selector}
            )
            if response.status_code == 404:
                continue
            self._raise_for_status(response, f"list {kind}")
            for item in response.json().get("items") or []:
                # List responses omit the per-item type metadata
                item.setdefault("kind", kind)
                item.setdefault("apiVersion", info.api_version)
                resources.append(item)
        return resources

    async def delete(self, ref: ResourceRef) -> None:
        info = kind_info(ref.kind)
        response = await self._request(
            "DELETE",
            self._path(info, ref.name, ref.namespace),
            params={"propagationPolicy": "Background"},
        )
        if response.status_code == 404:
            return
        self._raise_for_status(response, f"delete {ref}")
        self.logger.info("cluster_resource_deleted", resource=str(ref))

    async def list_pods(self, namespace: str, selector: dict[str, str]) -> list[dict[str, Any]]:
        label_selector = ",".join(f"{k}={v}" for k, v in selector.items())
        response = await self._request(
            "GET", self._path(POD_KIND, namespace=namespace), params={"labelSelector": label_selector}
        )
        self._raise_for_status(response, "list pods")
        return list(response.json().get("items") or [])

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None
