"""HTTP client for the operator API used by the CLI commands."""

from __future__ import annotations

import json
from typing import Any

import httpx

from rollwright.web.routes.webhooks import SIGNATURE_HEADER, sign_payload

# Operator-facing exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_IN_PROGRESS = 2
EXIT_FATAL = 3

OUTCOME_EXIT_CODES = {
    "success": EXIT_SUCCESS,
    "failed": EXIT_ERROR,
    "in_progress": EXIT_IN_PROGRESS,
    "fatal": EXIT_FATAL,
}

# 423 carries a regular status body for a fatal unit
_ANSWERED = frozenset({423})


class ApiError(Exception):
    """The API answered with an error status or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


def exit_code_for(outcome: str) -> int:
    return OUTCOME_EXIT_CODES.get(outcome, EXIT_ERROR)


class RollwrightApiClient:
    """Thin synchronous wrapper over the operator API.

    Args:
        base_url: API base URL (``[web].api_url``)
        timeout: Request timeout in seconds
        webhook_secret: Secret used to sign ``trigger`` payloads
        transport: Optional httpx transport (tests)
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        webhook_secret: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.webhook_secret = webhook_secret
        self._client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    def __enter__(self) -> RollwrightApiClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise ApiError(f"{method} {path} failed: {e}") from e
        if response.status_code >= 400 and response.status_code not in _ANSWERED:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise ApiError(str(detail), status_code=response.status_code)
        return response.json()

    def list_units(self) -> list[dict[str, Any]]:
        return self._request("GET", "/units/")

    def unit_status(self, unit: str) -> dict[str, Any]:
        return self._request("GET", f"/units/{unit}")

    def sync_now(self, unit: str) -> dict[str, Any]:
        return self._request("POST", f"/units/{unit}/sync")

    def rollback(self, unit: str) -> dict[str, Any]:
        return self._request("POST", f"/units/{unit}/rollback")

    def clear(self, unit: str) -> dict[str, Any]:
        return self._request("POST", f"/units/{unit}/clear")

    def events(self, unit: str, limit: int = 50) -> list[dict[str, Any]]:
        return self._request("GET", f"/units/{unit}/events", params={"limit": limit})

    def trigger(
        self,
        commit_id: str,
        units: list[str],
        author: str | None = None,
        message: str | None = None,
    ) -> dict[str, Any]:
        """Post a commit webhook, signed when a secret is configured."""
        payload: dict[str, Any] = {"commit_id": commit_id, "changed_units": units}
        if author:
            payload["author"] = author
        if message:
            payload["message"] = message
        body = json.dumps(payload).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self.webhook_secret:
            headers[SIGNATURE_HEADER] = sign_payload(body, self.webhook_secret)
        return self._request("POST", "/webhooks/commit", content=body, headers=headers)
