"""Client for the robium-engine control API."""

import json
from typing import Any, Iterator, Optional
from urllib.parse import quote

import httpx

from .api import TOKEN_HEADER


class ControlError(Exception):
    """Non-2xx answer from the control API."""

    def __init__(self, status_code: int, error: str, detail: str):
        self.status_code = status_code
        self.error = error
        self.detail = detail
        super().__init__(f"{status_code} {error}: {detail}")


class ControlClient:
    """Client for interacting with a running engine."""

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8870",
        token: Optional[str] = None,
        timeout: float = 60.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        headers = {TOKEN_HEADER: token} if token else {}
        self._client = httpx.Client(base_url=self.base_url, timeout=timeout, headers=headers, transport=transport)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self._client.close()

    def close(self):
        self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        response = self._client.request(method, path, **kwargs)
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            detail = body.get("detail", response.text)
            raise ControlError(response.status_code, body.get("error", "HTTPError"), str(detail))
        return response.json()

    @staticmethod
    def _run_path(project_id: str, workspace_id: str, run_id: str) -> str:
        return "/runs/" + "/".join(quote(str(p), safe="") for p in (project_id, workspace_id, run_id))

    def health(self) -> bool:
        """Check if the engine is reachable."""
        try:
            response = self._client.get("/health")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    def compile(self, spec: dict) -> dict:
        return self._request("POST", "/compile", json={"spec": spec})

    def start(self, project_id: str, workspace_id: str, run_id: str, spec: dict) -> dict:
        payload = {
            "project_id": project_id,
            "workspace_id": workspace_id,
            "run_id": run_id,
            "spec": spec,
        }
        return self._request("POST", "/runs", json=payload)

    def list_runs(self, state: Optional[str] = None, project_id: Optional[str] = None) -> list[dict]:
        params = {}
        if state:
            params["state"] = state
        if project_id:
            params["project_id"] = project_id
        return self._request("GET", "/runs", params=params)["runs"]

    def status(self, project_id: str, workspace_id: str, run_id: str) -> Optional[dict]:
        """Run record, or None if the engine does not know it."""
        try:
            return self._request("GET", self._run_path(project_id, workspace_id, run_id))
        except ControlError as e:
            if e.status_code == 404:
                return None
            raise

    def stop(self, project_id: str, workspace_id: str, run_id: str) -> dict:
        return self._request("POST", self._run_path(project_id, workspace_id, run_id) + "/stop")

    def destroy(self, project_id: str, workspace_id: str, run_id: str) -> dict:
        return self._request("POST", self._run_path(project_id, workspace_id, run_id) + "/destroy")

    def touch(self, project_id: str, workspace_id: str, run_id: str) -> dict:
        return self._request("POST", self._run_path(project_id, workspace_id, run_id) + "/touch")

    def sweep(self) -> dict:
        return self._request("POST", "/sweep")

    def alerts(self) -> list[dict]:
        return self._request("GET", "/alerts")["alerts"]

    def events(self, replay: bool = True, limit: int = 0) -> Iterator[dict]:
        """Iterate over lifecycle events from the server-sent event stream."""
        params = {"replay": str(replay).lower(), "limit": limit}
        with self._client.stream("GET", "/events", params=params, timeout=None) as response:
            if response.status_code >= 400:
                response.read()
                raise ControlError(response.status_code, "HTTPError", response.text)
            for line in response.iter_lines():
                if line.startswith("data: "):
                    yield json.loads(line[len("data: "):])