from __future__ import annotations

import base64
import json
from typing import Any, Optional
from urllib import parse, request
from urllib.error import HTTPError, URLError

from backend.app.models import AtsProvider, ConnectionRecord
from backend.app.services.ats_mapping import extract_entity_array

JOB_PATHS = {
    AtsProvider.workday: "/jobs",
    AtsProvider.greenhouse: "/v1/jobs",
    AtsProvider.lever: "/v1/postings",
    AtsProvider.bamboohr: "/v1/meta/jobs",
    AtsProvider.successfactors: "/odata/v2/JobRequisition",
    AtsProvider.taleo: "/object/requisition/search",
    AtsProvider.icims: "/customers/{customer_id}/jobs",
    AtsProvider.jazz: "/recruiting/jobs",
    AtsProvider.bullhorn: "/search/JobOrder",
    AtsProvider.jobvite: "/v2/jobs",
}

CANDIDATE_PATHS = {
    AtsProvider.workday: "/candidates",
    AtsProvider.greenhouse: "/v1/candidates",
    AtsProvider.lever: "/v1/opportunities",
    AtsProvider.bamboohr: "/v1/applicants",
    AtsProvider.successfactors: "/odata/v2/Candidate",
    AtsProvider.taleo: "/object/candidate/search",
    AtsProvider.icims: "/customers/{customer_id}/people",
    AtsProvider.jazz: "/recruiting/applicants",
    AtsProvider.bullhorn: "/search/Candidate",
    AtsProvider.jobvite: "/v2/candidates",
}

APPLICATION_PATHS = {
    AtsProvider.workday: "/applications",
    AtsProvider.greenhouse: "/v1/applications",
    AtsProvider.lever: "/v1/opportunities",
    AtsProvider.bamboohr: "/v1/applications",
    AtsProvider.successfactors: "/odata/v2/JobApplication",
    AtsProvider.taleo: "/object/application/search",
    AtsProvider.icims: "/customers/{customer_id}/applications",
    AtsProvider.jazz: "/recruiting/applications",
    AtsProvider.bullhorn: "/search/JobSubmission",
    AtsProvider.jobvite: "/v2/applications",
}

JOB_ARRAY_KEYS = ("jobs", "data", "results", "items", "postings")
CANDIDATE_ARRAY_KEYS = ("candidates", "data", "results", "items", "people")
APPLICATION_ARRAY_KEYS = ("applications", "data", "results", "items")


class ProviderRequestError(Exception):
    pass


def _basic(user: str, password: str) -> str:
    token = base64.b64encode(f"{user}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def _credential(connection: ConnectionRecord, key: str) -> str:
    value = connection.credentials.get(key)
    if value in (None, ""):
        raise ProviderRequestError(
            f"connection {connection.id} is missing credential '{key}' "
            f"for {connection.provider.value}"
        )
    return str(value)


def build_headers(connection: ConnectionRecord) -> dict[str, str]:
    headers = {"Content-Type": "application/json", "Accept": "application/json"}
    provider = connection.provider
    if provider == AtsProvider.workday:
        headers["Authorization"] = _basic(
            _credential(connection, "username"), _credential(connection, "password")
        )
    elif provider in (AtsProvider.greenhouse, AtsProvider.jazz):
        headers["Authorization"] = _basic(_credential(connection, "api_key"), "")
    elif provider == AtsProvider.bamboohr:
        headers["Authorization"] = _basic(_credential(connection, "api_key"), "x")
    elif provider in (AtsProvider.lever, AtsProvider.jobvite):
        headers["Authorization"] = f"Bearer {_credential(connection, 'api_key')}"
    elif provider == AtsProvider.successfactors:
        headers["Authorization"] = f"Bearer {_credential(connection, 'oauth_token')}"
    elif provider == AtsProvider.icims:
        headers["Authorization"] = f"Bearer {_credential(connection, 'access_token')}"
    elif provider == AtsProvider.taleo:
        headers["Cookie"] = f"authToken={_credential(connection, 'auth_token')}"
    elif provider == AtsProvider.bullhorn:
        headers["BhRestToken"] = _credential(connection, "rest_token")
    return headers


def _endpoint(connection: ConnectionRecord, paths: dict[AtsProvider, str], fallback: str) -> str:
    path = paths.get(connection.provider, fallback)
    if "{customer_id}" in path:
        path = path.format(customer_id=parse.quote(_credential(connection, "customer_id"), safe=""))
    return connection.api_endpoint.rstrip("/") + path


def jobs_endpoint(connection: ConnectionRecord) -> str:
    return _endpoint(connection, JOB_PATHS, "/jobs")


def candidates_endpoint(connection: ConnectionRecord) -> str:
    return _endpoint(connection, CANDIDATE_PATHS, "/candidates")


def applications_endpoint(connection: ConnectionRecord) -> str:
    return _endpoint(connection, APPLICATION_PATHS, "/applications")


def _default_params(connection: ConnectionRecord) -> dict[str, Any]:
    params = connection.configuration.get("default_params") or {}
    return dict(params) if isinstance(params, dict) else {}


def build_jobs_params(connection: ConnectionRecord, filters: dict[str, str]) -> dict[str, Any]:
    params = _default_params(connection)
    location_param = connection.field_mapping.get("location_param")
    keywords_param = connection.field_mapping.get("keywords_param")
    if filters.get("location") and location_param:
        params[location_param] = filters["location"]
    if filters.get("keywords") and keywords_param:
        params[keywords_param] = filters["keywords"]
    if filters.get("department"):
        params["department"] = filters["department"]
    return params


class AtsProviderClient:
    """Thin HTTP client for provider list endpoints.

    Every request is a GET with the provider's auth headers and a hard timeout;
    any transport or decoding problem surfaces as ``ProviderRequestError``.
    """

    def __init__(self, timeout_seconds: float = 60) -> None:
        self.timeout_seconds = timeout_seconds

    def fetch_jobs(
        self, connection: ConnectionRecord, filters: Optional[dict[str, str]] = None
    ) -> list[Any]:
        body = self._get_json(
            jobs_endpoint(connection),
            build_headers(connection),
            build_jobs_params(connection, filters or {}),
            label="jobs",
        )
        return extract_entity_array(
            body, JOB_ARRAY_KEYS, connection.field_mapping.get("jobs_array_path")
        )

    def fetch_candidates(self, connection: ConnectionRecord) -> list[Any]:
        body = self._get_json(
            candidates_endpoint(connection),
            build_headers(connection),
            _default_params(connection),
            label="candidates",
        )
        return extract_entity_array(
            body, CANDIDATE_ARRAY_KEYS, connection.field_mapping.get("candidates_array_path")
        )

    def fetch_applications(self, connection: ConnectionRecord) -> list[Any]:
        body = self._get_json(
            applications_endpoint(connection),
            build_headers(connection),
            _default_params(connection),
            label="applications",
        )
        return extract_entity_array(
            body, APPLICATION_ARRAY_KEYS, connection.field_mapping.get("applications_array_path")
        )

    def _get_json(
        self,
        url: str,
        headers: dict[str, str],
        params: dict[str, Any],
        *,
        label: str,
    ) -> Any:
        if params:
            url = f"{url}?{parse.urlencode(params, doseq=True)}"
        req = request.Request(url, method="GET", headers=headers)
        try:
            with request.urlopen(req, timeout=self.timeout_seconds) as response:
                raw = response.read()
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")[:500] if exc.fp else ""
            raise ProviderRequestError(f"Failed to fetch {label}: {exc.code} - {detail}") from exc
        except (URLError, TimeoutError, OSError) as exc:
            raise ProviderRequestError(f"Failed to fetch {label}: {exc}") from exc

        try:
            body = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProviderRequestError(f"{label} response was not valid utf-8") from exc
        if not body.strip():
            return []
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise ProviderRequestError(f"{label} response was not valid json") from exc
