"""
Remote Gateway.

HTTP client for the performance-management REST API.

Every endpoint returns ``Ok(value) | Err(reason)``. The ``{"success",
"data", "error"}`` envelope and HTTP status semantics are decoded here,
once, so the coordinator never inspects raw responses:

    - transport errors, timeouts, 408/429 and 5xx  -> Err(CONNECTIVITY)
    - 401 / 403                                      -> Err(AUTH)
    - 404                                            -> Err(NOT_FOUND)
    - other 4xx, ``success: false``, bad payloads    -> Err(REJECTED)

Usage:
    async with create_standalone_http_client() as http_client:
        gateway = RemoteGateway(http_client=http_client, session=session)
        result = await gateway.list_goals()
        if result.ok:
            goals = result.value
"""

import logging
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError

from pms_sync.core.config import SyncSettings, get_sync_settings
from pms_sync.offline.enums import SyncDomain
from pms_sync.offline.exceptions import SyncConfigurationError
from pms_sync.offline.models import (
    AppraisalDraft,
    ContactInfo,
    DomainRecord,
    EmployeeSession,
    PerformanceSnapshot,
    PIPRecord,
)
from pms_sync.offline.results import Err, ErrorKind, GatewayResult, Ok

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {408, 429}


class RemoteGateway:
    """
    Typed client for the employee-facing API endpoints.

    Args:
        http_client: Shared httpx.AsyncClient (required).
        session: The signed-in employee and their token.
        settings: Sync settings; loaded from the environment if omitted.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        session: EmployeeSession,
        settings: Optional[SyncSettings] = None,
    ) -> None:
        if http_client is None:
            raise SyncConfigurationError(
                "http_client is required. Use create_standalone_http_client() "
                "and pass the client explicitly."
            )

        self._client = http_client
        self._session = session
        self._settings = settings or get_sync_settings()
        self._base_url = self._settings.api_base_url.rstrip("/")
        self._timeout = self._settings.request_timeout_seconds

    @property
    def employee_id(self) -> str:
        return self._session.employee_id

    @property
    def session(self) -> EmployeeSession:
        return self._session

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        token = self._session.token.get_secret_value()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _build_url(self, path: str) -> str:
        if not path.startswith("/"):
            path = f"/{path}"
        return f"{self._base_url}{path}"

    # =========================================================================
    # Transport and Decoding
    # =========================================================================

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> GatewayResult[Any]:
        url = self._build_url(path)
        try:
            response = await self._client.request(
                method,
                url,
                json=json,
                params=params,
                headers=self._get_headers(),
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            logger.warning(f"{method} {path} timed out: {e}")
            return Err(ErrorKind.CONNECTIVITY, f"timeout: {e}")
        except httpx.HTTPError as e:
            logger.warning(f"{method} {path} failed: {type(e).__name__}: {e}")
            return Err(ErrorKind.CONNECTIVITY, str(e) or type(e).__name__)

        result = self._decode(response)
        if not result.ok:
            logger.info(f"{method} {path} -> {result.kind} ({result.status_code}) {result.message}")
        return result

    @staticmethod
    def _decode(response: httpx.Response) -> GatewayResult[Any]:
        """Translate an HTTP response into Ok/Err."""
        status = response.status_code

        try:
            body = response.json()
        except ValueError:
            body = None

        message = ""
        if isinstance(body, dict):
            message = str(body.get("error") or body.get("message") or "")

        if status in (401, 403):
            return Err(ErrorKind.AUTH, message or "session rejected", status)
        if status == 404:
            return Err(ErrorKind.NOT_FOUND, message or "not found", status)
        if status >= 500 or status in TRANSIENT_STATUS_CODES:
            return Err(ErrorKind.CONNECTIVITY, message or f"HTTP {status}", status)
        if status >= 400:
            return Err(ErrorKind.REJECTED, message or f"HTTP {status}", status)

        if isinstance(body, dict) and "success" in body:
            if not body.get("success"):
                return Err(ErrorKind.REJECTED, message or "request not accepted", status)
            return Ok(body.get("data"))
        return Ok(body)

    @staticmethod
    def _map(result: GatewayResult[Any], mapper: Callable[[Any], Any]) -> GatewayResult[Any]:
        """Apply ``mapper`` to an Ok value; malformed payloads become REJECTED."""
        if not result.ok:
            return result
        try:
            return Ok(mapper(result.value))
        except (ValidationError, ValueError, TypeError, KeyError, AttributeError) as e:
            logger.error(f"Malformed API payload: {type(e).__name__}: {e}")
            return Err(ErrorKind.REJECTED, f"malformed payload: {e}")

    @staticmethod
    def _items(value: Any) -> List[Dict[str, Any]]:
        if value is None:
            return []
        if isinstance(value, dict):
            return [value]
        return list(value)

    # =========================================================================
    # Goals
    # =========================================================================

    async def list_goals(self) -> GatewayResult[List[DomainRecord]]:
        result = await self._request("GET", f"/new-goals/employee/{self.employee_id}")
        return self._map(
            result,
            lambda value: [DomainRecord.from_goal_response(item) for item in self._items(value)],
        )

    async def create_goal(self, payload: Dict[str, Any]) -> GatewayResult[DomainRecord]:
        result = await self._request("POST", "/new-goals", json=payload)
        return self._map(result, lambda value: DomainRecord.from_goal_response({**payload, **(value or {})}))

    async def update_goal(self, goal_id: str, payload: Dict[str, Any]) -> GatewayResult[Any]:
        return await self._request("PUT", f"/new-goals/{goal_id}", json=payload)

    async def toggle_goal(self, goal_id: str, payload: Dict[str, Any]) -> GatewayResult[Any]:
        return await self._request("PATCH", f"/new-goals/{goal_id}", json=payload)

    async def delete_goal(self, goal_id: str) -> GatewayResult[Any]:
        return await self._request("DELETE", f"/new-goals/{goal_id}")

    # =========================================================================
    # Queries, Feedback and Bulk Sync
    # =========================================================================

    async def submit_query(self, text: str) -> GatewayResult[Any]:
        return await self._request(
            "POST", f"/employee/{self.employee_id}/queries", json={"queryText": text}
        )

    async def submit_feedback(self, text: str) -> GatewayResult[Any]:
        return await self._request(
            "POST", f"/employee/{self.employee_id}/feedback", json={"feedbackText": text}
        )

    async def bulk_sync(self, domain: SyncDomain, items: List[Dict[str, Any]]) -> GatewayResult[Any]:
        """Push a whole queued batch through ``/employee/{id}/{domain}/sync``."""
        return await self._request(
            "POST", f"/employee/{self.employee_id}/{domain}/sync", json={str(domain): items}
        )

    # =========================================================================
    # Read-only Dashboard Data
    # =========================================================================

    async def fetch_performance(self) -> GatewayResult[Optional[PerformanceSnapshot]]:
        result = await self._request("GET", f"/employee-details/by-employee-id/{self.employee_id}")

        def _latest(value: Any) -> Optional[PerformanceSnapshot]:
            items = self._items(value)
            if not items:
                return None
            return PerformanceSnapshot.from_response(
                items[0], self.employee_id, self._settings.company_name
            )

        return self._map(result, _latest)

    async def fetch_pip(self) -> GatewayResult[PIPRecord]:
        result = await self._request("GET", f"/pips/employee/{self.employee_id}")

        def _latest(value: Any) -> PIPRecord:
            items = self._items(value)
            return PIPRecord.from_response(items[0]) if items else PIPRecord()

        return self._map(result, _latest)

    async def fetch_contact(self) -> GatewayResult[Optional[ContactInfo]]:
        """Phone from the resignation profile, or from the by-employee-id record if that fails."""
        result = await self._request("GET", f"/employee-resignation/profile/{self.employee_id}")
        if not result.ok and result.kind in (ErrorKind.NOT_FOUND, ErrorKind.REJECTED):
            result = await self._request(
                "GET", f"/employee-resignation/employee-id/{self.employee_id}"
            )

        def _contact(value: Any) -> Optional[ContactInfo]:
            phone = (value or {}).get("phone") if isinstance(value, dict) else None
            if not phone:
                return None
            return ContactInfo(employee_id=self.employee_id, phone=str(phone))

        return self._map(result, _contact)

    async def update_contact(self, phone: str) -> GatewayResult[Any]:
        return await self._request(
            "PUT", f"/employee-resignation/{self.employee_id}", json={"phone": phone}
        )

    # =========================================================================
    # Self-Appraisal Drafts
    # =========================================================================

    async def find_drafts(self, owner_id: str) -> GatewayResult[List[AppraisalDraft]]:
        result = await self._request(
            "GET", f"/self-appraisals/employee/{owner_id}", params={"status": "draft"}
        )

        def _drafts(value: Any) -> List[AppraisalDraft]:
            drafts = []
            for item in self._items(value):
                try:
                    drafts.append(AppraisalDraft.from_response(item, owner_id=owner_id))
                except (ValidationError, ValueError, TypeError, AttributeError) as e:
                    logger.warning(f"Ignoring unreadable appraisal for {owner_id}: {e}")
            return drafts

        return self._map(result, _drafts)

    async def get_appraisal(self, appraisal_id: str) -> GatewayResult[AppraisalDraft]:
        """Existence check for a draft id the client is holding."""
        result = await self._request("GET", f"/self-appraisals/{appraisal_id}")
        return self._map(
            result, lambda value: AppraisalDraft.from_response(value, owner_id=self.employee_id)
        )

    async def create_appraisal(self, payload: Dict[str, Any]) -> GatewayResult[str]:
        """Create a draft; the Ok value is the new server id."""
        result = await self._request("POST", "/self-appraisals", json=payload)

        def _new_id(value: Any) -> str:
            new_id = value.get("_id") or value.get("id")
            if not new_id:
                raise ValueError("create response carries no id")
            return str(new_id)

        return self._map(result, _new_id)

    async def update_appraisal(self, appraisal_id: str, payload: Dict[str, Any]) -> GatewayResult[Any]:
        return await self._request("PUT", f"/self-appraisals/{appraisal_id}", json=payload)

    async def submit_appraisal(self, appraisal_id: str) -> GatewayResult[Any]:
        return await self._request("POST", f"/self-appraisals/{appraisal_id}/submit")
