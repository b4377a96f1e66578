"""
Pytest Configuration and Shared Fixtures.

Provides an in-process fake of the PMS REST API (served through
httpx.MockTransport) and fixtures wiring it to the sync layer.
"""

import itertools
import json
import re
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
from unittest.mock import MagicMock

from pms_sync.core.config import SyncSettings
from pms_sync.offline.local_cache import LocalCache
from pms_sync.offline.models import EmployeeSession


API_BASE_URL = "http://pms.test/api"
EMPLOYEE_ID = "EMP001"


# =============================================================================
# Fake Backend
# =============================================================================


class FakeBackend:
    """
    Stateful stand-in for the PMS API.

    Connectivity can be switched off (every request raises ConnectError),
    the session can be expired (every request answers 401) and individual
    requests can be forced to a status with ``fail_next``.
    """

    ROUTES = [
        ("GET", r"/new-goals/employee/(?P<employee_id>[^/]+)", "list_goals"),
        ("POST", r"/new-goals", "create_goal"),
        ("PUT", r"/new-goals/(?P<goal_id>[^/]+)", "update_goal"),
        ("PATCH", r"/new-goals/(?P<goal_id>[^/]+)", "update_goal"),
        ("DELETE", r"/new-goals/(?P<goal_id>[^/]+)", "delete_goal"),
        ("POST", r"/employee/(?P<employee_id>[^/]+)/(?P<domain>goals|queries|feedback)/sync", "bulk_sync"),
        ("POST", r"/employee/(?P<employee_id>[^/]+)/queries", "create_query"),
        ("POST", r"/employee/(?P<employee_id>[^/]+)/feedback", "create_feedback"),
        ("GET", r"/employee-details/by-employee-id/(?P<employee_id>[^/]+)", "performance"),
        ("GET", r"/pips/employee/(?P<employee_id>[^/]+)", "pip"),
        ("GET", r"/employee-resignation/profile/(?P<employee_id>[^/]+)", "get_contact"),
        ("GET", r"/employee-resignation/employee-id/(?P<employee_id>[^/]+)", "get_contact"),
        ("PUT", r"/employee-resignation/(?P<employee_id>[^/]+)", "put_contact"),
        ("GET", r"/self-appraisals/employee/(?P<employee_id>[^/]+)", "find_drafts"),
        ("POST", r"/self-appraisals/(?P<appraisal_id>[^/]+)/submit", "submit_appraisal"),
        ("GET", r"/self-appraisals/(?P<appraisal_id>[^/]+)", "get_appraisal"),
        ("PUT", r"/self-appraisals/(?P<appraisal_id>[^/]+)", "update_appraisal"),
        ("POST", r"/self-appraisals", "create_appraisal"),
    ]

    def __init__(self) -> None:
        self.online = True
        self.session_expired = False
        self.goals: Dict[str, Dict[str, Any]] = {}
        self.queries: List[Dict[str, Any]] = []
        self.feedback: List[Dict[str, Any]] = []
        self.bulk_calls: List[Tuple[str, Any]] = []
        self.contacts: Dict[str, str] = {}
        self.performance: List[Dict[str, Any]] = []
        self.pips: List[Dict[str, Any]] = []
        self.appraisals: Dict[str, Dict[str, Any]] = {}
        self.requests: List[Tuple[str, str]] = []
        self._forced: Dict[Tuple[str, str], List[int]] = {}
        self._ids = itertools.count(1)

    # -------------------------------------------------------------------------
    # Test controls
    # -------------------------------------------------------------------------

    def fail_next(self, method: str, path: str, status: int, times: int = 1) -> None:
        """Answer the next ``times`` requests to ``method path`` with ``status``."""
        self._forced.setdefault((method, path), []).extend([status] * times)

    def lose_appraisal(self, appraisal_id: str) -> None:
        """Simulate the server expiring a draft."""
        self.appraisals.pop(appraisal_id, None)

    def calls(self, method: str, prefix: str = "") -> List[str]:
        return [path for m, path in self.requests if m == method and path.startswith(prefix)]

    def drafts_for(self, employee_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            doc for doc in self.appraisals.values()
            if doc.get("employeeId") == employee_id and (status is None or doc["status"] == status)
        ]

    def add_goal(self, text: str, employee_id: str = EMPLOYEE_ID, **fields: Any) -> Dict[str, Any]:
        goal_id = self._new_id("goal")
        doc = {
            "_id": goal_id,
            "goal": text,
            "employeeId": employee_id,
            "status": "Pending",
            "progress": "0%",
            "createdAt": "2026-10-01T09:00:00Z",
            **fields,
        }
        self.goals[goal_id] = doc
        return doc

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def _new_id(self, kind: str) -> str:
        return f"{kind}-{next(self._ids)}"

    @staticmethod
    def _ok(data: Any = None, status: int = 200) -> httpx.Response:
        return httpx.Response(status, json={"success": True, "data": data})

    @staticmethod
    def _error(status: int, message: str) -> httpx.Response:
        return httpx.Response(status, json={"success": False, "error": message})

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith("/api"):
            path = path[len("/api"):]
        self.requests.append((request.method, path))

        if not self.online:
            raise httpx.ConnectError("backend unreachable", request=request)
        if self.session_expired:
            return self._error(401, "Token expired")

        forced = self._forced.get((request.method, path))
        if forced:
            return self._error(forced.pop(0), "forced failure")

        for method, pattern, name in self.ROUTES:
            if method != request.method:
                continue
            match = re.fullmatch(pattern, path)
            if match:
                payload = json.loads(request.content) if request.content else {}
                return getattr(self, f"_route_{name}")(request, payload, **match.groupdict())

        return self._error(404, f"No route for {request.method} {path}")

    # -------------------------------------------------------------------------
    # Routes
    # -------------------------------------------------------------------------

    def _route_list_goals(self, request, payload, employee_id):
        return self._ok([g for g in self.goals.values() if g["employeeId"] == employee_id])

    def _route_create_goal(self, request, payload):
        doc = self.add_goal(payload["goal"], payload.get("employeeId", EMPLOYEE_ID))
        doc.update({k: v for k, v in payload.items() if k in ("status", "progress", "company")})
        return self._ok(dict(doc), status=201)

    def _route_update_goal(self, request, payload, goal_id):
        if goal_id not in self.goals:
            return self._error(404, "Goal not found")
        self.goals[goal_id].update(payload)
        return self._ok(dict(self.goals[goal_id]))

    def _route_delete_goal(self, request, payload, goal_id):
        if self.goals.pop(goal_id, None) is None:
            return self._error(404, "Goal not found")
        return self._ok({"_id": goal_id})

    def _route_bulk_sync(self, request, payload, employee_id, domain):
        self.bulk_calls.append((domain, payload.get(domain)))
        return self._ok({"synced": len(payload.get(domain) or [])})

    def _route_create_query(self, request, payload, employee_id):
        doc = {"_id": self._new_id("query"), "queryText": payload["queryText"], "status": "Open"}
        self.queries.append(doc)
        return self._ok(doc, status=201)

    def _route_create_feedback(self, request, payload, employee_id):
        doc = {"_id": self._new_id("feedback"), "feedbackText": payload["feedbackText"]}
        self.feedback.append(doc)
        return self._ok(doc, status=201)

    def _route_performance(self, request, payload, employee_id):
        return self._ok(self.performance)

    def _route_pip(self, request, payload, employee_id):
        if not self.pips:
            return self._error(404, "No PIP found")
        return self._ok(self.pips)

    def _route_get_contact(self, request, payload, employee_id):
        return self._ok({"employeeId": employee_id, "phone": self.contacts.get(employee_id)})

    def _route_put_contact(self, request, payload, employee_id):
        self.contacts[employee_id] = payload["phone"]
        return self._ok({"employeeId": employee_id, "phone": payload["phone"]})

    def _route_find_drafts(self, request, payload, employee_id):
        status = request.url.params.get("status")
        return self._ok(self.drafts_for(employee_id, status))

    def _route_get_appraisal(self, request, payload, appraisal_id):
        if appraisal_id not in self.appraisals:
            return self._error(404, "Appraisal not found")
        return self._ok(dict(self.appraisals[appraisal_id]))

    def _route_create_appraisal(self, request, payload):
        appraisal_id = self._new_id("appraisal")
        self.appraisals[appraisal_id] = {**payload, "_id": appraisal_id, "status": "draft"}
        return self._ok({"_id": appraisal_id}, status=201)

    def _route_update_appraisal(self, request, payload, appraisal_id):
        if appraisal_id not in self.appraisals:
            return self._error(404, "Appraisal not found")
        self.appraisals[appraisal_id].update(payload)
        return self._ok({"_id": appraisal_id})

    def _route_submit_appraisal(self, request, payload, appraisal_id):
        if appraisal_id not in self.appraisals:
            return self._error(404, "Appraisal not found")
        self.appraisals[appraisal_id]["status"] = "submitted"
        return self._ok({"_id": appraisal_id, "status": "submitted"})


# =============================================================================
# Settings and Session Fixtures
# =============================================================================


@pytest.fixture
def sync_settings(tmp_path):
    """Settings pointing at the fake API with fast timers."""
    return SyncSettings(
        api_base_url=API_BASE_URL,
        cache_path=str(tmp_path / "cache.sqlite3"),
        draft_debounce_ms=20,
        stale_entry_max_attempts=3,
        auto_retry_interval_seconds=0.01,
        _env_file=None,
    )


@pytest.fixture
def employee_session():
    """A signed-in employee."""
    return EmployeeSession(
        employee_id=EMPLOYEE_ID,
        full_name="Asha Patil",
        email="asha.patil@example.com",
        token="test-token-123",
    )


@pytest.fixture
def cache():
    """Throwaway in-memory LocalCache."""
    local_cache = LocalCache(":memory:")
    yield local_cache
    local_cache.close()


# =============================================================================
# Gateway Fixtures
# =============================================================================


@pytest.fixture
def backend():
    """Fresh fake API state."""
    return FakeBackend()


@pytest.fixture
def http_client(backend):
    """httpx.AsyncClient routed to the fake backend."""
    return httpx.AsyncClient(transport=backend.transport)


@pytest.fixture
def gateway(http_client, employee_session, sync_settings):
    """RemoteGateway talking to the fake backend."""
    from pms_sync.offline.gateway import RemoteGateway

    return RemoteGateway(http_client=http_client, session=employee_session, settings=sync_settings)


@pytest.fixture
def session_expired_handler():
    """Session-termination collaborator."""
    return MagicMock(name="on_session_expired", return_value=None)


@pytest.fixture
def coordinator(gateway, cache, sync_settings, session_expired_handler):
    """SyncCoordinator wired to the fake backend."""
    from pms_sync.offline.coordinator import SyncCoordinator

    return SyncCoordinator(
        gateway=gateway,
        cache=cache,
        settings=sync_settings,
        on_session_expired=session_expired_handler,
    )


@pytest.fixture
def reconciler(gateway, cache, sync_settings, session_expired_handler):
    """DraftReconciler wired to the fake backend."""
    from pms_sync.offline.draft_reconciler import DraftReconciler

    return DraftReconciler(
        gateway=gateway,
        cache=cache,
        settings=sync_settings,
        on_session_expired=session_expired_handler,
    )


# =============================================================================
# HTTP Mock Fixtures
# =============================================================================


@pytest.fixture
def mock_httpx_response():
    """Factory for mock httpx responses."""
    def _create_response(
        status_code: int = 200,
        json_data: Any = None,
        text: str = "",
    ) -> MagicMock:
        response = MagicMock()
        response.status_code = status_code
        response.text = text
        if json_data is None:
            response.json.side_effect = ValueError("No JSON body")
        else:
            response.json.return_value = json_data
        return response

    return _create_response
