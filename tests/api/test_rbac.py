"""Table-driven RBAC tests.

Each row describes: endpoint, method, role, expected HTTP status.
Platform roles are checked by the router guards (require_admin /
require_course_author); ownership and the admin-only review actions are
checked inside CourseLifecycle and surface as 403 too.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import jwt
import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from courseflow.api.dependencies import require_admin, require_course_author
from courseflow.models.course import CourseStatus
from courseflow.services import token_service
from tests.conftest import make_course, mint_token, principal, seed_course


@pytest.fixture(autouse=True)
def published_course() -> None:
    seed_course(make_course(status=CourseStatus.PUBLISHED))


def _auth(token: str | None) -> dict[str, str]:
    if token is None:
        return {}
    return {"Authorization": f"Bearer {token}"}


_RBAC_CASES = [
    # (endpoint, method, role, expected_status)
    # catalogue: any authenticated user
    ("/v1/courses", "GET", "learner", 200),
    ("/v1/courses", "GET", None, 401),
    # review queue: admin only
    ("/v1/courses/review-queue", "GET", "admin", 200),
    ("/v1/courses/review-queue", "GET", "instructor", 403),
    ("/v1/courses/review-queue", "GET", "learner", 403),
    # authoring views: admin or instructor
    ("/v1/courses/course-1/history", "GET", "instructor", 200),
    ("/v1/courses/course-1/history", "GET", "learner", 403),
    ("/v1/courses/course-1/stats", "GET", "admin", 200),
    ("/v1/courses/course-1/stats", "GET", "learner", 403),
    # admin-only actions enforced by the lifecycle engine
    ("/v1/courses/course-1/suspend", "POST", "instructor", 403),
    ("/v1/courses/course-1/suspend", "POST", "admin", 200),
    # consistency sweep: admin only
    ("/v1/courses/course-1/consistency-sweep", "POST", "admin", 200),
    ("/v1/courses/course-1/consistency-sweep", "POST", "instructor", 403),
    # own progress: any authenticated user
    ("/v1/progress/course-1", "GET", "learner", 200),
    ("/v1/progress/course-1", "GET", None, 401),
    ("/v1/certificates", "GET", "learner", 200),
    ("/v1/certificates", "GET", None, 401),
]


def _case_id(case: tuple) -> str:
    endpoint, method, role, expected = case
    return f"{method} {endpoint} [{role or 'anon'}] -> {expected}"


@pytest.mark.parametrize(
    "endpoint,method,role,expected",
    _RBAC_CASES,
    ids=[_case_id(c) for c in _RBAC_CASES],
)
def test_rbac(
    client: TestClient,
    endpoint: str,
    method: str,
    role: str | None,
    expected: int,
) -> None:
    headers = _auth(mint_token(username=f"rbac-{role}", roles=[role]) if role else None)

    if method == "GET":
        resp = client.get(endpoint, headers=headers)
    else:
        body = {"reason": "Policy review"} if endpoint.endswith("/suspend") else None
        resp = client.post(endpoint, json=body, headers=headers)

    assert resp.status_code == expected, (
        f"{method} {endpoint} role={role}: expected {expected}, got {resp.status_code}"
    )


# ---- token validation ----


def _token(**overrides: object) -> str:
    now = datetime.now(UTC)
    payload = {
        "sub": "learner-1",
        "iss": token_service.ISSUER,
        "aud": token_service.AUDIENCE,
        "exp": now + timedelta(minutes=5),
        "iat": now,
        "jti": "jti-1",
        "roles": ["learner"],
    }
    payload.update(overrides)
    return jwt.encode(payload, token_service._private_key, algorithm=token_service.ALGORITHM)


def test_expired_token_is_rejected(client: TestClient) -> None:
    token = _token(exp=datetime.now(UTC) - timedelta(minutes=1))
    resp = client.get("/v1/courses", headers=_auth(token))
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Token expired"


def test_wrong_audience_is_rejected(client: TestClient) -> None:
    resp = client.get("/v1/courses", headers=_auth(_token(aud="someone-else")))
    assert resp.status_code == 401
    assert resp.json()["detail"] == "Invalid token"


def test_learner_token_cannot_open_review_queue(client: TestClient) -> None:
    token = _token()
    assert client.get("/v1/courses", headers=_auth(token)).status_code == 200
    assert client.get("/v1/courses/review-queue", headers=_auth(token)).status_code == 403


# ---- guards ----


@pytest.mark.parametrize(
    "roles,author_ok,admin_ok",
    [
        (("admin",), True, True),
        (("instructor",), True, False),
        (("learner",), False, False),
        (("learner", "instructor"), True, False),
    ],
)
def test_course_role_guards(roles: tuple[str, ...], author_ok: bool, admin_ok: bool) -> None:
    who = principal("guard-user", *roles)

    for guard, allowed in ((require_course_author, author_ok), (require_admin, admin_ok)):
        if allowed:
            assert guard(who) is who
        else:
            with pytest.raises(HTTPException) as exc_info:
                guard(who)
            assert exc_info.value.status_code == 403
            assert exc_info.value.detail == "Insufficient permissions"
