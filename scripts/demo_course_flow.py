"""Demo: author, review and complete a course using FastAPI TestClient.

Run with:
    python scripts/demo_course_flow.py
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from courseflow.main import app
from courseflow.services import token_service

INSTRUCTOR = "demo-instructor"
ADMIN = "demo-admin"
LEARNER = "demo-learner"

COURSE = {
    "title": "Networking Fundamentals",
    "description": "Subnets, routing and the packet's journey across the internet.",
    "category": "networking",
    "level": "beginner",
    "sections": [
        {
            "id": "s1",
            "title": "Basics",
            "lessons": [
                {"id": "l1", "title": "Welcome", "type": "video",
                 "video_url": "https://cdn.example.com/l1.mp4", "has_captions": True},
                {"id": "l2", "title": "Addresses", "type": "text"},
            ],
        },
        {
            "id": "s2",
            "title": "Routing",
            "lessons": [
                {"id": "l3", "title": "Routes", "type": "text"},
                {"id": "l4", "title": "Check yourself", "type": "quiz"},
            ],
        },
    ],
}


def _auth(sub: str, roles: list[str]) -> dict[str, str]:
    token = token_service.create_access_token(sub=sub, roles=roles, name=sub.title())
    return {"Authorization": f"Bearer {token}"}


def main() -> None:
    client = TestClient(app)
    instructor = _auth(INSTRUCTOR, ["instructor"])
    admin = _auth(ADMIN, ["admin"])
    learner = _auth(LEARNER, ["learner"])

    # ── Authoring ───────────────────────────────────────────────────
    r = client.post("/v1/courses", json=COURSE, headers=instructor)
    course = r.json()
    course_id = course["id"]
    print(f"1. POST /v1/courses              → {r.status_code}  score={course['quality_score']}")

    r = client.post(f"/v1/courses/{course_id}/submit", headers=instructor)
    print(f"2. POST .../submit               → {r.status_code}  status={r.json()['status']}")

    # ── Review ──────────────────────────────────────────────────────
    r = client.get("/v1/courses/review-queue", headers=admin)
    print(f"3. GET  /v1/courses/review-queue → {r.status_code}  queued={len(r.json())}")

    r = client.post(f"/v1/courses/{course_id}/review", headers=admin)
    print(f"4. POST .../review               → {r.status_code}  status={r.json()['status']}")

    r = client.post(
        f"/v1/courses/{course_id}/approve",
        json={"overall_score": 92, "strengths": ["Clear examples"]},
        headers=admin,
    )
    print(f"5. POST .../approve              → {r.status_code}  status={r.json()['status']}")

    # ── Learning ────────────────────────────────────────────────────
    r = client.post(f"/v1/courses/{course_id}/enroll", headers=learner)
    print(f"6. POST .../enroll               → {r.status_code}")

    for lesson_id in ("l1", "l2", "l3"):
        r = client.post(
            f"/v1/progress/{course_id}/lessons/{lesson_id}/complete", headers=learner
        )
    print(f"7. complete l1..l3               → overall={r.json()['overall_progress']}%")

    r = client.post(
        f"/v1/progress/{course_id}/quizzes/l4/attempts",
        json={"score": 9, "max_score": 10, "percentage": 90, "passed": True},
        headers=learner,
    )
    print(f"8. POST .../quizzes/l4/attempts  → {r.status_code}")

    r = client.put(
        f"/v1/progress/{course_id}/lessons/l4",
        json={"is_completed": True, "percentage_watched": 100, "time_spent": 120},
        headers=learner,
    )
    print(f"9. PUT  .../lessons/l4           → overall={r.json()['progress']['overall_progress']}%")

    r = client.post(f"/v1/certificates/{course_id}", headers=learner)
    cert = r.json()
    print(f"10. POST /v1/certificates        → {r.status_code}  {cert['certificate_number']} grade={cert['final_grade']}")

    r = client.get(f"/v1/courses/{course_id}/history", headers=instructor)
    print("\nWorkflow history:")
    for entry in r.json():
        print(f"  {entry['action']:<9} {entry['from_status']:>12} → {entry['to_status']:<12} by {entry['performed_by']}")


if __name__ == "__main__":
    main()
