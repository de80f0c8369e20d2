import json
from datetime import timedelta

import httpx
import pytest

from app.core.clock import utcnow
from app.database import SessionLocal
from app.models.email_suppression import EmailSuppression
from app.services.collaborators import (
    EmailTemplate,
    HttpUserStore,
    HttpWebhookClient,
    JinjaTemplateRenderer,
    SqlSuppressionChecker,
    UserProfile,
)


def _suppress(email, scope, expires_at=None):
    db = SessionLocal()
    try:
        db.add(EmailSuppression(email=email, scope=scope, reason="unsubscribe", expires_at=expires_at))
        db.commit()
    finally:
        db.close()


def test_sql_suppression_scopes_and_expiry():
    _suppress("global@example.com", "global")
    _suppress("marketing@example.com", "marketing")
    _suppress("expired@example.com", "global", expires_at=utcnow() - timedelta(days=1))

    checker = SqlSuppressionChecker()

    assert checker.is_suppressed("Global@Example.com", "marketing")
    assert checker.is_suppressed("marketing@example.com", "marketing")
    assert not checker.is_suppressed("marketing@example.com", "transactional")
    assert not checker.is_suppressed("expired@example.com", "marketing")
    assert not checker.is_suppressed("someone@example.com", "marketing")


def test_renderer_leaves_unknown_variables_blank():
    rendered = JinjaTemplateRenderer().render(
        EmailTemplate(subject="Hi {{ user.firstName }}", body="{{ course.title }}!", html_body="<p>{{ user.firstName }}</p>"),
        {"user": {"firstName": "Ada"}},
    )
    assert rendered.subject == "Hi Ada"
    assert rendered.body == "!"
    assert rendered.html_body == "<p>Ada</p>"


def test_user_profile_from_dict_keeps_unknown_fields_as_attributes():
    profile = UserProfile.from_dict(
        {"id": 7, "email": "a@example.com", "firstName": "Ada", "courseIds": [1, 2], "plan": "pro"}
    )
    assert profile.id == "7"
    assert profile.course_ids == ["1", "2"]
    assert profile.as_variables()["plan"] == "pro"


def _client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_http_user_store_reads_profiles_and_pages_audience():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/users/u-1":
            return httpx.Response(200, json={"id": "u-1", "email": "u1@example.com", "userType": "student"})
        if request.url.path == "/users/u-404":
            return httpx.Response(404)
        if request.url.path == "/users":
            offset = int(request.url.params["offset"])
            rows = [{"id": f"u-{offset + i}", "email": None} for i in range(2)]
            return httpx.Response(200, json={"users": rows})
        return httpx.Response(500)

    store = HttpUserStore("https://lms.example.com/", client=_client(handler))
    assert store.get_user("u-1").user_type == "student"
    assert store.get_user("u-404") is None

    # Page size is 500, so a short first page ends the scan.
    assert [u.id for u in store.iter_audience({"userTypes": ["student"]})] == ["u-0", "u-1"]


def test_http_user_store_directory_writes():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        calls.append((request.method, request.url.path, body))
        return httpx.Response(204)

    store = HttpUserStore("https://lms.example.com", client=_client(handler))
    store.add_tag("u-1", "vip")
    store.remove_tag("u-1", "vip")
    store.update_field("u-1", "score", 5)
    store.enroll("u-1", "course-1")
    store.unenroll("u-1", "course-1")

    assert calls == [
        ("POST", "/users/u-1/tags", {"tag": "vip"}),
        ("DELETE", "/users/u-1/tags/vip", None),
        ("PATCH", "/users/u-1", {"score": 5}),
        ("POST", "/users/u-1/enrollments", {"courseId": "course-1"}),
        ("DELETE", "/users/u-1/enrollments/course-1", None),
    ]


def test_webhook_client_raises_on_error_status():
    client = HttpWebhookClient(client=_client(lambda request: httpx.Response(503)))
    with pytest.raises(httpx.HTTPStatusError):
        client.post("https://hooks.example.com/x", {"a": 1})
