"""
Contracts for everything the engine calls out to, plus the default
implementations the service runs with when nothing else is wired in.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Protocol

import httpx
from jinja2 import ChainableUndefined, Environment
from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.core.clock import utcnow
from app.database import SessionLocal
from app.models.email_suppression import GLOBAL_SCOPE, EmailSuppression

logger = logging.getLogger(__name__)


@dataclass
class UserProfile:
    id: str
    email: Optional[str]
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    user_type: Optional[str] = None
    timezone: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    course_ids: List[str] = field(default_factory=list)
    segment_ids: List[str] = field(default_factory=list)
    attributes: Dict[str, Any] = field(default_factory=dict)

    def as_variables(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "userType": self.user_type,
            "timezone": self.timezone,
            "tags": list(self.tags),
            **self.attributes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserProfile":
        known = {
            "id", "email", "firstName", "lastName", "userType", "timezone",
            "tags", "courseIds", "segmentIds", "attributes",
        }
        attributes = dict(data.get("attributes") or {})
        attributes.update({k: v for k, v in data.items() if k not in known})
        return cls(
            id=str(data["id"]),
            email=data.get("email"),
            first_name=data.get("firstName"),
            last_name=data.get("lastName"),
            user_type=data.get("userType"),
            timezone=data.get("timezone"),
            tags=list(data.get("tags") or []),
            course_ids=[str(c) for c in (data.get("courseIds") or [])],
            segment_ids=[str(s) for s in (data.get("segmentIds") or [])],
            attributes=attributes,
        )


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    body: str
    html_body: Optional[str] = None


@dataclass(frozen=True)
class EmailTemplate:
    subject: str
    body: str
    html_body: Optional[str] = None
    template_id: Optional[str] = None


@dataclass(frozen=True)
class OutgoingEmail:
    to: str
    from_address: str
    subject: str
    text: str
    html: Optional[str] = None
    from_name: Optional[str] = None
    reply_to: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class TemplateRenderer(Protocol):
    def render(self, template: EmailTemplate, variables: Dict[str, Any]) -> RenderedMessage: ...


class TemplateStore(Protocol):
    def get_template(self, template_id: str) -> Optional[EmailTemplate]: ...


class DeliveryProvider(Protocol):
    def send(self, message: OutgoingEmail) -> DeliveryResult: ...


class SuppressionChecker(Protocol):
    def is_suppressed(self, address: str, scope: str) -> bool: ...


class UserStore(Protocol):
    def get_user(self, user_id: str) -> Optional[UserProfile]: ...

    def iter_audience(self, target_audience: Optional[Dict[str, Any]]) -> Iterable[UserProfile]: ...


class LearnerDirectory(Protocol):
    def add_tag(self, user_id: str, tag: str) -> None: ...

    def remove_tag(self, user_id: str, tag: str) -> None: ...

    def update_field(self, user_id: str, field_name: str, value: Any) -> None: ...

    def enroll(self, user_id: str, course_id: str) -> None: ...

    def unenroll(self, user_id: str, course_id: str) -> None: ...


class WebhookClient(Protocol):
    def post(self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> None: ...


class AnalyticsSink(Protocol):
    def record(self, event_type: str, payload: Dict[str, Any]) -> None: ...


class JinjaTemplateRenderer:
    """{{name}} substitution; undefined variables render as empty strings."""

    def __init__(self) -> None:
        self._env = Environment(autoescape=False, undefined=ChainableUndefined)

    def render(self, template: EmailTemplate, variables: Dict[str, Any]) -> RenderedMessage:
        ctx = dict(variables or {})
        subject = self._env.from_string(template.subject or "").render(**ctx)
        body = self._env.from_string(template.body or "").render(**ctx)
        html_body = None
        if template.html_body is not None:
            html_body = self._env.from_string(template.html_body).render(**ctx)
        return RenderedMessage(subject=subject, body=body, html_body=html_body)


class InMemoryTemplateStore:
    def __init__(self, templates: Optional[Dict[str, EmailTemplate]] = None) -> None:
        self._templates = dict(templates or {})

    def put(self, template_id: str, template: EmailTemplate) -> None:
        self._templates[template_id] = template

    def get_template(self, template_id: str) -> Optional[EmailTemplate]:
        return self._templates.get(template_id)


class LogOnlyDeliveryProvider:
    """Logs instead of sending. Used when no transport is configured."""

    def __init__(self) -> None:
        self.sent: List[OutgoingEmail] = []

    def send(self, message: OutgoingEmail) -> DeliveryResult:
        self.sent.append(message)
        logger.info(
            "Email delivery (log only)",
            extra={"to": message.to, "subject": (message.subject or "")[:80]},
        )
        return DeliveryResult(success=True, provider_message_id=f"log-{len(self.sent)}")


class InMemorySuppressionChecker:
    def __init__(self, entries: Optional[Iterable[tuple]] = None) -> None:
        self._entries = {(a.lower(), s) for a, s in (entries or [])}

    def suppress(self, address: str, scope: str = GLOBAL_SCOPE) -> None:
        self._entries.add((address.lower(), scope))

    def is_suppressed(self, address: str, scope: str) -> bool:
        key = address.lower()
        return (key, GLOBAL_SCOPE) in self._entries or (key, scope) in self._entries


class SqlSuppressionChecker:
    """Reads email_suppressions. A global entry blocks every scope; expired entries are ignored."""

    def __init__(self, db: Optional[Session] = None) -> None:
        self._db = db

    def is_suppressed(self, address: str, scope: str) -> bool:
        owns_db = self._db is None
        db = SessionLocal() if owns_db else self._db
        try:
            now = utcnow()
            row = (
                db.query(EmailSuppression.id)
                .filter(
                    EmailSuppression.email == address.lower(),
                    EmailSuppression.scope.in_([GLOBAL_SCOPE, scope]),
                    or_(EmailSuppression.expires_at.is_(None), EmailSuppression.expires_at > now),
                )
                .first()
            )
            return row is not None
        finally:
            if owns_db:
                db.close()


def audience_prefilter(user: UserProfile, target_audience: Optional[Dict[str, Any]]) -> bool:
    include = (target_audience or {}).get("includeUserIds") or []
    return not include or user.id in include


class InMemoryUserStore:
    """User store and learner directory over a dict; tag/field/enrollment writes mutate the profiles."""

    def __init__(self, users: Optional[Iterable[UserProfile]] = None) -> None:
        self._users: Dict[str, UserProfile] = {u.id: u for u in (users or [])}

    def add(self, user: UserProfile) -> None:
        self._users[user.id] = user

    def get_user(self, user_id: str) -> Optional[UserProfile]:
        return self._users.get(str(user_id))

    def iter_audience(self, target_audience: Optional[Dict[str, Any]]) -> Iterator[UserProfile]:
        for user in list(self._users.values()):
            if audience_prefilter(user, target_audience):
                yield user

    def _require(self, user_id: str) -> UserProfile:
        user = self._users.get(str(user_id))
        if user is None:
            raise ValueError(f"Unknown user: {user_id}")
        return user

    def add_tag(self, user_id: str, tag: str) -> None:
        user = self._require(user_id)
        if tag not in user.tags:
            user.tags.append(tag)

    def remove_tag(self, user_id: str, tag: str) -> None:
        user = self._require(user_id)
        user.tags = [t for t in user.tags if t != tag]

    def update_field(self, user_id: str, field_name: str, value: Any) -> None:
        self._require(user_id).attributes[field_name] = value

    def enroll(self, user_id: str, course_id: str) -> None:
        user = self._require(user_id)
        if course_id not in user.course_ids:
            user.course_ids.append(course_id)

    def unenroll(self, user_id: str, course_id: str) -> None:
        user = self._require(user_id)
        user.course_ids = [c for c in user.course_ids if c != course_id]


class HttpUserStore:
    """LMS user service client: profile reads (GET {base}/users/{id}) and learner directory writes."""

    def __init__(self, base_url: str, *, timeout: float = 5.0, client: Optional[httpx.Client] = None) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)

    def get_user(self, user_id: str) -> Optional[UserProfile]:
        resp = self._client.get(f"{self._base_url}/users/{user_id}")
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return UserProfile.from_dict(resp.json())

    def iter_audience(self, target_audience: Optional[Dict[str, Any]]) -> Iterator[UserProfile]:
        # The user service pages through learners matching the coarse filters; the
        # audience matcher still applies the full rules afterwards.
        params: Dict[str, Any] = {"limit": 500, "offset": 0}
        audience = target_audience or {}
        if audience.get("userTypes"):
            params["userTypes"] = ",".join(audience["userTypes"])
        if audience.get("includeUserIds"):
            params["ids"] = ",".join(audience["includeUserIds"])

        while True:
            resp = self._client.get(f"{self._base_url}/users", params=params)
            resp.raise_for_status()
            rows = resp.json().get("users") or []
            for row in rows:
                yield UserProfile.from_dict(row)
            if len(rows) < params["limit"]:
                return
            params["offset"] += params["limit"]

    # Learner directory writes go back to the user service.

    def add_tag(self, user_id: str, tag: str) -> None:
        self._client.post(f"{self._base_url}/users/{user_id}/tags", json={"tag": tag}).raise_for_status()

    def remove_tag(self, user_id: str, tag: str) -> None:
        self._client.delete(f"{self._base_url}/users/{user_id}/tags/{tag}").raise_for_status()

    def update_field(self, user_id: str, field_name: str, value: Any) -> None:
        self._client.patch(f"{self._base_url}/users/{user_id}", json={field_name: value}).raise_for_status()

    def enroll(self, user_id: str, course_id: str) -> None:
        self._client.post(
            f"{self._base_url}/users/{user_id}/enrollments", json={"courseId": course_id}
        ).raise_for_status()

    def unenroll(self, user_id: str, course_id: str) -> None:
        self._client.delete(f"{self._base_url}/users/{user_id}/enrollments/{course_id}").raise_for_status()


class HttpWebhookClient:
    def __init__(self, *, timeout: float = 10.0, client: Optional[httpx.Client] = None) -> None:
        self._client = client or httpx.Client(timeout=timeout)

    def post(self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> None:
        resp = self._client.post(url, json=payload, headers=headers or {})
        resp.raise_for_status()


class LoggingAnalyticsSink:
    def __init__(self) -> None:
        self.events: List[tuple] = []

    def record(self, event_type: str, payload: Dict[str, Any]) -> None:
        self.events.append((event_type, payload))
        logger.info("Automation telemetry", extra={"event_type": event_type, "payload": payload})
