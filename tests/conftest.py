import os
import random
import string

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

# ------------------------------------------------------------------
# FORCE TESTING MODE
# This must be done BEFORE importing app.main so database.py builds its
# engine against the throwaway sqlite file instead of the real database.
# ------------------------------------------------------------------
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_academics.db"
os.environ["ENV"] = "dev"
os.environ["REDIS_URL"] = ""

from sqlmodel import SQLModel

from app.main import app
from app.api import deps
from app.core.database import engine, AsyncSessionLocal
from app.core.exceptions import DependencyError
from app.core.rate_limiter import limiter
from app.core.security import hash_password
from app.models.student import Student
from app.models.user import User, UserRole
from app.services.notification_service import Notifier
from app.services.push_service import PushDispatcher, SubscriptionGone
from app.services.whatsapp_dispatcher import WhatsAppDispatcher

limiter.enabled = False

PASSWORD_HASH = hash_password("password123")
PUBLIC_BASE = "https://academics.msec.edu.in"


def random_str(prefix=""):
    return f"{prefix}{''.join(random.choices(string.ascii_lowercase + string.digits, k=6))}"


# ------------------------------------------------------------------
# FAKE CHANNELS
# ------------------------------------------------------------------
class FakeGateway:
    """Stands in for EvolutionClient; records every call."""

    def __init__(self):
        self.configured = True
        self.calls = []
        self.fail_inline = False
        self.url_failures = 0
        self.fail_text = False

    @property
    def kinds(self):
        return [c["kind"] for c in self.calls]

    async def send_media(self, phone, media, mediatype="document", caption="", file_name=None, mimetype=None):
        inline = not media.startswith("http")
        self.calls.append({
            "kind": f"{mediatype}:{'inline' if inline else 'url'}",
            "phone": phone,
            "media": media,
            "file_name": file_name,
        })
        if inline and self.fail_inline:
            raise DependencyError("WhatsApp gateway error (400): upload rejected", service="evolution", status=400)
        if not inline and self.url_failures > 0:
            self.url_failures -= 1
            raise DependencyError("WhatsApp gateway error (500): fetch failed", service="evolution", status=500)
        return f"MSG{len(self.calls)}"

    async def send_text(self, phone, text):
        self.calls.append({"kind": "text", "phone": phone, "text": text})
        if self.fail_text:
            raise DependencyError("WhatsApp gateway error (503): instance offline", service="evolution", status=503)
        return f"MSG{len(self.calls)}"


class FakeProbe:
    def __init__(self, result=True):
        self.result = result
        self.checked = []

    async def reachable(self, url):
        self.checked.append(url)
        return self.result


class FakeRenderer:
    def __init__(self, pdf=b"%PDF-1.4 test document"):
        self.pdf = pdf
        self.rendered = []

    @property
    def available(self):
        return self.pdf is not None

    async def render_leave_letter(self, leave):
        self.rendered.append(("leave", leave.id))
        return self.pdf

    async def render_marksheet(self, marksheet):
        self.rendered.append(("marksheet", marksheet.id))
        return self.pdf


class FakePushTransport:
    def __init__(self):
        self.configured = True
        self.sent = []
        self.gone = set()

    async def send(self, subscription_info, payload):
        endpoint = subscription_info["endpoint"]
        if endpoint in self.gone:
            raise SubscriptionGone("410 Gone", service="webpush", status=410)
        self.sent.append((endpoint, payload))


# ------------------------------------------------------------------
# FIXTURES
# ------------------------------------------------------------------
@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def push_transport():
    return FakePushTransport()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def dispatcher(gateway, probe, sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return WhatsAppDispatcher(
        gateway=gateway,
        probe=probe,
        sleep=fake_sleep,
        attempts=3,
        backoff_ms=800,
        text_delay_ms=1200,
        base_url=PUBLIC_BASE,
        production=False,
    )


@pytest.fixture
def notifier(push_transport):
    return Notifier(push=PushDispatcher(transport=push_transport))


@pytest_asyncio.fixture
async def db():
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
        await conn.run_sync(SQLModel.metadata.create_all)
    yield AsyncSessionLocal


@pytest_asyncio.fixture
async def client(db, dispatcher, notifier, renderer):
    app.dependency_overrides[deps.get_whatsapp_dispatcher] = lambda: dispatcher
    app.dependency_overrides[deps.get_notifier] = lambda: notifier
    app.dependency_overrides[deps.get_document_renderer] = lambda: renderer
    app.dependency_overrides[deps.get_push_dispatcher] = lambda: notifier.push

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def make_user(db):
    async def _make(role=UserRole.Staff, department="CSE", year=None, section=None, name=None, email=None):
        async with AsyncSessionLocal() as session:
            user = User(
                name=name or random_str("User "),
                email=email or f"{random_str('u')}@msec.edu.in",
                password_hash=PASSWORD_HASH,
                role=role.value,
                department=department,
                year=year,
                section=section,
            )
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    return _make


@pytest_asyncio.fixture
async def make_student(db):
    async def _make(
        department="CSE",
        year="II",
        section="A",
        reg_number=None,
        parent_phone_number="9876543210",
        email=None,
        name=None,
    ):
        async with AsyncSessionLocal() as session:
            reg = reg_number or random_str("REG").upper()
            student = Student(
                name=name or random_str("Student "),
                reg_number=reg,
                year=year,
                section=section,
                department=department,
                parent_phone_number=parent_phone_number,
                student_phone_number="9123456780",
                email=email or f"{reg.lower()}@student.msec.edu.in",
            )
            session.add(student)
            await session.commit()
            await session.refresh(student)
            return student

    return _make


@pytest.fixture
def inbox(client):
    async def _inbox(email):
        res = await client.get("/api/notifications", params={"recipient_email": email})
        assert res.status_code == 200
        return res.json()

    return _inbox
