import os

os.environ["ENVIRONMENT"] = "testing"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["APP_SECRET"] = "test-secret"
os.environ["REDEEM_RATE_LIMIT_ENABLED"] = "false"
os.environ["TENANT_TIMEZONE"] = "UTC"

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from examcore.core.auth import create_token
from examcore.core.clock import utc_now
from examcore.core.database import get_db, make_engine
from examcore.main import app
from examcore.models import orm


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'examcore.db'}")
    orm.Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def client(session_factory):
    def override():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()
    app.dependency_overrides[get_db] = override
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    def headers(user_id, *roles):
        return {"Authorization": f"Bearer {create_token(user_id, list(roles))}"}
    return headers


class Factory:
    """Seeds rows the way the surrounding platform would write them."""

    def __init__(self, db):
        self.db = db

    def _save(self, row):
        self.db.add(row)
        self.db.commit()
        return row

    def tenant(self, slug="acme", educator_id="edu-1", coaching_name="Acme Classes"):
        return self._save(orm.Tenant(slug=slug, educator_id=educator_id, coaching_name=coaching_name))

    def enroll(self, student_id, tenant_slug="acme"):
        return self._save(orm.Enrollment(student_id=student_id, tenant_slug=tenant_slug))

    def subscription(self, educator_id="edu-1", status="active", start_at=None):
        return self._save(orm.Subscription(educator_id=educator_id, status=status, start_at=start_at))

    def seat(self, student_id, educator_id="edu-1", status="active"):
        return self._save(orm.Seat(educator_id=educator_id, student_id=student_id, status=status))

    def test(self, test_id="T1", educator_id="edu-1", title=None, duration_minutes=60, sections=None, subject=None,
             requires_unlock=True, is_public=False, marking_scheme=None, positive_marks=None, negative_marks=None):
        return self._save(orm.Test(id=test_id, educator_id=educator_id, title=title or f"Test {test_id}",
                                   duration_minutes=duration_minutes, sections=sections or [], subject=subject,
                                   requires_unlock=requires_unlock, is_public=is_public, marking_scheme=marking_scheme,
                                   positive_marks=positive_marks, negative_marks=negative_marks))

    def question(self, qid, test_id="T1", position=0, correct_option=0, options=("a", "b", "c", "d"),
                 marks=None, negative_marks=None, type="mcq", correct_answer=None, section_id=None):
        return self._save(orm.Question(id=qid, test_id=test_id, position=position, type=type, options=list(options),
                                       correct_option=correct_option, correct_answer=correct_answer, marks=marks,
                                       negative_marks=negative_marks, section_id=section_id))

    def code(self, code="ABC12345", test_id="T1", educator_id="edu-1", max_uses=1, uses_used=0, expires_at=None):
        return self._save(orm.AccessCode(educator_id=educator_id, code=code, test_id=test_id, test_title=f"Test {test_id}",
                                         max_uses=max_uses, uses_used=uses_used, expires_at=expires_at))

    def attempt(self, attempt_id, student_id="stu-a", test_id="T1", educator_id="edu-1", status="submitted",
                responses=None, score=None, started_at=None, submitted_at=None):
        started_at = started_at or utc_now() - timedelta(minutes=10)
        if submitted_at is None and status != "in_progress":
            submitted_at = started_at + timedelta(minutes=5)
        return self._save(orm.Attempt(id=attempt_id, student_id=student_id, educator_id=educator_id, test_id=test_id,
                                      status=status, responses=responses or {}, score=score,
                                      started_at=started_at, submitted_at=submitted_at))


@pytest.fixture
def make(db):
    return Factory(db)
