from datetime import datetime
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import BigInteger, Integer, String, Text, Boolean, JSON, Float, DateTime, Index, UniqueConstraint, CheckConstraint
from sqlalchemy.types import TypeDecorator
from examcore.core.clock import as_utc, utc_now


class UTCDateTime(TypeDecorator):
    """Timestamps are stored naive in UTC and always come back timezone-aware."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        value = as_utc(value)
        return value.replace(tzinfo=None) if value is not None else None

    def process_result_value(self, value, dialect):
        return as_utc(value)


class Base(DeclarativeBase): pass


class Tenant(Base):
    __tablename__ = "tenants"
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    slug: Mapped[str] = mapped_column(String(63), unique=True, index=True)
    educator_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    coaching_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tagline: Mapped[str | None] = mapped_column(Text, nullable=True)
    contact: Mapped[dict] = mapped_column(JSON, default=dict)


class Enrollment(Base):
    __tablename__ = "enrollments"
    student_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    tenant_slug: Mapped[str] = mapped_column(String(63), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class Subscription(Base):
    __tablename__ = "subscriptions"
    educator_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    status: Mapped[str] = mapped_column(String(32))
    start_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)


class Seat(Base):
    __tablename__ = "seats"
    educator_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    student_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    status: Mapped[str] = mapped_column(String(32), default="inactive")


class Test(Base):
    __tablename__ = "tests"
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    educator_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    title: Mapped[str] = mapped_column(String(255), default="Untitled Test")
    subject: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sections: Mapped[list] = mapped_column(JSON, default=list)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60)
    requires_unlock: Mapped[bool] = mapped_column(Boolean, default=True)
    is_public: Mapped[bool] = mapped_column(Boolean, default=False)
    # {correct, incorrect, unanswered}; falls back to positive_marks/negative_marks
    marking_scheme: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    positive_marks: Mapped[float | None] = mapped_column(Float, nullable=True)
    negative_marks: Mapped[float | None] = mapped_column(Float, nullable=True)


class Question(Base):
    __tablename__ = "questions"
    __table_args__ = (Index("idx_questions_test", "test_id", "position"),)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    test_id: Mapped[str] = mapped_column(String(64))
    position: Mapped[int] = mapped_column(Integer, default=0)
    type: Mapped[str] = mapped_column(String(16), default="mcq")
    options: Mapped[list] = mapped_column(JSON, default=list)
    correct_option: Mapped[int | None] = mapped_column(Integer, nullable=True)
    correct_answer: Mapped[str | None] = mapped_column(String(255), nullable=True)
    marks: Mapped[float | None] = mapped_column(Float, nullable=True)
    negative_marks: Mapped[float | None] = mapped_column(Float, nullable=True)
    section_id: Mapped[str | None] = mapped_column(String(64), nullable=True)


class AccessCode(Base):
    __tablename__ = "access_codes"
    __table_args__ = (
        UniqueConstraint("educator_id", "code", name="uq_access_code"),
        CheckConstraint("max_uses > 0", name="ck_access_code_max_uses"),
        CheckConstraint("uses_used >= 0 AND uses_used <= max_uses", name="ck_access_code_uses"),
    )
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    educator_id: Mapped[str] = mapped_column(String(255))
    code: Mapped[str] = mapped_column(String(64))
    test_id: Mapped[str] = mapped_column(String(64))
    test_title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    max_uses: Mapped[int] = mapped_column(Integer)
    uses_used: Mapped[int] = mapped_column(Integer, default=0)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    updated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # UPDATE ... WHERE version = :read_version; a lost race raises StaleDataError on flush
    __mapper_args__ = {"version_id_col": version}


class Unlock(Base):
    __tablename__ = "unlocks"
    __table_args__ = (Index("idx_unlocks_student", "student_id", "educator_id"),)
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    student_id: Mapped[str] = mapped_column(String(255))
    educator_id: Mapped[str] = mapped_column(String(255))
    test_id: Mapped[str] = mapped_column(String(64))
    code: Mapped[str] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)


class Attempt(Base):
    __tablename__ = "attempts"
    __table_args__ = (
        Index("idx_attempts_educator_status", "educator_id", "status"),
        Index("idx_attempts_test", "test_id"),
    )
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    student_id: Mapped[str] = mapped_column(String(255), index=True)
    educator_id: Mapped[str] = mapped_column(String(255))
    test_id: Mapped[str] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(32), default="in_progress")
    responses: Mapped[dict] = mapped_column(JSON, default=dict)
    started_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utc_now)
    submitted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    score: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    accuracy: Mapped[int | None] = mapped_column(Integer, nullable=True)
    correct_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    incorrect_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
