from sqlalchemy import Column, String, DateTime, Integer, Text, Enum, Index, text

from tutoring_scheduler.core.database import Base
from tutoring_scheduler.schemas.booking import SessionStatus


class TutoringSession(Base):
    __tablename__ = "tutoring_sessions"

    # Participants
    tutor_id = Column(String(64), nullable=False)
    student_id = Column(String(64), nullable=False)
    course_id = Column(String(64), nullable=False)

    # Time information
    scheduled_start = Column(DateTime(timezone=True), nullable=False)  # UTC
    scheduled_end = Column(DateTime(timezone=True), nullable=False)  # UTC

    # Status and optimistic locking
    status = Column(Enum(SessionStatus), default=SessionStatus.PENDING, nullable=False)
    version = Column(Integer, default=1, nullable=False)
    cancel_reason = Column(Text, nullable=True)

    def __repr__(self):
        return f"<TutoringSession(tutor_id={self.tutor_id}, scheduled_start={self.scheduled_start}, status={self.status})>"


Index("idx_tutoring_sessions_tutor_start", TutoringSession.tutor_id, TutoringSession.scheduled_start)
Index("idx_tutoring_sessions_student_start", TutoringSession.student_id, TutoringSession.scheduled_start)

# Create unique index to prevent double-booking the same start time
Index(
    "uq_tutoring_sessions_tutor_start_active",
    TutoringSession.tutor_id,
    TutoringSession.scheduled_start,
    unique=True,
    sqlite_where=text("status != 'CANCELLED'"),
    postgresql_where=text("status != 'CANCELLED'"),
)
