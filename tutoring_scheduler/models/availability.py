from sqlalchemy import Column, String, Date, Time, Boolean, Integer, Index

from tutoring_scheduler.core.database import Base


class AvailabilityTemplate(Base):
    __tablename__ = "availability_templates"

    tutor_id = Column(String(64), nullable=False)

    # Recurrence (0 = Monday, matching date.weekday())
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)  # local to timezone
    end_time = Column(Time, nullable=False)  # local to timezone
    timezone = Column(String(64), nullable=False)

    is_available = Column(Boolean, default=True, nullable=False)
    recurrence_end_date = Column(Date, nullable=True)

    def __repr__(self):
        return f"<AvailabilityTemplate(tutor_id={self.tutor_id}, day_of_week={self.day_of_week}, start_time={self.start_time}, end_time={self.end_time})>"


Index("idx_availability_templates_tutor_day", AvailabilityTemplate.tutor_id, AvailabilityTemplate.day_of_week)


class TutorScheduleVersion(Base):
    """Per-tutor version counter used as the compare-and-swap arbiter for bookings"""

    __tablename__ = "tutor_schedule_versions"

    tutor_id = Column(String(64), nullable=False, unique=True)
    version = Column(Integer, default=0, nullable=False)

    def __repr__(self):
        return f"<TutorScheduleVersion(tutor_id={self.tutor_id}, version={self.version})>"
