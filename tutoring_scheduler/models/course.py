from sqlalchemy import Column, String, UniqueConstraint

from tutoring_scheduler.core.database import Base


class CourseTutor(Base):
    __tablename__ = "course_tutors"

    course_id = Column(String(64), nullable=False, index=True)
    tutor_id = Column(String(64), nullable=False)

    __table_args__ = (UniqueConstraint("course_id", "tutor_id", name="uq_course_tutors_course_tutor"),)

    def __repr__(self):
        return f"<CourseTutor(course_id={self.course_id}, tutor_id={self.tutor_id})>"
