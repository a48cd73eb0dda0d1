from tutoring_scheduler.core.database import Base
from .availability import AvailabilityTemplate, TutorScheduleVersion
from .booking import TutoringSession
from .course import CourseTutor

__all__ = [
    "Base",

    # Availability
    "AvailabilityTemplate",
    "TutorScheduleVersion",

    # Booking
    "TutoringSession",

    # Course scoping
    "CourseTutor",
]
