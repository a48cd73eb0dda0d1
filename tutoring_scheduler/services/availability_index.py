import logging
from datetime import date, datetime, timezone
from typing import Callable, List, Optional

import pytz
from dateutil.relativedelta import relativedelta

from tutoring_scheduler.core.config import Settings
from tutoring_scheduler.core.exceptions import ValidationError
from tutoring_scheduler.core.retry import read_with_retry
from tutoring_scheduler.schemas.availability import ConcreteTimeWindow, WeeklyAvailabilityTemplate
from tutoring_scheduler.services.stores import TemplateStore

logger = logging.getLogger(__name__)

SATURDAY = 5


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class AvailabilityIndex:
    """Turns a tutor's weekly templates into concrete windows for a calendar date"""

    def __init__(
        self,
        template_store: TemplateStore,
        settings: Settings,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.template_store = template_store
        self.settings = settings
        self.clock = clock or utc_now

    def today(self) -> date:
        """Current date in the institution's timezone"""
        institution_tz = pytz.timezone(self.settings.INSTITUTION_TIMEZONE)
        return self.clock().astimezone(institution_tz).date()

    def booking_horizon(self) -> date:
        return self.today() + relativedelta(months=self.settings.MAX_ADVANCE_MONTHS)

    def validate_date(self, on_date: date) -> None:
        """Reject weekends, past dates and dates beyond the booking horizon"""
        if on_date.weekday() >= SATURDAY:
            raise ValidationError(f"Tutoring is only offered on weekdays, {on_date.isoformat()} is a weekend")

        today = self.today()
        if on_date < today:
            raise ValidationError(f"Date {on_date.isoformat()} is in the past")

        horizon = self.booking_horizon()
        if on_date > horizon:
            raise ValidationError(
                f"Cannot schedule sessions more than {self.settings.MAX_ADVANCE_MONTHS} months in advance"
            )

    def resolve_timezone(self, templates: List[WeeklyAvailabilityTemplate]) -> str:
        """Timezone the tutor's templates are expressed in"""
        if not templates:
            return self.settings.INSTITUTION_TIMEZONE

        zones = {template.timezone for template in templates}
        if len(zones) > 1:
            # Store adapters enforce a single zone per tutor; pick deterministically
            logger.warning(f"Tutor {templates[0].tutor_id} has templates in several timezones: {sorted(zones)}")
        return sorted(zones)[0]

    def expand(self, templates: List[WeeklyAvailabilityTemplate], on_date: date) -> List[ConcreteTimeWindow]:
        """Materialize the templates matching ``on_date`` as UTC windows.

        Pure function of its inputs. Overlapping windows, which the template
        invariant forbids, are coalesced.
        """
        weekday = on_date.weekday()
        windows = []

        for template in templates:
            if template.day_of_week != weekday or not template.is_active_on(on_date):
                continue

            tz = pytz.timezone(template.timezone)
            start = tz.localize(datetime.combine(on_date, template.start_time)).astimezone(timezone.utc)
            end = tz.localize(datetime.combine(on_date, template.end_time)).astimezone(timezone.utc)
            windows.append(
                ConcreteTimeWindow(
                    start=start,
                    end=end,
                    tutor_id=template.tutor_id,
                    on_date=on_date,
                    template_id=template.id,
                    timezone=template.timezone,
                )
            )

        windows.sort()
        return self._coalesce(windows)

    def _coalesce(self, windows: List[ConcreteTimeWindow]) -> List[ConcreteTimeWindow]:
        merged: List[ConcreteTimeWindow] = []
        for window in windows:
            if merged and window.start < merged[-1].end:
                previous = merged.pop()
                logger.warning(
                    f"Overlapping availability windows for tutor {window.tutor_id} on {window.on_date}: "
                    f"{previous.start}-{previous.end} and {window.start}-{window.end}"
                )
                window = ConcreteTimeWindow(
                    start=previous.start,
                    end=max(previous.end, window.end),
                    tutor_id=previous.tutor_id,
                    on_date=previous.on_date,
                    template_id=previous.template_id,
                    timezone=previous.timezone,
                )
            merged.append(window)
        return merged

    async def list_templates(self, tutor_id: str) -> List[WeeklyAvailabilityTemplate]:
        return await read_with_retry(
            lambda: self.template_store.list_templates(tutor_id),
            self.settings,
            f"list templates for tutor {tutor_id}",
        )

    async def windows_for(self, tutor_id: str, on_date: date) -> List[ConcreteTimeWindow]:
        """Concrete windows of one tutor on one date (empty if none match)"""
        self.validate_date(on_date)
        templates = await self.list_templates(tutor_id)
        windows = self.expand(templates, on_date)
        logger.debug(f"Tutor {tutor_id} has {len(windows)} window(s) on {on_date}")
        return windows
