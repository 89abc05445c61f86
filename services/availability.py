import logging
from datetime import date
from typing import List, Optional

from services.errors import ValidationError
from services.policy import BookingSnapshot, normalize_hhmm, parse_hhmm

logger = logging.getLogger(__name__)


class AvailabilityChecker:
    """Answers whether a service's slot on a date is free of pending/confirmed bookings.

    Slots are half-open, so a booking ending at 11:00 never blocks one
    starting at 11:00. Repository errors propagate; a failed lookup is never
    reported as available.
    """

    def __init__(self, repository):
        self.repository = repository

    def conflicts(self, service_id: int, booking_date: date, start_time: str, end_time: str,
                  exclude_booking_id: Optional[int] = None) -> List[BookingSnapshot]:
        start = normalize_hhmm(start_time)
        end = normalize_hhmm(end_time)
        if parse_hhmm(start) >= parse_hhmm(end):
            raise ValidationError("start_time must be before end_time")
        return self.repository.find_conflicting(service_id, booking_date, start, end, exclude_id=exclude_booking_id)

    def is_available(self, service_id: int, booking_date: date, start_time: str, end_time: str,
                     exclude_booking_id: Optional[int] = None) -> bool:
        blocking = self.conflicts(service_id, booking_date, start_time, end_time, exclude_booking_id)
        if blocking:
            logger.debug(
                "slot %s %s-%s for service %s blocked by bookings %s",
                booking_date, start_time, end_time, service_id, [b.id for b in blocking],
            )
        return not blocking
