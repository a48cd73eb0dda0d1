from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from tutoring_scheduler.core.exceptions import ConflictError, NotFoundError, SchedulerException, ValidationError
from tutoring_scheduler.schemas.availability import SlotResultResponse
from tutoring_scheduler.schemas.booking import (
    BookingCancelRequest,
    BookingCreateRequest,
    BookingResponse,
    SessionListResponse,
    SessionStatus,
)
from tutoring_scheduler.services.booking_coordinator import BookingCoordinator
from tutoring_scheduler.services.scheduling_service import SchedulingService

router = APIRouter()

RETRY_AFTER_SECONDS = "1"


def get_scheduling_service(request: Request) -> SchedulingService:
    return request.app.state.scheduling_service


def get_booking_coordinator(request: Request) -> BookingCoordinator:
    return request.app.state.booking_coordinator


def _to_http_error(error: Exception) -> HTTPException:
    if isinstance(error, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, ConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(error), "conflicting_session_ids": error.conflicting_ids},
        )
    if isinstance(error, SchedulerException):
        # Store trouble; only errors marked retryable invite the client to try again
        headers = {"Retry-After": RETRY_AFTER_SECONDS} if error.retryable else None
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(error), headers=headers)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Internal server error")


@router.get("/courses/{course_id}/slots", response_model=List[SlotResultResponse])
async def search_slots(
    course_id: str,
    on_date: date = Query(..., alias="date", description="Requested date (YYYY-MM-DD)"),
    duration_minutes: int = Query(..., description="Session duration in minutes"),
    tutor_id: Optional[str] = Query(None, description="Restrict the search to one tutor"),
    scheduling_service: SchedulingService = Depends(get_scheduling_service),
):
    """Bookable start times per tutor window for a course on a date"""
    try:
        results = await scheduling_service.search(course_id, on_date, duration_minutes, tutor_id=tutor_id)
    except SchedulerException as e:
        raise _to_http_error(e)
    return [SlotResultResponse.from_result(result) for result in results]


@router.post("/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    request: BookingCreateRequest,
    booking_coordinator: BookingCoordinator = Depends(get_booking_coordinator),
):
    """Book a session. On 409 the client must search again rather than retry."""
    try:
        session = await booking_coordinator.book(
            tutor_id=request.tutor_id,
            student_id=request.student_id,
            course_id=request.course_id,
            start=request.start,
            duration_minutes=request.duration_minutes,
        )
    except SchedulerException as e:
        raise _to_http_error(e)
    return BookingResponse.from_session(session)


@router.post("/bookings/{session_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    session_id: str,
    request: BookingCancelRequest,
    booking_coordinator: BookingCoordinator = Depends(get_booking_coordinator),
):
    """Cancel a confirmed session"""
    try:
        session = await booking_coordinator.cancel(session_id, request.student_id, request.reason)
    except SchedulerException as e:
        raise _to_http_error(e)
    return BookingResponse.from_session(session)


@router.get("/bookings/{session_id}", response_model=BookingResponse)
async def get_booking(
    session_id: str,
    user_id: str = Query(..., description="Student or tutor asking for the session"),
    scheduling_service: SchedulingService = Depends(get_scheduling_service),
):
    """Details of one session for its student or tutor"""
    try:
        session = await scheduling_service.session_details(session_id, user_id)
    except SchedulerException as e:
        raise _to_http_error(e)
    return BookingResponse.from_session(session)


@router.get("/students/{student_id}/sessions", response_model=SessionListResponse)
async def list_student_sessions(
    student_id: str,
    session_status: Optional[SessionStatus] = Query(None, alias="status", description="Only sessions in this status"),
    limit: Optional[int] = Query(None, gt=0, description="Maximum number of sessions"),
    scheduling_service: SchedulingService = Depends(get_scheduling_service),
):
    """A student's sessions, upcoming first"""
    try:
        listing = await scheduling_service.student_sessions(student_id, status=session_status, limit=limit)
    except SchedulerException as e:
        raise _to_http_error(e)
    return SessionListResponse.from_listing(listing)


@router.get("/tutors/{tutor_id}/sessions", response_model=SessionListResponse)
async def list_tutor_sessions(
    tutor_id: str,
    session_status: Optional[SessionStatus] = Query(None, alias="status", description="Only sessions in this status"),
    limit: Optional[int] = Query(None, gt=0, description="Maximum number of sessions"),
    scheduling_service: SchedulingService = Depends(get_scheduling_service),
):
    try:
        listing = await scheduling_service.tutor_sessions(tutor_id, status=session_status, limit=limit)
    except SchedulerException as e:
        raise _to_http_error(e)
    return SessionListResponse.from_listing(listing)
