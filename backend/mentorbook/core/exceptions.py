# backend/mentorbook/core/exceptions.py
"""
Domain-specific exceptions for the MentorBook entitlement core.

These exceptions provide clear, business-focused error messages
that can be caught and handled appropriately at the API layer.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        """Convert to an HTTPException using the class status code."""
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when business validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""

    status_code = HTTP_422_UNPROCESSABLE


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


# Specific business exceptions


class InsufficientBalanceException(BusinessRuleException):
    """Raised when the requested quantity exceeds the available entitlement."""

    def __init__(
        self,
        subject_id: str,
        service_type: str,
        requested: int,
        available: int,
    ):
        super().__init__(
            message=(
                f"Insufficient balance for {service_type}: "
                f"requested {requested}, available {available}"
            ),
            code="INSUFFICIENT_BALANCE",
            details={
                "subject_id": subject_id,
                "service_type": service_type,
                "requested": requested,
                "available": available,
            },
        )


class TimeConflictException(ConflictException):
    """Raised when a calendar interval overlaps an existing booked slot."""

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message or "This time slot conflicts with an existing booking",
            code="TIME_CONFLICT",
            details=details or {},
        )


class HoldAlreadyTerminalException(ConflictException):
    """Raised when acting on a hold that already left the active state."""

    def __init__(self, hold_id: str, hold_status: str, message: Optional[str] = None):
        super().__init__(
            message=message or f"Hold {hold_id} is not active (status: {hold_status})",
            code="HOLD_NOT_ACTIVE",
            details={"hold_id": hold_id, "status": hold_status},
        )


class HoldExpiredException(HoldAlreadyTerminalException):
    """Raised when acting on a hold whose TTL has elapsed."""

    def __init__(self, hold_id: str, hold_status: str = "expired"):
        super().__init__(
            hold_id,
            hold_status,
            message=f"Hold {hold_id} has expired",
        )
        self.code = "HOLD_EXPIRED"


class HoldBoundToBookingException(HoldAlreadyTerminalException):
    """Raised when a hold backing a booking is ended outside that booking."""

    def __init__(self, hold_id: str, booking_id: str, hold_status: str = "active"):
        super().__init__(
            hold_id,
            hold_status,
            message=f"Hold {hold_id} backs booking {booking_id}",
        )
        self.code = "HOLD_BOUND_TO_BOOKING"
        self.details["booking_id"] = booking_id


class MeetingProviderException(DomainException):
    """Raised when the external meeting provider fails to create a meeting."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            code="MEETING_PROVIDER_ERROR",
            details=details or {},
        )


class EntitlementNotFoundException(NotFoundException):
    """Raised when no entitlement balance exists for a subject/service pair."""

    def __init__(self, subject_id: str, service_type: str):
        super().__init__(
            message=f"No {service_type} entitlement found for subject {subject_id}",
            code="ENTITLEMENT_NOT_FOUND",
            details={"subject_id": subject_id, "service_type": service_type},
        )


class HoldNotFoundException(NotFoundException):
    """Raised when a hold id does not exist."""

    def __init__(self, hold_id: str):
        super().__init__(
            message=f"Hold {hold_id} not found",
            code="HOLD_NOT_FOUND",
            details={"hold_id": hold_id},
        )


class BookingNotFoundException(NotFoundException):
    """Raised when a booking id does not exist."""

    def __init__(self, booking_id: str):
        super().__init__(
            message=f"Booking {booking_id} not found",
            code="BOOKING_NOT_FOUND",
            details={"booking_id": booking_id},
        )


class BookingStateException(ConflictException):
    """Raised when a booking transition is not allowed from its current status."""

    def __init__(self, booking_id: str, current_status: str, action: str):
        super().__init__(
            message=f"Cannot {action} booking {booking_id} in status {current_status}",
            code="BOOKING_INVALID_STATE",
            details={"booking_id": booking_id, "status": current_status, "action": action},
        )


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations.
    """


class BalanceInvariantViolation(Exception):
    """
    A write would have broken ``available = total - consumed - held`` or
    driven a quantity negative.

    A consistency bug rather than a business outcome; not a DomainException,
    so API layers surface it as an unhandled server error.
    """

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        self.details = details or {}
        super().__init__(message)


class LedgerImmutableError(Exception):
    """Raised when code attempts to update or delete a ledger entry."""
