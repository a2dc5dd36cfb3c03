# backend/mentorbook/services/base.py
"""
Base Service Pattern for the MentorBook entitlement core

Provides common functionality for all service classes including:
- Transaction management
- Logging
- Performance monitoring
"""

from contextlib import contextmanager
from functools import wraps
import logging
import time
from typing import Any, Callable, Iterator, Optional, TypeVar, cast

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import ServiceException
from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

SLOW_OPERATION_SECONDS = 1.0


class BaseService:
    """
    Base class for all service layer components.

    Subclasses share one Session with the services they compose and report
    their operations through log_operation and measure_operation.
    """

    def __init__(self, db: Session):
        """
        Initialize base service.

        Args:
            db: Database session
        """
        self.db = db
        self.logger = logging.getLogger(self.__class__.__name__)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Context manager for database transactions.

        Usage:
            with self.transaction():
                # Do multiple operations
                self.db.add(entity)
                # Note: commit is handled automatically

        Domain exceptions raised inside the block roll back and propagate
        unchanged; raw SQLAlchemy errors are wrapped in ServiceException.
        """
        try:
            yield self.db
            self.db.commit()
            self.logger.debug("Transaction committed successfully")
        except SQLAlchemyError as e:
            self.logger.error(f"Transaction failed: {str(e)}")
            self.db.rollback()
            raise ServiceException(f"Database operation failed: {str(e)}") from e
        except Exception as e:
            self.logger.info(f"Transaction rolled back: {type(e).__name__}: {str(e)}")
            self.db.rollback()
            raise

    @contextmanager
    def optional_transaction(self, use_transaction: bool) -> Iterator[Session]:
        """
        Open a transaction only when the caller is not already inside one.

        Services compose each other (the booking saga calls the hold and
        calendar services); inner calls pass ``use_transaction=False`` and the
        outermost service owns the commit.
        """
        if use_transaction:
            with self.transaction() as db:
                yield db
        else:
            yield self.db

    @staticmethod
    def measure_operation(operation_name: str) -> Callable[[F], F]:
        """
        Decorator that times a service method into Prometheus.

        Usage:
            @BaseService.measure_operation("create_hold")
            def create_hold(self, ...):
                ...

        Operations slower than SLOW_OPERATION_SECONDS are also logged as warnings.
        """

        def decorator(func: F) -> F:
            @wraps(func)
            def wrapper(self: "BaseService", *args: Any, **kwargs: Any) -> Any:
                started = time.perf_counter()
                error_type: Optional[str] = None
                try:
                    return func(self, *args, **kwargs)
                except Exception as e:
                    error_type = type(e).__name__
                    raise
                finally:
                    self._observe(operation_name, time.perf_counter() - started, error_type)

            return cast(F, wrapper)

        return decorator

    def _observe(self, operation: str, elapsed: float, error_type: Optional[str]) -> None:
        if elapsed > SLOW_OPERATION_SECONDS:
            self.logger.warning(
                f"Slow operation detected: {operation} took {elapsed:.2f}s",
                extra={"operation": operation, "elapsed_seconds": round(elapsed, 3)},
            )
        try:
            prometheus_metrics.record_service_operation(
                service=self.__class__.__name__,
                operation=operation,
                duration=elapsed,
                status="error" if error_type else "success",
                error_type=error_type,
            )
        except ValueError as metrics_error:
            # Metrics collection must not break the operation
            logger.debug("Failed to record metrics: %s", metrics_error)

    def log_operation(self, operation: str, **context: Any) -> None:
        """Log an operation with its structured context."""
        self.logger.info(f"Operation: {operation}", extra={"operation": operation, **context})
