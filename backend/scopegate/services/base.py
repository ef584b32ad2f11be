# backend/scopegate/services/base.py
"""
Base Service Pattern for the authorization engine

Provides common functionality for all service classes including:
- Logging
- Performance monitoring
"""

from functools import wraps
import inspect
import logging
import time
from typing import Any, Callable, Optional, TypeVar, cast

from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

SLOW_OPERATION_SECONDS = 1.0


class BaseService:
    """
    Base class for all service layer components.

    Subclasses get a per-class logger and the measure_operation decorator,
    which records duration and outcome of every decorated call.
    """

    def __init__(self) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)

    def _finish_measurement(
        self, operation_name: str, elapsed: float, error_type: Optional[str]
    ) -> None:
        if elapsed > SLOW_OPERATION_SECONDS:
            self.logger.warning(f"Slow operation detected: {operation_name} took {elapsed:.2f}s")

        try:
            prometheus_metrics.record_service_operation(
                service=self.__class__.__name__,
                operation=operation_name,
                duration=elapsed,
                status="error" if error_type else "success",
                error_type=error_type,
            )
        except Exception as exc:
            # Don't let metrics collection break the operation
            logger.debug(f"Failed to record metrics for {operation_name}: {exc}")

    @staticmethod
    def measure_operation(operation_name: str) -> Callable[[F], F]:
        """
        Decorator to measure operation performance.

        Usage:
            @BaseService.measure_operation("check_permission")
            async def check_permission(self, ...):
                ...

        Works for both sync and async methods.
        """

        def decorator(func: F) -> F:
            if inspect.iscoroutinefunction(func):

                @wraps(func)
                async def async_wrapper(self: "BaseService", *args: Any, **kwargs: Any) -> Any:
                    start_time = time.time()
                    error_type: Optional[str] = None
                    try:
                        return await func(self, *args, **kwargs)
                    except Exception as e:
                        error_type = type(e).__name__
                        raise
                    finally:
                        self._finish_measurement(
                            operation_name, time.time() - start_time, error_type
                        )

                return cast(F, async_wrapper)

            @wraps(func)
            def wrapper(self: "BaseService", *args: Any, **kwargs: Any) -> Any:
                start_time = time.time()
                error_type: Optional[str] = None
                try:
                    return func(self, *args, **kwargs)
                except Exception as e:
                    error_type = type(e).__name__
                    raise
                finally:
                    self._finish_measurement(operation_name, time.time() - start_time, error_type)

            return cast(F, wrapper)

        return decorator
