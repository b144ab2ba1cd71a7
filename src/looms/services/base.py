"""Base service ABC.

Services extend BaseService and implement _run(request) -> T. They raise
LoomsError on expected errors. __call__ catches LoomsError and invokes
_handle_failure; the default re-raises. Subclasses may override
_handle_failure to log or enrich the failure before it reaches the caller.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Generic, TypeVar

from .errors import LoomsError

R = TypeVar("R")
T = TypeVar("T")


class BaseService(ABC, Generic[R, T]):
    """Abstract base for orchestration services.

    Subclasses implement _run(request) -> T. __call__ wraps _run, catches
    LoomsError, and invokes _handle_failure. Default _handle_failure
    re-raises.
    """

    def __call__(self, request: R) -> T:
        try:
            return self._run(request)
        except LoomsError as e:
            return self._handle_failure(e)

    @abstractmethod
    def _run(self, request: R) -> T:
        """Execute the service logic. Raise LoomsError on expected errors."""
        ...

    def _handle_failure(self, error: LoomsError) -> T:
        """Handle LoomsError. Default re-raises."""
        raise error
