from .base import BaseService
from .errors import (
    ConflictError,
    ExternalError,
    InputError,
    LoomsError,
    NotFoundError,
    ProvisioningError,
    SafetyBlockedError,
)

__all__ = [
    "BaseService",
    "ConflictError",
    "ExternalError",
    "InputError",
    "LoomsError",
    "NotFoundError",
    "ProvisioningError",
    "SafetyBlockedError",
]
