from __future__ import annotations

from typing import ClassVar


class DispatchError(Exception):
    code: ClassVar[str] = "DISPATCH_ERROR"


class NotFoundError(DispatchError):
    code = "NOT_FOUND"


class ForbiddenError(DispatchError):
    code = "FORBIDDEN"


class InvalidTransitionError(DispatchError):
    code = "INVALID_TRANSITION"


class ConflictError(DispatchError):
    code = "CONFLICT"


class AlreadyAllocatedError(ConflictError):
    code = "ALREADY_ALLOCATED"


class NoCandidatesError(DispatchError):
    code = "NO_CANDIDATES"


class FlowTimeoutError(DispatchError):
    code = "TIMEOUT"


class FlowNotFoundError(DispatchError):
    code = "FLOW_NOT_FOUND"


class InvalidRequestError(DispatchError):
    code = "INVALID_REQUEST"


class UnknownModelVersionError(InvalidRequestError):
    code = "UNKNOWN_MODEL_VERSION"


class UpstreamUnavailableError(DispatchError):
    code = "UPSTREAM_UNAVAILABLE"
