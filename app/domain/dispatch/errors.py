"""
Dispatch error taxonomy.

Callers treat 4xx and 200-with-success:false as final and only retry 500s.
"""

from typing import Optional


class DispatchError(Exception):
    status_code = 500
    retryable = False
    # 200 with {"success": false} instead of an error status
    success_payload = False

    def __init__(self, message: str, broadcast_id: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.broadcast_id = broadcast_id


class ValidationError(DispatchError):
    """Missing or malformed input"""

    status_code = 400


class NotFoundError(DispatchError):
    status_code = 404


class AlreadyResolvedError(DispatchError):
    """Lost a benign race: the request or order was already settled"""

    status_code = 200
    success_payload = True


class ExpiredError(DispatchError):
    status_code = 200
    success_payload = True


class NoCandidatesError(DispatchError):
    """No eligible candidate at any attempted radius; the broadcast is failed"""

    status_code = 200
    success_payload = True


class TransientStoreError(DispatchError):
    """Persistence hiccup. Every transition is conditional, so retrying is safe."""

    status_code = 500
    retryable = True


class IllegalTransitionError(DispatchError):
    """A state change not present in the transition tables"""

    status_code = 409
