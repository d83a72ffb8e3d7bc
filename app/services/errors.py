class AutomationError(Exception):
    """Base class for automation domain errors that routers map to HTTP responses."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BranchScopeError(AutomationError):
    status_code = 403


class FlowConfigError(AutomationError):
    status_code = 422


class FlowTransitionError(AutomationError):
    status_code = 409


class ConcurrentUpdateError(AutomationError):
    status_code = 409


class FlowNotFoundError(AutomationError):
    status_code = 404


class DispatchNotFoundError(AutomationError):
    status_code = 404


class CustomerNotFoundError(AutomationError):
    status_code = 404
