# app/core/exceptions.py

"""
Workflow error taxonomy.

Validation, conflict, authorization and not-found errors abort the workflow
operation and reach the caller verbatim. DependencyError is raised by gateway
clients (WhatsApp, push) and is caught at the dispatcher boundary, where it is
downgraded to a field of the aggregated dispatch result.
"""


class WorkflowError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(WorkflowError):
    status_code = 400


class ConflictError(WorkflowError):
    status_code = 409

    def __init__(self, message: str, current_status: str | None = None):
        super().__init__(message)
        self.current_status = current_status


class AuthorizationError(WorkflowError):
    status_code = 403


class NotFoundError(WorkflowError):
    status_code = 404


class DependencyError(WorkflowError):
    status_code = 502

    def __init__(self, message: str, service: str = "gateway", status: int | None = None, response_data=None):
        super().__init__(message)
        self.service = service
        self.status = status
        self.response_data = response_data
