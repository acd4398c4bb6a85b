from apps.common.exceptions import DomainError


class WorkflowError(DomainError):
    default_code = "invalid_transition"
    default_detail = "The requested change is not allowed."


class ActionNotPermitted(WorkflowError):
    status_code = 403
    default_code = "not_permitted"
    default_detail = "You do not have permission to perform this action on the order."


class TransitionNotPermitted(ActionNotPermitted):
    default_code = "transition_not_permitted"
    default_detail = "Your role cannot move this order to the requested status."


class GuardViolation(WorkflowError):
    status_code = 400


class TransitionFailed(WorkflowError):
    status_code = 503
    default_code = "transition_failed"
    default_detail = "The order could not be updated. Please try again."


class PaymentError(DomainError):
    default_code = "payment_error"
    default_detail = "The payment could not be processed."


class PaymentProviderError(PaymentError):
    status_code = 502
    default_detail = "The payment provider could not be reached."
