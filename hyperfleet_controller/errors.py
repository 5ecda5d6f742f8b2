class ReconcileError(RuntimeError):
    """Base for failures the claim reconciler knows how to classify."""

    reason = "ReconcileError"

    def __init__(self, detail: str, *, reason: str | None = None):
        self.detail = detail
        if reason:
            self.reason = reason
        super().__init__(detail)


class TransientError(ReconcileError):
    reason = "TransientError"


class ConnectivityError(TransientError):
    reason = "ProviderUnreachable"


class PermanentError(ReconcileError):
    reason = "ValidationFailed"


class OwnershipError(PermanentError):
    reason = "OwnershipMismatch"


class CredentialError(ReconcileError):
    reason = "CredentialExchangeFailed"


class ConfigurationError(ReconcileError):
    reason = "InvalidConfiguration"


class VMNotFoundError(RuntimeError):
    def __init__(self, vm_id: str):
        self.vm_id = vm_id
        super().__init__(f"vm not found: {vm_id}")
