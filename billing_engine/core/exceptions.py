"""Custom exceptions for the billing engine"""


class BillingEngineError(Exception):
    """Base exception for billing engine errors"""
    status_code = 400


class ClientNotFoundError(BillingEngineError):
    """Tenant does not exist or is inactive"""
    status_code = 404


class InvoiceNotFoundError(BillingEngineError):
    """Generated invoice does not exist"""
    status_code = 404


class InvoiceStateError(BillingEngineError):
    """Operation not allowed for the invoice's current status"""
    status_code = 409


class NothingToInvoiceError(BillingEngineError):
    """No eligible transactions for the requested tenant and scope"""
    status_code = 422


class PreflightValidationError(BillingEngineError):
    """Batch-level validation failure that blocks invoice assembly"""
    status_code = 422

    def __init__(self, message: str, issues: list = None):
        self.issues = issues or []
        super().__init__(message)


class CostExtractError(BillingEngineError):
    """Daily cost extract file could not be read or parsed"""
    status_code = 422


class TransactionNotFoundError(BillingEngineError):
    """Stored transaction does not exist"""
    status_code = 404
