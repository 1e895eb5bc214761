"""
Domain errors raised by the codec, the verifier and the settlement services.

Routers translate these into HTTP responses; "already settled" is never an
error, it is a normal settlement outcome.
"""


class SettlementError(Exception):
    """Base class for every error raised by this package."""


class InvalidMerchantConfig(SettlementError, ValueError):
    pass


class InvalidPayloadField(SettlementError, ValueError):
    pass


class SignatureInvalid(SettlementError):
    pass


class ReplayDetected(SettlementError):
    pass


class RecordNotFound(SettlementError, LookupError):
    pass


class ExpiredFingerprint(SettlementError):
    pass


class ProvisioningFailed(SettlementError, RuntimeError):
    pass


class GatewayError(SettlementError, RuntimeError):
    pass


class PaymentNotReceived(SettlementError):
    """Soft failure: the payer asked us to check but nothing has settled yet."""


class InvoiceAlreadyPaid(SettlementError):
    pass
