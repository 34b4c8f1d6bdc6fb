class CheckoutError(Exception):
    """Base class for every error raised by the checkout service."""


class ConfigurationError(CheckoutError):
    """Required configuration is missing or invalid."""


class GatewayError(CheckoutError):
    pass


class GatewayAuthError(GatewayError):
    """The OAuth credential exchange with the gateway failed."""


class GatewayRejected(GatewayError):
    """The push-payment submission was rejected, failed, or timed out."""

    def __init__(self, message: str, response_code: str | None = None):
        super().__init__(message)
        self.response_code = response_code


class MalformedCallback(CheckoutError):
    """An inbound callback body does not carry the expected envelope."""


class ChannelDeliveryError(CheckoutError):
    def __init__(self, channel: str, recipient: str, reason: str):
        super().__init__(f"{channel} delivery to {recipient} failed: {reason}")
        self.channel = channel
        self.recipient = recipient
        self.reason = reason


class InvoiceRenderError(CheckoutError):
    pass


class InvalidPhoneNumber(ValueError):
    pass
