"""Errors surfaced to HTTP callers.

Every ShopError carries the status code the server answers with; the
message becomes the `error` field of the JSON body.
"""


class ShopError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


# bad client input; nothing is written
class ValidationError(ShopError):
    status_code = 400


class AmountMismatch(ValidationError):
    def __init__(self, expected: int, claimed):
        super().__init__("Invalid amount calculation")
        self.expected = expected
        self.claimed = claimed


# bad or missing webhook signature; nothing is dispatched
class AuthenticityError(ShopError):
    status_code = 400


class SignatureInvalid(AuthenticityError):
    pass


class UpstreamUnavailable(ShopError):
    status_code = 500


class GatewayUnavailable(UpstreamUnavailable):
    pass


class GatewayNotConfigured(GatewayUnavailable):
    def __init__(self):
        super().__init__(
            "Stripe not configured. Please add your Stripe keys to the "
            ".env file."
        )
