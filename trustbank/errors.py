class TrustBankError(Exception):
    """Base for errors surfaced to API callers; status_code maps to the HTTP response."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthorized(TrustBankError):
    status_code = 403


class InvalidState(TrustBankError):
    status_code = 400


class EscrowExpired(InvalidState):
    pass


class NotFound(TrustBankError):
    status_code = 404


class UpstreamFailure(TrustBankError):
    status_code = 502


class SignatureInvalid(TrustBankError):
    status_code = 401
