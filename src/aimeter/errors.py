from __future__ import annotations


class AimeterError(Exception):
    """Base class for every failure scoped to a single account or vendor."""


class APIStatusError(AimeterError):
    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"API returned status {status_code}: {body}")
        self.status_code = status_code
        self.body = body

    @property
    def is_auth_failure(self) -> bool:
        return self.status_code in (401, 403)


class NetworkError(AimeterError):
    pass


class RequestTimeoutError(NetworkError):
    pass


class RequestCancelledError(NetworkError):
    pass


class ResponseDecodeError(AimeterError):
    pass


class ReauthRequiredError(AimeterError):
    pass


class RefreshError(AimeterError):
    pass


class PersistenceError(AimeterError):
    pass


class CredentialUpdateError(PersistenceError):
    pass


class JWTDecodeError(ValueError):
    pass
