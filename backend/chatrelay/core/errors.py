"""
Error Taxonomy

Every failure the gateway can surface to a caller. Each error knows the
HTTP status and the OpenAI-style error code it is rendered with.
"""
from typing import List, Optional


class GatewayError(Exception):
    code = "gateway_error"
    error_type = "proxy_error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_body(self) -> dict:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "code": self.code,
            }
        }


class NotFound(GatewayError, KeyError):
    code = "not_found"
    error_type = "invalid_request_error"
    status_code = 404

    def __str__(self) -> str:
        return self.message


class ConfigError(GatewayError, ValueError):
    code = "invalid_config"
    error_type = "invalid_request_error"
    status_code = 400

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


class ModelNotSupported(GatewayError):
    code = "model_not_found"
    error_type = "invalid_request_error"
    status_code = 404

    def __init__(self, model: str):
        super().__init__(f"Model not supported: {model}")
        self.model = model


class NoEligibleAccount(GatewayError):
    code = "no_available_account"
    error_type = "service_unavailable_error"
    status_code = 503

    def __init__(self, model: str = "", provider_id: Optional[str] = None):
        target = f" for model: {model}" if model else ""
        super().__init__(f"No available account{target}")
        self.model = model
        self.provider_id = provider_id


class CredentialExpired(GatewayError):
    code = "credential_expired"
    status_code = 401

    def __init__(self, account_id: str, reason: str = "credential expired"):
        super().__init__(f"Account {account_id}: {reason}")
        self.account_id = account_id
        self.reason = reason


class RefreshFailed(CredentialExpired):
    code = "refresh_failed"


class UpstreamTransportError(GatewayError):
    code = "upstream_transport_error"
    status_code = 502

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class UpstreamExhausted(GatewayError):
    code = "upstream_exhausted"
    status_code = 502

    def __init__(self, model: str, attempted: List[str], last_error: Optional[str]):
        super().__init__(
            f"All upstream attempts failed for model {model} "
            f"(tried: {', '.join(attempted) or 'none'}): {last_error or 'unknown error'}"
        )
        self.model = model
        self.attempted = attempted
        self.last_error = last_error


class InvalidRequest(GatewayError):
    code = "invalid_request"
    error_type = "invalid_request_error"
    status_code = 400


class Unauthorized(GatewayError):
    code = "invalid_api_key"
    error_type = "authentication_error"
    status_code = 401
