"""DNS rebinding protection for the gateway transport."""

from pydantic import BaseModel, Field
from starlette.requests import Request

from mcpgate.shared.exceptions import GatewayError, Unauthorized, ValidationFailed
from mcpgate.utilities.logging import get_logger

logger = get_logger(__name__)


class TransportSecuritySettings(BaseModel):
    """Settings for transport security features.

    These settings help protect against DNS rebinding attacks by validating incoming request headers.
    """

    enable_dns_rebinding_protection: bool = True
    """Enable DNS rebinding protection (recommended for published bindings)."""

    allowed_hosts: list[str] = Field(default_factory=list)
    """List of allowed Host header values.

    Supports:
    - Exact match: ``example.com``, ``127.0.0.1:8080``
    - Wildcard port: ``example.com:*`` matches ``example.com`` with any port
    - Subdomain wildcard: ``*.mysite.com`` matches ``mysite.com`` and any subdomain.
      Use ``*.mysite.com:*`` to also allow any port.
    """

    allowed_origins: list[str] = Field(default_factory=list)
    """List of allowed Origin header values. ``http://localhost:*`` allows any port."""


class TransportSecurityMiddleware:
    """Validates the headers of requests reaching the /mcp endpoint."""

    def __init__(self, settings: TransportSecuritySettings | None = None):
        self.settings = settings or TransportSecuritySettings(enable_dns_rebinding_protection=False)

    def _hostname_from_host(self, host: str) -> str:
        """Extract hostname from Host header (strip optional port)."""
        if host.startswith("["):
            idx = host.find("]:")
            if idx != -1:
                return host[: idx + 1]
            return host
        return host.split(":", 1)[0]

    def _validate_host(self, host: str | None) -> bool:
        if not host:
            logger.warning("Missing Host header in request")
            return False

        if host in self.settings.allowed_hosts:
            return True

        for allowed in self.settings.allowed_hosts:
            if allowed.endswith(":*") and not allowed.startswith("*."):
                if host.startswith(allowed[:-2] + ":"):
                    return True

        hostname = self._hostname_from_host(host)
        for allowed in self.settings.allowed_hosts:
            if allowed.startswith("*."):
                pattern = allowed[:-2] if allowed.endswith(":*") else allowed
                base_domain = pattern[2:]
                if base_domain and (hostname == base_domain or hostname.endswith("." + base_domain)):
                    return True

        logger.warning(f"Invalid Host header: {host}")
        return False

    def _validate_origin(self, origin: str | None) -> bool:
        # Origin can be absent for same-origin and non-browser requests
        if not origin:
            return True

        if origin in self.settings.allowed_origins:
            return True

        for allowed in self.settings.allowed_origins:
            if allowed.endswith(":*") and origin.startswith(allowed[:-2] + ":"):
                return True

        logger.warning(f"Invalid Origin header: {origin}")
        return False

    def _validate_content_type(self, content_type: str | None) -> bool:
        return content_type is not None and content_type.lower().startswith("application/json")

    def validate_request(self, request: Request, is_post: bool = False) -> GatewayError | None:
        """Return None if the request passes, or the error to report otherwise."""
        if is_post and not self._validate_content_type(request.headers.get("content-type")):
            return ValidationFailed("Content-Type must be application/json")

        if not self.settings.enable_dns_rebinding_protection:
            return None

        if not self._validate_host(request.headers.get("host")):
            return ValidationFailed("Invalid Host header")

        if not self._validate_origin(request.headers.get("origin")):
            return Unauthorized("Origin is not allowed")

        return None
