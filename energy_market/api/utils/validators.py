"""
Request-level validation helpers for API endpoints.
"""

from typing import Tuple

from fastapi import Request

from energy_market.core.exceptions.handler import ValidationError
from energy_market.core.service.auth.utils.address import is_wallet_address, normalize_address


class RequestValidator:
    """Validates values taken from paths and headers."""

    @staticmethod
    def validate_wallet_address(address: str) -> str:
        """Return the canonical address or raise a 400"""
        candidate = (address or "").strip()
        if not is_wallet_address(candidate):
            raise ValidationError(
                "Invalid wallet address format",
                details={"wallet_address": address}
            )
        return normalize_address(candidate)

    @staticmethod
    def expected_origin(request: Request) -> Tuple[str, str]:
        """
        Domain and URI a sign-in message must name for this request.

        The domain is the Host header as received; the scheme honours
        X-Forwarded-Proto for deployments behind a TLS-terminating proxy.
        """
        host = request.headers.get("host") or request.url.netloc
        scheme = request.headers.get("x-forwarded-proto") or request.url.scheme
        scheme = scheme.split(",")[0].strip()
        return host, f"{scheme}://{host}"
