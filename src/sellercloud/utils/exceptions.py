"""
Custom exceptions for SellerCloud.

Defines the error taxonomy used between marketplace clients, the fetch gateway
and the data store: connection problems, upstream HTTP failures classified by
what the caller can do about them, pagination safety valves and malformed
upstream records.
"""

from typing import Optional, Dict, Any


class SellerCloudError(Exception):
    """Base exception for all SellerCloud errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize exception with message and optional details.

        Args:
            message: Error message
            details: Additional error details
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(SellerCloudError):
    """Raised when configuration is invalid or missing."""
    pass


class UnsupportedMarketplaceError(ConfigurationError):
    """Raised when a marketplace name has no adapter."""

    def __init__(self, marketplace: str):
        super().__init__(
            f"Unsupported marketplace: {marketplace}",
            {"marketplace": marketplace}
        )
        self.marketplace = marketplace


class CredentialError(SellerCloudError):
    """Raised when stored credentials cannot be decrypted or parsed."""
    pass


class MarketplaceError(SellerCloudError):
    """Base class for errors tied to one marketplace."""

    def __init__(self, message: str, marketplace: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if marketplace:
            details.setdefault("marketplace", marketplace)
        super().__init__(message, details)
        self.marketplace = marketplace


class NotConnectedError(MarketplaceError):
    """No active credentials for the requested marketplace."""

    def __init__(self, marketplace: str, user_id: Optional[str] = None):
        details = {"user_id": user_id} if user_id else None
        super().__init__(
            f"Marketplace '{marketplace}' is not connected",
            marketplace=marketplace,
            details=details
        )
        self.user_id = user_id


class UpstreamError(MarketplaceError):
    """Base class for failed calls to a marketplace API."""

    def __init__(self, message: str, marketplace: Optional[str] = None,
                 status_code: Optional[int] = None, endpoint: Optional[str] = None,
                 response_data: Optional[Any] = None):
        """
        Initialize upstream error.

        Args:
            message: Error message
            marketplace: Marketplace the call was made to
            status_code: HTTP status code, if a response was received
            endpoint: API endpoint that failed
            response_data: Parsed or raw response body
        """
        details: Dict[str, Any] = {}
        if status_code:
            details["status_code"] = status_code
        if endpoint:
            details["endpoint"] = endpoint
        if response_data:
            details["response_data"] = response_data

        super().__init__(message, marketplace=marketplace, details=details)
        self.status_code = status_code
        self.endpoint = endpoint
        self.response_data = response_data


class AuthExpired(UpstreamError):
    """Upstream rejected the stored credentials (expired token, revoked key)."""
    pass


class RequestInvalid(UpstreamError):
    """Upstream rejected the request itself (4xx other than auth)."""
    pass


class TransientUpstreamError(UpstreamError):
    """5xx, 420/429 rate limit, timeout or transport failure. Retry-eligible."""

    def __init__(self, message: str, marketplace: Optional[str] = None,
                 status_code: Optional[int] = None, endpoint: Optional[str] = None,
                 response_data: Optional[Any] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message, marketplace, status_code, endpoint, response_data)
        self.retry_after = retry_after
        if retry_after is not None:
            self.details["retry_after"] = retry_after


class PaginationLimitExceeded(MarketplaceError):
    """
    Raised (and then attached to the partial result) when ``fetch_all``
    paging hits the page cap before the upstream reports the end.
    """

    def __init__(self, marketplace: str, data_type: str, max_pages: int,
                 accumulated: int, reported_total: Optional[int] = None):
        details: Dict[str, Any] = {
            "data_type": data_type,
            "max_pages": max_pages,
            "accumulated": accumulated,
        }
        if reported_total is not None:
            details["reported_total"] = reported_total

        super().__init__(
            f"Stopped paging {marketplace} {data_type} after {max_pages} pages",
            marketplace=marketplace,
            details=details
        )
        self.data_type = data_type
        self.max_pages = max_pages
        self.accumulated = accumulated
        self.reported_total = reported_total


class MalformedRecord(SellerCloudError):
    """A single upstream record could not be normalized."""

    def __init__(self, message: str, record_sample: Optional[Any] = None):
        details = {}
        if record_sample is not None:
            details["record_sample"] = str(record_sample)[:200]
        super().__init__(message, details)
        self.record_sample = record_sample


def raise_for_upstream_status(response, marketplace: str, endpoint: Optional[str] = None) -> None:
    """
    Raise the typed upstream error matching a non-success HTTP response.

    Args:
        response: httpx response object
        marketplace: Marketplace that produced the response
        endpoint: API endpoint that was called

    Raises:
        AuthExpired: 401 / 403
        TransientUpstreamError: 420 / 429 / 5xx
        RequestInvalid: any other 4xx
    """
    status_code = response.status_code
    if status_code < 400:
        return

    try:
        response_data = response.json()
    except ValueError:
        response_data = response.text[:500] if response.text else None

    if status_code in (401, 403):
        raise AuthExpired(
            "Marketplace rejected credentials - reconnect required",
            marketplace=marketplace,
            status_code=status_code,
            endpoint=endpoint,
            response_data=response_data
        )

    if status_code in (420, 429):
        raise TransientUpstreamError(
            "Marketplace rate limit exceeded",
            marketplace=marketplace,
            status_code=status_code,
            endpoint=endpoint,
            response_data=response_data,
            retry_after=_parse_retry_after(response.headers.get("Retry-After"))
        )

    if status_code >= 500:
        raise TransientUpstreamError(
            f"Marketplace server error: {status_code}",
            marketplace=marketplace,
            status_code=status_code,
            endpoint=endpoint,
            response_data=response_data
        )

    raise RequestInvalid(
        f"Marketplace request failed: {status_code}",
        marketplace=marketplace,
        status_code=status_code,
        endpoint=endpoint,
        response_data=response_data
    )


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def is_transient(exc: BaseException) -> bool:
    """Error classifier used by the gateway's retry policy."""
    return isinstance(exc, TransientUpstreamError)
