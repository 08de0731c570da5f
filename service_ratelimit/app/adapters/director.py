"""
Resolves the upstream destination for an inbound route-service request.
"""

from typing import Dict, Iterable, Optional, Tuple

import httpx

from shared.errors import ValidationError
from shared.logging import get_logger

FORWARDED_URL_HEADER = "X-Cf-Forwarded-Url"

# Carried unchanged to the upstream when running as a brokered service
PROXY_SIGNATURE_HEADER = "X-CF-Proxy-Signature"
PROXY_METADATA_HEADER = "X-CF-Proxy-Metadata"

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

logger = get_logger("ratelimit.director")


def resolve_destination(headers: Dict[str, str]) -> httpx.URL:
    """Parse the forwarded URL header (lower-cased header map) into an absolute URL."""
    forwarded_url = headers.get(FORWARDED_URL_HEADER.lower())
    if not forwarded_url:
        raise ValidationError(
            f"Missing {FORWARDED_URL_HEADER} header",
            details={"header": FORWARDED_URL_HEADER},
        )

    try:
        url = httpx.URL(forwarded_url)
    except httpx.InvalidURL as exc:
        raise ValidationError(
            f"Invalid {FORWARDED_URL_HEADER} header",
            details={"header": FORWARDED_URL_HEADER, "value": forwarded_url, "error": str(exc)},
        ) from exc

    if url.scheme not in ("http", "https") or not url.host:
        raise ValidationError(
            f"{FORWARDED_URL_HEADER} must be an absolute http(s) URL",
            details={"header": FORWARDED_URL_HEADER, "value": forwarded_url},
        )
    return url


def forwardable_headers(headers: Iterable[Tuple[str, str]]) -> list:
    """Copy request headers minus hop-by-hop ones, Host and Content-Length."""
    return [
        (name, value)
        for name, value in headers
        if name.lower() not in HOP_BY_HOP_HEADERS and name.lower() not in ("host", "content-length")
    ]


def build_upstream_request(
    method: str,
    headers: Iterable[Tuple[str, str]],
    body: bytes,
    brokered: Optional[Dict[str, str]] = None,
) -> httpx.Request:
    """Build the request sent upstream.

    ``brokered`` holds the service and binding instance ids when the request
    arrived on the brokered route; the proxy signature and metadata headers
    are then forwarded explicitly.
    """
    header_list = list(headers)
    header_map = {name.lower(): value for name, value in header_list}
    url = resolve_destination(header_map)
    outbound = forwardable_headers(header_list)

    if brokered is not None:
        logger.info(
            "Brokered request",
            service_instance=brokered.get("service_instance_id"),
            bind_instance=brokered.get("bind_instance_id"),
        )
        forwarded = {name.lower() for name, _ in outbound}
        for name in (PROXY_SIGNATURE_HEADER, PROXY_METADATA_HEADER):
            if name.lower() not in forwarded:
                outbound.append((name, header_map.get(name.lower(), "")))

    return httpx.Request(method, url, headers=outbound, content=body)
