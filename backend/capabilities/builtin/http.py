"""Generic HTTP request capability."""

import ipaddress
from typing import Any
from urllib.parse import urlparse

import httpx
import structlog

from capabilities.base import CapabilityDescriptor, InvocationConvention, optional, param

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT = 30.0
FORBIDDEN_PORTS = (5432, 6379)  # postgres, redis


def validate_url_safety(url: str) -> None:
    """Reject non-HTTP schemes, loopback/private hosts and internal ports.

    Raises:
        ValueError: If URL is unsafe
    """
    parsed = urlparse(url)
    if parsed.scheme.lower() not in ("http", "https"):
        raise ValueError(f"Unsupported scheme: {parsed.scheme}. Only HTTP and HTTPS allowed.")

    hostname = parsed.hostname
    if not hostname:
        raise ValueError("URL must have a valid hostname")
    if hostname.lower() in ("localhost", "127.0.0.1", "::1"):
        raise ValueError("Connections to localhost are not allowed")

    try:
        ip = ipaddress.ip_address(hostname)
    except ValueError:
        ip = None  # domain name
    if ip is not None and (ip.is_private or ip.is_loopback or ip.is_reserved):
        raise ValueError(f"Connections to private IP {hostname} are not allowed")

    if parsed.port in FORBIDDEN_PORTS:
        raise ValueError(f"Connections to internal port {parsed.port} are not allowed")


def decode_body(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            pass
    return response.text


async def http_request(options: dict) -> dict:
    """Perform an HTTP request.

    Options:
        url, method (GET), headers, query, json, body, timeout (30s)

    Returns:
        ``{"status": int, "headers": dict, "data": parsed body}``

    4xx/5xx responses raise ``httpx.HTTPStatusError`` so the failure counts
    against the circuit breaker and the job is retried.
    """
    url = options["url"]
    validate_url_safety(url)

    method = str(options.get("method") or "GET").upper()
    request_kwargs: dict = {
        "headers": options.get("headers") or {},
        "params": options.get("query") or None,
    }
    if options.get("json") is not None:
        request_kwargs["json"] = options["json"]
    elif options.get("body") is not None:
        request_kwargs["content"] = str(options["body"])

    async with httpx.AsyncClient(
        timeout=float(options.get("timeout") or DEFAULT_TIMEOUT),
        follow_redirects=True,
    ) as client:
        response = await client.request(method, url, **request_kwargs)

    logger.debug("http_request", method=method, url=url, status=response.status_code)
    response.raise_for_status()
    return {
        "status": response.status_code,
        "headers": dict(response.headers),
        "data": decode_body(response),
    }


HTTP_CAPABILITIES = [
    CapabilityDescriptor(
        path="utilities.http.request",
        handler=http_request,
        convention=InvocationConvention.OPTIONS,
        parameters=[
            param("url"),
            optional("method", "GET"),
            optional("headers"),
            optional("query"),
            optional("json"),
            optional("body"),
            optional("timeout"),
        ],
        param_aliases={"params": "query", "data": "json"},
        path_aliases=["utilities.http.fetch"],
        external=True,
        description="Call an HTTP endpoint",
    ),
]
