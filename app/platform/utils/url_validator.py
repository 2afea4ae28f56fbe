"""
URL security gate.

Blocks URLs that would let a caller point the fetcher at our own network (SSRF):
non-http(s) schemes, loopback, link-local and RFC1918 ranges, cloud metadata
hosts and internal hostnames. Also produces the canonical URL used for
cache lookups.
"""
import ipaddress
import re
import socket
from typing import Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from app.platform.exceptions import SecurityError

ALLOWED_SCHEMES = ("http", "https")

LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1", "0.0.0.0"}

METADATA_HOSTS = {"169.254.169.254", "metadata.google.internal"}

INTERNAL_SUFFIXES = (".local", ".internal", ".corp", ".lan", ".localhost")

DEFAULT_PORTS = {"http": 80, "https": 443}

_NUMERIC_LABEL = re.compile(r"^(0x[0-9a-f]*|\d+)$")


def _parse_ipv4_host(hostname: str) -> Optional[ipaddress.IPv4Address]:
    """
    Canonicalize a numeric host the way resolvers read it.

    Decimal (2130706433), hex (0x7f000001), octal (0177.0.0.1) and short
    (127.1) forms all resolve to a real address, so they are parsed with
    inet_aton rather than matched as text. Returns None for names; raises
    ValueError for a numeric host that is not a valid address.
    """
    labels = hostname.rstrip(".").split(".")
    if not labels or not all(_NUMERIC_LABEL.match(label) for label in labels):
        return None
    try:
        return ipaddress.IPv4Address(socket.inet_aton(".".join(labels)))
    except OSError as e:
        raise ValueError(f"Invalid IPv4 host: {hostname}") from e


def _check_ipv4(hostname: str) -> Optional[str]:
    """Return a rejection reason for an IPv4 host in any notation, or None when allowed."""
    try:
        address = _parse_ipv4_host(hostname)
    except ValueError:
        return "Invalid IP address format"
    if address is None:
        return None

    a, b, c, d = address.packed
    if a == 127 or a == 0:
        return "Localhost and loopback addresses are not allowed"
    if a == 10:
        return "Private IP range (10.0.0.0/8) is not allowed"
    if a == 172 and 16 <= b <= 31:
        return "Private IP range (172.16.0.0/12) is not allowed"
    if a == 192 and b == 168:
        return "Private IP range (192.168.0.0/16) is not allowed"
    if a == 169 and b == 254:
        return "Link-local IP range (169.254.0.0/16) is not allowed"
    return None


def _check_ipv6(hostname: str) -> Optional[str]:
    if ":" not in hostname:
        return None
    try:
        address = ipaddress.IPv6Address(hostname)
    except ValueError:
        return "Invalid IP address format"

    if address.is_loopback or address.is_unspecified:
        return "Localhost and loopback addresses are not allowed"
    if address.is_link_local:
        return "Link-local IPv6 range (fe80::/10) is not allowed"
    if address.is_private:
        return "Private IPv6 range is not allowed"
    if address.ipv4_mapped is not None:
        return _check_ipv4(str(address.ipv4_mapped))
    return None


def validate_url_security(url: str) -> Tuple[bool, str]:
    """
    Check a candidate URL against the SSRF blocklist.

    Returns:
        (is_valid, reason) where reason names the violated rule, "" when valid
    """
    if not url or not url.strip():
        return False, "URL cannot be empty"

    try:
        parsed = urlsplit(url.strip())
        hostname = (parsed.hostname or "").lower()
        # Touch the port so malformed values surface here
        parsed.port
    except ValueError as e:
        return False, f"Invalid URL format: {e}"

    scheme = parsed.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        shown = f"{scheme}:" if scheme else "(none)"
        return False, f"Invalid protocol: {shown}. Only http and https are allowed."

    if not hostname:
        return False, "Invalid URL format: missing host"

    if hostname in LOOPBACK_HOSTS:
        return False, "Localhost and loopback addresses are not allowed"

    if hostname in METADATA_HOSTS:
        return False, "Cloud metadata endpoints are not allowed"

    if hostname.endswith(INTERNAL_SUFFIXES):
        return False, "Internal hostnames are not allowed"

    reason = _check_ipv4(hostname) or _check_ipv6(hostname)
    if reason:
        return False, reason

    return True, ""


def assert_url_security(url: str) -> None:
    """Raise SecurityError when the URL fails the gate."""
    is_valid, reason = validate_url_security(url)
    if not is_valid:
        raise SecurityError(reason or "URL security validation failed", {"url": url})


def normalize_url(url: str) -> str:
    """
    Canonical form used for deduplication.

    Lower-cases scheme and host, drops default ports, strips trailing slashes
    (root path becomes "/"), drops the fragment and sorts query parameters by key.
    normalize_url(normalize_url(u)) == normalize_url(u).
    """
    try:
        parsed = urlsplit(url.strip())
        scheme = parsed.scheme.lower()
        hostname = (parsed.hostname or "").lower()
        port = parsed.port
    except ValueError:
        return url

    if not hostname:
        return url

    host = f"[{hostname}]" if ":" in hostname else hostname
    if port is not None and DEFAULT_PORTS.get(scheme) != port:
        host = f"{host}:{port}"

    userinfo = parsed.netloc.rpartition("@")[0] if "@" in parsed.netloc else ""
    netloc = f"{userinfo}@{host}" if userinfo else host

    path = parsed.path.rstrip("/") or "/"

    params = parse_qsl(parsed.query, keep_blank_values=True)
    query = urlencode(sorted(params, key=lambda item: item[0]))

    return urlunsplit((scheme, netloc, path, query, ""))
