"""
SSRF protection for user-submitted capture and crawl URLs.

Both the capture engine and the crawl fetcher visit arbitrary URLs on
behalf of users, so every URL is checked before a browser or HTTP
client touches it.
"""

import ipaddress
import socket
from typing import Optional, Tuple, List, Set
from urllib.parse import urlparse
import logging

from django.conf import settings

logger = logging.getLogger(__name__)


class SSRFError(Exception):
    """Raised when a URL fails SSRF validation."""
    pass


class SSRFGuard:
    """
    Validates URLs and resolved IPs to prevent requests to internal
    networks, localhost, cloud metadata endpoints and other dangerous
    destinations.
    """

    PRIVATE_IPV4_RANGES = [
        ipaddress.ip_network('10.0.0.0/8'),
        ipaddress.ip_network('172.16.0.0/12'),
        ipaddress.ip_network('192.168.0.0/16'),
        ipaddress.ip_network('127.0.0.0/8'),        # Loopback
        ipaddress.ip_network('169.254.0.0/16'),     # Link-local
        ipaddress.ip_network('0.0.0.0/8'),
        ipaddress.ip_network('100.64.0.0/10'),      # Carrier-grade NAT
        ipaddress.ip_network('224.0.0.0/4'),        # Multicast
        ipaddress.ip_network('240.0.0.0/4'),        # Reserved
    ]

    PRIVATE_IPV6_RANGES = [
        ipaddress.ip_network('::1/128'),
        ipaddress.ip_network('::/128'),
        ipaddress.ip_network('fc00::/7'),
        ipaddress.ip_network('fe80::/10'),
        ipaddress.ip_network('ff00::/8'),
    ]

    BLOCKED_HOSTNAMES = {
        'metadata.google.internal',
        'metadata.goog',
        'kubernetes.default',
        'kubernetes.default.svc',
    }

    BLOCKED_IPS = {
        '169.254.169.254',  # AWS/GCP/Azure metadata
        '169.254.170.2',    # AWS ECS task metadata
        'fd00:ec2::254',
    }

    ALLOWED_PROTOCOLS = {'http', 'https'}

    BLOCKED_PORTS = {
        21, 22, 23, 25, 53, 110, 135, 139, 143, 445,
        1433, 1521, 3306, 3389, 5432, 5900, 6379, 11211, 27017,
    }

    def __init__(
        self,
        allow_localhost: bool = False,
        allow_private_ips: bool = False,
        blocked_domains: Optional[Set[str]] = None,
        resolve_dns: bool = True,
    ):
        self.allow_localhost = allow_localhost
        self.allow_private_ips = allow_private_ips
        self.blocked_domains = blocked_domains or set()
        self.resolve_dns = resolve_dns

    def validate_url(self, url: str) -> Tuple[str, str, int]:
        """
        Validate a URL for SSRF safety.

        Returns:
            Tuple of (validated_url, hostname, port)

        Raises:
            SSRFError: If the URL is not safe
        """
        try:
            parsed = urlparse(url)
            port = parsed.port
        except ValueError as e:
            raise SSRFError(f"Invalid URL format: {e}")

        scheme = parsed.scheme.lower()
        if scheme not in self.ALLOWED_PROTOCOLS:
            raise SSRFError(f"Protocol '{parsed.scheme}' not allowed. Use HTTP or HTTPS.")

        hostname = parsed.hostname
        if not hostname:
            raise SSRFError("URL must have a hostname")

        if port is None:
            port = 443 if scheme == 'https' else 80

        if port in self.BLOCKED_PORTS:
            raise SSRFError(f"Port {port} is blocked for security reasons")

        hostname_lower = hostname.lower()
        if hostname_lower in self.BLOCKED_HOSTNAMES:
            raise SSRFError(f"Hostname '{hostname}' is blocked")

        if self._domain_matches(hostname_lower, self.blocked_domains):
            raise SSRFError(f"Domain '{hostname}' is blocked")

        try:
            # Literal IPs are checked without DNS
            ipaddress.ip_address(hostname_lower)
            self._validate_ip(hostname_lower)
        except ValueError:
            if self.resolve_dns:
                self._validate_resolved_ips(hostname)

        return url, hostname, port

    def _domain_matches(self, hostname: str, domain_set: Set[str]) -> bool:
        for domain in domain_set:
            if hostname == domain or hostname.endswith('.' + domain):
                return True
        return False

    def _validate_resolved_ips(self, hostname: str) -> List[str]:
        try:
            addr_info = socket.getaddrinfo(hostname, None, socket.AF_UNSPEC)
            ips = list(set(info[4][0] for info in addr_info))
        except socket.gaierror as e:
            raise SSRFError(f"Could not resolve hostname '{hostname}': {e}")

        if not ips:
            raise SSRFError(f"No IP addresses found for hostname '{hostname}'")

        for ip_str in ips:
            self._validate_ip(ip_str)
        return ips

    def _validate_ip(self, ip_str: str) -> None:
        if ip_str in self.BLOCKED_IPS:
            raise SSRFError(f"IP address '{ip_str}' is blocked (cloud metadata)")

        ip = ipaddress.ip_address(ip_str)
        if self.allow_private_ips:
            return
        if self.allow_localhost and ip.is_loopback:
            return

        ranges = (
            self.PRIVATE_IPV4_RANGES
            if isinstance(ip, ipaddress.IPv4Address)
            else self.PRIVATE_IPV6_RANGES
        )
        for network in ranges:
            if ip in network:
                raise SSRFError(f"IP address '{ip_str}' is in private range {network}")


_default_guard: Optional[SSRFGuard] = None


def get_ssrf_guard() -> SSRFGuard:
    """Get the SSRF guard singleton configured from settings."""
    global _default_guard
    if _default_guard is None:
        _default_guard = SSRFGuard(
            allow_localhost=getattr(settings, 'SSRF_ALLOW_LOCALHOST', False),
            allow_private_ips=getattr(settings, 'SSRF_ALLOW_PRIVATE_IPS', False),
            blocked_domains=set(getattr(settings, 'SSRF_BLOCKED_DOMAINS', [])),
            resolve_dns=getattr(settings, 'SSRF_RESOLVE_DNS', True),
        )
    return _default_guard


def reset_ssrf_guard():
    """Drop the cached guard so the next call re-reads settings."""
    global _default_guard
    _default_guard = None


def validate_url_ssrf(url: str) -> Tuple[str, str, int]:
    """Convenience function to validate URL for SSRF."""
    return get_ssrf_guard().validate_url(url)
