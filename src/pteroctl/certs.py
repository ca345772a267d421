"""Certificate expiry check for the host serving the panel URL."""
from __future__ import annotations

import ssl
from dataclasses import dataclass
from datetime import UTC, datetime
from urllib.parse import urlsplit

from cryptography import x509
from cryptography.x509.oid import NameOID

from .errors import CommandError, ValidationError


@dataclass(frozen=True)
class CertificateInfo:
    """Validity window of the certificate presented by a host."""

    host: str
    subject: str
    issuer: str
    not_valid_before: datetime
    not_valid_after: datetime

    def days_remaining(self, now: datetime | None = None) -> int:
        """Return whole days until expiry (negative once expired)."""
        moment = now or datetime.now(tz=UTC)
        return (self.not_valid_after - moment).days


def host_from_url(url: str) -> str:
    """Return the host name of *url* (``https://panel.example.com/x`` -> host)."""
    candidate = url.strip().strip('"')
    if not candidate:
        raise ValidationError("APP_URL is empty; no host to check.")
    if "://" not in candidate:
        candidate = f"https://{candidate}"
    host = urlsplit(candidate).hostname
    if not host:
        raise ValidationError(f"No host found in URL {url!r}.")
    return host


def fetch_certificate(host: str, port: int = 443, *, timeout: float = 10.0) -> CertificateInfo:
    """Connect to *host* and return the validity window of its certificate."""
    try:
        pem = ssl.get_server_certificate((host, port), timeout=timeout)
    except (OSError, ssl.SSLError) as exc:
        raise CommandError(f"TLS handshake with {host}:{port} failed: {exc}") from exc
    cert = x509.load_pem_x509_certificate(pem.encode("ascii"))
    return CertificateInfo(
        host=host,
        subject=_common_name(cert.subject) or cert.subject.rfc4514_string(),
        issuer=_common_name(cert.issuer) or cert.issuer.rfc4514_string(),
        not_valid_before=cert.not_valid_before_utc,
        not_valid_after=cert.not_valid_after_utc,
    )


def _common_name(name: x509.Name) -> str | None:
    attributes = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attributes:
        return None
    value = attributes[0].value
    return value.decode("utf-8", "replace") if isinstance(value, bytes) else str(value)


__all__ = ["CertificateInfo", "fetch_certificate", "host_from_url"]
