"""
DNS TXT ownership verification for custom domains.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import dns.asyncresolver
import dns.exception
import dns.resolver

from .classifier import HostnameKind, classify, subdomain_label
from .errors import DomainError, ErrorKind

logger = logging.getLogger("domain_lifecycle.domains.verification")


@dataclass
class VerificationResult:
    """Outcome of one TXT verification attempt."""

    ok: bool
    message: str
    error_kind: Optional[ErrorKind] = None
    record_name: str = ""
    found: List[str] = field(default_factory=list)


class DomainVerifier:
    """Verifies domain ownership via a TXT record at ``_<product>-verify.<hostname>``."""

    def __init__(
        self,
        product: str = "autodox",
        edge_ipv4: str = "75.2.60.5",
        edge_target: str = "identitybrandhub.netlify.app",
        timeout: float = 5.0,
    ):
        self.product = product
        self.edge_ipv4 = edge_ipv4
        self.edge_target = edge_target.lower().rstrip(".")
        self.timeout = timeout

    @property
    def verification_label(self) -> str:
        return f"_{self.product}-verify"

    def record_name(self, hostname: str) -> str:
        return f"{self.verification_label}.{hostname.lower().rstrip('.')}"

    def _get_resolver(self) -> dns.asyncresolver.Resolver:
        resolver = dns.asyncresolver.Resolver()
        resolver.timeout = self.timeout
        resolver.lifetime = self.timeout
        return resolver

    async def resolve_txt(self, name: str) -> List[str]:
        """
        Resolve all TXT values at ``name``.

        TXT records may be split into multiple strings; they are joined.
        Raises DomainError with DNSNotFound, DNSTimeout or ProviderError.
        """
        resolver = self._get_resolver()
        try:
            answers = await resolver.resolve(name, "TXT")
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            raise DomainError(
                ErrorKind.DNS_NOT_FOUND,
                f"DNS TXT record not found at {name}. "
                "Please allow up to 10 minutes for propagation.",
            )
        except dns.exception.Timeout:
            raise DomainError(
                ErrorKind.DNS_TIMEOUT,
                f"DNS lookup for {name} timed out after {self.timeout:g}s",
            )
        except dns.exception.DNSException as e:
            raise DomainError(ErrorKind.PROVIDER_ERROR, f"DNS lookup failed: {e}")

        values = []
        for rdata in answers:
            txt_value = "".join(
                s.decode() if isinstance(s, bytes) else s
                for s in rdata.strings
            )
            values.append(txt_value.strip('"'))
        return values

    async def verify_txt(self, hostname: str, token: str) -> VerificationResult:
        """Check that the verification token is published for ``hostname``."""
        name = self.record_name(hostname)

        try:
            values = await self.resolve_txt(name)
        except DomainError as e:
            logger.info(f"TXT verification failed for {hostname}: {e.message}")
            return VerificationResult(
                ok=False, message=e.message, error_kind=e.kind, record_name=name
            )

        if token in values:
            return VerificationResult(
                ok=True, message=f"TXT record verified at {name}", record_name=name, found=values
            )

        if not values:
            return VerificationResult(
                ok=False,
                message=(
                    f"DNS TXT record not found at {name}. "
                    "Please allow up to 10 minutes for propagation."
                ),
                error_kind=ErrorKind.DNS_NOT_FOUND,
                record_name=name,
            )

        return VerificationResult(
            ok=False,
            message=(
                f"TXT records found at {name} but none match the verification token. "
                f"Found: {values}"
            ),
            error_kind=ErrorKind.DNS_MISMATCH,
            record_name=name,
            found=values,
        )

    def dns_records(self, hostname: str, token: Optional[str]) -> dict:
        """Return the DNS records a tenant must create for ``hostname``."""
        hostname = hostname.lower().rstrip(".")
        kind = classify(hostname)

        if kind == HostnameKind.APEX:
            routing = {
                "type": "A",
                "name": "@",
                "value": self.edge_ipv4,
                "description": "Points your domain to the hosting load balancer",
            }
        else:
            routing = {
                "type": "CNAME",
                "name": subdomain_label(hostname),
                "value": self.edge_target,
                "description": f"Points your subdomain to {self.edge_target}",
            }

        verification = None
        if token:
            verification = {
                "type": "TXT",
                "name": self.verification_label,
                "value": token,
                "description": "Proves ownership of the domain",
            }

        return {
            "hostname": hostname,
            "is_apex": kind == HostnameKind.APEX,
            "routing": routing,
            "verification": verification,
        }
