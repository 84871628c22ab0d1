"""
Apex vs subdomain classification.

The result decides which routing record a tenant has to create: an ``A``
record at the zone apex, or a ``CNAME`` for anything below it.
"""

from enum import Enum

# Public suffixes with more than one label. Order matters: the first match wins.
MULTI_LABEL_SUFFIXES = (
    "co.uk", "org.uk", "ac.uk", "gov.uk",
    "com.au", "net.au", "org.au",
    "co.nz", "org.nz",
    "co.jp", "ne.jp",
    "com.br", "org.br",
    "co.in", "net.in",
    "com.cn", "net.cn",
    "co.za", "org.za",
    "com.mx", "org.mx",
    "co.kr", "or.kr",
    "com.sg", "net.sg",
    "com.hk", "net.hk",
    "co.th", "or.th",
    "com.my", "net.my",
    "co.id", "or.id",
    "com.tw", "net.tw",
    "com.ph", "net.ph",
    "com.vn", "net.vn",
    "co.il", "org.il",
    "com.pl", "net.pl",
    "com.ar", "net.ar",
    "com.co", "net.co",
    "com.pe", "net.pe",
)


class HostnameKind(str, Enum):
    APEX = "apex"
    SUBDOMAIN = "subdomain"


def _normalize(hostname: str) -> str:
    return hostname.strip().lower().rstrip(".")


def _split_suffix(hostname: str):
    """Return (residual, suffix) for the first matching multi-label suffix."""
    for suffix in MULTI_LABEL_SUFFIXES:
        if hostname.endswith("." + suffix):
            return hostname[: -(len(suffix) + 1)], suffix
    return None, None


def classify(hostname: str) -> HostnameKind:
    """Classify a hostname as an apex domain or a subdomain."""
    hostname = _normalize(hostname)

    residual, _ = _split_suffix(hostname)
    if residual is not None:
        return HostnameKind.SUBDOMAIN if "." in residual else HostnameKind.APEX

    if len(hostname.split(".")) == 2:
        return HostnameKind.APEX
    return HostnameKind.SUBDOMAIN


def is_apex(hostname: str) -> bool:
    return classify(hostname) == HostnameKind.APEX


def subdomain_label(hostname: str) -> str:
    """Leftmost label of the hostname, used as the CNAME record name."""
    return _normalize(hostname).split(".")[0]


def registrable_domain(hostname: str) -> str:
    """
    The apex a hostname belongs to.

    ``shop.example.co.uk`` -> ``example.co.uk``, ``app.example.com`` -> ``example.com``.
    """
    hostname = _normalize(hostname)
    residual, suffix = _split_suffix(hostname)
    if residual is not None:
        return f"{residual.split('.')[-1]}.{suffix}"
    return ".".join(hostname.split(".")[-2:])
