"""Custom domain lifecycle management."""

from .classifier import HostnameKind, classify
from .errors import DomainError, ErrorKind, OperationResult
from .manager import DomainManager
from .models import DomainRecord, DomainStatus
from .provider import NetlifyProvider, SimulatedProvider
from .reconciler import DomainReconciler
from .store import DomainRecordStore
from .verification import DomainVerifier

__all__ = [
    "DomainError",
    "DomainManager",
    "DomainRecord",
    "DomainRecordStore",
    "DomainReconciler",
    "DomainStatus",
    "DomainVerifier",
    "ErrorKind",
    "HostnameKind",
    "NetlifyProvider",
    "OperationResult",
    "SimulatedProvider",
    "classify",
]
