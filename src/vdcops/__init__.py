"""vdcops - request engine and server reconciliation for a virtual datacenter API."""

__version__ = "0.1.0"

from .client import Client, RelationKind, ResourceKind  # noqa: E402
from .config import Config, ConfigurationError  # noqa: E402
from .context import RequestContext  # noqa: E402
from .errors import (  # noqa: E402
    AsyncRequestFailedError,
    CombinedError,
    DecodeError,
    ErrorKind,
    MaxRetriesExceededError,
    MutationAppliedError,
    OperationCancelledError,
    OperationTimeoutError,
    ReconcileError,
    RequestError,
    TransportError,
    ValidationError,
    VdcError,
    remove_error_with_codes,
    skip_http_codes,
)
from .models import DesiredServerConfig, FirewallRule, FirewallRuleSet, RequestHandle  # noqa: E402
from .power import PowerOrchestrator  # noqa: E402
from .reconciler import ReconcileResult, ServerChange, ServerRelationReconciler  # noqa: E402

__all__ = [
    "AsyncRequestFailedError",
    "Client",
    "CombinedError",
    "Config",
    "ConfigurationError",
    "DecodeError",
    "DesiredServerConfig",
    "ErrorKind",
    "FirewallRule",
    "FirewallRuleSet",
    "MaxRetriesExceededError",
    "MutationAppliedError",
    "OperationCancelledError",
    "OperationTimeoutError",
    "PowerOrchestrator",
    "ReconcileError",
    "ReconcileResult",
    "RelationKind",
    "RequestContext",
    "RequestError",
    "RequestHandle",
    "ResourceKind",
    "ServerChange",
    "ServerRelationReconciler",
    "TransportError",
    "ValidationError",
    "VdcError",
    "__version__",
    "remove_error_with_codes",
    "skip_http_codes",
]
