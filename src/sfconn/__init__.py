"""Session handling and REST/SOAP request engine for Salesforce orgs."""

from importlib.metadata import PackageNotFoundError, version

from .client import ApiClient, OrgInfo
from .config import SFConfig
from .exceptions import (
    AbortedError,
    ErrorDetail,
    ForbiddenError,
    MissingCredentialsError,
    MissingSessionError,
    NetworkError,
    ProtocolError,
    SalesforceApiError,
    UnauthorizedError,
    XmlDecodeError,
)
from .session import Credential, Session, SessionProvider, normalize_host
from .transport import AbortHandle, ProtocolFamily, ProtocolTransport, RequestSpec, SessionNotice
from .xml_codec import UNSET

try:
    __version__ = version("sfconn")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "unknown"

__all__ = [
    "AbortHandle",
    "AbortedError",
    "ApiClient",
    "Credential",
    "ErrorDetail",
    "ForbiddenError",
    "MissingCredentialsError",
    "MissingSessionError",
    "NetworkError",
    "OrgInfo",
    "ProtocolError",
    "ProtocolFamily",
    "ProtocolTransport",
    "RequestSpec",
    "SFConfig",
    "SalesforceApiError",
    "Session",
    "SessionNotice",
    "SessionProvider",
    "UNSET",
    "UnauthorizedError",
    "XmlDecodeError",
    "normalize_host",
]
