from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

METADATA = "Metadata"


@dataclass(frozen=True)
class WsdlDescriptor:
    """Where a SOAP service lives and which namespaces its messages use."""

    api_name: str
    service_port_address: str
    target_namespaces: str

    @property
    def is_metadata(self) -> bool:
        return self.api_name == METADATA


# api name -> (service letter, target namespace attributes)
_SERVICES: Dict[str, Tuple[str, str]] = {
    "Enterprise": (
        "c",
        ' xmlns="urn:enterprise.soap.sforce.com" xmlns:sf="urn:sobject.enterprise.soap.sforce.com"',
    ),
    "Partner": (
        "u",
        ' xmlns="urn:partner.soap.sforce.com" xmlns:sf="urn:sobject.partner.soap.sforce.com"',
    ),
    "Apex": ("s", ' xmlns="http://soap.sforce.com/2006/08/apex"'),
    METADATA: ("m", ' xmlns="http://soap.sforce.com/2006/04/metadata"'),
    "Tooling": (
        "T",
        ' xmlns="urn:tooling.soap.sforce.com" xmlns:sf="urn:sobject.tooling.soap.sforce.com"'
        ' xmlns:mns="urn:metadata.tooling.soap.sforce.com"',
    ),
}

SERVICE_NAMES = tuple(_SERVICES)


def wsdl(api_version: str, api_name: Optional[str] = None):
    """Descriptor for ``api_name``, or all descriptors keyed by name when omitted."""
    descriptors = {
        name: WsdlDescriptor(
            api_name=name,
            service_port_address=f"/services/Soap/{letter}/{api_version}",
            target_namespaces=namespaces,
        )
        for name, (letter, namespaces) in _SERVICES.items()
    }
    if api_name is None:
        return descriptors
    try:
        return descriptors[api_name]
    except KeyError:
        raise ValueError(
            f"Unknown SOAP service {api_name!r}; expected one of {', '.join(SERVICE_NAMES)}"
        ) from None
