"""Device identity: who a request claims to come from.

Device ids are opaque tokens chosen by the client (``device_<random>``) and are
not verified. History code only ever receives ids that went through a
``DeviceIdentity``, so a verified scheme can replace this one without touching it.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Protocol

from backend.exceptions import ValidationFailure

if TYPE_CHECKING:
    from starlette.requests import Request

DEVICE_ID_HEADER = "Device-Id"

_DEVICE_ID_RE = re.compile(r"^[A-Za-z0-9_.:-]{1,128}$")


class DeviceIdentity(Protocol):
    def normalize(self, raw: str | None) -> str | None:
        """Validate a device id from a path or body value. ``None``/blank -> anonymous."""
        ...

    def require(self, raw: str | None) -> str: ...

    def from_request(self, request: Request) -> str | None:
        """Extract the device id a request was sent on behalf of."""
        ...


class ClientAssignedDeviceIdentity:
    """Trusts the self-assigned ``Device-Id`` header after a syntax check."""

    def __init__(self, header_name: str = DEVICE_ID_HEADER) -> None:
        self.header_name = header_name

    def normalize(self, raw: str | None) -> str | None:
        if raw is None:
            return None
        value = raw.strip()
        if not value:
            return None
        if not _DEVICE_ID_RE.match(value):
            raise ValidationFailure("Invalid device id")
        return value

    def from_request(self, request: Request) -> str | None:
        return self.normalize(request.headers.get(self.header_name))

    def require(self, raw: str | None) -> str:
        """Like ``normalize`` but an id is mandatory."""
        device_id = self.normalize(raw)
        if device_id is None:
            raise ValidationFailure("Device id is required")
        return device_id
