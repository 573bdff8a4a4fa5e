"""Pydantic models for peer discovery."""

import time
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from lansend.config import FALLBACK_PROTOCOL_VERSION, HTTP_PORT


class WireModel(BaseModel):
    """Base for JSON structures exchanged with peers (camelCase on the wire)."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

    def to_json_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")


class DeviceType(str, Enum):
    MOBILE = "mobile"
    DESKTOP = "desktop"
    WEB = "web"
    HEADLESS = "headless"
    SERVER = "server"


class ProtocolType(str, Enum):
    HTTP = "http"
    HTTPS = "https"


class DeviceInfo(WireModel):
    """A device's identity and transfer endpoint, as it announces itself."""
    alias: str
    version: str = FALLBACK_PROTOCOL_VERSION
    device_model: str | None = None
    device_type: DeviceType = DeviceType.DESKTOP
    fingerprint: str = Field(min_length=1)
    port: int | None = Field(default=None, ge=1, le=65535)
    protocol: ProtocolType = ProtocolType.HTTP
    download: bool = False

    @model_validator(mode="before")
    @classmethod
    def _fill_nulls(cls, data):
        # Older peers send explicit nulls for fields they do not know
        if isinstance(data, dict):
            data = {k: v for k, v in data.items() if v is not None}
        return data

    @property
    def https(self) -> bool:
        return self.protocol == ProtocolType.HTTPS


class Announcement(DeviceInfo):
    """The JSON payload sent over multicast, or unicast as a reply."""
    announce: bool = False

    @model_validator(mode="before")
    @classmethod
    def _legacy_flag(cls, data):
        if isinstance(data, dict) and "announce" not in data and data.get("announcement") is not None:
            data = {**data, "announce": data["announcement"]}
        return data

    @classmethod
    def from_device(cls, device: DeviceInfo, announce: bool) -> "Announcement":
        return cls(**device.model_dump(), announce=announce)

    def device(self) -> DeviceInfo:
        return DeviceInfo(**self.model_dump(exclude={"announce"}))


class RegistryEntry(BaseModel):
    """A discovered device on the LAN."""
    device: DeviceInfo
    ip_address: str
    last_seen: float = Field(default_factory=time.time)

    @property
    def fingerprint(self) -> str:
        return self.device.fingerprint

    @property
    def port(self) -> int:
        # Announcements without a port (v1) are answered on the default
        return self.device.port or HTTP_PORT

    @property
    def base_url(self) -> str:
        scheme = "https" if self.device.https else "http"
        return f"{scheme}://{self.ip_address}:{self.port}"

    def is_live(self, now: float, window: float) -> bool:
        return now - self.last_seen <= window
