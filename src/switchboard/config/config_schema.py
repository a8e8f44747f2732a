"""Typed configuration models for switchboard.

Brief:
  The YAML configuration is validated with pydantic models after variable
  expansion. Address fields are checked here so that a bad backend, CIDR or
  glue address fails at startup rather than on the first query.

Inputs:
  - Plain dict parsed from YAML (variables already expanded).

Outputs:
  - ProxyConfig model instance; validate_config() raises ValueError carrying
    the pydantic error text.
"""

from __future__ import annotations

import ipaddress
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..routing.route_table import normalize_name, parse_backend


class ListenConfig(BaseModel):
    """Listener address and enabled transports."""

    model_config = ConfigDict(extra="forbid")

    host: str = Field(default="::")
    port: int = Field(default=53, ge=0, le=65535)
    udp: bool = True
    tcp: bool = True


class FeaturesConfig(BaseModel):
    """Feature toggles that select which request paths are active."""

    model_config = ConfigDict(extra="forbid")

    transfer_relay: bool = True
    mx_synthesis: bool = True
    auto_routes: bool = False


class RouteConfig(BaseModel):
    """Brief: One explicit suffix route.

    Inputs:
      - suffix: Domain suffix; '.' routes everything.
      - backends: Non-empty list of 'host:port' strings, in preference order.

    Outputs:
      - RouteConfig instance.
    """

    model_config = ConfigDict(extra="forbid")

    suffix: str
    backends: List[str] = Field(min_length=1)

    @field_validator("backends")
    @classmethod
    def _check_backends(cls, v: List[str]) -> List[str]:
        for b in v:
            parse_backend(b)
        return v


class RouteTemplateConfig(BaseModel):
    """Brief: A route family generated by substituting '{i}' over a range.

    Inputs:
      - suffix / backends: Templates containing '{i}'.
      - start / end: Inclusive counter range.

    Outputs:
      - RouteTemplateConfig instance.
    """

    model_config = ConfigDict(extra="forbid")

    suffix: str
    backends: List[str] = Field(min_length=1)
    start: int = Field(default=0, ge=0)
    end: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_range(self) -> "RouteTemplateConfig":
        if self.end < self.start:
            raise ValueError("route template end must be >= start")
        if "{i}" not in self.suffix:
            raise ValueError("route template suffix must contain '{i}'")
        return self


class TransferConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    allow: List[str] = Field(default_factory=list)

    @field_validator("allow")
    @classmethod
    def _check_allow(cls, v: List[str]) -> List[str]:
        for item in v:
            ipaddress.ip_network(str(item), strict=False)
        return v


class MailZoneConfig(BaseModel):
    """Static description of one zone answered by MX synthesis."""

    model_config = ConfigDict(extra="forbid")

    zone: str
    host: Optional[str] = None
    ipv4: List[str] = Field(default_factory=list)
    ipv6: List[str] = Field(default_factory=list)

    @field_validator("ipv4")
    @classmethod
    def _check_ipv4(cls, v: List[str]) -> List[str]:
        return [str(ipaddress.IPv4Address(a)) for a in v]

    @field_validator("ipv6")
    @classmethod
    def _check_ipv6(cls, v: List[str]) -> List[str]:
        return [str(ipaddress.IPv6Address(a)) for a in v]

    @model_validator(mode="after")
    def _host_inside_zone(self) -> "MailZoneConfig":
        # Glue is signed with the zone key, so the host must live in the zone.
        if self.host:
            zone = normalize_name(self.zone)
            host = normalize_name(self.host)
            if zone != "." and host != zone and not host.endswith("." + zone):
                raise ValueError(f"mail host {self.host!r} is outside zone {self.zone!r}")
        return self


class MailConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    key_dir: Optional[str] = None
    ttl: int = Field(default=3600, ge=0)
    zones: List[MailZoneConfig] = Field(default_factory=list)

    @field_validator("zones")
    @classmethod
    def _unique_zones(cls, v: List[MailZoneConfig]) -> List[MailZoneConfig]:
        seen = set()
        for z in v:
            name = normalize_name(z.zone)
            if name in seen:
                raise ValueError(f"duplicate mail zone {z.zone!r}")
            seen.add(name)
        return v


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: Literal["debug", "info", "warn", "warning", "error", "crit", "critical"] = "info"
    stderr: bool = True
    file: Optional[str] = None
    syslog: Union[bool, Dict[str, Any]] = False

    @field_validator("level", mode="before")
    @classmethod
    def _lower_level(cls, v: Any) -> Any:
        return str(v).lower() if v is not None else "info"


class ProxyConfig(BaseModel):
    """Brief: Root configuration model.

    Inputs:
      - Mapping shaped like the documented YAML file.

    Outputs:
      - Validated ProxyConfig; unknown top-level keys are rejected.
    """

    model_config = ConfigDict(extra="forbid")

    listen: ListenConfig = Field(default_factory=ListenConfig)
    default: Optional[str] = None
    timeout_ms: int = Field(default=2000, ge=1)
    backend_strategy: Literal["first", "failover"] = "first"
    features: FeaturesConfig = Field(default_factory=FeaturesConfig)
    routes: List[RouteConfig] = Field(default_factory=list)
    route_templates: List[RouteTemplateConfig] = Field(default_factory=list)
    transfer: TransferConfig = Field(default_factory=TransferConfig)
    mail: MailConfig = Field(default_factory=MailConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    variables: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("default")
    @classmethod
    def _check_default(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and str(v).strip():
            parse_backend(v)
            return v
        return None

    @field_validator("routes")
    @classmethod
    def _unique_routes(cls, v: List[RouteConfig]) -> List[RouteConfig]:
        seen = set()
        for r in v:
            suffix = normalize_name(r.suffix)
            if suffix in seen:
                raise ValueError(f"duplicate route suffix {r.suffix!r}")
            seen.add(suffix)
        return v


def validate_config(cfg: Dict[str, Any], *, config_path: Optional[str] = None) -> ProxyConfig:
    """Brief: Validate an expanded configuration mapping.

    Inputs:
      - cfg: Configuration mapping with variables already expanded.
      - config_path: Optional path used as a prefix in error messages.

    Outputs:
      - ProxyConfig instance.

    Raises:
      - ValueError carrying the pydantic error text.
    """

    try:
        return ProxyConfig.model_validate(cfg or {})
    except ValidationError as exc:
        where = f"{config_path}: " if config_path else ""
        raise ValueError(f"{where}invalid configuration: {exc}") from exc
