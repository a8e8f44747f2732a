"""Configuration loading for the switchboard CLI.

Brief:
  Centralizes the steps between a YAML file on disk and the immutable
  ProxySettings used at runtime:
    - reading YAML config files
    - merging variables from config/env/CLI and expanding `${NAME}`
    - applying CLI flag overrides
    - pydantic validation (config_schema.validate_config)
    - building the RouteTable, mail zones and transfer ACL

Inputs:
  - YAML config paths and argparse values

Outputs:
  - ProxySettings instances
"""

from __future__ import annotations

import copy
import ipaddress
import logging
import os
import re
from types import MappingProxyType
from typing import Any, Dict, List, Optional, Tuple

import yaml

from ..dnssec.mx_signer import MailZone
from ..routing.route_table import (
    build_route_table,
    expand_route_templates,
    normalize_name,
    parse_backend,
)
from .config_schema import ProxyConfig, validate_config
from .settings import ProxySettings

logger = logging.getLogger(__name__)

_VAR_KEY_RE = re.compile(r"[A-Z_][A-Z0-9_]*")
_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def _is_var_key(key: str) -> bool:
    """Brief: True when *key* is an ALL_UPPERCASE variable name."""

    return bool(key) and bool(_VAR_KEY_RE.fullmatch(key))


def _parse_yaml_value(text: str) -> Any:
    """Brief: Parse a CLI/environment variable value as YAML.

    Inputs:
      - text: String containing a YAML scalar/list/dict.

    Outputs:
      - Any: Parsed value (the original string when it is not valid YAML).
    """

    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def parse_config_variables(
    cfg: Dict[str, Any],
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Merge config/environment/CLI variables into cfg['variables'].

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).
      - cli_vars: Optional list of CLI `KEY=YAML` assignments.
      - environ: Optional environment mapping (defaults to os.environ).

    Outputs:
      - dict: The merged variables mapping stored back onto cfg['variables'].

    Precedence:
      - CLI (-v/--var) overrides environment overrides config-file variables.

    Example:
      >>> cfg = {'variables': {'TTL': 100}}
      >>> parse_config_variables(cfg, cli_vars=['TTL=300'], environ={})['TTL']
      300
    """

    base = cfg.get("variables")
    if base is None:
        merged: Dict[str, Any] = {}
    elif isinstance(base, dict):
        merged = dict(base)
    else:
        raise ValueError("config.variables must be a mapping when present")

    for k in merged:
        if not isinstance(k, str) or not _is_var_key(k):
            raise ValueError(f"config.variables key {k!r} must match [A-Z_][A-Z0-9_]*")

    env = os.environ if environ is None else environ
    for k, v in env.items():
        if isinstance(k, str) and _is_var_key(k):
            merged[k] = _parse_yaml_value(str(v))

    for assignment in cli_vars or []:
        if "=" not in assignment:
            raise ValueError(f"Invalid -v/--var value (expected KEY=YAML), got: {assignment!r}")
        k, raw = assignment.split("=", 1)
        k = k.strip()
        if not _is_var_key(k):
            raise ValueError(f"Invalid variable name {k!r} (must match [A-Z_][A-Z0-9_]*)")
        merged[k] = _parse_yaml_value(raw)

    cfg["variables"] = merged
    return merged


def expand_variables(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Brief: Expand `${NAME}` references across the config values.

    Inputs:
      - cfg: Configuration mapping with an optional 'variables' mapping
        (mutated in-place; 'variables' is removed after expansion).

    Outputs:
      - dict: The same cfg mapping.

    Notes:
      - A string that is exactly `${NAME}` is replaced by the variable's value
        as-is (list, int, ...); otherwise each `${NAME}` is substituted as text.
      - Keys are never expanded. Unknown names and cycles raise ValueError.
    """

    variables = cfg.pop("variables", None) or {}
    resolved: Dict[str, Any] = {}

    def _resolve(name: str, stack: Tuple[str, ...]) -> Any:
        if name in resolved:
            return resolved[name]
        if name in stack:
            raise ValueError("config.variables contains a cycle: " + " -> ".join(stack + (name,)))
        if name not in variables:
            raise ValueError(f"unknown configuration variable ${{{name}}}")
        value = _expand(variables[name], stack + (name,))
        resolved[name] = value
        return value

    def _expand_string(text: str, stack: Tuple[str, ...]) -> Any:
        whole = _VAR_PATTERN.fullmatch(text)
        if whole:
            return copy.deepcopy(_resolve(whole.group(1), stack))

        def _repl(match: re.Match) -> str:
            v = _resolve(match.group(1), stack)
            if isinstance(v, bool):
                return "true" if v else "false"
            if v is None:
                return ""
            return str(v)

        return _VAR_PATTERN.sub(_repl, text)

    def _expand(obj: Any, stack: Tuple[str, ...]) -> Any:
        if isinstance(obj, str):
            return _expand_string(obj, stack)
        if isinstance(obj, list):
            return [_expand(item, stack) for item in obj]
        if isinstance(obj, dict):
            return {k: _expand(v, stack) for k, v in obj.items()}
        return obj

    for key in list(cfg.keys()):
        cfg[key] = _expand(cfg[key], ())
    return cfg


def load_config_file(config_path: str, *, cli_vars: Optional[List[str]] = None) -> Dict[str, Any]:
    """Brief: Read a YAML config file and expand its variables.

    Inputs:
      - config_path: Path to the YAML configuration file.
      - cli_vars: Optional list of CLI `KEY=YAML` assignments (from -v/--var).

    Outputs:
      - dict: Expanded configuration mapping, not yet validated.

    Raises:
      - OSError when the file cannot be read; ValueError on YAML or variable
        errors.
    """

    with open(config_path, "r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"{config_path}: invalid YAML: {exc}") from exc

    if not isinstance(cfg, dict):
        raise ValueError(f"{config_path}: configuration root must be a mapping")

    parse_config_variables(cfg, cli_vars=list(cli_vars or []))
    return expand_variables(cfg)


def parse_listen_address(text: str) -> Tuple[str, int]:
    """Brief: Parse a listen address such as ':53', '[::]:53' or '127.0.0.1:5353'.

    Inputs:
      - text: Address string; an empty host means every IPv4 and IPv6
        interface (a dual-stack "::" socket).

    Outputs:
      - (host, port) tuple.
    """

    raw = str(text or "").strip()
    if raw.startswith(":") and raw[1:].isdigit():
        return "::", int(raw[1:])
    addr = parse_backend(raw)
    if not 0 <= addr.port <= 65535:
        raise ValueError(f"invalid listen port in {text!r}")
    return addr.host, addr.port


def parse_route_flag(text: str) -> Dict[str, Any]:
    """Brief: Parse a `--route SUFFIX=BACKEND[,BACKEND...]` value.

    Inputs:
      - text: Flag value.

    Outputs:
      - dict with 'suffix' and 'backends' keys, ready for the routes list.
    """

    if "=" not in text:
        raise ValueError(f"invalid --route value {text!r} (expected SUFFIX=BACKEND[,BACKEND])")
    suffix, backends = text.split("=", 1)
    items = [b.strip() for b in backends.split(",") if b.strip()]
    if not suffix.strip() or not items:
        raise ValueError(f"invalid --route value {text!r}")
    return {"suffix": suffix.strip(), "backends": items}


def apply_cli_overrides(
    cfg: Dict[str, Any],
    *,
    address: Optional[str] = None,
    default: Optional[str] = None,
    routes: Optional[List[str]] = None,
    allow_transfer: Optional[List[str]] = None,
    key_dir: Optional[str] = None,
    log_level: Optional[str] = None,
) -> Dict[str, Any]:
    """Brief: Apply command-line flags on top of a configuration mapping.

    Inputs:
      - cfg: Expanded configuration mapping (mutated in-place).
      - address: '--address' listen address.
      - default: '--default' backend.
      - routes: '--route' values; each replaces the route with the same
        suffix or is appended.
      - allow_transfer: '--allow-transfer' values, comma separated; appended
        to transfer.allow.
      - key_dir: '--key-dir' override for mail.key_dir.
      - log_level: '--log-level' override for logging.level.

    Outputs:
      - dict: The same cfg mapping.
    """

    if address:
        host, port = parse_listen_address(address)
        listen = cfg.setdefault("listen", {})
        listen["host"] = host
        listen["port"] = port

    if default:
        cfg["default"] = default

    for flag in routes or []:
        new = parse_route_flag(flag)
        existing = cfg.setdefault("routes", [])
        key = normalize_name(new["suffix"])
        for i, r in enumerate(existing):
            if isinstance(r, dict) and normalize_name(str(r.get("suffix", ""))) == key:
                existing[i] = new
                break
        else:
            existing.append(new)

    for flag in allow_transfer or []:
        allow = cfg.setdefault("transfer", {}).setdefault("allow", [])
        allow.extend(a.strip() for a in str(flag).split(",") if a.strip())

    if key_dir:
        cfg.setdefault("mail", {})["key_dir"] = key_dir

    if log_level:
        cfg.setdefault("logging", {})["level"] = log_level

    return cfg


def build_settings(model: ProxyConfig) -> ProxySettings:
    """Brief: Turn a validated ProxyConfig into runtime ProxySettings.

    Inputs:
      - model: Validated configuration.

    Outputs:
      - ProxySettings with the RouteTable built (templates are expanded only
        when features.auto_routes is on).
    """

    explicit = [(r.suffix, r.backends) for r in model.routes]
    generated = []
    if model.features.auto_routes:
        generated = expand_route_templates(t.model_dump() for t in model.route_templates)
    elif model.route_templates:
        logger.info("Ignoring %d route template(s): auto_routes is disabled", len(model.route_templates))
    table = build_route_table(explicit, generated)

    zones = {}
    for z in model.mail.zones:
        zone = MailZone(
            name=z.zone,
            host=z.host or "",
            ipv4=tuple(z.ipv4),
            ipv6=tuple(z.ipv6),
            ttl=model.mail.ttl,
        )
        zones[zone.name] = zone

    return ProxySettings(
        route_table=table,
        default_backend=parse_backend(model.default) if model.default else None,
        timeout_ms=model.timeout_ms,
        backend_strategy=model.backend_strategy,
        transfer_relay=model.features.transfer_relay,
        mx_synthesis=model.features.mx_synthesis,
        auto_routes=model.features.auto_routes,
        transfer_allow=tuple(ipaddress.ip_network(a, strict=False) for a in model.transfer.allow),
        mail_zones=MappingProxyType(zones),
        key_dir=model.mail.key_dir,
        listen_host=model.listen.host,
        listen_port=model.listen.port,
        listen_udp=model.listen.udp,
        listen_tcp=model.listen.tcp,
        logging=MappingProxyType(model.logging.model_dump()),
    )


def load_settings(
    config_path: Optional[str] = None,
    *,
    cli_vars: Optional[List[str]] = None,
    **overrides: Any,
) -> ProxySettings:
    """Brief: Full pipeline from an optional YAML file plus flags to settings.

    Inputs:
      - config_path: YAML file path, or None for flag-only configuration.
      - cli_vars: '-v/--var' assignments.
      - overrides: Keyword arguments forwarded to apply_cli_overrides().

    Outputs:
      - ProxySettings.

    Raises:
      - OSError / ValueError on unreadable or invalid configuration.
    """

    cfg: Dict[str, Any] = {}
    if config_path:
        cfg = load_config_file(config_path, cli_vars=cli_vars)
    apply_cli_overrides(cfg, **overrides)
    model = validate_config(cfg, config_path=config_path)
    return build_settings(model)
