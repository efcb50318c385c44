"""
Exporter configuration.

Either a YAML file (--config-file) or command line flags describe the
namespaces to follow. When both are given the file wins and the
namespace-related flags are ignored.

Example file:

    listen:
      port: 4040
    namespaces:
      - name: nginx
        format: '$remote_addr - $remote_user [$time_local] "$request" $status $body_bytes_sent'
        source_files: [/var/log/nginx/access.log]
        labels: {app: magicapp}
        relabel_configs:
          - target_label: request_uri
            from: request
            split: 2
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from accesslog_exporter.errors import ConfigError, ExperimentalFeatureError
from accesslog_exporter.line_format import DEFAULT_FORMAT

log = logging.getLogger(__name__)

LABEL_NAME_PATTERN = r"^[a-zA-Z_][a-zA-Z0-9_]*$"
_LABEL_NAME_RE = re.compile(LABEL_NAME_PATTERN)


# ----------------------------
# Models
# ----------------------------
class RelabelMatch(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    regexp: str
    replacement: str = ""

    @field_validator("regexp")
    @classmethod
    def _compiles(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid regexp {v!r}: {e}") from e
        return v


class RelabelConfig(BaseModel):
    """One source field -> one label mapping."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    target_label: str = Field(pattern=LABEL_NAME_PATTERN)
    source_value: str = Field(alias="from")
    whitelist: Tuple[str, ...] = ()
    matches: Tuple[RelabelMatch, ...] = ()
    split: int = Field(default=0, ge=0)   # 1-based, 0 = no split
    separator: str = " "
    default: Optional[str] = None

    @field_validator("separator")
    @classmethod
    def _separator_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("separator must not be empty")
        return v


class NamespaceConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(pattern=LABEL_NAME_PATTERN)
    format: str = DEFAULT_FORMAT
    source_files: Tuple[str, ...] = Field(min_length=1)
    labels: Dict[str, str] = Field(default_factory=dict)
    relabel_configs: Tuple[RelabelConfig, ...] = ()
    from_start: bool = False
    # experimental
    histogram_buckets: Optional[Tuple[float, ...]] = None
    on_source_error: Literal["exit", "stop_namespace"] = "exit"

    @field_validator("labels")
    @classmethod
    def _label_names(cls, v: Dict[str, str]) -> Dict[str, str]:
        for name in v:
            if not _LABEL_NAME_RE.match(name):
                raise ValueError(f"invalid label name {name!r}")
        return v

    @field_validator("histogram_buckets")
    @classmethod
    def _buckets_sorted(cls, v: Optional[Tuple[float, ...]]) -> Optional[Tuple[float, ...]]:
        if v is not None and list(v) != sorted(v):
            raise ValueError("histogram_buckets must be in increasing order")
        return v

    def stability_warnings(self) -> List[str]:
        out = []
        if self.histogram_buckets is not None:
            out.append(f"namespaces[{self.name}].histogram_buckets")
        if self.on_source_error != "exit":
            out.append(f"namespaces[{self.name}].on_source_error")
        return out


class ListenConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    address: str = "0.0.0.0"
    port: int = Field(default=4040, ge=0, le=65535)
    metrics_endpoint: str = "/metrics"


class ConsulServiceConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = "accesslog-exporter"
    name: str = "accesslog-exporter"
    address: str = ""
    tags: Tuple[str, ...] = ()


class ConsulConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    enable: bool = False
    address: str = "localhost:8500"
    datacenter: str = ""
    scheme: str = "http"
    token: str = ""
    service: ConsulServiceConfig = Field(default_factory=ConsulServiceConfig)


class Config(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    listen: ListenConfig = Field(default_factory=ListenConfig)
    consul: ConsulConfig = Field(default_factory=ConsulConfig)
    namespaces: Tuple[NamespaceConfig, ...] = Field(min_length=1)
    enable_experimental: bool = False

    @model_validator(mode="after")
    def _unique_namespaces(self) -> "Config":
        names = [ns.name for ns in self.namespaces]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"duplicate namespace names: {', '.join(dupes)}")
        return self

    def stability_warnings(self) -> List[str]:
        out: List[str] = []
        for ns in self.namespaces:
            out.extend(ns.stability_warnings())
        return out


# ----------------------------
# Flags
# ----------------------------
@dataclass
class StartupFlags:
    listen_port: int = int(os.getenv("EXPORTER_LISTEN_PORT", "4040"))
    listen_address: str = os.getenv("EXPORTER_LISTEN_ADDRESS", "0.0.0.0")
    format: str = os.getenv("EXPORTER_FORMAT", DEFAULT_FORMAT)
    namespace: str = os.getenv("EXPORTER_NAMESPACE", "nginx")
    config_file: str = os.getenv("EXPORTER_CONFIG_FILE", "")
    enable_experimental: bool = os.getenv("EXPORTER_ENABLE_EXPERIMENTAL", "0") == "1"
    from_start: bool = os.getenv("EXPORTER_FROM_START", "0") == "1"
    log_level: str = os.getenv("EXPORTER_LOG_LEVEL", "info")
    filenames: List[str] = field(default_factory=list)


# ----------------------------
# Loading
# ----------------------------
def _validate(data: Dict[str, Any], source: str) -> Config:
    try:
        return Config.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid configuration in {source}:\n{e}") from e


def load_config_from_file(path: str) -> Config:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"cannot read configuration file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"cannot parse configuration file {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"configuration file {path} must contain a mapping")
    return _validate(data, path)


def load_config_from_flags(opts: StartupFlags) -> Config:
    data = {
        "listen": {"address": opts.listen_address, "port": opts.listen_port},
        "enable_experimental": opts.enable_experimental,
        "namespaces": [{
            "name": opts.namespace,
            "format": opts.format,
            "source_files": list(opts.filenames),
            "from_start": opts.from_start,
        }],
    }
    return _validate(data, "command line flags")


def load_config(opts: StartupFlags) -> Config:
    if opts.config_file:
        log.info("loading configuration file %s", opts.config_file)
        cfg = load_config_from_file(opts.config_file)
        if opts.enable_experimental and not cfg.enable_experimental:
            cfg = cfg.model_copy(update={"enable_experimental": True})
        return cfg
    return load_config_from_flags(opts)


def check_stability(cfg: Config) -> None:
    """Refuses configurations that use experimental options without opt-in."""
    warnings = cfg.stability_warnings()
    if warnings and not cfg.enable_experimental:
        raise ExperimentalFeatureError(warnings[0])
