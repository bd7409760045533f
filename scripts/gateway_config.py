#!/usr/bin/env python3
"""网关配置

YAML 配置文件 → pydantic 模型 → 不可变的 Policy。

配置文件路径优先级：--config > TPROXY_GATEWAY_CONFIG > /etc/tproxy-gateway/gateway.yaml

示例：
    mode: chnroute
    ipv6: true
    proxy:
      start_cmd: "systemctl start sing-box"
      stop_cmd: "systemctl stop sing-box"
      servers: ["vps.example.com"]
    iptables:
      strategy: tproxy
      drop_quic: tcponly
"""

import ipaddress
import logging
import os
from pathlib import Path
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from dns_manager import ResolverOptions
from gateway_errors import ConfigurationError
from gateway_policy import Family, Mode, Policy, resolve_policy
from list_parser import resolve_upstream_host

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/etc/tproxy-gateway/gateway.yaml"
DEFAULT_BASE_DIR = os.environ.get("TPROXY_GATEWAY_DIR", "/etc/tproxy-gateway")
DEFAULT_RUN_DIR = os.environ.get("TPROXY_GATEWAY_RUN_DIR", "/run/tproxy-gateway")

APNIC_URL = "https://ftp.apnic.net/stats/apnic/delegated-apnic-latest"
GFWLIST_URL = "https://raw.githubusercontent.com/gfwlist/gfwlist/master/gfwlist.txt"
CHNLIST_URL = "https://raw.githubusercontent.com/felixonmars/dnsmasq-china-list/master/accelerated-domains.china.conf"


def _ip_version(value: str) -> Optional[int]:
    try:
        return ipaddress.ip_address(value).version
    except ValueError:
        return None


class ProxySettings(BaseModel):
    """代理进程"""
    group: str = "proxy"
    tcp_port: int = Field(60080, ge=1, le=65535)
    udp_port: int = Field(60080, ge=1, le=65535)
    start_cmd: str = ""
    stop_cmd: str = ""
    servers: List[str] = Field(default_factory=list, description="代理服务器地址，加入 allow 集合直连")


class DnsSettings(BaseModel):
    """DNS 进程"""
    group: str = "proxy_dns"
    port: int = Field(60053, ge=1, le=65535)
    backend: Literal["chinadns-ng", "command"] = "chinadns-ng"
    binary: str = "chinadns-ng"
    bind_addr: str = ""
    direct_v4: List[str] = Field(default_factory=lambda: ["223.5.5.5#53"])
    direct_v6: List[str] = Field(default_factory=lambda: ["240C::6666#53"])
    remote_v4: List[str] = Field(default_factory=lambda: ["8.8.8.8#53"])
    remote_v6: List[str] = Field(default_factory=lambda: ["2001:4860:4860::8888#53"])
    remote_tcp: bool = True
    direct_in_allow: bool = True
    remote_in_deny: bool = True
    cache_size: int = Field(4096, ge=0)
    cache_stale: int = Field(0, ge=0)
    extra_args: List[str] = Field(default_factory=list)
    log_file: Optional[str] = None
    start_cmd: str = ""
    stop_cmd: str = ""
    flush_cmd: str = ""
    reddns_onstop: bool = True
    failsafe_v4: str = ""
    failsafe_v6: str = ""

    @field_validator("failsafe_v4", "failsafe_v6")
    @classmethod
    def check_failsafe(cls, value, info):
        value = value.strip()
        if value:
            expected = 4 if info.field_name == "failsafe_v4" else 6
            if _ip_version(value) != expected:
                raise ValueError(f"must be an IPv{expected} address, got '{value}'")
        return value


class IptablesSettings(BaseModel):
    """规则与策略路由"""
    strategy: str = "tproxy"
    udp: bool = True
    drop_quic: str = "tcponly"
    proxy_other: bool = True
    dst_ports: List[str] = Field(default_factory=list)
    snat_v4: bool = False
    snat_v6: bool = False
    mark: int = 0x2333
    route_table: int = Field(233, ge=1, le=0xFFFFFFFF)

    @field_validator("mark", mode="before")
    @classmethod
    def parse_mark(cls, value):
        if isinstance(value, str):
            return int(value, 0)
        return value

    @field_validator("dst_ports", mode="before")
    @classmethod
    def split_ports(cls, value):
        if value is None:
            return []
        if isinstance(value, (int, str)):
            value = str(value).split(",")
        return [str(v).strip() for v in value if str(v).strip()]


class FileSettings(BaseModel):
    """列表文件与运行时文件"""
    base_dir: str = DEFAULT_BASE_DIR
    run_dir: str = DEFAULT_RUN_DIR
    ignlist_ext: str = "ignlist.ext"
    gfwlist_ext: str = "gfwlist.ext"
    gfwlist: str = "gfwlist.txt"
    chnlist: str = "chnlist.txt"
    chnroute: str = "chnroute.txt"
    chnroute6: str = "chnroute6.txt"

    def path(self, name: str) -> Path:
        """相对路径基于 base_dir"""
        p = Path(name)
        return p if p.is_absolute() else Path(self.base_dir) / p

    @property
    def state_path(self) -> Path:
        return Path(self.run_dir) / "gateway.state"

    @property
    def lock_path(self) -> Path:
        return Path(self.run_dir) / "gateway.lock"

    @property
    def gfw_domains_path(self) -> Path:
        """gfwlist.ext 中的域名，启动时生成给 DNS 进程"""
        return Path(self.run_dir) / "gfwlist_ext.domains"

    @property
    def chn_domains_path(self) -> Path:
        return Path(self.run_dir) / "ignlist_ext.domains"


class HookSettings(BaseModel):
    pre_start: str = ""
    post_start: str = ""
    pre_stop: str = ""
    post_stop: str = ""
    record_cmd: str = ""


class UpdateSettings(BaseModel):
    """列表更新来源"""
    chnroute_url: str = APNIC_URL
    gfwlist_url: str = GFWLIST_URL
    chnlist_url: str = CHNLIST_URL
    timeout: int = Field(60, ge=1)


class GatewaySettings(BaseModel):
    mode: str = "chnroute"
    ipv4: bool = True
    ipv6: bool = False
    proxy: ProxySettings = Field(default_factory=ProxySettings)
    dns: DnsSettings = Field(default_factory=DnsSettings)
    iptables: IptablesSettings = Field(default_factory=IptablesSettings)
    files: FileSettings = Field(default_factory=FileSettings)
    hooks: HookSettings = Field(default_factory=HookSettings)
    update: UpdateSettings = Field(default_factory=UpdateSettings)

    def to_policy(self) -> Policy:
        """生成本次运行的 Policy

        Raises:
            ConfigurationError: 任一字段无效
        """
        ipt = self.iptables
        families = {Family.IPV4: self.ipv4, Family.IPV6: self.ipv6}
        snat = frozenset(
            f for f, enabled in ((Family.IPV4, ipt.snat_v4), (Family.IPV6, ipt.snat_v6))
            if enabled and families[f]
        )
        return resolve_policy(
            self.mode,
            ipv4=self.ipv4,
            ipv6=self.ipv6,
            strategy=ipt.strategy,
            udp=ipt.udp,
            drop_quic=ipt.drop_quic,
            proxy_other=ipt.proxy_other,
            proxy_group=self.proxy.group,
            dns_group=self.dns.group,
            proxy_tcp_port=self.proxy.tcp_port,
            proxy_udp_port=self.proxy.udp_port,
            dns_port=self.dns.port,
            dst_ports=tuple(ipt.dst_ports),
            mark=ipt.mark,
            route_table=ipt.route_table,
            snat_families=snat,
            reddns_onstop=self.dns.reddns_onstop,
            failsafe_dns=self.failsafe_dns(),
        )

    def failsafe_dns(self) -> Dict[Family, str]:
        """停止后 DNS 兜底服务器，默认取第一个直连 DNS"""
        servers = {}
        for family, explicit, direct in (
            (Family.IPV4, self.dns.failsafe_v4, self.dns.direct_v4),
            (Family.IPV6, self.dns.failsafe_v6, self.dns.direct_v6),
        ):
            if explicit:
                servers[family] = explicit
                continue
            host = resolve_upstream_host(direct[0]) if direct else ""
            if not host:
                continue
            # DNAT 目标只能是地址，启动阶段的域名解析结果在停止后不一定可用
            if _ip_version(host) != (4 if family is Family.IPV4 else 6):
                logger.warning(
                    f"Fail-safe DNS for {family.value} skipped: upstream '{host}' is not an IP address, "
                    f"set dns.failsafe_{family.value[-2:]} explicitly"
                )
                continue
            servers[family] = host
        return servers

    def direct_upstreams(self) -> List[str]:
        if not self.dns.direct_in_allow:
            return []
        return self.dns.direct_v4 + (self.dns.direct_v6 if self.ipv6 else [])

    def remote_upstreams(self) -> List[str]:
        if not self.dns.remote_in_deny:
            return []
        return self.dns.remote_v4 + (self.dns.remote_v6 if self.ipv6 else [])

    def required_files(self) -> List[Path]:
        """当前模式必须存在的列表文件"""
        mode = Mode.parse(self.mode)
        files = self.files
        if mode is Mode.GLOBAL:
            return []
        elif mode is Mode.GFWLIST:
            return [files.path(files.gfwlist)]
        elif mode is Mode.CHNROUTE:
            required = [files.path(files.gfwlist), files.path(files.chnlist), files.path(files.chnroute)]
            if self.ipv6:
                required.append(files.path(files.chnroute6))
            return required
        else:
            raise ConfigurationError(f"unhandled mode: {mode}")

    def required_commands(self) -> List[str]:
        commands = ["ipset", "ip", "sysctl", "pgrep"]
        if self.ipv4:
            commands.insert(0, "iptables")
        if self.ipv6:
            commands.insert(0, "ip6tables")
        if self.dns.backend == "chinadns-ng":
            commands.append(self.dns.binary)
        return commands

    def resolver_options(self) -> ResolverOptions:
        files = self.files
        gfwlist = [str(files.path(files.gfwlist)), str(files.gfw_domains_path)]
        chnlist = [str(files.chn_domains_path)]
        chnlist_path = files.path(files.chnlist)
        if Mode.parse(self.mode) is not Mode.GLOBAL or chnlist_path.exists():
            chnlist.insert(0, str(chnlist_path))
        return ResolverOptions(
            binary=self.dns.binary,
            bind_addr=self.dns.bind_addr,
            direct_v4=list(self.dns.direct_v4),
            direct_v6=list(self.dns.direct_v6),
            remote_v4=list(self.dns.remote_v4),
            remote_v6=list(self.dns.remote_v6),
            remote_tcp=self.dns.remote_tcp,
            cache_size=self.dns.cache_size,
            cache_stale=self.dns.cache_stale,
            gfwlist_files=gfwlist,
            chnlist_files=chnlist,
            extra_args=list(self.dns.extra_args),
            log_file=self.dns.log_file,
        )


def config_path(explicit: Optional[str] = None) -> Path:
    return Path(explicit or os.environ.get("TPROXY_GATEWAY_CONFIG", DEFAULT_CONFIG_PATH))


def load_settings(path: Optional[str] = None) -> GatewaySettings:
    """读取并校验配置文件

    Raises:
        ConfigurationError: 文件不存在、YAML 语法错误或字段无效
    """
    config_file = config_path(path)
    try:
        data = yaml.safe_load(config_file.read_text()) or {}
    except FileNotFoundError:
        raise ConfigurationError(f"config file not found: {config_file}") from None
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid YAML in {config_file}: {e}") from None

    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_file}: top level must be a mapping")
    return parse_settings(data)


def parse_settings(data: dict) -> GatewaySettings:
    try:
        return GatewaySettings.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ConfigurationError(f"invalid setting '{location}': {first.get('msg')}") from None
