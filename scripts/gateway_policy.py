#!/usr/bin/env python3
"""流量分类策略模型

纯数据：解析后的模式、启用的协议族、转发方式、进程组、端口。
不产生任何副作用，被地址集合构建、规则编译、生命周期管理共同使用。

三种模式：
    global   - 不在 allow 集合中的地址走代理
    gfwlist  - 在 deny 集合中的地址走代理
    chnroute - 在 allow 且不在 deny 中的地址直连，其余走代理（deny 优先）
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Tuple

from gateway_errors import ConfigurationError

# 超级用户组：按它匹配 owner 会把几乎所有本机流量排除在外
SUPERUSER_GROUPS = frozenset({"root", "0"})

# iptables multiport 最多 15 个端口（范围算 2 个）
MULTIPORT_MAX = 15

DEFAULT_MARK = 0x2333
DEFAULT_ROUTE_TABLE = 233

# 内核保留的路由表：unspec、default、main、local
RESERVED_ROUTE_TABLES = frozenset({0, 253, 254, 255})

_PORT_ITEM = re.compile(r"^(\d{1,5})(?::(\d{1,5}))?$")


class Mode(Enum):
    GLOBAL = "global"
    GFWLIST = "gfwlist"
    CHNROUTE = "chnroute"

    @classmethod
    def parse(cls, value: str) -> "Mode":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigurationError(
                f"invalid mode '{value}', expected one of: {', '.join(m.value for m in cls)}"
            ) from None


class Family(Enum):
    IPV4 = "ipv4"
    IPV6 = "ipv6"

    @property
    def iptables(self) -> str:
        return "iptables" if self is Family.IPV4 else "ip6tables"

    @property
    def ip_flag(self) -> str:
        return "-4" if self is Family.IPV4 else "-6"

    @property
    def ipset_family(self) -> str:
        return "inet" if self is Family.IPV4 else "inet6"

    @property
    def loopback(self) -> str:
        return "127.0.0.1" if self is Family.IPV4 else "::1"

    @property
    def suffix(self) -> str:
        return "4" if self is Family.IPV4 else "6"

    def endpoint(self, address: str, port: int) -> str:
        """DNAT --to-destination 格式的 地址:端口"""
        if self is Family.IPV6:
            return f"[{address}]:{port}"
        return f"{address}:{port}"


class ForwardingStrategy(Enum):
    TPROXY = "tproxy"
    REDIRECT = "redirect"

    @classmethod
    def parse(cls, value: str) -> "ForwardingStrategy":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigurationError(
                f"invalid forwarding strategy '{value}', expected tproxy or redirect"
            ) from None


class DropQuicPolicy(Enum):
    NEVER = "never"
    TCP_ONLY = "tcponly"
    ALWAYS = "always"

    @classmethod
    def parse(cls, value: str) -> "DropQuicPolicy":
        normalized = str(value).strip().lower().replace("_", "").replace("-", "")
        for policy in cls:
            if policy.value == normalized:
                return policy
        if normalized in ("false", "no", "none"):
            return cls.NEVER
        raise ConfigurationError(
            f"invalid drop_quic policy '{value}', expected never, tcponly or always"
        )


@dataclass(frozen=True)
class AddressSetNames:
    """四个地址集合的名称"""
    allow4: str = "sstp_allow4"
    allow6: str = "sstp_allow6"
    deny4: str = "sstp_deny4"
    deny6: str = "sstp_deny6"

    def allow(self, family: Family) -> str:
        return self.allow4 if family is Family.IPV4 else self.allow6

    def deny(self, family: Family) -> str:
        return self.deny4 if family is Family.IPV4 else self.deny6

    def all(self) -> Tuple[str, ...]:
        return (self.allow4, self.allow6, self.deny4, self.deny6)


@dataclass(frozen=True)
class Policy:
    """一次运行内不可变的策略"""
    mode: Mode
    families: FrozenSet[Family]
    strategy: ForwardingStrategy = ForwardingStrategy.TPROXY
    udp_enabled: bool = True
    drop_quic: DropQuicPolicy = DropQuicPolicy.TCP_ONLY
    proxy_other: bool = True
    proxy_group: str = "proxy"
    dns_group: str = "proxy_dns"
    proxy_tcp_port: int = 60080
    proxy_udp_port: int = 60080
    dns_port: int = 60053
    dst_ports: Tuple[str, ...] = ()
    mark: int = DEFAULT_MARK
    route_table: int = DEFAULT_ROUTE_TABLE
    snat_families: FrozenSet[Family] = frozenset()
    reddns_onstop: bool = True
    failsafe_dns: Dict[Family, str] = field(default_factory=dict, compare=False, hash=False)
    set_names: AddressSetNames = AddressSetNames()

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if not self.families:
            raise ConfigurationError("at least one of ipv4/ipv6 must be enabled")

        proxy_group = str(self.proxy_group).strip()
        dns_group = str(self.dns_group).strip()
        if not proxy_group or not dns_group:
            raise ConfigurationError("proxy_group and dns_group must not be empty")
        if proxy_group == dns_group:
            raise ConfigurationError(f"proxy_group and dns_group must differ (both '{proxy_group}')")
        for name in (proxy_group, dns_group):
            if name in SUPERUSER_GROUPS:
                raise ConfigurationError(f"process group '{name}' is the superuser group")

        for label, port in (
            ("proxy_tcp_port", self.proxy_tcp_port),
            ("proxy_udp_port", self.proxy_udp_port),
            ("dns_port", self.dns_port),
        ):
            if not 1 <= int(port) <= 65535:
                raise ConfigurationError(f"{label} out of range: {port}")

        if not 0 < int(self.mark) <= 0xFFFFFFFF:
            raise ConfigurationError(f"mark must be a non-zero 32-bit value: {self.mark:#x}")
        if int(self.route_table) in RESERVED_ROUTE_TABLES or not 0 < int(self.route_table) <= 0xFFFFFFFF:
            raise ConfigurationError(f"route_table {self.route_table} is reserved or out of range")

        validate_dst_ports(self.dst_ports)

        if not self.snat_families <= self.families:
            raise ConfigurationError("snat enabled for a family that is not enabled")

    # ---- 派生属性 ----

    @property
    def tcp_via_tproxy(self) -> bool:
        return self.strategy is ForwardingStrategy.TPROXY

    @property
    def tcp_via_redirect(self) -> bool:
        return self.strategy is ForwardingStrategy.REDIRECT

    @property
    def quic_drop_active(self) -> bool:
        if self.drop_quic is DropQuicPolicy.NEVER:
            return False
        if self.drop_quic is DropQuicPolicy.ALWAYS:
            return True
        if self.drop_quic is DropQuicPolicy.TCP_ONLY:
            return not self.udp_enabled
        raise ConfigurationError(f"unhandled drop_quic policy: {self.drop_quic}")

    @property
    def uses_mangle(self) -> bool:
        """是否需要 mangle 表中的标记规则"""
        return self.tcp_via_tproxy or self.udp_enabled or self.quic_drop_active

    @property
    def needs_policy_routing(self) -> bool:
        """打标记后需要策略路由投递到本机（tproxy TCP 或任何 UDP）"""
        return self.tcp_via_tproxy or self.udp_enabled

    def has(self, family: Family) -> bool:
        return family in self.families

    def ordered_families(self) -> Tuple[Family, ...]:
        return tuple(f for f in (Family.IPV4, Family.IPV6) if f in self.families)


def validate_dst_ports(dst_ports: Tuple[str, ...]) -> None:
    """校验目标端口白名单（multiport 格式：N 或 N:M）"""
    slots = 0
    for item in dst_ports:
        match = _PORT_ITEM.match(str(item).strip())
        if not match:
            raise ConfigurationError(f"invalid destination port entry: '{item}'")
        low = int(match.group(1))
        high = int(match.group(2)) if match.group(2) else low
        if not (1 <= low <= 65535 and 1 <= high <= 65535 and low <= high):
            raise ConfigurationError(f"invalid destination port range: '{item}'")
        slots += 2 if match.group(2) else 1
    if slots > MULTIPORT_MAX:
        raise ConfigurationError(
            f"destination port allowlist too long ({slots} > {MULTIPORT_MAX} multiport slots)"
        )


def resolve_policy(
    mode: str,
    ipv4: bool = True,
    ipv6: bool = False,
    strategy: str = "tproxy",
    udp: bool = True,
    drop_quic: str = "tcponly",
    proxy_other: bool = True,
    **kwargs,
) -> Policy:
    """从原始配置值解析出 Policy

    Raises:
        ConfigurationError: 任一字段无效
    """
    families = frozenset(
        f for f, enabled in ((Family.IPV4, ipv4), (Family.IPV6, ipv6)) if enabled
    )
    return Policy(
        mode=Mode.parse(mode),
        families=families,
        strategy=ForwardingStrategy.parse(strategy),
        udp_enabled=bool(udp),
        drop_quic=DropQuicPolicy.parse(drop_quic),
        proxy_other=bool(proxy_other),
        **kwargs,
    )
