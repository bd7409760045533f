#!/usr/bin/env python3
"""地址列表解析与集合成员构建（纯函数）

扩展列表文件格式（ignlist.ext / gfwlist.ext），每行一个条目，首字符标识类型：
    -1.2.3.0/24        IPv4 地址/网段
    ~2001:db8::/32     IPv6 地址/网段
    @example.com       域名（交给 DNS 进程，不进入地址集合）
    # 注释             空行与注释忽略

上游服务器格式： [scheme://][user@]host[#port][/path]
"""

import ipaddress
import logging
import socket
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from gateway_policy import Family, Mode

logger = logging.getLogger(__name__)

MARKER_IPV4 = "-"
MARKER_IPV6 = "~"
MARKER_DOMAIN = "@"

# 保留/私有地址始终直连
RESERVED_IPV4 = [
    "0.0.0.0/8", "10.0.0.0/8", "100.64.0.0/10", "127.0.0.0/8",
    "169.254.0.0/16", "172.16.0.0/12", "192.0.0.0/24", "192.0.2.0/24",
    "192.88.99.0/24", "192.168.0.0/16", "198.18.0.0/15", "198.51.100.0/24",
    "203.0.113.0/24", "224.0.0.0/4", "240.0.0.0/4", "255.255.255.255/32",
]
RESERVED_IPV6 = [
    "::/128", "::1/128", "::ffff:0:0/96", "64:ff9b::/96", "100::/64",
    "2001::/32", "2001:20::/28", "2001:db8::/32", "2002::/16",
    "fc00::/7", "fe80::/10", "ff00::/8",
]

HostLookup = Callable[[str, Family], List[str]]


@dataclass
class ListEntries:
    """一个列表文件的解析结果"""
    ipv4: List[str] = field(default_factory=list)
    ipv6: List[str] = field(default_factory=list)
    domains: List[str] = field(default_factory=list)
    invalid: List[Tuple[int, str]] = field(default_factory=list)

    def cidrs(self, family: Family) -> List[str]:
        return self.ipv4 if family is Family.IPV4 else self.ipv6


@dataclass
class MembershipPlan:
    """每个协议族的 allow / deny 集合内容"""
    allow: Dict[Family, List[str]] = field(default_factory=dict)
    deny: Dict[Family, List[str]] = field(default_factory=dict)
    unresolved: List[str] = field(default_factory=list)

    def members(self, kind: str, family: Family) -> List[str]:
        source = self.allow if kind == "allow" else self.deny
        return source.get(family, [])


def normalize_cidr(text: str, family: Optional[Family] = None) -> Optional[str]:
    """规范化 CIDR，非法或协议族不符时返回 None"""
    try:
        network = ipaddress.ip_network(text.strip(), strict=False)
    except ValueError:
        return None
    if family is Family.IPV4 and network.version != 4:
        return None
    if family is Family.IPV6 and network.version != 6:
        return None
    return str(network)


def parse_list_file(lines: Iterable[str]) -> ListEntries:
    """解析带类型前缀的扩展列表"""
    entries = ListEntries()
    for lineno, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue

        marker, value = line[0], line[1:].strip()
        if marker == MARKER_IPV4:
            cidr = normalize_cidr(value, Family.IPV4)
            if cidr:
                entries.ipv4.append(cidr)
            else:
                entries.invalid.append((lineno, line))
        elif marker == MARKER_IPV6:
            cidr = normalize_cidr(value, Family.IPV6)
            if cidr:
                entries.ipv6.append(cidr)
            else:
                entries.invalid.append((lineno, line))
        elif marker == MARKER_DOMAIN:
            domain = value.lower().rstrip(".")
            if domain and " " not in domain:
                entries.domains.append(domain)
            else:
                entries.invalid.append((lineno, line))
        else:
            entries.invalid.append((lineno, line))
    return entries


def parse_cidr_file(lines: Iterable[str], family: Family) -> ListEntries:
    """解析每行一个 CIDR 的大陆路由表（chnroute.txt / chnroute6.txt）"""
    entries = ListEntries()
    target = entries.cidrs(family)
    for lineno, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        cidr = normalize_cidr(line, family)
        if cidr:
            target.append(cidr)
        else:
            entries.invalid.append((lineno, line))
    return entries


def resolve_upstream_host(endpoint: str) -> str:
    """从上游地址中提取主机部分

    去掉协议头、用户信息、路径和 #端口：
        tcp://user@8.8.8.8#53/dns-query  ->  8.8.8.8
        [2001:4860:4860::8888]#53        ->  2001:4860:4860::8888
    """
    host = str(endpoint or "").strip()
    if "://" in host:
        host = host.split("://", 1)[1]
    if "@" in host:
        host = host.rsplit("@", 1)[1]
    host = host.split("/", 1)[0]
    host = host.split("#", 1)[0]
    if host.startswith("[") and "]" in host:
        host = host[1:host.index("]")]
    return host.strip()


def lookup_host(host: str, family: Family) -> List[str]:
    """解析主机名到指定协议族的地址，IP 字面量直接返回"""
    try:
        address = ipaddress.ip_address(host)
        expected = 4 if family is Family.IPV4 else 6
        return [str(address)] if address.version == expected else []
    except ValueError:
        pass

    af = socket.AF_INET if family is Family.IPV4 else socket.AF_INET6
    try:
        infos = socket.getaddrinfo(host, None, af, socket.SOCK_STREAM)
    except socket.gaierror as e:
        logger.warning(f"Cannot resolve {host} ({family.value}): {e}")
        return []
    return _dedup(str(info[4][0]) for info in infos)


def _dedup(items: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        out.append(item)
    return out


def _resolve_endpoints(
    endpoints: Iterable[str],
    family: Family,
    lookup: HostLookup,
    unresolved: List[str],
    resolved: Set[str],
) -> List[str]:
    out = []
    for endpoint in endpoints:
        host = resolve_upstream_host(endpoint)
        if not host:
            continue
        addresses = lookup(host, family)
        if addresses:
            resolved.add(host)
        elif host not in unresolved:
            # 另一个协议族可能有地址，最终只报告两族都解析不到的
            unresolved.append(host)
        out.extend(addresses)
    return out


def build_membership(
    mode: Mode,
    ignlist: ListEntries,
    gfwlist: ListEntries,
    chnroute: Optional[Dict[Family, List[str]]] = None,
    direct_upstreams: Iterable[str] = (),
    remote_upstreams: Iterable[str] = (),
    proxy_servers: Iterable[str] = (),
    lookup: HostLookup = lookup_host,
) -> MembershipPlan:
    """构建四个集合的完整内容

    allow: 保留地址 + ignlist 扩展 + 直连 DNS + 代理服务器 (+ chnroute 模式下的大陆路由)
    deny:  gfwlist 扩展 + 远程 DNS

    两个协议族总是都会生成（可能为空），DNS 进程会同时引用四个集合。
    """
    plan = MembershipPlan()
    direct_upstreams = list(direct_upstreams)
    remote_upstreams = list(remote_upstreams)
    proxy_servers = list(proxy_servers)
    unresolved: List[str] = []
    resolved: Set[str] = set()

    for family in (Family.IPV4, Family.IPV6):
        allow = list(RESERVED_IPV4 if family is Family.IPV4 else RESERVED_IPV6)
        allow += ignlist.cidrs(family)
        allow += _resolve_endpoints(direct_upstreams, family, lookup, unresolved, resolved)
        allow += _resolve_endpoints(proxy_servers, family, lookup, unresolved, resolved)
        if mode is Mode.CHNROUTE and chnroute:
            allow += chnroute.get(family, [])

        deny = list(gfwlist.cidrs(family))
        deny += _resolve_endpoints(remote_upstreams, family, lookup, unresolved, resolved)

        plan.allow[family] = _dedup(c for c in (normalize_cidr(x, family) for x in allow) if c)
        plan.deny[family] = _dedup(c for c in (normalize_cidr(x, family) for x in deny) if c)

    plan.unresolved = [host for host in unresolved if host not in resolved]
    return plan
