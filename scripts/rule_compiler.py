#!/usr/bin/env python3
"""iptables 规则编译（纯函数）

把 Policy 编译成一个协议族的有序规则计划：
    1. 私有链列表（先创建，填充后再挂到内置链）
    2. 决策子链 SSTP_RULE（mangle 打标记 / nat DNAT）
    3. QUIC 丢弃子链 SSTP_QUIC
    4. 转发规则（tproxy 或 redirect）
    5. DNS 重定向与 SNAT
    6. 可选 MASQUERADE

链结构（每个协议族）：

    mangle  PREROUTING  -> SSTP_PREROUTING -> SSTP_RULE / SSTP_QUIC
            OUTPUT      -> SSTP_OUTPUT     -> SSTP_RULE / SSTP_QUIC
    nat     PREROUTING  -> SSTP_PREROUTING -> SSTP_RULE
            OUTPUT      -> SSTP_OUTPUT     -> SSTP_RULE
            POSTROUTING -> SSTP_POSTROUTING

编译结果不访问内核，由 IptablesManager 负责执行。
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from gateway_errors import ConfigurationError
from gateway_policy import AddressSetNames, Family, Mode, Policy

TABLE_MANGLE = "mangle"
TABLE_NAT = "nat"

CHAIN_PREROUTING = "SSTP_PREROUTING"
CHAIN_OUTPUT = "SSTP_OUTPUT"
CHAIN_POSTROUTING = "SSTP_POSTROUTING"
CHAIN_RULE = "SSTP_RULE"
CHAIN_QUIC = "SSTP_QUIC"
CHAIN_FAILSAFE_PRE = "SSTP_FAILSAFE_PRE"
CHAIN_FAILSAFE_POST = "SSTP_FAILSAFE_POST"

PRIVATE_CHAINS: Dict[str, Tuple[str, ...]] = {
    TABLE_MANGLE: (CHAIN_PREROUTING, CHAIN_OUTPUT, CHAIN_RULE, CHAIN_QUIC),
    TABLE_NAT: (CHAIN_PREROUTING, CHAIN_OUTPUT, CHAIN_POSTROUTING, CHAIN_RULE),
}

HOOK_LINKS: Dict[str, Tuple[Tuple[str, str], ...]] = {
    TABLE_MANGLE: (("PREROUTING", CHAIN_PREROUTING), ("OUTPUT", CHAIN_OUTPUT)),
    TABLE_NAT: (
        ("PREROUTING", CHAIN_PREROUTING),
        ("OUTPUT", CHAIN_OUTPUT),
        ("POSTROUTING", CHAIN_POSTROUTING),
    ),
}

# 停止后生效的兜底链，不计入"已启动"探测
FAILSAFE_CHAINS: Dict[str, Tuple[str, ...]] = {
    TABLE_NAT: (CHAIN_FAILSAFE_PRE, CHAIN_FAILSAFE_POST),
}

FAILSAFE_LINKS: Dict[str, Tuple[Tuple[str, str], ...]] = {
    TABLE_NAT: (("PREROUTING", CHAIN_FAILSAFE_PRE), ("POSTROUTING", CHAIN_FAILSAFE_POST)),
}

DNS_PORT = "53"
QUIC_PORT = "443"

Spec = Tuple[str, ...]


@dataclass(frozen=True)
class Rule:
    """一条追加到私有链的规则"""
    table: str
    chain: str
    spec: Spec

    @property
    def target(self) -> Optional[str]:
        if "-j" in self.spec:
            index = self.spec.index("-j")
            if index + 1 < len(self.spec):
                return self.spec[index + 1]
        return None


@dataclass(frozen=True)
class HookLink:
    """内置链到私有链的跳转"""
    table: str
    hook: str
    chain: str

    @property
    def spec(self) -> Spec:
        return ("-j", self.chain)


@dataclass
class RulePlan:
    """单个协议族的完整规则计划"""
    family: Family
    chains: List[Tuple[str, str]] = field(default_factory=list)
    rules: List[Rule] = field(default_factory=list)
    links: List[HookLink] = field(default_factory=list)

    def chain_rules(self, table: str, chain: str) -> List[Rule]:
        return [r for r in self.rules if r.table == table and r.chain == chain]

    def referenced(self, table: str, chain: str) -> bool:
        if any(link.table == table and link.chain == chain for link in self.links):
            return True
        return any(r.table == table and r.target == chain for r in self.rules)

    def unused_chains(self) -> List[Tuple[str, str]]:
        """空链或无人引用的链（prune 会删除它们）"""
        return [
            (table, chain) for table, chain in self.chains
            if not self.chain_rules(table, chain) or not self.referenced(table, chain)
        ]

    def is_empty(self) -> bool:
        return not self.rules


class _PlanBuilder:
    def __init__(self, family: Family):
        self.plan = RulePlan(family=family)

    def chain(self, table: str, chain: str) -> None:
        if (table, chain) not in self.plan.chains:
            self.plan.chains.append((table, chain))

    def add(self, table: str, chain: str, *spec: str) -> None:
        self.plan.rules.append(Rule(table, chain, tuple(str(s) for s in spec)))

    def link(self, table: str, hook: str, chain: str) -> None:
        self.plan.links.append(HookLink(table, hook, chain))


# ---- 匹配片段 ----

def _match_set(name: str, negate: bool = False) -> Spec:
    if negate:
        return ("-m", "set", "!", "--match-set", name, "dst")
    return ("-m", "set", "--match-set", name, "dst")


def _port_filter(policy: Policy) -> Spec:
    if not policy.dst_ports:
        return ()
    return ("-m", "multiport", "--dports", ",".join(policy.dst_ports))


def _mark(policy: Policy) -> str:
    return f"0x{policy.mark:x}"


def decision_guards(policy: Policy, family: Family, names: AddressSetNames) -> List[Spec]:
    """决策子链中判定为直连（RETURN）的规则，之后的规则即"走代理"的裁决"""
    allow = names.allow(family)
    deny = names.deny(family)
    if policy.mode is Mode.GLOBAL:
        return [_match_set(allow) + ("-j", "RETURN")]
    elif policy.mode is Mode.GFWLIST:
        return [_match_set(deny, negate=True) + ("-j", "RETURN")]
    elif policy.mode is Mode.CHNROUTE:
        # deny 优先：同时在两个集合中的地址仍然走代理
        return [_match_set(allow) + _match_set(deny, negate=True) + ("-j", "RETURN")]
    else:
        raise ConfigurationError(f"unhandled mode: {policy.mode}")


def _tcp_verdict(policy: Policy, family: Family) -> Spec:
    if family is Family.IPV4:
        return ("-j", "DNAT", "--to-destination", family.endpoint(family.loopback, policy.proxy_tcp_port))
    return ("-j", "REDIRECT", "--to-ports", str(policy.proxy_tcp_port))


def _dns_verdict(policy: Policy, family: Family) -> Spec:
    if family is Family.IPV4:
        return ("-j", "DNAT", "--to-destination", family.endpoint(family.loopback, policy.dns_port))
    return ("-j", "REDIRECT", "--to-ports", str(policy.dns_port))


def _masquerade_spec() -> Spec:
    return (
        "-m", "addrtype", "!", "--src-type", "LOCAL", "!", "--dst-type", "LOCAL",
        "-m", "conntrack", "!", "--ctstate", "DNAT,SNAT",
        "-j", "MASQUERADE",
    )


# ---- mangle ----

def _mangle_jumps(policy: Policy) -> List[Spec]:
    """把新连接送入决策子链的跳转（OUTPUT/PREROUTING 共用）"""
    jumps: List[Spec] = []
    ports = _port_filter(policy)
    if policy.quic_drop_active:
        jumps.append(("-p", "udp", "--dport", QUIC_PORT, "-j", CHAIN_QUIC))
    if policy.tcp_via_tproxy:
        jumps.append(("-p", "tcp", "--syn") + ports + ("-j", CHAIN_RULE))
    if policy.udp_enabled:
        jumps.append(("-p", "udp", "-m", "conntrack", "--ctstate", "NEW,RELATED") + ports + ("-j", CHAIN_RULE))
    return jumps


def _compile_mangle(b: _PlanBuilder, policy: Policy, family: Family, names: AddressSetNames) -> None:
    mark = _mark(policy)
    guards = decision_guards(policy, family, names)

    for guard in guards:
        b.add(TABLE_MANGLE, CHAIN_RULE, *guard)
    b.add(TABLE_MANGLE, CHAIN_RULE, "-j", "MARK", "--set-mark", mark)
    b.add(TABLE_MANGLE, CHAIN_RULE, "-j", "CONNMARK", "--save-mark")

    if policy.quic_drop_active:
        for guard in guards:
            b.add(TABLE_MANGLE, CHAIN_QUIC, *guard)
        b.add(TABLE_MANGLE, CHAIN_QUIC, "-j", "DROP")

    jumps = _mangle_jumps(policy)
    if not jumps:
        return

    common_exempt = [
        ("-m", "addrtype", "--dst-type", "LOCAL", "-j", "RETURN"),
        ("-m", "conntrack", "--ctdir", "REPLY", "-j", "RETURN"),
    ]

    # 本机发出
    for spec in common_exempt:
        b.add(TABLE_MANGLE, CHAIN_OUTPUT, *spec)
    b.add(TABLE_MANGLE, CHAIN_OUTPUT, "-m", "owner", "--gid-owner", policy.proxy_group, "-j", "RETURN")
    for proto in ("udp", "tcp"):
        # 非 DNS 进程的 53 端口请求由 nat OUTPUT 改写到本地 DNS，不能打标记
        b.add(TABLE_MANGLE, CHAIN_OUTPUT,
              "-p", proto, "--dport", DNS_PORT, "-m", "owner", "!", "--gid-owner", policy.dns_group,
              "-j", "RETURN")
        b.add(TABLE_MANGLE, CHAIN_OUTPUT,
              "-m", "owner", "--gid-owner", policy.dns_group, "-p", proto, "--dport", DNS_PORT,
              *_match_set(names.allow(family)), "-j", "RETURN")
    b.add(TABLE_MANGLE, CHAIN_OUTPUT, "-j", "CONNMARK", "--restore-mark")
    b.add(TABLE_MANGLE, CHAIN_OUTPUT, "-m", "mark", "--mark", mark, "-j", "RETURN")
    for spec in jumps:
        b.add(TABLE_MANGLE, CHAIN_OUTPUT, *spec)

    # 入站：lo 上只放行带标记的（本机流量被策略路由回环），其他接口只在 proxy_other 时处理
    b.add(TABLE_MANGLE, CHAIN_PREROUTING, "-i", "lo", "-m", "mark", "!", "--mark", mark, "-j", "RETURN")
    if not policy.proxy_other:
        b.add(TABLE_MANGLE, CHAIN_PREROUTING, "!", "-i", "lo", "-j", "RETURN")
    else:
        # 局域网 DNS 留给 nat PREROUTING 改写到本地 DNS
        for proto in ("udp", "tcp"):
            b.add(TABLE_MANGLE, CHAIN_PREROUTING,
                  "!", "-i", "lo", "-p", proto, "--dport", DNS_PORT, "-j", "RETURN")
    for spec in common_exempt:
        b.add(TABLE_MANGLE, CHAIN_PREROUTING, *spec)
    b.add(TABLE_MANGLE, CHAIN_PREROUTING, "-j", "CONNMARK", "--restore-mark")
    for spec in jumps:
        b.add(TABLE_MANGLE, CHAIN_PREROUTING, *(spec[:-2] + ("-m", "mark", "!", "--mark", mark) + spec[-2:]))

    if policy.tcp_via_tproxy:
        b.add(TABLE_MANGLE, CHAIN_PREROUTING,
              "-p", "tcp", "-m", "mark", "--mark", mark,
              "-j", "TPROXY", "--on-ip", family.loopback, "--on-port", str(policy.proxy_tcp_port),
              "--tproxy-mark", mark)
    if policy.udp_enabled:
        b.add(TABLE_MANGLE, CHAIN_PREROUTING,
              "-p", "udp", "-m", "mark", "--mark", mark,
              "-j", "TPROXY", "--on-ip", family.loopback, "--on-port", str(policy.proxy_udp_port),
              "--tproxy-mark", mark)


# ---- nat ----

def _compile_nat(b: _PlanBuilder, policy: Policy, family: Family, names: AddressSetNames) -> None:
    for guard in decision_guards(policy, family, names):
        b.add(TABLE_NAT, CHAIN_RULE, *guard)
    b.add(TABLE_NAT, CHAIN_RULE, "-p", "tcp", *_tcp_verdict(policy, family))

    tcp_jump = ("-p", "tcp", "--syn") + _port_filter(policy) + ("-j", CHAIN_RULE)
    dns_verdict = _dns_verdict(policy, family)

    # 本机发出：代理进程直接放行，其余进程的 DNS 请求交给本地 DNS
    b.add(TABLE_NAT, CHAIN_OUTPUT, "-m", "owner", "--gid-owner", policy.proxy_group, "-j", "RETURN")
    for proto in ("udp", "tcp"):
        b.add(TABLE_NAT, CHAIN_OUTPUT,
              "-p", proto, "--dport", DNS_PORT, "-m", "owner", "!", "--gid-owner", policy.dns_group,
              *dns_verdict)
    if policy.tcp_via_redirect:
        b.add(TABLE_NAT, CHAIN_OUTPUT, "-m", "addrtype", "--dst-type", "LOCAL", "-j", "RETURN")
        b.add(TABLE_NAT, CHAIN_OUTPUT, *tcp_jump)

    if policy.proxy_other:
        for proto in ("udp", "tcp"):
            b.add(TABLE_NAT, CHAIN_PREROUTING, "-p", proto, "--dport", DNS_PORT, *dns_verdict)
        if policy.tcp_via_redirect:
            b.add(TABLE_NAT, CHAIN_PREROUTING, "-m", "addrtype", "--dst-type", "LOCAL", "-j", "RETURN")
            b.add(TABLE_NAT, CHAIN_PREROUTING, *tcp_jump)

    if family is Family.IPV4:
        # DNAT 到 127.0.0.1 后源地址也必须是回环地址，否则回包被当作火星包丢弃
        loopback = family.loopback
        for proto in ("udp", "tcp"):
            b.add(TABLE_NAT, CHAIN_POSTROUTING,
                  "-d", loopback, "-p", proto, "--dport", str(policy.dns_port),
                  "!", "-s", loopback, "-j", "SNAT", "--to-source", loopback)

    if family in policy.snat_families:
        b.add(TABLE_NAT, CHAIN_POSTROUTING, *_masquerade_spec())


def compile_rules(
    policy: Policy,
    family: Family,
    names: Optional[AddressSetNames] = None,
) -> RulePlan:
    """编译单个协议族的规则计划，未启用的协议族返回空计划"""
    names = names or policy.set_names
    b = _PlanBuilder(family)
    if not policy.has(family):
        return b.plan

    for table, chains in PRIVATE_CHAINS.items():
        for chain in chains:
            b.chain(table, chain)

    _compile_mangle(b, policy, family, names)
    _compile_nat(b, policy, family, names)

    for table, links in HOOK_LINKS.items():
        for hook, chain in links:
            b.link(table, hook, chain)
    return b.plan


def compile_all(policy: Policy) -> Dict[Family, RulePlan]:
    """编译所有启用协议族的计划"""
    return {family: compile_rules(policy, family) for family in policy.ordered_families()}


def compile_failsafe(policy: Policy, family: Family) -> RulePlan:
    """停止后的兜底规则：局域网 DNS 直接转发到直连 DNS，可选 MASQUERADE"""
    b = _PlanBuilder(family)
    if not policy.has(family):
        return b.plan

    server = policy.failsafe_dns.get(family, "")
    if policy.reddns_onstop and policy.proxy_other and server:
        for proto in ("udp", "tcp"):
            b.add(TABLE_NAT, CHAIN_FAILSAFE_PRE,
                  "-p", proto, "--dport", DNS_PORT, "-m", "addrtype", "--dst-type", "LOCAL",
                  "-j", "DNAT", "--to-destination", family.endpoint(server, int(DNS_PORT)))
            b.add(TABLE_NAT, CHAIN_FAILSAFE_POST,
                  "-d", server, "-p", proto, "--dport", DNS_PORT,
                  "-m", "conntrack", "--ctstate", "DNAT", "-j", "MASQUERADE")
    if family in policy.snat_families:
        b.add(TABLE_NAT, CHAIN_FAILSAFE_POST, *_masquerade_spec())

    if b.plan.rules:
        for table, chains in FAILSAFE_CHAINS.items():
            for chain in chains:
                if b.plan.chain_rules(table, chain):
                    b.chain(table, chain)
        for table, links in FAILSAFE_LINKS.items():
            for hook, chain in links:
                if (table, chain) in b.plan.chains:
                    b.link(table, hook, chain)
    return b.plan
