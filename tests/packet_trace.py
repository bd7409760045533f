"""
Minimal packet tracer over compiled RulePlans.

Walks the rules of one family's plan the way netfilter would for the match
and target options the rule compiler emits. Good enough to check
classification scenarios; not a netfilter model.
"""

import ipaddress
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Tuple

from rule_compiler import CHAIN_OUTPUT, CHAIN_PREROUTING, TABLE_MANGLE, TABLE_NAT, RulePlan

Verdict = Tuple[str, str]


@dataclass
class Packet:
    dst: str
    proto: str = "tcp"
    dport: int = 80
    src: str = "192.168.1.10"
    iface: str = "eth0"
    gid: Optional[str] = None
    syn: bool = True
    ctstate: str = "NEW"
    ctdir: str = "ORIGINAL"
    dst_local: bool = False
    src_local: bool = False
    mark: int = 0
    connmark: int = 0


@dataclass
class SetTable:
    members: Dict[str, List[str]] = field(default_factory=dict)

    def contains(self, name: str, address: str) -> bool:
        ip = ipaddress.ip_address(address)
        for cidr in self.members.get(name, []):
            network = ipaddress.ip_network(cidr, strict=False)
            if network.version == ip.version and ip in network:
                return True
        return False


def _port_in(port: int, spec: str) -> bool:
    for item in spec.split(","):
        if ":" in item:
            low, high = item.split(":")
            if int(low) <= port <= int(high):
                return True
        elif int(item) == port:
            return True
    return False


def matches(spec: Iterable[str], pkt: Packet, sets: SetTable) -> bool:
    tokens = list(spec)
    i = 0
    negate = False
    while i < len(tokens):
        token = tokens[i]
        if token == "-j":
            return True
        if token == "!":
            negate = True
            i += 1
            continue
        if token == "-m":
            i += 2
            continue

        if token == "--syn":
            result, step = pkt.proto == "tcp" and pkt.syn, 1
        else:
            value = tokens[i + 1]
            step = 2
            if token == "-p":
                result = pkt.proto == value
            elif token == "--dport":
                result = pkt.dport == int(value)
            elif token == "--dports":
                result = _port_in(pkt.dport, value)
            elif token == "--match-set":
                result = sets.contains(value, pkt.dst)
                step = 3
            elif token == "--gid-owner":
                result = pkt.gid == value
            elif token == "--dst-type":
                result = pkt.dst_local
            elif token == "--src-type":
                result = pkt.src_local
            elif token == "--ctdir":
                result = pkt.ctdir == value
            elif token == "--ctstate":
                result = pkt.ctstate in value.split(",")
            elif token == "-i":
                result = pkt.iface == value
            elif token == "--mark":
                result = pkt.mark == int(value, 0)
            elif token == "-d":
                result = pkt.dst == value
            elif token == "-s":
                result = pkt.src == value
            else:
                raise ValueError(f"unsupported match option {token}")

        if negate:
            result = not result
            negate = False
        if not result:
            return False
        i += step
    return True


def _option(spec: List[str], name: str) -> str:
    return spec[spec.index(name) + 1] if name in spec else ""


def run_chain(plan: RulePlan, table: str, chain: str, pkt: Packet, sets: SetTable) -> Optional[Verdict]:
    """Returns a terminal verdict, or None when the chain returns/falls through."""
    chains = {name for t, name in plan.chains if t == table}
    for rule in plan.chain_rules(table, chain):
        if not matches(rule.spec, pkt, sets):
            continue
        spec = list(rule.spec)
        target = rule.target
        if target == "RETURN":
            return None
        elif target in chains:
            verdict = run_chain(plan, table, target, pkt, sets)
            if verdict:
                return verdict
        elif target == "MARK":
            pkt.mark = int(_option(spec, "--set-mark"), 0)
        elif target == "CONNMARK":
            if "--save-mark" in spec:
                pkt.connmark = pkt.mark
            else:
                pkt.mark = pkt.connmark
        elif target == "TPROXY":
            return "TPROXY", _option(spec, "--on-port")
        elif target == "DNAT":
            return "DNAT", _option(spec, "--to-destination")
        elif target == "REDIRECT":
            return "REDIRECT", _option(spec, "--to-ports")
        elif target in ("DROP", "SNAT", "MASQUERADE"):
            return target, ""
        else:
            raise ValueError(f"unsupported target {target}")
    return None


def trace_local(plan: RulePlan, pkt: Packet, sets: SetTable, mark: int) -> Verdict:
    """A locally generated packet: mangle OUTPUT, nat OUTPUT, then the
    policy-routed loopback pass through mangle PREROUTING if marked."""
    pkt = replace(pkt, iface="lo")
    verdict = run_chain(plan, TABLE_MANGLE, CHAIN_OUTPUT, pkt, sets)
    if verdict:
        return verdict
    verdict = run_chain(plan, TABLE_NAT, CHAIN_OUTPUT, pkt, sets)
    if verdict:
        return verdict
    if pkt.mark == mark:
        verdict = run_chain(plan, TABLE_MANGLE, CHAIN_PREROUTING, pkt, sets)
        if verdict:
            return verdict
    return "DIRECT", ""


def trace_forwarded(plan: RulePlan, pkt: Packet, sets: SetTable) -> Verdict:
    """A LAN packet arriving on a non-loopback interface."""
    verdict = run_chain(plan, TABLE_MANGLE, CHAIN_PREROUTING, pkt, sets)
    if verdict:
        return verdict
    verdict = run_chain(plan, TABLE_NAT, CHAIN_PREROUTING, pkt, sets)
    if verdict:
        return verdict
    return "DIRECT", ""
