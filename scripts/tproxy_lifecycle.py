#!/usr/bin/env python3
"""网关生命周期

状态只有 stopped / started 两种，且不持久化：每次调用都探测内核，
私有链、策略路由规则、专用路由表中任意一项存在即视为 started
（上次运行中途崩溃留下的部分状态也需要先 stop）。

启动顺序：
    校验 → (已启动则先停止) → 清理残留 → pre_start → sysctl → 填充 ipset
    → 启动代理 → 启动 DNS → 策略路由 → iptables 规则 → post_start
    → 写状态记录 → 删除无用链

停止顺序：
    pre_stop → 删除状态记录 → 删除规则 → 删除策略路由 → 停止 DNS/代理
    → 销毁 ipset（有限重试）→ 兜底规则 → post_stop
"""

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from command_runner import CommandRunner, apply_sysctls, missing_commands
from dns_manager import ResolverController
from gateway_config import GatewaySettings
from gateway_errors import (
    AddressSetBusyError,
    ApplyError,
    ConfigurationError,
    HostEnvironmentError,
    ProcessError,
)
from gateway_policy import Family, Mode, Policy
from ipset_manager import IpsetManager
from iptables_manager import IptablesManager
from lifecycle_hooks import LifecycleHooks
from list_parser import (
    HostLookup,
    ListEntries,
    MembershipPlan,
    build_membership,
    lookup_host,
    parse_cidr_file,
    parse_list_file,
)
from policy_route_manager import PolicyRouteManager
from proxy_manager import ProxyController
from rule_compiler import compile_all
from state_record import StateRecord, invocation_lock

logger = logging.getLogger(__name__)

ALL_FAMILIES = (Family.IPV4, Family.IPV6)

SYSCTLS = {
    Family.IPV4: {
        "net.ipv4.ip_forward": "1",
        "net.ipv4.conf.all.route_localnet": "1",
        "net.ipv4.conf.all.accept_redirects": "0",
        "net.ipv4.conf.all.send_redirects": "0",
    },
    Family.IPV6: {
        "net.ipv6.conf.all.forwarding": "1",
        "net.ipv6.conf.all.accept_redirects": "0",
    },
}


@dataclass(frozen=True)
class RuntimeFacts:
    """一次内核探测的结果"""
    chains: Tuple[Tuple[Family, str, str], ...] = ()
    rule_families: Tuple[Family, ...] = ()
    route_families: Tuple[Family, ...] = ()

    @property
    def started(self) -> bool:
        return bool(self.chains or self.rule_families or self.route_families)

    def to_dict(self) -> Dict:
        return {
            "started": self.started,
            "chains": [f"{f.value}:{table}/{chain}" for f, table, chain in self.chains],
            "policy_rule": [f.value for f in self.rule_families],
            "route_table": [f.value for f in self.route_families],
        }


def _read_lines(path: Path) -> List[str]:
    try:
        return path.read_text().splitlines()
    except FileNotFoundError:
        return []


class GatewayLifecycle:
    """start / stop / restart 状态机"""

    def __init__(
        self,
        runner: CommandRunner,
        settings: GatewaySettings,
        resolver: ResolverController,
        proxy: ProxyController,
        hooks: Optional[LifecycleHooks] = None,
        policy: Optional[Policy] = None,
        lookup: HostLookup = lookup_host,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.runner = runner
        self.settings = settings
        self.policy = policy or settings.to_policy()
        self.resolver = resolver
        self.proxy = proxy
        self.hooks = hooks or LifecycleHooks()
        self.lookup = lookup

        files = settings.files
        self.record = StateRecord(files.state_path)
        self.lock_path = files.lock_path
        self.ipset = IpsetManager(runner, self.policy.set_names, sleep=sleep)
        self.routes = PolicyRouteManager(runner, self.policy.mark, self.policy.route_table)
        self.iptables = IptablesManager(runner)

    # ---- 探测 ----

    def _cleanup_families(self) -> List[Family]:
        """清理不区分当前配置，只跳过宿主机上没有对应 iptables 的协议族"""
        return [f for f in ALL_FAMILIES if self.runner.which(f.iptables)]

    def probe(self) -> RuntimeFacts:
        chains = []
        rules = []
        routes = []
        for family in self._cleanup_families():
            for table, chain in self.iptables.chains_present(family):
                chains.append((family, table, chain))
            rule_present, routes_present = self.routes.probe(family)
            if rule_present:
                rules.append(family)
            if routes_present:
                routes.append(family)
        return RuntimeFacts(tuple(chains), tuple(rules), tuple(routes))

    def load_record(self, facts: RuntimeFacts) -> Dict[str, str]:
        """内核显示未启动时，磁盘上的记录一律视为空"""
        return self.record.load() if facts.started else {}

    # ---- 启动 ----

    def validate(self) -> None:
        """修改内核状态前的检查

        Raises:
            ConfigurationError: 缺少必需的列表文件
            HostEnvironmentError: 缺少必需的命令
        """
        missing_files = [str(p) for p in self.settings.required_files() if not p.exists()]
        if missing_files:
            raise ConfigurationError(f"required list file(s) missing: {', '.join(missing_files)}")
        missing = missing_commands(self.runner, self.settings.required_commands())
        if missing:
            raise HostEnvironmentError(missing)

    def build_membership(self) -> MembershipPlan:
        files = self.settings.files
        ignlist = parse_list_file(_read_lines(files.path(files.ignlist_ext)))
        gfwlist = parse_list_file(_read_lines(files.path(files.gfwlist_ext)))
        for name, entries in ((files.ignlist_ext, ignlist), (files.gfwlist_ext, gfwlist)):
            for lineno, line in entries.invalid:
                logger.warning(f"{name}:{lineno}: ignoring invalid entry '{line}'")

        chnroute: Dict[Family, List[str]] = {}
        if self.policy.mode is Mode.CHNROUTE:
            chnroute[Family.IPV4] = parse_cidr_file(
                _read_lines(files.path(files.chnroute)), Family.IPV4).ipv4
            if self.policy.has(Family.IPV6):
                chnroute[Family.IPV6] = parse_cidr_file(
                    _read_lines(files.path(files.chnroute6)), Family.IPV6).ipv6

        plan = build_membership(
            self.policy.mode,
            ignlist,
            gfwlist,
            chnroute,
            direct_upstreams=self.settings.direct_upstreams(),
            remote_upstreams=self.settings.remote_upstreams(),
            proxy_servers=self.settings.proxy.servers,
            lookup=self.lookup,
        )
        for host in plan.unresolved:
            logger.warning(f"Could not resolve {host}, not added to address sets")

        self._write_domain_files(ignlist, gfwlist)
        return plan

    def _write_domain_files(self, ignlist: ListEntries, gfwlist: ListEntries) -> None:
        """扩展列表中的域名交给 DNS 进程"""
        files = self.settings.files
        for path, entries in ((files.chn_domains_path, ignlist), (files.gfw_domains_path, gfwlist)):
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("".join(f"{d}\n" for d in entries.domains))

    def _flush_residue(self) -> None:
        families = self._cleanup_families()
        for family in families:
            self.iptables.teardown(family)
            self.iptables.teardown_failsafe(family)
        self.routes.teardown(families)

    def _persist_record(self) -> Dict[str, str]:
        record = {"dns_pid": "", "mode": self.policy.mode.value}
        record.update(self.resolver.contribute_record())
        record.update(self.hooks.contribute_record())
        self.record.save(record)
        return record

    def _start(self) -> None:
        self.validate()

        facts = self.probe()
        if facts.started:
            logger.info("Gateway already started, stopping first")
            self._stop_quietly(facts)

        self._flush_residue()
        self.hooks.pre_start()

        for family in self.policy.ordered_families():
            failed = apply_sysctls(self.runner, SYSCTLS[family])
            if failed:
                logger.warning(f"Could not set kernel parameter(s): {', '.join(failed)}")

        # DNS 进程会查询集合，必须先于 DNS 启动
        self.ipset.populate(self.build_membership())

        try:
            self.proxy.start()
        except ProcessError as e:
            logger.error(f"Proxy: {e}")
        try:
            self.resolver.start()
        except ProcessError as e:
            logger.error(f"Resolver: {e}")

        if self.policy.needs_policy_routing:
            self.routes.install(self.policy.ordered_families())

        for plan in compile_all(self.policy).values():
            self.iptables.apply(plan)

        self.hooks.post_start()
        self._persist_record()

        for family in self.policy.ordered_families():
            self.iptables.prune(family)
        logger.info(f"Gateway started (mode: {self.policy.mode.value})")

    def start(self) -> None:
        """启动网关（已启动时先完整停止）

        Raises:
            ConfigurationError, HostEnvironmentError: 修改内核前的检查失败
            ApplyError: 规则/路由/集合安装失败，已安装的部分保留待 stop 清理
        """
        with invocation_lock(self.lock_path):
            self._start()

    # ---- 停止 ----

    def _stop(self, facts: RuntimeFacts) -> None:
        self.hooks.pre_stop()

        record = self.load_record(facts)
        self.record.delete()

        families = self._cleanup_families()
        for family in families:
            self.iptables.teardown(family)
            self.iptables.teardown_failsafe(family)
        self.routes.teardown(families)

        self.resolver.stop(record)
        self.proxy.stop()

        busy: Optional[AddressSetBusyError] = None
        try:
            self.ipset.destroy_all()
        except AddressSetBusyError as e:
            busy = e

        try:
            if self.iptables.apply_failsafe(self.policy):
                logger.info("Fail-safe rules installed")
        except ApplyError as e:
            logger.warning(f"Fail-safe rules not installed: {e}")

        self.hooks.post_stop()
        if busy:
            raise busy
        logger.info("Gateway stopped")

    def _stop_quietly(self, facts: RuntimeFacts) -> None:
        try:
            self._stop(facts)
        except AddressSetBusyError as e:
            # 集合由 swap 整体替换，仍被引用也不影响随后的启动
            logger.warning(str(e))

    def stop(self) -> None:
        """停止网关（未启动时同样执行全部清理）

        Raises:
            AddressSetBusyError: 清理完成后仍有集合无法销毁
        """
        with invocation_lock(self.lock_path):
            self._stop(self.probe())

    def restart(self) -> None:
        with invocation_lock(self.lock_path):
            self._stop_quietly(self.probe())
            self._start()

    # ---- 单个进程 ----

    def restart_proxy(self) -> bool:
        """仅重启代理进程，未启动时什么也不做"""
        with invocation_lock(self.lock_path):
            if not self.probe().started:
                logger.info("Gateway not started, skipping proxy restart")
                return False
            self.proxy.stop()
            try:
                self.proxy.start()
            except ProcessError as e:
                logger.error(f"Proxy: {e}")
            self._persist_record()
            return True

    def restart_dns(self) -> bool:
        """仅重启 DNS 进程，未启动时什么也不做"""
        with invocation_lock(self.lock_path):
            facts = self.probe()
            if not facts.started:
                logger.info("Gateway not started, skipping resolver restart")
                return False
            self.resolver.stop(self.load_record(facts))
            try:
                self.resolver.start()
            except ProcessError as e:
                logger.error(f"Resolver: {e}")
            self._persist_record()
            return True

    def flush_dns_cache(self) -> bool:
        with invocation_lock(self.lock_path):
            if not self.probe().started:
                logger.info("Gateway not started, nothing to flush")
                return False
            return self.resolver.flush()

    def status(self) -> Dict:
        facts = self.probe()
        record = self.load_record(facts)
        return {
            "mode": self.policy.mode.value,
            "families": [f.value for f in self.policy.ordered_families()],
            "strategy": self.policy.strategy.value,
            "kernel": facts.to_dict(),
            "address_sets": self.ipset.existing_sets(),
            "resolver": self.resolver.report_status(record),
            "proxy": self.proxy.report_status(),
            "record": record,
        }
