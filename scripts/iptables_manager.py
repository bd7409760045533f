#!/usr/bin/env python3
"""iptables/ip6tables 规则执行

启动：创建私有链 → 填充 → 挂到内置链（任一步失败抛 ApplyError）
停止：从内置链摘除 → 清空 → 删除（无条件执行，"不存在"视为成功）

所有调用都带 -w，并发调用会阻塞在系统 xtables 锁上而不是失败。
"""

import logging
import shlex
from typing import Dict, Iterable, List, Optional, Tuple

from command_runner import CommandRunner
from gateway_errors import ApplyError
from gateway_policy import Family, Policy
from rule_compiler import (
    FAILSAFE_CHAINS,
    FAILSAFE_LINKS,
    HOOK_LINKS,
    PRIVATE_CHAINS,
    RulePlan,
    compile_failsafe,
)

logger = logging.getLogger(__name__)

# 最多删除这么多轮，防止规则解析异常时死循环
MAX_PRUNE_ROUNDS = 16


class IptablesManager:
    """按协议族执行 RulePlan"""

    def __init__(self, runner: CommandRunner):
        self.runner = runner

    def _ipt(self, family: Family, table: str, args: Iterable[str], log_failure: bool = False) -> Tuple[bool, str, str]:
        cmd = [family.iptables, "-w", "-t", table, *args]
        # 等待 xtables 锁，不设超时
        return self.runner.run(cmd, timeout=None, log_failure=log_failure)

    def _must(self, family: Family, table: str, args: List[str], what: str) -> None:
        success, _, stderr = self._ipt(family, table, args)
        if not success:
            logger.error(f"{family.iptables} {what} failed: {stderr}")
            raise ApplyError(f"{family.iptables} {what} failed", [family.iptables, "-t", table, *args], stderr)

    # ---- 查询 ----

    def chain_exists(self, family: Family, table: str, chain: str) -> bool:
        success, _, _ = self._ipt(family, table, ["-S", chain])
        return success

    def chain_rules(self, family: Family, table: str, chain: str) -> List[List[str]]:
        """返回链中规则（iptables -S 的 -A 行，已分词）"""
        success, stdout, _ = self._ipt(family, table, ["-S", chain])
        if not success:
            return []
        rules = []
        for line in stdout.splitlines():
            line = line.strip()
            if line.startswith(f"-A {chain} "):
                rules.append(shlex.split(line))
        return rules

    def chains_present(self, family: Family) -> List[Tuple[str, str]]:
        """已存在的私有链（兜底链不计入）"""
        return [
            (table, chain)
            for table, chains in PRIVATE_CHAINS.items()
            for chain in chains
            if self.chain_exists(family, table, chain)
        ]

    # ---- 启动 ----

    def apply(self, plan: RulePlan) -> None:
        """创建 → 填充 → 挂接

        Raises:
            ApplyError: 任一条 iptables 命令失败
        """
        family = plan.family
        for table, chain in plan.chains:
            success, _, stderr = self._ipt(family, table, ["-N", chain])
            if not success:
                if "exists" not in stderr:
                    logger.error(f"{family.iptables} create chain {table}/{chain} failed: {stderr}")
                    raise ApplyError(f"create chain {table}/{chain} failed", [family.iptables, "-N", chain], stderr)
                # 残留链：清空后复用
                self._must(family, table, ["-F", chain], f"flush {table}/{chain}")

        for rule in plan.rules:
            self._must(family, rule.table, ["-A", rule.chain, *rule.spec], f"append to {rule.table}/{rule.chain}")

        for link in plan.links:
            exists, _, _ = self._ipt(family, link.table, ["-C", link.hook, *link.spec])
            if not exists:
                self._must(family, link.table, ["-A", link.hook, *link.spec], f"link {link.hook} -> {link.chain}")

        logger.info(f"Applied {len(plan.rules)} {family.iptables} rule(s) in {len(plan.chains)} chain(s)")

    # ---- 清理 ----

    def _unlink(self, family: Family, table: str, source: str, target: str) -> int:
        """删除 source 链中所有跳转到 target 的规则"""
        removed = 0
        for tokens in self.chain_rules(family, table, source):
            if not _jumps_to(tokens, target):
                continue
            success, _, stderr = self._ipt(family, table, ["-D", *tokens[1:]])
            if success:
                removed += 1
            else:
                logger.warning(f"{family.iptables} unlink {source} -> {target} failed: {stderr}")
        return removed

    def _teardown_chains(
        self,
        family: Family,
        chains: Dict[str, Tuple[str, ...]],
        links: Dict[str, Tuple[Tuple[str, str], ...]],
    ) -> None:
        for table, pairs in links.items():
            for hook, chain in pairs:
                self._unlink(family, table, hook, chain)

        for table, names in chains.items():
            for chain in names:
                success, _, stderr = self._ipt(family, table, ["-F", chain])
                if not success and "No chain" not in stderr and "does not exist" not in stderr:
                    logger.warning(f"{family.iptables} flush {table}/{chain}: {stderr}")

        for table, names in chains.items():
            for chain in names:
                success, _, stderr = self._ipt(family, table, ["-X", chain])
                if not success and "No chain" not in stderr and "does not exist" not in stderr:
                    logger.warning(f"{family.iptables} delete {table}/{chain}: {stderr}")

    def teardown(self, family: Family) -> None:
        """摘除、清空、删除所有私有链（无条件执行，只记录警告）"""
        self._teardown_chains(family, PRIVATE_CHAINS, HOOK_LINKS)
        logger.debug(f"{family.iptables} gateway chains removed")

    def prune(self, family: Family) -> List[Tuple[str, str]]:
        """删除空链和无人引用的私有链

        在 post_start 钩子之后执行，以内核中的实际内容为准。

        Returns:
            被删除的 (table, chain) 列表
        """
        hooks = {table: [hook for hook, _ in pairs] for table, pairs in HOOK_LINKS.items()}
        removed: List[Tuple[str, str]] = []

        for _ in range(MAX_PRUNE_ROUNDS):
            present = self.chains_present(family)
            if not present:
                break
            rules = {key: self.chain_rules(family, *key) for key in present}
            hook_rules = {
                (table, hook): self.chain_rules(family, table, hook)
                for table in hooks for hook in hooks[table]
            }
            all_rules = list(rules.items()) + list(hook_rules.items())

            victim: Optional[Tuple[str, str]] = None
            for key in present:
                table, chain = key
                referenced = any(
                    t == table and any(_jumps_to(tokens, chain) for tokens in chain_rules)
                    for (t, _), chain_rules in all_rules
                )
                if not rules[key] or not referenced:
                    victim = key
                    break
            if victim is None:
                break

            table, chain = victim
            for (t, source) in list(rules) + list(hook_rules):
                if t == table and source != chain:
                    self._unlink(family, table, source, chain)
            self._ipt(family, table, ["-F", chain])
            success, _, stderr = self._ipt(family, table, ["-X", chain])
            if not success:
                logger.warning(f"{family.iptables} prune {table}/{chain} failed: {stderr}")
                break
            removed.append(victim)

        if removed:
            logger.debug(f"Pruned unused {family.iptables} chains: {', '.join(f'{t}/{c}' for t, c in removed)}")
        return removed

    # ---- 兜底规则 ----

    def apply_failsafe(self, policy: Policy) -> bool:
        """停止后安装兜底规则，返回是否安装了任何规则"""
        installed = False
        for family in policy.ordered_families():
            plan = compile_failsafe(policy, family)
            if plan.is_empty():
                continue
            self.apply(plan)
            installed = True
        return installed

    def teardown_failsafe(self, family: Family) -> None:
        self._teardown_chains(family, FAILSAFE_CHAINS, FAILSAFE_LINKS)


def _jumps_to(tokens: List[str], chain: str) -> bool:
    if "-j" not in tokens:
        return False
    index = tokens.index("-j")
    return index + 1 < len(tokens) and tokens[index + 1] == chain
