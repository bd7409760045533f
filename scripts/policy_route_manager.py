#!/usr/bin/env python3
"""策略路由管理

带网关标记的数据包查询专用路由表，表中只有一条
local default dev lo，于是"打标记"就等价于"投递到本机监听端口"。

    ip -4 rule add fwmark 0x2333 table 233
    ip -4 route add local default dev lo table 233
"""

import logging
from typing import Iterable, Tuple

from command_runner import CommandRunner
from gateway_errors import ApplyError, ConfigurationError
from gateway_policy import DEFAULT_MARK, DEFAULT_ROUTE_TABLE, RESERVED_ROUTE_TABLES, Family

logger = logging.getLogger(__name__)

# 防止 ip rule del 异常时死循环
MAX_RULE_DELETES = 64


class PolicyRouteManager:
    """fwmark → 路由表 → lo"""

    def __init__(
        self,
        runner: CommandRunner,
        mark: int = DEFAULT_MARK,
        table: int = DEFAULT_ROUTE_TABLE,
    ):
        # teardown 会 flush 整张表
        if table in RESERVED_ROUTE_TABLES:
            raise ConfigurationError(f"refusing to manage reserved route table {table}")
        self.runner = runner
        self.mark = mark
        self.table = table

    @property
    def mark_hex(self) -> str:
        return f"0x{self.mark:x}"

    def _rule_cmd(self, family: Family, action: str):
        return ["ip", family.ip_flag, "rule", action, "fwmark", self.mark_hex, "table", str(self.table)]

    def install(self, families: Iterable[Family]) -> None:
        """为每个协议族安装 ip rule 与 local 路由

        Raises:
            ApplyError: 添加失败
        """
        for family in families:
            cmd = self._rule_cmd(family, "add")
            success, _, stderr = self.runner.run(cmd)
            if not success:
                raise ApplyError(f"failed to add {family.value} policy rule", cmd, stderr)

            cmd = ["ip", family.ip_flag, "route", "add", "local", "default",
                   "dev", "lo", "table", str(self.table)]
            success, _, stderr = self.runner.run(cmd, log_failure=False)
            if not success and "File exists" not in stderr:
                raise ApplyError(f"failed to add {family.value} local route", cmd, stderr)

            logger.info(f"Policy routing installed ({family.value}): fwmark {self.mark_hex} -> table {self.table}")

    def teardown(self, families: Iterable[Family] = (Family.IPV4, Family.IPV6)) -> None:
        """删除所有匹配的规则并清空路由表（无条件执行，不抛异常）"""
        for family in families:
            removed = 0
            for _ in range(MAX_RULE_DELETES):
                success, _, _ = self.runner.run(self._rule_cmd(family, "del"), log_failure=False)
                if not success:
                    break
                removed += 1
            if removed:
                logger.debug(f"Removed {removed} {family.value} policy rule(s)")

            success, _, stderr = self.runner.run(
                ["ip", family.ip_flag, "route", "flush", "table", str(self.table)],
                log_failure=False,
            )
            # 空表 flush 在部分内核上返回错误，不影响结果
            if not success:
                logger.debug(f"Route flush note ({family.value}): {stderr}")

    def probe(self, family: Family) -> Tuple[bool, bool]:
        """检查 (规则是否存在, 路由表是否非空)"""
        rule_present = False
        success, stdout, _ = self.runner.run(["ip", family.ip_flag, "rule", "show"], log_failure=False)
        if success:
            for line in stdout.splitlines():
                if f"fwmark {self.mark_hex}" in line and f"lookup {self.table}" in line:
                    rule_present = True
                    break

        success, stdout, _ = self.runner.run(
            ["ip", family.ip_flag, "route", "show", "table", str(self.table)],
            log_failure=False,
        )
        routes_present = success and bool(stdout.strip())
        return rule_present, routes_present
