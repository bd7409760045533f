#!/usr/bin/env python3
"""ipset 地址集合管理

四个 hash:net 集合（allow4/allow6/deny4/deny6）每次启动整体重建：
一次 ipset restore 调用里先填充临时集合再 swap，
规则引用的集合不会出现半填充状态。
"""

import ipaddress
import logging
import time
from typing import Callable, List, Optional, Sequence

from command_runner import CommandRunner
from gateway_errors import AddressSetBusyError, ApplyError
from gateway_policy import AddressSetNames, Family
from list_parser import MembershipPlan
from process_utils import BACKOFF_SCHEDULE

logger = logging.getLogger(__name__)

TEMP_SUFFIX = "_tmp"
SET_TYPE = "hash:net"
MAX_ELEMENTS = 262144


def temp_set_name(name: str) -> str:
    return f"{name}{TEMP_SUFFIX}"


def _addable(cidr: str) -> bool:
    # hash:net 不接受 /0 前缀
    return ipaddress.ip_network(cidr, strict=False).prefixlen > 0


def render_restore_script(plan: MembershipPlan, names: AddressSetNames = AddressSetNames()) -> str:
    """生成 ipset restore 输入

    每个集合：create -exist → 临时集合 create/flush/add → swap → destroy 临时集合
    """
    lines: List[str] = []
    for family in (Family.IPV4, Family.IPV6):
        for kind, name in (("allow", names.allow(family)), ("deny", names.deny(family))):
            tmp = temp_set_name(name)
            options = f"{SET_TYPE} family {family.ipset_family} maxelem {MAX_ELEMENTS}"
            lines.append(f"create {name} {options} -exist")
            lines.append(f"create {tmp} {options} -exist")
            lines.append(f"flush {tmp}")
            for cidr in plan.members(kind, family):
                if _addable(cidr):
                    lines.append(f"add {tmp} {cidr}")
            lines.append(f"swap {tmp} {name}")
            lines.append(f"destroy {tmp}")
    return "\n".join(lines) + "\n"


class IpsetManager:
    """ipset 集合的填充与销毁"""

    def __init__(
        self,
        runner: CommandRunner,
        names: AddressSetNames = AddressSetNames(),
        sleep: Callable[[float], None] = time.sleep,
        schedule: Sequence[float] = BACKOFF_SCHEDULE,
    ):
        self.runner = runner
        self.names = names
        self.sleep = sleep
        self.schedule = schedule

    def populate(self, plan: MembershipPlan) -> None:
        """原子地重建全部四个集合

        Raises:
            ApplyError: ipset restore 失败
        """
        script = render_restore_script(plan, self.names)
        cmd = ["ipset", "restore"]
        success, _, stderr = self.runner.run(cmd, input_text=script, log_failure=False)
        if not success:
            logger.error(f"ipset restore failed: {stderr}")
            raise ApplyError("failed to populate address sets", cmd, stderr)

        counts = ", ".join(
            f"{self.names.allow(f)}={len(plan.members('allow', f))} "
            f"{self.names.deny(f)}={len(plan.members('deny', f))}"
            for f in (Family.IPV4, Family.IPV6)
        )
        logger.info(f"Address sets populated: {counts}")

    def existing_sets(self) -> List[str]:
        """返回内核中存在的本网关集合"""
        success, stdout, _ = self.runner.run(["ipset", "list", "-n"], log_failure=False)
        if not success:
            return []
        present = set(stdout.split())
        return [name for name in self.names.all() if name in present]

    def _destroy_once(self, name: str) -> Optional[bool]:
        """销毁单个集合

        Returns:
            True 已销毁或本就不存在；False 被引用；None 其他错误
        """
        success, _, stderr = self.runner.run(["ipset", "destroy", name], log_failure=False)
        if success or "does not exist" in stderr:
            return True
        if "in use" in stderr:
            return False
        logger.warning(f"ipset destroy {name} failed: {stderr}")
        return None

    def destroy_all(self) -> None:
        """销毁全部集合（含残留的临时集合）

        被引用的集合按退避表重试，仍失败时在处理完其他集合后抛出。

        Raises:
            AddressSetBusyError: 重试窗口内集合一直被引用
        """
        busy = []
        targets = list(self.names.all()) + [temp_set_name(n) for n in self.names.all()]
        for name in targets:
            result = self._destroy_once(name)
            for delay in self.schedule:
                if result is not False:
                    break
                self.sleep(delay)
                result = self._destroy_once(name)
            if result is False:
                logger.error(f"Address set {name} still in use, giving up")
                busy.append(name)

        if busy:
            raise AddressSetBusyError(busy)
