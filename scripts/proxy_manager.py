#!/usr/bin/env python3
"""代理进程管理

网关不解析代理的配置也不协商端口：只执行运维人员配置的启动/停止命令，
并通过 proxy_group 判断进程是否存活。
"""

import logging
from typing import Dict, List

from command_runner import CommandRunner
from gateway_errors import ProcessError
from process_utils import pgrep, terminate_pids

logger = logging.getLogger(__name__)


class ProxyController:
    """以 proxy_group 身份运行的代理进程"""

    def __init__(
        self,
        runner: CommandRunner,
        group: str,
        start_cmd: str,
        stop_cmd: str = "",
        terminator=terminate_pids,
    ):
        self.runner = runner
        self.group = group
        self.start_cmd = start_cmd
        self.stop_cmd = stop_cmd
        self.terminator = terminator

    def pids(self) -> List[int]:
        return pgrep(self.runner, ["-G", self.group])

    def is_running(self) -> bool:
        return bool(self.pids())

    def start(self) -> None:
        """执行启动命令

        Raises:
            ProcessError: 未配置命令或命令失败
        """
        if not self.start_cmd:
            raise ProcessError("proxy start command is not configured")
        success, _, stderr = self.runner.run_shell(self.start_cmd, group=self.group)
        if not success:
            raise ProcessError(f"proxy start command failed: {stderr}")
        logger.info(f"Proxy started (group: {self.group})")

    def stop(self) -> None:
        """执行停止命令，然后终止组内残留进程（优雅 → 强制）"""
        if self.stop_cmd:
            self.runner.run_shell(self.stop_cmd)
        remaining = self.pids()
        if remaining:
            killed = self.terminator(remaining)
            if killed:
                logger.warning(f"Proxy processes force killed: {killed}")
        logger.info("Proxy stopped")

    def restart(self) -> None:
        self.stop()
        self.start()

    def report_status(self) -> Dict:
        pids = self.pids()
        return {"group": self.group, "pids": pids, "running": bool(pids)}
