#!/usr/bin/env python3
"""启动/停止钩子

LifecycleHooks 默认什么都不做；CommandHooks 执行配置中的 shell 命令。
钩子命令失败只记录警告，不影响启动/停止流程。
"""

import logging
from typing import Dict

from command_runner import CommandRunner
from state_record import parse_record

logger = logging.getLogger(__name__)


class LifecycleHooks:
    """无操作的默认钩子"""

    def pre_start(self) -> None:
        pass

    def post_start(self) -> None:
        pass

    def pre_stop(self) -> None:
        pass

    def post_stop(self) -> None:
        pass

    def contribute_record(self) -> Dict[str, str]:
        """追加到状态记录的字段"""
        return {}


class CommandHooks(LifecycleHooks):
    """执行运维人员配置的钩子命令

    record_cmd 的输出按 key=value 行解析后写入状态记录。
    """

    def __init__(
        self,
        runner: CommandRunner,
        pre_start: str = "",
        post_start: str = "",
        pre_stop: str = "",
        post_stop: str = "",
        record_cmd: str = "",
    ):
        self.runner = runner
        self.commands = {
            "pre_start": pre_start,
            "post_start": post_start,
            "pre_stop": pre_stop,
            "post_stop": post_stop,
        }
        self.record_cmd = record_cmd

    def _run(self, stage: str) -> None:
        command = self.commands.get(stage)
        if not command:
            return
        logger.info(f"Running {stage} hook")
        success, _, stderr = self.runner.run_shell(command)
        if not success:
            logger.warning(f"{stage} hook failed: {stderr}")

    def pre_start(self) -> None:
        self._run("pre_start")

    def post_start(self) -> None:
        self._run("post_start")

    def pre_stop(self) -> None:
        self._run("pre_stop")

    def post_stop(self) -> None:
        self._run("post_stop")

    def contribute_record(self) -> Dict[str, str]:
        if not self.record_cmd:
            return {}
        success, stdout, _ = self.runner.run_shell(self.record_cmd)
        if not success:
            return {}
        return parse_record(stdout)
