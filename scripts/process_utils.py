#!/usr/bin/env python3
"""进程查找与终止

停止代理/DNS 进程：SIGTERM → 按退避表轮询 → SIGKILL。
已退出或僵尸进程视为已停止。退避表同时用于 ipset 销毁重试。
"""

import logging
import os
import signal
import time
from pathlib import Path
from typing import Callable, Iterable, List, Sequence

from command_runner import CommandRunner

logger = logging.getLogger(__name__)

# 0.1s 步进，逐渐放宽到 1s，总计约 5 秒
BACKOFF_SCHEDULE: Sequence[float] = (0.1,) * 10 + (0.2,) * 5 + (0.5,) * 2 + (1.0,) * 2

PROC_DIR = Path(os.environ.get("TPROXY_GATEWAY_PROC_DIR", "/proc"))


def _is_zombie(pid: int) -> bool:
    """读取 /proc/<pid>/stat 的状态字段"""
    try:
        stat = (PROC_DIR / str(pid) / "stat").read_text()
    except OSError:
        return False
    # 进程名可能包含空格和括号，状态在最后一个 ')' 之后
    fields = stat[stat.rfind(")") + 2:].split()
    return bool(fields) and fields[0] == "Z"


def pid_alive(pid: int) -> bool:
    """检查进程是否仍在运行（僵尸进程视为已退出）"""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # 进程存在但属于其他用户
        pass
    return not _is_zombie(pid)


def pgrep(runner: CommandRunner, args: List[str]) -> List[int]:
    """pgrep 查找进程，返回 PID 列表（无匹配时为空）"""
    success, stdout, _ = runner.run(["pgrep"] + list(args), log_failure=False)
    if not success:
        return []
    pids = []
    for line in stdout.splitlines():
        line = line.strip()
        if line.isdigit():
            pids.append(int(line))
    return pids


def terminate_pids(
    pids: Iterable[int],
    sleep: Callable[[float], None] = time.sleep,
    schedule: Sequence[float] = BACKOFF_SCHEDULE,
) -> List[int]:
    """优雅终止一组进程，超时后强制杀死

    Args:
        pids: 目标进程（可以包含已退出的进程）
        sleep: 等待函数，测试中替换
        schedule: 轮询间隔表

    Returns:
        被 SIGKILL 的 PID 列表
    """
    pending = []
    for pid in dict.fromkeys(pids):
        if not pid_alive(pid):
            continue
        try:
            os.kill(pid, signal.SIGTERM)
            logger.debug(f"Sent SIGTERM to {pid}")
            pending.append(pid)
        except ProcessLookupError:
            pass

    for delay in schedule:
        pending = [pid for pid in pending if pid_alive(pid)]
        if not pending:
            return []
        sleep(delay)

    killed = []
    for pid in pending:
        if not pid_alive(pid):
            continue
        try:
            os.kill(pid, signal.SIGKILL)
            logger.warning(f"Process {pid} did not exit after SIGTERM, sent SIGKILL")
            killed.append(pid)
        except ProcessLookupError:
            pass
    return killed
