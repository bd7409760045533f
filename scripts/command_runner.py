#!/usr/bin/env python3
"""外部命令执行

所有内核相关操作（iptables/ip6tables/ipset/ip/sysctl）都通过 CommandRunner
执行，测试中用 FakeKernel 替换。

约定：run() 永远不因返回码非零而抛异常，统一返回 (success, stdout, stderr)，
由调用方决定失败是致命（启动）还是可忽略（清理）。
"""

import logging
import shutil
import subprocess
from typing import Dict, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


class CommandRunner:
    """基于 subprocess 的命令执行器"""

    def run(
        self,
        cmd: Sequence[str],
        input_text: Optional[str] = None,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        log_failure: bool = True,
    ) -> Tuple[bool, str, str]:
        """执行命令

        Args:
            cmd: 命令列表
            input_text: 写入 stdin 的内容（ipset restore 使用）
            timeout: 超时秒数，None 表示一直等待（iptables -w 等锁）
            log_failure: 失败时是否记录警告（探测性命令传 False）

        Returns:
            (success, stdout, stderr)
        """
        cmd = [str(c) for c in cmd]
        logger.debug(f"$ {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            logger.error(f"Command timed out: {' '.join(cmd)}")
            return False, "", "timeout"
        except OSError as e:
            if log_failure:
                logger.error(f"Command error: {' '.join(cmd)} - {e}")
            return False, "", str(e)

        success = result.returncode == 0
        stdout = (result.stdout or "").strip()
        stderr = (result.stderr or "").strip()
        if not success and log_failure:
            logger.warning(f"Command failed: {' '.join(cmd)}: {stderr or result.returncode}")
        return success, stdout, stderr

    def run_shell(
        self,
        command: str,
        group: Optional[str] = None,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
    ) -> Tuple[bool, str, str]:
        """以指定进程组执行运维人员配置的 shell 命令"""
        logger.debug(f"$ sh -c {command!r} (group={group})")
        try:
            result = subprocess.run(
                command,
                shell=True,
                capture_output=True,
                text=True,
                timeout=timeout,
                group=group,
            )
        except subprocess.TimeoutExpired:
            logger.error(f"Shell command timed out: {command}")
            return False, "", "timeout"
        except (OSError, KeyError, ValueError) as e:
            # 组名不存在时 grp.getgrnam 抛 KeyError
            logger.error(f"Shell command error: {command} - {e}")
            return False, "", str(e)

        success = result.returncode == 0
        stderr = (result.stderr or "").strip()
        if not success:
            logger.warning(f"Shell command failed ({result.returncode}): {command}: {stderr}")
        return success, (result.stdout or "").strip(), stderr

    def spawn(
        self,
        cmd: Sequence[str],
        group: Optional[str] = None,
        log_path: Optional[str] = None,
    ) -> int:
        """后台启动长期运行的进程，返回 PID

        Raises:
            OSError: 启动失败（命令不存在、组不存在等）
        """
        cmd = [str(c) for c in cmd]
        logger.debug(f"$ {' '.join(cmd)} & (group={group})")
        output = open(log_path, "ab") if log_path else subprocess.DEVNULL
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=output,
                stderr=subprocess.STDOUT if log_path else subprocess.DEVNULL,
                group=group,
                start_new_session=True,
            )
        except (KeyError, ValueError) as e:
            raise OSError(f"cannot start {cmd[0]}: {e}") from e
        finally:
            if log_path:
                output.close()
        return proc.pid

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)


def missing_commands(runner: CommandRunner, names: List[str]) -> List[str]:
    """返回 PATH 中找不到的命令"""
    return [name for name in names if not runner.which(name)]


def apply_sysctls(runner: CommandRunner, params: Dict[str, str]) -> List[str]:
    """写入内核参数（尽力而为）

    Returns:
        写入失败的参数名列表
    """
    failed = []
    for key, value in params.items():
        success, _, stderr = runner.run(["sysctl", "-q", "-w", f"{key}={value}"], log_failure=False)
        if not success:
            logger.warning(f"sysctl {key}={value} failed: {stderr}")
            failed.append(key)
    return failed
