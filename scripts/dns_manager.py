#!/usr/bin/env python3
"""DNS 进程管理

ResolverController 是生命周期管理器与 DNS 进程之间的唯一接口。
两种实现，在配置中选择：
    chinadns-ng  根据模式构造参数并以 dns_group 身份启动
    command      运维人员提供的启动/停止/刷新命令
"""

import logging
import os
import signal
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from command_runner import CommandRunner
from gateway_errors import ProcessError
from gateway_policy import Family, Mode, Policy
from process_utils import pgrep, pid_alive, terminate_pids

logger = logging.getLogger(__name__)

Terminator = Callable[[Iterable[int]], List[int]]
AliveCheck = Callable[[int], bool]
Signaller = Callable[[int, int], None]


@dataclass
class ResolverOptions:
    """DNS 进程参数（由 gateway_config 生成）"""
    binary: str = "chinadns-ng"
    bind_addr: str = ""
    direct_v4: List[str] = field(default_factory=lambda: ["223.5.5.5#53"])
    direct_v6: List[str] = field(default_factory=lambda: ["240C::6666#53"])
    remote_v4: List[str] = field(default_factory=lambda: ["8.8.8.8#53"])
    remote_v6: List[str] = field(default_factory=lambda: ["2001:4860:4860::8888#53"])
    remote_tcp: bool = True
    cache_size: int = 4096
    cache_stale: int = 0
    gfwlist_files: List[str] = field(default_factory=list)
    chnlist_files: List[str] = field(default_factory=list)
    extra_args: List[str] = field(default_factory=list)
    log_file: Optional[str] = None


class ResolverController(ABC):
    """DNS 后端接口"""

    name = "resolver"

    @abstractmethod
    def start(self) -> Optional[int]:
        """启动 DNS 进程，返回 PID（未知时为 None）

        Raises:
            ProcessError: 启动失败
        """

    @abstractmethod
    def stop(self, record: Dict[str, str]) -> None:
        """停止 DNS 进程（进程已退出也不报错）"""

    @abstractmethod
    def flush(self) -> bool:
        """清空 DNS 缓存"""

    @abstractmethod
    def report_status(self, record: Dict[str, str]) -> Dict:
        """运行状态"""

    @abstractmethod
    def contribute_record(self) -> Dict[str, str]:
        """写入状态记录的字段（至少 dns_pid）"""


def _record_pid(record: Dict[str, str]) -> Optional[int]:
    value = str(record.get("dns_pid", "")).strip()
    return int(value) if value.isdigit() else None


def _with_tcp(servers: List[str], force_tcp: bool) -> List[str]:
    out = []
    for server in servers:
        if force_tcp and "://" not in server:
            server = f"tcp://{server}"
        out.append(server)
    return out


class ChinaDnsNgController(ResolverController):
    """chinadns-ng 后端"""

    name = "chinadns-ng"

    def __init__(
        self,
        runner: CommandRunner,
        policy: Policy,
        options: ResolverOptions,
        terminator: Terminator = terminate_pids,
        alive: AliveCheck = pid_alive,
        signaller: Signaller = os.kill,
    ):
        self.runner = runner
        self.policy = policy
        self.options = options
        self.terminator = terminator
        self.alive = alive
        self.signaller = signaller
        self.pid: Optional[int] = None

    def build_args(self) -> List[str]:
        """构造 chinadns-ng 命令行（不含可执行文件名）"""
        policy = self.policy
        opts = self.options
        names = policy.set_names
        ipv6 = policy.has(Family.IPV6)

        bind = opts.bind_addr or ("::" if ipv6 else "0.0.0.0")
        args = ["-b", bind, "-l", str(policy.dns_port)]

        direct = list(opts.direct_v4)
        remote = list(opts.remote_v4)
        if ipv6:
            direct += opts.direct_v6
            remote += opts.remote_v6
        for server in direct:
            args += ["-c", server]
        for server in _with_tcp(remote, opts.remote_tcp):
            args += ["-t", server]

        if opts.cache_size > 0:
            args += ["--cache", str(opts.cache_size)]
            if opts.cache_stale > 0:
                args += ["--cache-stale", str(opts.cache_stale)]

        chn_sets = f"{names.allow4},{names.allow6}"
        gfw_sets = f"{names.deny4},{names.deny6}"
        gfwlist = ",".join(opts.gfwlist_files)
        chnlist = ",".join(opts.chnlist_files)

        if policy.mode is Mode.GLOBAL:
            # 除大陆域名外全部走可信 DNS，大陆域名的结果加入 allow
            if chnlist:
                args += ["-m", chnlist, "-a", chn_sets]
            args += ["-d", "gfw"]
        elif policy.mode is Mode.GFWLIST:
            # 只有 gfwlist 域名走可信 DNS，结果加入 deny
            if gfwlist:
                args += ["-g", gfwlist]
            args += ["-d", "chn", "-A", gfw_sets]
        elif policy.mode is Mode.CHNROUTE:
            if gfwlist:
                args += ["-g", gfwlist]
            if chnlist:
                args += ["-m", chnlist]
            args += ["-d", "none", "-a", chn_sets, "-A", gfw_sets,
                     "-4", names.allow4, "-6", names.allow6]
        else:
            raise ProcessError(f"unhandled mode: {policy.mode}")

        if not ipv6:
            args.append("-N")
        args += list(opts.extra_args)
        return args

    def start(self) -> Optional[int]:
        cmd = [self.options.binary] + self.build_args()
        try:
            self.pid = self.runner.spawn(cmd, group=self.policy.dns_group, log_path=self.options.log_file)
        except OSError as e:
            self.pid = None
            raise ProcessError(f"failed to start {self.options.binary}: {e}") from e
        logger.info(f"{self.name} started (PID: {self.pid}, port: {self.policy.dns_port})")
        return self.pid

    def _orphan_pids(self) -> List[int]:
        """以 dns_group 运行的同名进程，不碰主机上其他 chinadns-ng"""
        binary = os.path.basename(self.options.binary)
        return pgrep(self.runner, ["-G", self.policy.dns_group, "-x", binary])

    def _find_pids(self, record: Dict[str, str]) -> List[int]:
        pids = []
        recorded = _record_pid(record)
        if recorded:
            pids.append(recorded)
        if self.pid and self.pid not in pids:
            pids.append(self.pid)
        # 记录丢失或进程被外部重启时的孤儿进程
        for pid in self._orphan_pids():
            if pid not in pids:
                pids.append(pid)
        return pids

    def stop(self, record: Dict[str, str]) -> None:
        pids = self._find_pids(record)
        if not pids:
            logger.debug(f"{self.name} not running")
        else:
            killed = self.terminator(pids)
            if killed:
                logger.warning(f"{self.name} force killed: {killed}")
            logger.info(f"{self.name} stopped")
        self.pid = None

    def flush(self) -> bool:
        """chinadns-ng 收到 SIGUSR1 时清空缓存"""
        pids = [pid for pid in self._find_pids({}) if self.alive(pid)]
        if not pids:
            logger.warning(f"{self.name} not running, nothing to flush")
            return False
        for pid in pids:
            try:
                self.signaller(pid, signal.SIGUSR1)
            except ProcessLookupError:
                continue
        logger.info(f"{self.name} DNS cache flushed")
        return True

    def report_status(self, record: Dict[str, str]) -> Dict:
        pid = _record_pid(record) or self.pid
        running = bool(pid) and self.alive(pid)
        if not running:
            found = self._orphan_pids()
            pid = found[0] if found else pid
            running = bool(found)
        return {"backend": self.name, "pid": pid, "running": running}

    def contribute_record(self) -> Dict[str, str]:
        return {"dns_pid": str(self.pid)} if self.pid else {}


class CommandResolverController(ResolverController):
    """自定义 DNS 后端：运维人员提供的 shell 命令，进程以 dns_group 运行"""

    name = "command"

    def __init__(
        self,
        runner: CommandRunner,
        policy: Policy,
        start_cmd: str,
        stop_cmd: str = "",
        flush_cmd: str = "",
        terminator: Terminator = terminate_pids,
    ):
        self.runner = runner
        self.policy = policy
        self.start_cmd = start_cmd
        self.stop_cmd = stop_cmd
        self.flush_cmd = flush_cmd
        self.terminator = terminator
        self.pid: Optional[int] = None

    def _group_pids(self) -> List[int]:
        return pgrep(self.runner, ["-G", self.policy.dns_group])

    def start(self) -> Optional[int]:
        if not self.start_cmd:
            raise ProcessError("custom resolver backend has no start command")
        success, _, stderr = self.runner.run_shell(self.start_cmd, group=self.policy.dns_group)
        if not success:
            raise ProcessError(f"custom resolver start command failed: {stderr}")
        pids = self._group_pids()
        self.pid = pids[0] if pids else None
        logger.info(f"Custom resolver started (PID: {self.pid})")
        return self.pid

    def stop(self, record: Dict[str, str]) -> None:
        if self.stop_cmd:
            self.runner.run_shell(self.stop_cmd)
        pids = self._group_pids()
        recorded = _record_pid(record)
        if recorded and recorded not in pids:
            pids.append(recorded)
        if pids:
            self.terminator(pids)
        self.pid = None

    def flush(self) -> bool:
        if not self.flush_cmd:
            logger.warning("Custom resolver backend has no flush command")
            return False
        success, _, _ = self.runner.run_shell(self.flush_cmd)
        return success

    def report_status(self, record: Dict[str, str]) -> Dict:
        pids = self._group_pids()
        return {"backend": self.name, "pid": pids[0] if pids else None, "running": bool(pids)}

    def contribute_record(self) -> Dict[str, str]:
        return {"dns_pid": str(self.pid)} if self.pid else {}
