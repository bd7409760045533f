"""网关错误类型

致命错误（ConfigurationError / HostEnvironmentError / ApplyError）由 CLI
打印一行诊断信息并以状态码 1 退出；TeardownError 只在停止流程中记录警告，
ProcessError 在启动流程中记录后继续。
"""

from typing import List, Optional


class GatewayError(Exception):
    """所有网关错误的基类"""


class ConfigurationError(GatewayError):
    """配置无效（模式非法、进程组冲突、缺少列表文件等），在修改内核状态前抛出"""


class HostEnvironmentError(GatewayError):
    """宿主机缺少必需的外部命令，在修改内核状态前抛出"""

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__(f"required command(s) not found: {', '.join(self.missing)}")


class ApplyError(GatewayError):
    """启动阶段插入规则/创建链/添加路由失败"""

    def __init__(self, message: str, command: Optional[List[str]] = None, stderr: str = ""):
        self.command = list(command) if command else []
        self.stderr = stderr
        detail = f": {stderr}" if stderr else ""
        super().__init__(f"{message}{detail}")


class TeardownError(GatewayError):
    """停止阶段删除失败（仅记录，不中断清理）"""


class AddressSetBusyError(TeardownError):
    """地址集合在有限重试后仍被内核引用，无法销毁"""

    def __init__(self, names: List[str]):
        self.names = list(names)
        super().__init__(f"address set(s) still busy after retries: {', '.join(self.names)}")


class ProcessError(GatewayError):
    """外部进程（代理/DNS）启动失败"""


class ListUpdateError(GatewayError):
    """列表下载或解析失败（已有的列表文件保持不变）"""
