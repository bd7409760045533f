#!/usr/bin/env python3
"""状态记录与调用锁

状态记录（gateway.state）只是辅助信息：内核探测结果为"未启动"时一律视为空。
格式为 key=value 行，启动成功后原子写入，每次停止前删除。

调用锁（gateway.lock）保证同一时刻只有一个 start/stop 在执行，后来者阻塞等待。
"""

import fcntl
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator

logger = logging.getLogger(__name__)


def parse_record(text: str) -> Dict[str, str]:
    record = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        record[key.strip()] = value.strip()
    return record


def render_record(record: Dict[str, str]) -> str:
    return "".join(f"{key}={value}\n" for key, value in sorted(record.items()))


class StateRecord:
    """磁盘上的辅助状态记录"""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Dict[str, str]:
        try:
            return parse_record(self.path.read_text())
        except FileNotFoundError:
            return {}
        except OSError as e:
            logger.warning(f"Cannot read state record {self.path}: {e}")
            return {}

    def save(self, record: Dict[str, str]) -> None:
        """原子写入（临时文件 + rename，文件锁防止并发写）"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        lock_path = self.path.with_suffix(".wlock")
        with open(lock_path, "w") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                tmp_path = self.path.with_suffix(".tmp")
                tmp_path.write_text(render_record(record))
                tmp_path.rename(self.path)
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def delete(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


@contextmanager
def invocation_lock(path: Path) -> Iterator[None]:
    """阻塞获取调用级排他锁"""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as lock_file:
        logger.debug(f"Waiting for lock {path}")
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
