#!/usr/bin/env python3
"""列表更新

    chnroute  APNIC 分配统计 → chnroute.txt / chnroute6.txt
    gfwlist   base64 编码的 AutoProxy 列表 → gfwlist.txt（每行一个域名）
    chnlist   dnsmasq-china-list → chnlist.txt（每行一个域名）

下载或解析失败时保留原文件。写入为临时文件 + rename。
"""

import base64
import binascii
import ipaddress
import logging
import math
import re
from pathlib import Path
from typing import Iterable, List, Optional, Set, Tuple
from urllib.parse import urlsplit

import requests

from gateway_config import GatewaySettings
from gateway_errors import ListUpdateError

logger = logging.getLogger(__name__)

USER_AGENT = "tproxy-gateway/1.0"

_CHNLIST_LINE = re.compile(r"^server=/([^/]+)/")


def is_valid_domain(domain: str) -> bool:
    """验证域名格式"""
    if len(domain) < 3 or len(domain) > 253:
        return False
    if "." not in domain or domain.startswith(".") or domain.endswith("."):
        return False

    labels = domain.split(".")
    for label in labels:
        if not label or len(label) > 63:
            return False
        if label.startswith("-") or label.endswith("-"):
            return False
        if not re.match(r"^[a-z0-9_-]+$", label):
            return False

    # TLD 不能是纯数字（排除 IP 地址）
    return not labels[-1].isdigit()


def fetch_text(url: str, timeout: int = 60, session: Optional[requests.Session] = None) -> str:
    """下载文本

    Raises:
        ListUpdateError: 网络错误或 HTTP 状态码 >= 400
    """
    http = session or requests
    logger.info(f"Downloading {url}")
    try:
        response = http.get(url, timeout=timeout, headers={"User-Agent": USER_AGENT})
    except requests.exceptions.Timeout:
        raise ListUpdateError(f"download timed out: {url}") from None
    except requests.exceptions.RequestException as e:
        raise ListUpdateError(f"download failed: {url}: {e}") from None

    if response.status_code >= 400:
        raise ListUpdateError(f"download failed: {url}: HTTP {response.status_code}")
    return response.text


# ---- 解析 ----

def parse_apnic(text: str, country: str = "CN") -> Tuple[List[str], List[str]]:
    """解析 APNIC delegated 统计

    registry|cc|type|start|value|date|status
    ipv4 的 value 是地址数量（不一定是 2 的幂），ipv6 的 value 是前缀长度。
    """
    ipv4: List[str] = []
    ipv6: List[str] = []
    for line in text.splitlines():
        if not line or line.startswith("#"):
            continue
        parts = line.split("|")
        if len(parts) < 7 or parts[1] != country or parts[6] not in ("allocated", "assigned"):
            continue
        kind, start, value = parts[2], parts[3], parts[4]
        try:
            if kind == "ipv4":
                count = int(value)
                first = ipaddress.IPv4Address(start)
                if count & (count - 1) == 0:
                    ipv4.append(f"{start}/{32 - int(math.log2(count))}")
                else:
                    last = first + count - 1
                    ipv4.extend(str(n) for n in ipaddress.summarize_address_range(first, last))
            elif kind == "ipv6":
                ipv6.append(str(ipaddress.IPv6Network(f"{start}/{int(value)}", strict=False)))
        except ValueError:
            logger.debug(f"Skipping malformed APNIC line: {line}")
    return ipv4, ipv6


def _host_of(rule: str) -> str:
    if "://" in rule:
        return urlsplit(rule).hostname or ""
    return rule.split("/", 1)[0].split(":", 1)[0]


def parse_gfwlist_rule(line: str) -> Optional[str]:
    """从一条 AutoProxy 规则中提取域名，白名单/正则/注释返回 None"""
    line = line.strip()
    if not line or line.startswith(("!", "[", "@@")):
        return None
    # 正则规则
    if line.startswith("/") and line.endswith("/"):
        return None

    if line.startswith("||"):
        rule = line[2:]
    elif line.startswith("|"):
        rule = line[1:]
    elif line.startswith("."):
        rule = line[1:]
    else:
        rule = line

    host = _host_of(rule).strip("*.").lower()
    if "*" in host:
        return None
    return host if is_valid_domain(host) else None


def parse_gfwlist(encoded: str) -> List[str]:
    """解码 base64 gfwlist 并提取域名（已去重排序）"""
    try:
        content = base64.b64decode("".join(encoded.split())).decode("utf-8", errors="ignore")
    except (binascii.Error, ValueError) as e:
        raise ListUpdateError(f"gfwlist is not valid base64: {e}") from None

    domains: Set[str] = set()
    for line in content.splitlines():
        domain = parse_gfwlist_rule(line)
        if domain:
            domains.add(domain)
    return sorted(domains)


def parse_chnlist(text: str) -> List[str]:
    """dnsmasq 格式 server=/domain/ip → domain"""
    domains: Set[str] = set()
    for line in text.splitlines():
        match = _CHNLIST_LINE.match(line.strip())
        if match:
            domain = match.group(1).lower()
            if is_valid_domain(domain):
                domains.add(domain)
    return sorted(domains)


# ---- 写入 ----

def write_list(path: Path, entries: Iterable[str]) -> int:
    """原子写入每行一个条目的列表，返回条目数"""
    entries = list(entries)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text("".join(f"{e}\n" for e in entries))
    tmp_path.replace(path)
    logger.info(f"Saved {len(entries):,} entries to {path}")
    return len(entries)


def update_chnroute(settings: GatewaySettings, session: Optional[requests.Session] = None) -> Tuple[int, int]:
    files = settings.files
    text = fetch_text(settings.update.chnroute_url, settings.update.timeout, session)
    ipv4, ipv6 = parse_apnic(text)
    if not ipv4:
        raise ListUpdateError("no CN IPv4 ranges found in APNIC data")
    return (
        write_list(files.path(files.chnroute), ipv4),
        write_list(files.path(files.chnroute6), ipv6),
    )


def update_gfwlist(settings: GatewaySettings, session: Optional[requests.Session] = None) -> int:
    files = settings.files
    domains = parse_gfwlist(fetch_text(settings.update.gfwlist_url, settings.update.timeout, session))
    if not domains:
        raise ListUpdateError("gfwlist contains no domains")
    return write_list(files.path(files.gfwlist), domains)


def update_chnlist(settings: GatewaySettings, session: Optional[requests.Session] = None) -> int:
    files = settings.files
    domains = parse_chnlist(fetch_text(settings.update.chnlist_url, settings.update.timeout, session))
    if not domains:
        raise ListUpdateError("chnlist contains no domains")
    return write_list(files.path(files.chnlist), domains)
