#!/usr/bin/env python3
"""tproxy-gateway 命令行入口

所有致命错误打印一行诊断信息并以状态码 1 退出。
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from command_runner import CommandRunner
from dns_manager import ChinaDnsNgController, CommandResolverController, ResolverController
from gateway_config import GatewaySettings, load_settings
from gateway_errors import GatewayError
from gateway_policy import Policy
from lifecycle_hooks import CommandHooks
from list_updater import update_chnlist, update_chnroute, update_gfwlist
from log_config import get_logger, set_log_level, setup_logging
from proxy_manager import ProxyController
from tproxy_lifecycle import GatewayLifecycle

COMMANDS = (
    "start", "stop", "restart", "restart-proxy", "restart-dns", "status",
    "flush-dnscache", "update-chnroute", "update-gfwlist", "update-chnlist",
)


def create_resolver(settings: GatewaySettings, policy: Policy, runner: CommandRunner) -> ResolverController:
    dns = settings.dns
    if dns.backend == "chinadns-ng":
        return ChinaDnsNgController(runner, policy, settings.resolver_options())
    elif dns.backend == "command":
        return CommandResolverController(runner, policy, dns.start_cmd, dns.stop_cmd, dns.flush_cmd)
    else:
        raise GatewayError(f"unhandled resolver backend: {dns.backend}")


def build_lifecycle(settings: GatewaySettings, runner: Optional[CommandRunner] = None) -> GatewayLifecycle:
    runner = runner or CommandRunner()
    policy = settings.to_policy()
    proxy = ProxyController(runner, policy.proxy_group, settings.proxy.start_cmd, settings.proxy.stop_cmd)
    hooks = CommandHooks(
        runner,
        pre_start=settings.hooks.pre_start,
        post_start=settings.hooks.post_start,
        pre_stop=settings.hooks.pre_stop,
        post_stop=settings.hooks.post_stop,
        record_cmd=settings.hooks.record_cmd,
    )
    return GatewayLifecycle(
        runner,
        settings,
        create_resolver(settings, policy, runner),
        proxy,
        hooks=hooks,
        policy=policy,
    )


def print_status(status: dict) -> None:
    kernel = status["kernel"]
    print(f"mode:      {status['mode']} ({', '.join(status['families'])}, {status['strategy']})")
    print(f"gateway:   {'started' if kernel['started'] else 'stopped'}")
    print(f"proxy:     {'running' if status['proxy']['running'] else 'stopped'}")
    resolver = status["resolver"]
    pid = f" (PID {resolver['pid']})" if resolver.get("pid") else ""
    print(f"resolver:  {'running' if resolver['running'] else 'stopped'}{pid}")
    print(f"ipsets:    {', '.join(status['address_sets']) or '-'}")
    if kernel["chains"]:
        print(f"chains:    {', '.join(kernel['chains'])}")


def run(args: argparse.Namespace) -> int:
    settings = load_settings(args.config)
    command = args.command

    if command == "update-chnroute":
        ipv4, ipv6 = update_chnroute(settings)
        print(f"chnroute: {ipv4} IPv4 / {ipv6} IPv6 ranges")
        return 0
    elif command == "update-gfwlist":
        print(f"gfwlist: {update_gfwlist(settings)} domains")
        return 0
    elif command == "update-chnlist":
        print(f"chnlist: {update_chnlist(settings)} domains")
        return 0

    lifecycle = build_lifecycle(settings)
    if command == "start":
        lifecycle.start()
    elif command == "stop":
        lifecycle.stop()
    elif command == "restart":
        lifecycle.restart()
    elif command == "restart-proxy":
        lifecycle.restart_proxy()
    elif command == "restart-dns":
        lifecycle.restart_dns()
    elif command == "flush-dnscache":
        lifecycle.flush_dns_cache()
    elif command == "status":
        status = lifecycle.status()
        if args.json:
            print(json.dumps(status, indent=2))
        else:
            print_status(status)
    else:
        raise GatewayError(f"unknown command: {command}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="tproxy-gateway",
        description="透明代理网关：iptables/ipset/策略路由 + 代理与 DNS 进程管理",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  tproxy-gateway start                 启动（已启动时先停止）
  tproxy-gateway stop                  停止并安装兜底 DNS 规则
  tproxy-gateway status --json         以 JSON 输出状态
  tproxy-gateway update-chnroute       更新大陆 IP 段
        """,
    )
    parser.add_argument("command", choices=COMMANDS, help="要执行的操作")
    parser.add_argument("-c", "--config", help="配置文件路径（默认 /etc/tproxy-gateway/gateway.yaml）")
    parser.add_argument("--json", action="store_true", help="status 以 JSON 输出")
    parser.add_argument("-v", "--verbose", action="store_true", help="启用调试日志")

    args = parser.parse_args(argv)
    setup_logging()
    if args.verbose:
        set_log_level(logging.DEBUG)
    logger = get_logger("tproxy-gateway")

    try:
        return run(args)
    except GatewayError as e:
        logger.debug(f"{args.command} failed", exc_info=True)
        print(f"tproxy-gateway: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
