"""
Unit tests for the ipset, policy-routing and iptables managers against the fake kernel.
"""

import pytest

from gateway_errors import AddressSetBusyError, ApplyError, ConfigurationError
from gateway_policy import AddressSetNames, Family, resolve_policy
from ipset_manager import IpsetManager, render_restore_script, temp_set_name
from iptables_manager import IptablesManager
from list_parser import MembershipPlan
from policy_route_manager import PolicyRouteManager
from rule_compiler import CHAIN_QUIC, CHAIN_RULE, TABLE_MANGLE, TABLE_NAT, compile_rules

NAMES = AddressSetNames()


def _plan(allow4=(), deny4=()):
    return MembershipPlan(
        allow={Family.IPV4: list(allow4), Family.IPV6: []},
        deny={Family.IPV4: list(deny4), Family.IPV6: []},
    )


class TestRestoreScript:
    """ipset restore text."""

    def test_swap_sequence(self):
        script = render_restore_script(_plan(allow4=["10.0.0.0/8"]))
        lines = script.splitlines()
        tmp = temp_set_name(NAMES.allow4)
        start = lines.index(f"flush {tmp}")
        assert lines[start + 1] == f"add {tmp} 10.0.0.0/8"
        assert lines[start + 2] == f"swap {tmp} {NAMES.allow4}"
        assert lines[start + 3] == f"destroy {tmp}"

    def test_all_four_sets_created(self):
        script = render_restore_script(_plan())
        for name in NAMES.all():
            assert f"create {name} hash:net" in script
        assert "family inet6" in script

    def test_zero_prefix_skipped(self):
        script = render_restore_script(_plan(allow4=["0.0.0.0/0", "1.2.3.0/24"]))
        assert "0.0.0.0/0" not in script
        assert "1.2.3.0/24" in script


class TestIpsetManager:
    """Population and destroy-with-retry."""

    def test_populate_replaces_members(self, kernel):
        manager = IpsetManager(kernel)
        manager.populate(_plan(allow4=["1.1.1.0/24", "2.2.2.0/24"]))
        manager.populate(_plan(allow4=["3.3.3.0/24"]))
        assert kernel.set_members(NAMES.allow4) == ["3.3.3.0/24"]
        assert sorted(manager.existing_sets()) == sorted(NAMES.all())
        assert not any(name.endswith("_tmp") for name in kernel.sets)

    def test_populate_failure(self, kernel):
        kernel.fail_on.append("ipset restore")
        with pytest.raises(ApplyError):
            IpsetManager(kernel).populate(_plan())

    def test_destroy_missing_sets_is_success(self, kernel):
        IpsetManager(kernel).destroy_all()

    def test_destroy_retries_transient_busy(self, kernel, delays):
        manager = IpsetManager(kernel, sleep=delays.append)
        manager.populate(_plan())
        kernel.busy_sets[NAMES.deny4] = 3
        manager.destroy_all()
        assert kernel.sets == {}
        assert delays == [0.1, 0.1, 0.1]

    def test_destroy_gives_up_after_schedule(self, kernel, delays):
        manager = IpsetManager(kernel, sleep=delays.append, schedule=(0.1, 0.5))
        manager.populate(_plan())
        kernel.busy_sets[NAMES.allow6] = 100
        with pytest.raises(AddressSetBusyError) as exc:
            manager.destroy_all()
        assert exc.value.names == [NAMES.allow6]
        # the other sets were still destroyed
        assert list(kernel.sets) == [NAMES.allow6]


class TestPolicyRouteManager:
    """fwmark rule and local table."""

    def test_install_probe_teardown(self, kernel):
        manager = PolicyRouteManager(kernel)
        assert manager.probe(Family.IPV4) == (False, False)
        manager.install([Family.IPV4])
        assert manager.probe(Family.IPV4) == (True, True)
        assert manager.probe(Family.IPV6) == (False, False)
        manager.teardown()
        assert manager.probe(Family.IPV4) == (False, False)

    def test_teardown_removes_duplicate_rules(self, kernel):
        manager = PolicyRouteManager(kernel)
        for _ in range(3):
            kernel.run(["ip", "-4", "rule", "add", "fwmark", "0x2333", "table", "233"])
        manager.teardown([Family.IPV4])
        assert kernel.rules["-4"] == []

    @pytest.mark.parametrize("table", [253, 254, 255])
    def test_reserved_table_refused(self, kernel, table):
        kernel.routes["-4"][str(table)] = ["default via 192.168.1.1 dev eth0"]
        with pytest.raises(ConfigurationError, match="reserved"):
            PolicyRouteManager(kernel, table=table).teardown()
        assert kernel.routes["-4"][str(table)] == ["default via 192.168.1.1 dev eth0"]

    def test_install_failure(self, kernel):
        kernel.fail_on.append("rule add")
        with pytest.raises(ApplyError):
            PolicyRouteManager(kernel).install([Family.IPV4])


class TestIptablesManager:
    """Apply, prune and teardown."""

    @pytest.fixture
    def populated(self, kernel):
        IpsetManager(kernel).populate(_plan())
        return kernel

    def test_apply_and_teardown(self, populated):
        manager = IptablesManager(populated)
        plan = compile_rules(resolve_policy("global"), Family.IPV4)
        manager.apply(plan)
        assert len(manager.chains_present(Family.IPV4)) == 8
        assert ("-j", "SSTP_OUTPUT") in populated.chain("iptables", "mangle", "OUTPUT")

        manager.teardown(Family.IPV4)
        assert manager.chains_present(Family.IPV4) == []
        assert populated.chain("iptables", "mangle", "OUTPUT") == []
        assert populated.chain("iptables", "nat", "POSTROUTING") == []

    def test_every_call_waits_for_xtables_lock(self, populated):
        manager = IptablesManager(populated)
        manager.apply(compile_rules(resolve_policy("gfwlist"), Family.IPV4))
        manager.teardown(Family.IPV4)
        calls = [c for c in populated.commands if c[0] in ("iptables", "ip6tables")]
        assert calls and all(c[1] == "-w" for c in calls)

    def test_teardown_when_absent(self, kernel):
        IptablesManager(kernel).teardown(Family.IPV4)

    def test_apply_failure(self, populated):
        populated.fail_on.append("TPROXY")
        with pytest.raises(ApplyError):
            IptablesManager(populated).apply(compile_rules(resolve_policy("global"), Family.IPV4))

    def test_prune_removes_unused(self, populated):
        manager = IptablesManager(populated)
        manager.apply(compile_rules(resolve_policy("global"), Family.IPV4))
        removed = manager.prune(Family.IPV4)
        assert set(removed) == {(TABLE_MANGLE, CHAIN_QUIC), (TABLE_NAT, CHAIN_RULE)}
        assert len(manager.chains_present(Family.IPV4)) == 6

    def test_prune_unlinks_empty_hook_chains(self, populated):
        manager = IptablesManager(populated)
        policy = resolve_policy("global", strategy="redirect", udp=False, drop_quic="never")
        manager.apply(compile_rules(policy, Family.IPV4))
        manager.prune(Family.IPV4)
        assert populated.user_chains("iptables", "mangle") == []
        assert populated.chain("iptables", "mangle", "PREROUTING") == []
        assert CHAIN_RULE in populated.user_chains("iptables", "nat")

    def test_reapply_reuses_leftover_chain(self, populated):
        manager = IptablesManager(populated)
        populated.run(["iptables", "-t", "nat", "-N", "SSTP_OUTPUT"])
        populated.run(["iptables", "-t", "nat", "-A", "SSTP_OUTPUT", "-j", "RETURN"])
        manager.apply(compile_rules(resolve_policy("global"), Family.IPV4))
        assert ("-j", "RETURN") not in populated.chain("iptables", "nat", "SSTP_OUTPUT")

    def test_failsafe(self, populated):
        manager = IptablesManager(populated)
        policy = resolve_policy("global", failsafe_dns={Family.IPV4: "114.114.114.114"})
        assert manager.apply_failsafe(policy)
        assert "SSTP_FAILSAFE_PRE" in populated.user_chains("iptables", "nat")
        # fail-safe chains do not count as started
        assert manager.chains_present(Family.IPV4) == []
        manager.teardown_failsafe(Family.IPV4)
        assert populated.user_chains("iptables", "nat") == []
