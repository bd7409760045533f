"""
Pytest configuration and fixtures for tproxy-gateway tests.
"""

import ipaddress
import sys
import tempfile
from pathlib import Path
from typing import Generator, List

import pytest

# Add scripts directory (and this directory, for the fakes) to path for imports
SCRIPTS_DIR = Path(__file__).parent.parent / "scripts"
TESTS_DIR = Path(__file__).parent
sys.path.insert(0, str(SCRIPTS_DIR))
sys.path.insert(0, str(TESTS_DIR))

from fake_kernel import FakeKernel  # noqa: E402


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def kernel() -> FakeKernel:
    """Fresh in-memory kernel."""
    return FakeKernel()


@pytest.fixture
def list_dir(temp_dir: Path) -> Path:
    """Base directory populated with minimal list files for every mode."""
    base = temp_dir / "etc"
    base.mkdir()
    (base / "chnroute.txt").write_text("1.0.1.0/24\n114.114.0.0/16\n")
    (base / "chnroute6.txt").write_text("2400:3200::/32\n")
    (base / "gfwlist.txt").write_text("google.com\ntwitter.com\n")
    (base / "chnlist.txt").write_text("baidu.com\nqq.com\n")
    (base / "ignlist.ext").write_text("# direct\n-203.0.114.0/24\n~2001:da8::/32\n@example.cn\n")
    (base / "gfwlist.ext").write_text("-8.8.4.0/24\n@example.org\n")
    return base


@pytest.fixture
def settings_data(temp_dir: Path, list_dir: Path) -> dict:
    """Raw configuration mapping pointing all paths into the temp dir."""
    return {
        "mode": "chnroute",
        "ipv4": True,
        "ipv6": False,
        "proxy": {
            "start_cmd": "proxy-start",
            "stop_cmd": "proxy-stop",
            "servers": ["198.51.100.7"],
        },
        "dns": {
            "direct_v4": ["114.114.114.114#53"],
            "remote_v4": ["8.8.8.8#53"],
        },
        "files": {
            "base_dir": str(list_dir),
            "run_dir": str(temp_dir / "run"),
        },
    }


class StubLookup:
    """Host lookup that only understands IP literals."""

    def __init__(self):
        self.calls: List[str] = []

    def __call__(self, host, family):
        self.calls.append(host)
        try:
            address = ipaddress.ip_address(host)
        except ValueError:
            return []
        expected = 4 if family.value == "ipv4" else 6
        return [str(address)] if address.version == expected else []


@pytest.fixture
def stub_lookup() -> StubLookup:
    return StubLookup()


@pytest.fixture
def delays() -> List[float]:
    """Collects requested sleep delays; pass ``delays.append`` as the sleep function."""
    return []
