import io
import pathlib
import subprocess
import sys

import pytest
from rich.console import Console

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import pve_report
from pve_console import StatusConsole

SECTION_ORDER = [
    "SYSTEM INFORMATION",
    "CPU INFORMATION",
    "MEMORY INFORMATION",
    "DISK USAGE",
    "NETWORK INTERFACES",
    "PROXMOX INFORMATION",
    "IMPORTANT SERVICES STATUS",
    "RECENT PACKAGE UPDATES",
    "SYSTEM TEMPERATURE",
]


class FakeRunner:
    """Serves canned command results; only tools listed in ``responses`` exist."""

    def __init__(self, responses=None, tools=()):
        self.responses = dict(responses or {})
        self.tools = set(tools) | {key.split()[0] for key in self.responses}
        self.calls = []

    def which(self, name):
        return f"/usr/bin/{name}" if name in self.tools else None

    def run(self, cmd, privileged=False, check=True, capture=True, timeout=None):
        self.calls.append(list(cmd))
        response = self.responses.get(" ".join(cmd), (1, ""))
        if isinstance(response, BaseException):
            raise response
        returncode, stdout = response
        return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr="")


@pytest.fixture(autouse=True)
def fast_cpu_sample(monkeypatch):
    monkeypatch.setattr(pve_report.psutil, "cpu_percent", lambda interval=None: 12.5)


def make_aggregator(tmp_path, runner, **settings):
    settings.setdefault("apt_history", tmp_path / "missing-history.log")
    aggregator = pve_report.SystemReportAggregator(runner, pve_report.ReportSettings(**settings))
    aggregator.CPUINFO_PATH = tmp_path / "missing-cpuinfo"
    aggregator.LOADAVG_PATH = tmp_path / "missing-loadavg"
    aggregator.OS_RELEASE_PATH = tmp_path / "missing-os-release"
    return aggregator


def section(sections, title):
    return next(item for item in sections if item.title == title)


def test_report_without_optional_tools_is_complete_and_ordered(tmp_path):
    aggregator = make_aggregator(tmp_path, FakeRunner())

    sections = aggregator.collect()

    assert [item.title for item in sections] == SECTION_ORDER
    assert all(item.lines for item in sections)
    assert section(sections, "PROXMOX INFORMATION").texts() == [
        "[WARNING] Proxmox commands not found - this might not be a Proxmox system"
    ]
    assert section(sections, "RECENT PACKAGE UPDATES").texts() == ["No apt history available"]
    assert section(sections, "SYSTEM TEMPERATURE").texts() == ["lm-sensors not installed"]
    identity = section(sections, "SYSTEM INFORMATION").texts()
    assert "Distribution: not available" in identity
    cpu = section(sections, "CPU INFORMATION").texts()
    assert "CPU Model: not available" in cpu
    assert "Load Average: not available" in cpu
    assert "CPU Usage: 12.5%" in cpu


def test_failing_category_does_not_affect_others(tmp_path, monkeypatch):
    def broken():
        raise RuntimeError("boom")

    monkeypatch.setattr(pve_report.psutil, "virtual_memory", broken)
    aggregator = make_aggregator(tmp_path, FakeRunner())

    sections = aggregator.collect()

    assert [item.title for item in sections] == SECTION_ORDER
    assert section(sections, "MEMORY INFORMATION").texts() == ["Memory information not available (boom)"]
    assert section(sections, "SYSTEM TEMPERATURE").texts() == ["lm-sensors not installed"]


def test_missing_sensors_only_affects_temperature(tmp_path):
    history = tmp_path / "history.log"
    history.write_text("Start-Date: 2024-05-01  10:00:00\nCommandline: apt-get upgrade\n", encoding="utf-8")
    (tmp_path / "cpuinfo").write_text("processor\t: 0\nmodel name\t: AMD EPYC 7302P\n", encoding="utf-8")
    (tmp_path / "loadavg").write_text("0.15 0.20 0.25 1/345 6789\n", encoding="utf-8")
    runner = FakeRunner(
        {
            "pveversion": (0, "pve-manager/8.1.4/ec5affc9e41f1d79 (running kernel: 6.5.11-8-pve)\n"),
            "pvecm status": (2, ""),
            "qm list": (0, "      VMID NAME                 STATUS\n       100 web                  running\n"),
            "lsb_release -d": (0, "Description:\tDebian GNU/Linux 12 (bookworm)\n"),
        }
    )
    aggregator = make_aggregator(tmp_path, runner, apt_history=history)
    aggregator.CPUINFO_PATH = tmp_path / "cpuinfo"
    aggregator.LOADAVG_PATH = tmp_path / "loadavg"

    sections = aggregator.collect()

    assert section(sections, "SYSTEM TEMPERATURE").texts() == ["lm-sensors not installed"]
    proxmox = section(sections, "PROXMOX INFORMATION").texts()
    assert proxmox[0] == "Proxmox VE Version:"
    assert proxmox[1].startswith("pve-manager/8.1.4")
    assert "Not part of a cluster or cluster service not running" in proxmox
    assert any("running" in line and "web" in line for line in proxmox)
    assert "No containers found or insufficient permissions" not in proxmox
    cpu = section(sections, "CPU INFORMATION").texts()
    assert "CPU Model: AMD EPYC 7302P" in cpu
    assert "Load Average: 0.15 0.20 0.25" in cpu
    assert "Distribution: Debian GNU/Linux 12 (bookworm)" in section(sections, "SYSTEM INFORMATION").texts()
    assert section(sections, "RECENT PACKAGE UPDATES").texts() == [
        "Last 5 package operations:",
        "Start-Date: 2024-05-01  10:00:00",
    ]


def test_proxmox_without_cluster_tools(tmp_path):
    runner = FakeRunner({"pveversion": (0, "pve-manager/8.1.4\n"), "pct list": (255, "")})

    lines = make_aggregator(tmp_path, runner).proxmox()
    texts = [line.text for line in lines]

    assert "Cluster management not available" in texts
    assert "No containers found or insufficient permissions" in texts


def test_proxmox_without_workload_tools(tmp_path):
    runner = FakeRunner({"pveversion": (0, "pve-manager/8.1.4\n"), "pvecm status": (0, "Quorate: Yes\n")})

    texts = [line.text for line in make_aggregator(tmp_path, runner).proxmox()]

    assert "Quorate: Yes" in texts
    assert texts[-1] == "No VM or container tools available"


def test_command_timeout_renders_placeholder(tmp_path):
    runner = FakeRunner({"pveversion": subprocess.TimeoutExpired(["pveversion"], 30)})

    texts = [line.text for line in make_aggregator(tmp_path, runner).proxmox()]

    assert texts[:2] == ["Proxmox VE Version:", "not available"]


def test_service_lines_one_per_service_in_order(tmp_path):
    runner = FakeRunner(
        {
            "systemctl is-active --quiet ssh": (0, ""),
            "systemctl is-active --quiet pveproxy": (3, ""),
            "systemctl show --property=LoadState --value pveproxy": (0, "loaded\n"),
            "systemctl is-active --quiet pvedaemon": (3, ""),
            "systemctl show --property=LoadState --value pvedaemon": (0, "not-found\n"),
            "systemctl is-active --quiet pvestatd": RuntimeError("dbus went away"),
            "systemctl is-active --quiet pve-cluster": OSError("exec failed"),
        }
    )
    aggregator = make_aggregator(tmp_path, runner)

    lines = aggregator.services()

    assert [line.text for line in lines] == [
        "ssh: Active",
        "pveproxy: Inactive",
        "pvedaemon: Inactive",
        "pvestatd: Inactive",
        "pve-cluster: Inactive",
    ]
    assert [line.style for line in lines] == ["green", "red", "red", "red", "red"]


def test_unknown_services_can_be_reported_separately(tmp_path):
    runner = FakeRunner(
        {
            "systemctl is-active --quiet ssh": (0, ""),
            "systemctl is-active --quiet sshd-typo": (3, ""),
            "systemctl show --property=LoadState --value sshd-typo": (0, "not-found\n"),
        }
    )
    aggregator = make_aggregator(
        tmp_path, runner, services=("ssh", "sshd-typo"), show_unknown_services=True
    )

    assert aggregator.service_state("sshd-typo") is pve_report.ServiceState.UNKNOWN
    assert [line.text for line in aggregator.services()] == ["ssh: Active", "sshd-typo: Unknown"]


def test_services_without_systemctl_are_unknown(tmp_path):
    aggregator = make_aggregator(tmp_path, FakeRunner())

    assert aggregator.service_state("ssh") is pve_report.ServiceState.UNKNOWN
    assert len(aggregator.services()) == len(pve_report.DEFAULT_SERVICES)


def test_package_history_keeps_last_entries(tmp_path):
    history = tmp_path / "history.log"
    entries = [f"Start-Date: 2024-05-0{day}  08:00:00" for day in range(1, 8)]
    history.write_text("\n".join(f"{entry}\nEnd-Date: x\n" for entry in entries), encoding="utf-8")
    aggregator = make_aggregator(tmp_path, FakeRunner(), apt_history=history, history_entries=3)

    texts = [line.text for line in aggregator.package_history()]

    assert texts == ["Last 3 package operations:", *entries[-3:]]


def test_temperature_lines_are_filtered(tmp_path):
    output = "coretemp-isa-0000\nAdapter: ISA adapter\nPackage id 0:  +45.0°C\nCore 0:        +43.0°C\ntemp1:  +27.8°C\n"
    aggregator = make_aggregator(tmp_path, FakeRunner({"sensors": (0, output)}))

    texts = [line.text for line in aggregator.temperature()]

    assert texts == ["coretemp-isa-0000", "Core 0:        +43.0°C", "temp1:  +27.8°C"]


def test_temperature_skips_lines_without_sensor_names(tmp_path):
    output = "Adapter: ISA adapter\nPackage id 0:  +45.0°C\nfan1:        1200 RPM\n"
    aggregator = make_aggregator(tmp_path, FakeRunner({"sensors": (0, output)}))

    assert [line.text for line in aggregator.temperature()] == ["No temperature sensors found"]


def test_missing_pveversion_is_a_tagged_warning(tmp_path):
    lines = make_aggregator(tmp_path, FakeRunner({"qm list": (0, "")})).proxmox()

    assert lines == [
        pve_report.ReportLine(
            "[WARNING] Proxmox commands not found - this might not be a Proxmox system", style="yellow"
        )
    ]


def test_temperature_without_readings(tmp_path):
    aggregator = make_aggregator(tmp_path, FakeRunner({"sensors": (1, "")}))

    assert [line.text for line in aggregator.temperature()] == ["No temperature sensors found"]


@pytest.mark.parametrize(
    "value, expected",
    [(512, "512B"), (1536, "1.5Ki"), (8 * 1024 ** 3, "8.0Gi"), (3 * 1024 ** 4, "3.0Ti")],
)
def test_format_bytes(value, expected):
    assert pve_report.format_bytes(value) == expected


def test_format_duration():
    assert pve_report.format_duration(90061) == "up 1 day, 1 hour, 1 minute"
    assert pve_report.format_duration(2 * 86400 + 300) == "up 2 days, 5 minutes"
    assert pve_report.format_duration(10) == "up 0 minutes"


def test_render_report_prints_headers_and_lines():
    buffer = io.StringIO()
    console = StatusConsole(Console(file=buffer, width=200, soft_wrap=True))
    sections = [
        pve_report.ReportSection("CPU INFORMATION", (pve_report.ReportLine("CPU Cores: [4]"),)),
        pve_report.ReportSection("SYSTEM TEMPERATURE", (pve_report.ReportLine("lm-sensors not installed"),)),
    ]

    pve_report.render_report(sections, console)

    output = buffer.getvalue().splitlines()
    assert output == [
        "=== CPU INFORMATION ===",
        "CPU Cores: [4]",
        "",
        "=== SYSTEM TEMPERATURE ===",
        "lm-sensors not installed",
        "",
    ]
