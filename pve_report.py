"""Best-effort system report for Proxmox hosts.

The report is a fixed sequence of sections, from "what is this machine" to
"is anything currently wrong".  Every section, and every value inside a
section, is evaluated independently: a missing command, an unreadable file or
an unexpected error only replaces that piece with a placeholder line.

The aggregator talks to the host through a *runner* object exposing
``which(name)`` and ``run(cmd, check=..., capture=..., timeout=...)``, so the
report can be exercised without a real Proxmox installation.
"""
from __future__ import annotations

import dataclasses
import datetime as _dt
import enum
import logging
import os
import pathlib
import platform
import re
import socket
import subprocess
import time
from typing import Callable, List, Optional, Sequence, Tuple

import psutil

from pve_console import StatusConsole

LOG = logging.getLogger(__name__)

NOT_AVAILABLE = "not available"

DEFAULT_SERVICES: Tuple[str, ...] = ("ssh", "pveproxy", "pvedaemon", "pvestatd", "pve-cluster")
DEFAULT_APT_HISTORY = pathlib.Path("/var/log/apt/history.log")

_SENSOR_LINE = re.compile(r"temp|Core")


class ServiceState(enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    UNKNOWN = "unknown"


@dataclasses.dataclass(frozen=True)
class ReportLine:
    text: str
    style: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class ReportSection:
    """A titled block of report lines."""

    title: str
    lines: Tuple[ReportLine, ...]

    def texts(self) -> List[str]:
        return [line.text for line in self.lines]


@dataclasses.dataclass(frozen=True)
class ReportSettings:
    """Tunables for :class:`SystemReportAggregator`."""

    services: Tuple[str, ...] = DEFAULT_SERVICES
    apt_history: pathlib.Path = DEFAULT_APT_HISTORY
    history_entries: int = 5
    command_timeout: Optional[float] = 30.0
    show_unknown_services: bool = False


def format_bytes(value: float) -> str:
    """Render a byte count the way ``free -h`` does (``Ki``/``Mi``/``Gi``...)."""

    units = ("B", "Ki", "Mi", "Gi", "Ti", "Pi")
    amount = float(value)
    for unit in units:
        if abs(amount) < 1024 or unit == units[-1]:
            if unit == "B":
                return f"{int(amount)}B"
            return f"{amount:.1f}{unit}"
        amount /= 1024
    return f"{amount:.1f}Pi"  # pragma: no cover - loop always returns


def format_duration(seconds: float) -> str:
    """Render an uptime similar to ``uptime -p``."""

    minutes_total = int(seconds) // 60
    days, remainder = divmod(minutes_total, 24 * 60)
    hours, minutes = divmod(remainder, 60)
    parts = []
    if days:
        parts.append(f"{days} day{'s' if days != 1 else ''}")
    if hours:
        parts.append(f"{hours} hour{'s' if hours != 1 else ''}")
    if minutes or not parts:
        parts.append(f"{minutes} minute{'s' if minutes != 1 else ''}")
    return "up " + ", ".join(parts)


def _prefix_length(netmask: str) -> Optional[int]:
    if not netmask:
        return None
    if "." in netmask:
        octets = [int(part) for part in netmask.split(".")]
    else:
        octets = [int(part, 16) for part in netmask.split(":") if part]
    return sum(bin(octet).count("1") for octet in octets)


class SystemReportAggregator:
    """Collects the system report sections in their fixed order."""

    CPUINFO_PATH = pathlib.Path("/proc/cpuinfo")
    LOADAVG_PATH = pathlib.Path("/proc/loadavg")
    OS_RELEASE_PATH = pathlib.Path("/etc/os-release")

    def __init__(self, runner, settings: Optional[ReportSettings] = None) -> None:
        self.runner = runner
        self.settings = settings or ReportSettings()

    # ------------------------------------------------------------------
    # probing helpers
    # ------------------------------------------------------------------
    def _has(self, name: str) -> bool:
        return self.runner.which(name) is not None

    def _output(self, cmd: Sequence[str]) -> Optional[str]:
        """Return stdout of ``cmd`` or ``None`` when it is missing or fails."""

        if not self._has(cmd[0]):
            return None
        try:
            result = self.runner.run(
                list(cmd), check=False, capture=True, timeout=self.settings.command_timeout
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            LOG.debug("Report probe %s failed: %s", " ".join(cmd), exc)
            return None
        if result.returncode != 0:
            LOG.debug("Report probe %s exited with %s", " ".join(cmd), result.returncode)
            return None
        return (result.stdout or "").rstrip()

    @staticmethod
    def _value(label: str, getter: Callable[[], Optional[str]]) -> ReportLine:
        try:
            value = getter()
        except Exception as exc:  # noqa: BLE001 - one value must not sink the section
            LOG.debug("Could not determine %s: %s", label, exc)
            value = None
        return ReportLine(f"{label}: {value if value else NOT_AVAILABLE}")

    @staticmethod
    def _lines(output: str) -> List[ReportLine]:
        return [ReportLine(line) for line in output.splitlines()]

    # ------------------------------------------------------------------
    # individual values
    # ------------------------------------------------------------------
    def _uptime(self) -> Optional[str]:
        output = self._output(["uptime", "-p"])
        if output:
            return output.strip()
        return format_duration(time.time() - psutil.boot_time())

    def _distribution(self) -> Optional[str]:
        output = self._output(["lsb_release", "-d"])
        if output and ":" in output:
            return output.split(":", 1)[1].strip()
        try:
            contents = self.OS_RELEASE_PATH.read_text(encoding="utf-8")
        except OSError:
            return None
        for line in contents.splitlines():
            if line.startswith("PRETTY_NAME="):
                return line.split("=", 1)[1].strip().strip('"')
        return None

    def _cpu_model(self) -> Optional[str]:
        with self.CPUINFO_PATH.open("r", encoding="utf-8", errors="ignore") as fh:
            for line in fh:
                if line.startswith("model name") and ":" in line:
                    return line.split(":", 1)[1].strip()
        return None

    def _load_average(self) -> Optional[str]:
        fields = self.LOADAVG_PATH.read_text(encoding="utf-8").split()
        return " ".join(fields[:3]) or None

    # ------------------------------------------------------------------
    # sections
    # ------------------------------------------------------------------
    def system_identity(self) -> List[ReportLine]:
        return [
            self._value("Hostname", socket.gethostname),
            self._value("Uptime", self._uptime),
            self._value("Kernel", platform.release),
            self._value("Distribution", self._distribution),
            self._value("Architecture", platform.machine),
        ]

    def cpu(self) -> List[ReportLine]:
        return [
            self._value("CPU Model", self._cpu_model),
            self._value("CPU Cores", lambda: str(os.cpu_count()) if os.cpu_count() else None),
            self._value("CPU Usage", lambda: f"{psutil.cpu_percent(interval=0.5):.1f}%"),
            self._value("Load Average", self._load_average),
        ]

    def memory(self) -> List[ReportLine]:
        mem = psutil.virtual_memory()
        swap = psutil.swap_memory()
        return [
            ReportLine(
                f"Mem:   total {format_bytes(mem.total)}  used {format_bytes(mem.used)}"
                f"  free {format_bytes(mem.free)}  available {format_bytes(mem.available)}"
            ),
            ReportLine(
                f"Swap:  total {format_bytes(swap.total)}  used {format_bytes(swap.used)}"
                f"  free {format_bytes(swap.free)}"
            ),
        ]

    def disk(self) -> List[ReportLine]:
        lines = [ReportLine(f"{'Filesystem':<24} {'Size':>8} {'Used':>8} {'Avail':>8} {'Use%':>5} Mounted on")]
        seen = set()
        for part in psutil.disk_partitions(all=True):
            if not (part.device.startswith("/dev") or part.device == "tmpfs" or part.fstype == "tmpfs"):
                continue
            if part.mountpoint.startswith("/boot") or part.mountpoint in seen:
                continue
            seen.add(part.mountpoint)
            try:
                usage = psutil.disk_usage(part.mountpoint)
            except OSError as exc:
                LOG.debug("disk_usage(%s) failed: %s", part.mountpoint, exc)
                lines.append(ReportLine(f"{part.device:<24} {part.mountpoint}: {NOT_AVAILABLE}"))
                continue
            lines.append(
                ReportLine(
                    f"{part.device:<24} {format_bytes(usage.total):>8} {format_bytes(usage.used):>8}"
                    f" {format_bytes(usage.free):>8} {usage.percent:>4.0f}% {part.mountpoint}"
                )
            )
        if len(lines) == 1:
            return [ReportLine("No disks found")]
        return lines

    def network(self) -> List[ReportLine]:
        addresses = psutil.net_if_addrs()
        stats = psutil.net_if_stats()
        lines: List[ReportLine] = []
        for name, addrs in addresses.items():
            if name == "lo":
                continue
            iface_stats = stats.get(name)
            state = "UNKNOWN" if iface_stats is None else ("UP" if iface_stats.isup else "DOWN")
            rendered = []
            for addr in addrs:
                if addr.family not in (socket.AF_INET, socket.AF_INET6):
                    continue
                address = addr.address.split("%", 1)[0]
                prefix = _prefix_length(addr.netmask or "")
                rendered.append(address if prefix is None else f"{address}/{prefix}")
            lines.append(ReportLine(f"{name:<16} {state:<8} {' '.join(rendered)}".rstrip()))
        return lines or [ReportLine("No network interfaces found")]

    def proxmox(self) -> List[ReportLine]:
        if not self._has("pveversion"):
            return [
                ReportLine(
                    "[WARNING] Proxmox commands not found - this might not be a Proxmox system", style="yellow"
                )
            ]

        lines = [ReportLine("Proxmox VE Version:")]
        version = self._output(["pveversion"])
        lines.extend(self._lines(version) if version else [ReportLine(NOT_AVAILABLE)])
        lines.append(ReportLine(""))

        lines.append(ReportLine("Cluster Status:"))
        if self._has("pvecm"):
            status = self._output(["pvecm", "status"])
            if status:
                lines.extend(self._lines(status))
            else:
                lines.append(ReportLine("Not part of a cluster or cluster service not running"))
        else:
            lines.append(ReportLine("Cluster management not available"))
        lines.append(ReportLine(""))

        lines.append(ReportLine("VM/Container List:"))
        listed = False
        if self._has("qm"):
            listed = True
            vms = self._output(["qm", "list"])
            if vms is not None:
                lines.extend(self._lines(vms))
            else:
                lines.append(ReportLine("No VMs found or insufficient permissions"))
        if self._has("pct"):
            listed = True
            containers = self._output(["pct", "list"])
            if containers is not None:
                lines.extend(self._lines(containers))
            else:
                lines.append(ReportLine("No containers found or insufficient permissions"))
        if not listed:
            lines.append(ReportLine("No VM or container tools available"))
        return lines

    def service_state(self, name: str) -> ServiceState:
        """Query systemd for ``name``; units systemd does not know are ``UNKNOWN``."""

        if not self._has("systemctl"):
            return ServiceState.UNKNOWN
        timeout = self.settings.command_timeout
        try:
            active = self.runner.run(
                ["systemctl", "is-active", "--quiet", name], check=False, capture=True, timeout=timeout
            )
            if active.returncode == 0:
                return ServiceState.ACTIVE
            load = self.runner.run(
                ["systemctl", "show", "--property=LoadState", "--value", name],
                check=False,
                capture=True,
                timeout=timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            LOG.debug("systemctl query for %s failed: %s", name, exc)
            return ServiceState.UNKNOWN
        if (load.stdout or "").strip() == "not-found":
            return ServiceState.UNKNOWN
        return ServiceState.INACTIVE

    def services(self) -> List[ReportLine]:
        lines: List[ReportLine] = []
        for name in self.settings.services:
            try:
                state = self.service_state(name)
            except Exception as exc:  # noqa: BLE001 - every service gets a line
                LOG.warning("Could not query service %s: %s", name, exc)
                state = ServiceState.UNKNOWN
            if state is ServiceState.ACTIVE:
                lines.append(ReportLine(f"{name}: Active", style="green"))
            elif state is ServiceState.UNKNOWN and self.settings.show_unknown_services:
                lines.append(ReportLine(f"{name}: Unknown", style="yellow"))
            else:
                lines.append(ReportLine(f"{name}: Inactive", style="red"))
        return lines

    def package_history(self) -> List[ReportLine]:
        path = self.settings.apt_history
        if not path.is_file():
            return [ReportLine("No apt history available")]
        count = self.settings.history_entries
        with path.open("r", encoding="utf-8", errors="replace") as fh:
            starts = [line.rstrip("\n") for line in fh if "Start-Date" in line]
        lines = [ReportLine(f"Last {count} package operations:")]
        lines.extend(ReportLine(entry) for entry in starts[-count:] if count > 0)
        return lines

    def temperature(self) -> List[ReportLine]:
        if not self._has("sensors"):
            return [ReportLine("lm-sensors not installed")]
        output = self._output(["sensors"])
        matches = [line for line in (output or "").splitlines() if _SENSOR_LINE.search(line)]
        if not matches:
            return [ReportLine("No temperature sensors found")]
        return [ReportLine(line) for line in matches]

    # ------------------------------------------------------------------
    def categories(self) -> List[Tuple[str, Callable[[], List[ReportLine]]]]:
        return [
            ("SYSTEM INFORMATION", self.system_identity),
            ("CPU INFORMATION", self.cpu),
            ("MEMORY INFORMATION", self.memory),
            ("DISK USAGE", self.disk),
            ("NETWORK INTERFACES", self.network),
            ("PROXMOX INFORMATION", self.proxmox),
            ("IMPORTANT SERVICES STATUS", self.services),
            ("RECENT PACKAGE UPDATES", self.package_history),
            ("SYSTEM TEMPERATURE", self.temperature),
        ]

    def collect(self) -> List[ReportSection]:
        sections: List[ReportSection] = []
        started = _dt.datetime.now()
        for title, builder in self.categories():
            try:
                lines = builder()
            except Exception as exc:  # noqa: BLE001 - partial reports are expected
                LOG.warning("Report category %s failed: %s", title, exc)
                lines = [ReportLine(f"{title.capitalize()} {NOT_AVAILABLE} ({exc})", style="yellow")]
            sections.append(ReportSection(title=title, lines=tuple(lines)))
        LOG.debug("Collected %d report sections in %s", len(sections), _dt.datetime.now() - started)
        return sections


def render_report(sections: Sequence[ReportSection], console: StatusConsole) -> None:
    for section in sections:
        console.header(f"=== {section.title} ===")
        for line in section.lines:
            console.line(line.text, style=line.style)
        console.blank()


def display_system_metrics(aggregator: SystemReportAggregator, console: StatusConsole) -> List[ReportSection]:
    console.info("Gathering system metrics...")
    console.blank()
    sections = aggregator.collect()
    render_report(sections, console)
    return sections
