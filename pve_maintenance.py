#!/usr/bin/env python3
"""Proxmox host update and metrics utility.

A single run walks through a fixed pipeline:

1. check that the operator is root or can use ``sudo`` (and that ``sudo`` is
   installed);
2. look for enterprise (subscription) apt repositories and, after an explicit
   ``y`` from the operator, run the community post-install script that swaps
   them for the no-subscription repositories;
3. refresh, upgrade, dist-upgrade and clean the apt package set;
4. print a best-effort system report and a short summary.

Steps 1-3 stop the run on the first failing command.  The report in step 4
never fails the run: missing tools are shown as placeholders.
"""
from __future__ import annotations

import argparse
import dataclasses
import datetime as _dt
import enum
import hashlib
import json
import logging
import os
import pathlib
import re
import shutil
import subprocess
import sys
from abc import ABC, abstractmethod
from typing import Callable, Iterable, List, Mapping, Optional, Sequence, Tuple

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for older runtimes
    import tomli as tomllib  # type: ignore[no-redef]

from rich.console import Console
from rich.logging import RichHandler

from pve_console import StatusConsole
from pve_report import (
    DEFAULT_APT_HISTORY,
    DEFAULT_SERVICES,
    ReportSettings,
    SystemReportAggregator,
    display_system_metrics,
)

LOG = logging.getLogger(__name__)

ENTERPRISE_MARKER = "enterprise.proxmox.com"
COMMUNITY_SCRIPT_URL = (
    "https://raw.githubusercontent.com/community-scripts/ProxmoxVE/main/tools/pve/post-pbs-install.sh"
)
CONFIRM_PROMPT = "Continue? (y/N): "
LOG_FILE_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_AFFIRMATIVE = re.compile(r"^[Yy]$")


class PrivilegeError(PermissionError):
    """Raised when neither root nor ``sudo`` is available."""


class RemediationError(RuntimeError):
    """Raised when the remediation script cannot be fetched or trusted."""


# ---------------------------------------------------------------------------
# Privileges and command execution
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class Privileges:
    """How privileged commands are launched on this host."""

    prefix: Tuple[str, ...]
    is_root: bool

    @classmethod
    def root(cls) -> "Privileges":
        return cls(prefix=(), is_root=True)

    @classmethod
    def sudo(cls) -> "Privileges":
        return cls(prefix=("sudo",), is_root=False)


def detect_privileges(console: StatusConsole) -> Privileges:
    if os.geteuid() == 0:
        console.info("Running as root")
        return Privileges.root()

    if shutil.which("sudo") is None:
        raise PrivilegeError("Neither root access nor sudo is available! Please install sudo or run as root")

    console.info("Sudo is available")
    probe = subprocess.run(["sudo", "-n", "true"], capture_output=True, text=True, check=False)
    if probe.returncode != 0:
        console.warning("Sudo access required. You may be prompted for password.")
    return Privileges.sudo()


class CommandRunner:
    """Runs external commands, prefixing privileged ones explicitly."""

    def __init__(self, privileges: Privileges) -> None:
        self.privileges = privileges

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)

    def run(
        self,
        cmd: Sequence[str],
        privileged: bool = False,
        check: bool = True,
        capture: bool = True,
        timeout: Optional[float] = None,
        text: bool = True,
    ) -> subprocess.CompletedProcess:
        full_cmd = [*self.privileges.prefix, *cmd] if privileged else list(cmd)
        LOG.debug("Executing command: %s", " ".join(full_cmd))
        if capture:
            result = subprocess.run(full_cmd, capture_output=True, text=text, check=False, timeout=timeout)
        else:
            result = subprocess.run(full_cmd, text=text, check=False, timeout=timeout)
        if check and result.returncode != 0:
            raise subprocess.CalledProcessError(result.returncode, full_cmd, result.stdout, result.stderr)
        if not text:
            # binary output is not logged
            return result
        if result.stdout:
            LOG.debug("stdout: %s", result.stdout.strip())
        if result.stderr:
            LOG.debug("stderr: %s", result.stderr.strip())
        return result


class AptManager:
    """apt-get wrapper; every mutating call is privileged and fails fast."""

    def __init__(self, runner: CommandRunner) -> None:
        self.runner = runner
        self.executable = runner.which("apt-get") or "apt-get"
        self.query_tool = runner.which("dpkg-query") or "dpkg-query"

    def _apt(self, *args: str) -> None:
        self.runner.run([self.executable, *args], privileged=True, capture=False)

    def update(self) -> None:
        self._apt("update")

    def upgrade(self) -> None:
        self._apt("upgrade", "-y")

    def dist_upgrade(self) -> None:
        self._apt("dist-upgrade", "-y")

    def autoremove(self) -> None:
        self._apt("autoremove", "-y")

    def autoclean(self) -> None:
        self._apt("autoclean")

    def install(self, packages: Iterable[str]) -> None:
        package_list = sorted(set(packages))
        if not package_list:
            return
        self._apt("install", "-y", *package_list)

    def is_installed(self, package: str) -> bool:
        result = self.runner.run([self.query_tool, "-W", "-f=${Status}", package], check=False)
        if result.returncode != 0:
            return False
        return "install ok installed" in (result.stdout or "")


def check_sudo_installation(
    privileges: Privileges, runner: CommandRunner, apt: AptManager, console: StatusConsole
) -> None:
    console.info("Checking sudo installation...")
    if runner.which("sudo"):
        console.success("Sudo is installed")
        version = runner.run(["sudo", "--version"], check=False)
        first_line = (version.stdout or "").splitlines()[:1]
        if first_line:
            console.line(first_line[0])
    else:
        console.warning("Sudo is not installed")
        console.info("Installing sudo...")
        if not privileges.is_root:
            raise PrivilegeError("Root access required to install sudo")
        apt.update()
        apt.install(["sudo"])
        console.success("Sudo installed successfully")
    console.blank()


def update_system(apt: AptManager, console: StatusConsole) -> None:
    console.info("Starting system update process...")
    console.blank()

    console.info("Updating package lists...")
    apt.update()

    console.info("Upgrading packages...")
    apt.upgrade()

    console.info("Performing distribution upgrade...")
    apt.dist_upgrade()

    console.info("Cleaning up unnecessary packages...")
    apt.autoremove()
    apt.autoclean()

    console.success("System update completed successfully")
    console.blank()


# ---------------------------------------------------------------------------
# Repository mode detection and remediation
# ---------------------------------------------------------------------------


class RepositoryMode(enum.Enum):
    COMMUNITY = "community"
    ENTERPRISE = "enterprise"
    UNKNOWN = "unknown"


@dataclasses.dataclass(frozen=True)
class RepositoryRule:
    """A file that may reference the enterprise repository."""

    label: str
    path: pathlib.Path
    marker: str = ENTERPRISE_MARKER

    def matches(self, line: str) -> bool:
        return self.marker in line


DEFAULT_REPOSITORY_RULES: Tuple[RepositoryRule, ...] = (
    RepositoryRule("pve-enterprise.list", pathlib.Path("/etc/apt/sources.list.d/pve-enterprise.list")),
    RepositoryRule("main sources.list", pathlib.Path("/etc/apt/sources.list")),
    RepositoryRule("pbs-enterprise.list", pathlib.Path("/etc/apt/sources.list.d/pbs-enterprise.list")),
)


@dataclasses.dataclass(frozen=True)
class RepositoryScan:
    mode: RepositoryMode
    matched: Tuple[str, ...]
    readable: int


def _rule_matches(rule: RepositoryRule) -> Optional[bool]:
    """Return whether ``rule`` matches, or ``None`` when its file cannot be read."""

    try:
        with rule.path.open("r", encoding="utf-8", errors="replace") as fh:
            return any(rule.matches(line) for line in fh)
    except OSError as exc:
        LOG.debug("Skipping %s (%s): %s", rule.label, rule.path, exc)
        return None


def scan_repository_mode(rules: Sequence[RepositoryRule] = DEFAULT_REPOSITORY_RULES) -> RepositoryScan:
    """Classify the host's repository configuration.

    Every rule is evaluated; a single match anywhere makes the host
    ``ENTERPRISE``.  Missing or unreadable files count as "no match".  When
    none of the files could be read at all the mode is ``UNKNOWN``.
    """

    matched: List[str] = []
    readable = 0
    for rule in rules:
        result = _rule_matches(rule)
        if result is None:
            continue
        readable += 1
        if result:
            matched.append(rule.label)

    if matched:
        mode = RepositoryMode.ENTERPRISE
    elif readable:
        mode = RepositoryMode.COMMUNITY
    else:
        mode = RepositoryMode.UNKNOWN
    LOG.debug("Repository scan: mode=%s matched=%s readable=%s", mode.value, matched, readable)
    return RepositoryScan(mode=mode, matched=tuple(matched), readable=readable)


def prompt_confirmation(prompt: str = CONFIRM_PROMPT, input_fn: Callable[[str], str] = input) -> bool:
    """Ask a yes/no question; anything except a single ``y``/``Y`` declines."""

    try:
        response = input_fn(prompt)
    except (EOFError, KeyboardInterrupt):
        LOG.debug("Confirmation prompt interrupted")
        return False
    return bool(_AFFIRMATIVE.match(response.strip()))


class RemediationProvider(ABC):
    """Fetches, checks and runs a script that reconfigures apt repositories."""

    @abstractmethod
    def fetch(self) -> bytes:
        """Return the script exactly as downloaded."""

    def verify(self, content: bytes) -> None:
        """Raise :class:`RemediationError` when ``content`` must not be run."""

    @abstractmethod
    def execute(self, content: bytes) -> int:
        """Run ``content`` and return its exit status."""

    def remediate(self) -> bool:
        content = self.fetch()
        self.verify(content)
        return self.execute(content) == 0


class CommunityScriptProvider(RemediationProvider):
    """The community-scripts post-install script, downloaded with curl."""

    def __init__(self, url: str, runner: CommandRunner, sha256: Optional[str] = None) -> None:
        self.url = url
        self.runner = runner
        self.sha256 = sha256.lower() if sha256 else None

    def fetch(self) -> bytes:
        try:
            result = self.runner.run(["curl", "-fsSL", self.url], text=False)
        except subprocess.CalledProcessError as exc:
            raise RemediationError(f"Failed to download {self.url} (curl exit code {exc.returncode})") from exc
        if not result.stdout:
            raise RemediationError(f"Downloaded script from {self.url} is empty")
        return result.stdout

    def verify(self, content: bytes) -> None:
        if self.sha256 is None:
            LOG.info("No checksum configured for %s; running unverified script", self.url)
            return
        digest = hashlib.sha256(content).hexdigest()
        if digest != self.sha256:
            raise RemediationError(f"Checksum mismatch for {self.url}: expected {self.sha256}, got {digest}")

    def execute(self, content: bytes) -> int:
        script = content.decode("utf-8", errors="replace")
        result = self.runner.run(["bash", "-c", script], privileged=True, check=False, capture=False)
        LOG.info("Remediation script exited with %s", result.returncode)
        return result.returncode


class ResolutionOutcome(enum.Enum):
    NOT_NEEDED = "not_needed"
    DECLINED = "declined"
    REMEDIATED = "remediated"
    FAILED = "failed"


class RepositoryModeResolver:
    """Detect enterprise repositories and remediate them with operator consent."""

    def __init__(
        self,
        rules: Sequence[RepositoryRule],
        apt: AptManager,
        provider: RemediationProvider,
        console: StatusConsole,
        input_fn: Callable[[str], str] = input,
    ) -> None:
        self.rules = tuple(rules)
        self.apt = apt
        self.provider = provider
        self.console = console
        self.input_fn = input_fn

    def ensure_download_client(self) -> None:
        if self.apt.runner.which("curl"):
            return
        self.console.info("Installing curl...")
        self.apt.update()
        self.apt.install(["curl"])

    def resolve(self) -> ResolutionOutcome:
        console = self.console
        console.info("Checking for Proxmox Enterprise configuration...")
        scan = scan_repository_mode(self.rules)
        for label in scan.matched:
            console.warning(f"Enterprise repository detected in {label}")

        if scan.mode is not RepositoryMode.ENTERPRISE:
            if scan.mode is RepositoryMode.UNKNOWN:
                LOG.info("None of the repository files could be read")
            console.success("No enterprise repositories detected - community repositories likely already configured")
            console.blank()
            return ResolutionOutcome.NOT_NEEDED

        console.info("Enterprise version detected. Running community post-install script...")
        console.blank()
        self.ensure_download_client()

        console.info("Downloading and executing community post-install script...")
        console.warning("This will disable enterprise repositories and enable community repositories")
        if not prompt_confirmation(CONFIRM_PROMPT, self.input_fn):
            console.warning("Community script execution cancelled by user")
            console.blank()
            return ResolutionOutcome.DECLINED

        try:
            succeeded = self.provider.remediate()
        except RemediationError as exc:
            LOG.error("Remediation failed: %s", exc)
            console.error(str(exc))
            succeeded = False

        if succeeded:
            console.success("Community post-install script executed successfully")
            outcome = ResolutionOutcome.REMEDIATED
        else:
            console.error("Community post-install script did not complete successfully")
            outcome = ResolutionOutcome.FAILED
        console.blank()
        return outcome


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class RemediationSettings:
    url: str = COMMUNITY_SCRIPT_URL
    sha256: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class MaintenanceConfig:
    """Configuration loaded from a TOML file."""

    repositories: Tuple[RepositoryRule, ...] = DEFAULT_REPOSITORY_RULES
    remediation: RemediationSettings = dataclasses.field(default_factory=RemediationSettings)
    report: ReportSettings = dataclasses.field(default_factory=ReportSettings)

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> "MaintenanceConfig":
        repositories_section = data.get("repositories")
        if repositories_section is None:
            repositories = DEFAULT_REPOSITORY_RULES
        else:
            if not isinstance(repositories_section, list):
                raise TypeError("[[repositories]] section must be a list of tables")
            rules: List[RepositoryRule] = []
            for entry in repositories_section:
                if not isinstance(entry, Mapping):
                    raise TypeError("Each repository entry must be a table")
                path = entry.get("path")
                if not isinstance(path, str):
                    raise TypeError("Repository path must be a string")
                label = entry.get("label", pathlib.Path(path).name)
                if not isinstance(label, str):
                    raise TypeError(f"Repository {path!r} label must be a string")
                marker = entry.get("marker", ENTERPRISE_MARKER)
                if not isinstance(marker, str) or not marker:
                    raise TypeError(f"Repository {path!r} marker must be a non-empty string")
                rules.append(RepositoryRule(label=label, path=pathlib.Path(path), marker=marker))
            repositories = tuple(rules)

        remediation_section = data.get("remediation", {})
        if not isinstance(remediation_section, Mapping):
            raise TypeError("[remediation] section must be a table")
        url = remediation_section.get("url", COMMUNITY_SCRIPT_URL)
        if not isinstance(url, str) or not url.startswith("https://"):
            raise ValueError("remediation.url must be an https:// URL")
        sha256 = remediation_section.get("sha256") or None
        if sha256 is not None and (not isinstance(sha256, str) or not re.fullmatch(r"[0-9a-fA-F]{64}", sha256)):
            raise ValueError("remediation.sha256 must be a 64 character hex digest")
        remediation = RemediationSettings(url=url, sha256=sha256)

        report_section = data.get("report", {})
        if not isinstance(report_section, Mapping):
            raise TypeError("[report] section must be a table")
        services = report_section.get("services", list(DEFAULT_SERVICES))
        if isinstance(services, (str, bytes)) or not isinstance(services, list):
            raise TypeError("report.services must be a list of service names")
        apt_history = report_section.get("apt_history", str(DEFAULT_APT_HISTORY))
        if not isinstance(apt_history, str):
            raise TypeError("report.apt_history must be a string")
        history_entries = report_section.get("history_entries", 5)
        if not isinstance(history_entries, int) or isinstance(history_entries, bool) or history_entries < 0:
            raise TypeError("report.history_entries must be a non-negative integer")
        timeout = report_section.get("command_timeout", 30)
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout < 0:
            raise TypeError("report.command_timeout must be a non-negative number")
        show_unknown = report_section.get("show_unknown_services", False)
        if not isinstance(show_unknown, bool):
            raise TypeError("report.show_unknown_services must be a boolean")
        report = ReportSettings(
            services=tuple(str(item) for item in services),
            apt_history=pathlib.Path(apt_history),
            history_entries=history_entries,
            command_timeout=float(timeout) if timeout else None,
            show_unknown_services=show_unknown,
        )

        return cls(repositories=repositories, remediation=remediation, report=report)


DEFAULT_CONFIG_PATH = pathlib.Path(__file__).with_name("pve_maintenance.toml")


def load_config(path: Optional[pathlib.Path] = None) -> MaintenanceConfig:
    """Load a :class:`MaintenanceConfig`.

    Without an explicit ``path`` the TOML file shipped next to this module is
    used when present, and the built-in defaults otherwise.
    """

    if path is None:
        if not DEFAULT_CONFIG_PATH.is_file():
            LOG.debug("No configuration at %s; using defaults", DEFAULT_CONFIG_PATH)
            return MaintenanceConfig()
        path = DEFAULT_CONFIG_PATH
    with path.open("rb") as fh:
        data = tomllib.load(fh)
    if not isinstance(data, Mapping):
        raise TypeError("Configuration root must be a table")
    return MaintenanceConfig.from_mapping(data)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def display_summary(console: StatusConsole) -> None:
    console.header("=== SCRIPT EXECUTION SUMMARY ===", style="green")
    console.line("✓ Sudo installation checked")
    console.line("✓ Enterprise repository configuration checked")
    console.line("✓ System packages updated")
    console.line("✓ System metrics displayed")
    console.blank()
    console.success("All operations completed successfully!")
    console.line("System is up to date and ready for use.")


def run_maintenance(
    config: MaintenanceConfig,
    console: StatusConsole,
    input_fn: Callable[[str], str] = input,
) -> ResolutionOutcome:
    console.header("Proxmox System Update and Metrics Script", style="bold blue")
    console.line("=" * 40)
    console.blank()

    privileges = detect_privileges(console)
    runner = CommandRunner(privileges)
    apt = AptManager(runner)

    check_sudo_installation(privileges, runner, apt, console)

    provider = CommunityScriptProvider(config.remediation.url, runner, sha256=config.remediation.sha256)
    resolver = RepositoryModeResolver(config.repositories, apt, provider, console, input_fn=input_fn)
    outcome = resolver.resolve()

    update_system(apt, console)

    display_system_metrics(SystemReportAggregator(runner, config.report), console)
    display_summary(console)
    return outcome


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pve-maintenance", description=__doc__)
    parser.add_argument(
        "--config",
        type=pathlib.Path,
        help="Path to a TOML configuration file (default: pve_maintenance.toml next to this module).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase logging verbosity (use -vv for debug).",
    )
    parser.add_argument(
        "--log-file",
        type=pathlib.Path,
        help="Optional path to write logs in addition to the console output.",
    )
    parser.add_argument(
        "--log-format",
        choices=("text", "json"),
        default="text",
        help="Logging output format (default: text).",
    )
    parser.add_argument("extra", nargs="*", help=argparse.SUPPRESS)
    return parser.parse_args(argv)


class _JSONLogFormatter(logging.Formatter):
    """Format log records as JSON objects."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - brief output
        payload = {
            "timestamp": _dt.datetime.fromtimestamp(record.created, tz=_dt.timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_logging(verbosity: int, log_file: Optional[pathlib.Path], log_format: str) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console_handler: logging.Handler
    if log_format == "json":
        file_formatter: logging.Formatter = _JSONLogFormatter()
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(file_formatter)
    else:
        file_formatter = logging.Formatter(LOG_FILE_FORMAT, datefmt=LOG_DATE_FORMAT)
        # log records go to stderr; stdout carries the report
        console_handler = RichHandler(
            console=Console(stderr=True), show_path=False, markup=False, rich_tracebacks=True
        )
        console_handler.setFormatter(logging.Formatter("%(message)s"))
    console_handler.setLevel(level)
    root.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(file_formatter)
        root.addHandler(file_handler)


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose, args.log_file, args.log_format)
    if args.extra:
        LOG.debug("Ignoring positional arguments: %s", args.extra)

    console = StatusConsole()
    try:
        config = load_config(args.config)
    except (OSError, TypeError, ValueError) as exc:
        console.error(f"Invalid configuration: {exc}")
        return 1

    try:
        run_maintenance(config, console)
    except PrivilegeError as exc:
        console.error(str(exc))
        return 1
    except subprocess.CalledProcessError as exc:
        LOG.debug("Fail-fast command error", exc_info=True)
        console.error(f"Command failed with exit code {exc.returncode}: {' '.join(exc.cmd)}")
        return 1
    except KeyboardInterrupt:
        console.error("Interrupted")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
