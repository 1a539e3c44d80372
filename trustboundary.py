#!/usr/bin/python3
"""trustboundary — inspect a second-hand or OEM laptop before reusing it.

Runs a fixed battery of read-only checks for vendor, OEM and recovery
artefacts (kernels, services, scheduled tasks, DNS, partitions, firmware boot
entries, recovery environment, ...), prints a report, and warns loudly when a
critical category is present.  With --cleanup (or INVESTIGATE_ONLY=false) and
an interactive "y" it applies soft, reversible remediation.  Partition tables,
firmware boot entries and disks are never modified.
"""

import argparse
import json
import os
import re
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from typing import Callable, Optional

# ── Constants ────────────────────────────────────────────────────────────────

PLATFORMS = ("linux", "windows")

QUERY_TIMEOUT = 60

DEFAULT_QUARANTINE_DIR = "/var/lib/trustboundary/quarantine"

# Presentation order of the summary.
CATEGORIES = (
    "vendor-kernels",
    "vendor-modules",
    "vendor-applets",
    "oem-services",
    "oem-tasks",
    "dns-servers",
    "vendor-hosts",
    "partitions",
    "vendor-fstab",
    "vendor-udev",
    "vendor-grub",
    "vendor-plymouth",
    "vendor-efi",
    "firmware-recovery",
    "multi-boot-order",
    "winre-enabled",
    "oem-recovery-image",
    "vendor-bios-settings",
)

CRITICAL_CATEGORIES = frozenset({
    "partitions",
    "firmware-recovery",
    "multi-boot-order",
    "winre-enabled",
    "oem-recovery-image",
    "vendor-bios-settings",
})

CATEGORY_LABELS = {
    "vendor-kernels":       "KERNELS",
    "vendor-modules":       "KERNEL MODULES",
    "vendor-applets":       "APPLETS/UTILITIES",
    "oem-services":         "SERVICES",
    "oem-tasks":            "SCHEDULED TASKS",
    "dns-servers":          "DNS SERVERS",
    "vendor-hosts":         "HOSTS FILE ENTRIES",
    "partitions":           "PARTITIONS",
    "vendor-fstab":         "/etc/fstab ENTRIES",
    "vendor-udev":          "UDEV RULES",
    "vendor-grub":          "GRUB CONFIG",
    "vendor-plymouth":      "PLYMOUTH THEME",
    "vendor-efi":           "EFI BOOT ENTRIES",
    "firmware-recovery":    "FIRMWARE RECOVERY ENTRIES",
    "multi-boot-order":     "FIRMWARE BOOT ORDER",
    "winre-enabled":        "RECOVERY ENVIRONMENT",
    "oem-recovery-image":   "OEM RECOVERY IMAGES",
    "vendor-bios-settings": "VENDOR BIOS SETTINGS",
}

_BRANDS = r"\b(?:lenovo|dell|hp|hewlett|asus|acer|samsung|toshiba|fujitsu)|\bmsi\b"

KEYWORD_PATTERNS = {
    "kernel":       re.compile(r"vendor|oem|custom|manufacturer", re.I),
    "applet":       re.compile(r"vendor|oem|manufacturer|brand|util|control", re.I),
    "vendor":       re.compile(r"vendor|oem|manufacturer|brand|" + _BRANDS, re.I),
    "telemetry":    re.compile(r"vendor|oem|manufacturer|telemetry", re.I),
    "storage":      re.compile(r"oem|vendor|recovery|factory|diag|winre|\bmsr\b", re.I),
    "fstab":        re.compile(r"vendor|oem|factory|recovery", re.I),
    "recovery":     re.compile(r"recovery|restore|factory|winre", re.I),
    "boot-manager": re.compile(r"boot\s*manager|bootmgr|bootmgfw|shim|grub", re.I),
    "bios":         re.compile(r"recovery|secure\s*boot|absolute|computrace|vendor|oem|service", re.I),
}

# Which keyword class decides membership of each name-matched category.
CHECK_PATTERNS = {
    "vendor-kernels":       KEYWORD_PATTERNS["kernel"],
    "vendor-modules":       KEYWORD_PATTERNS["kernel"],
    "vendor-applets":       KEYWORD_PATTERNS["applet"],
    "oem-services":         KEYWORD_PATTERNS["vendor"],
    "oem-tasks":            KEYWORD_PATTERNS["vendor"],
    "vendor-hosts":         KEYWORD_PATTERNS["telemetry"],
    "partitions":           KEYWORD_PATTERNS["storage"],
    "vendor-fstab":         KEYWORD_PATTERNS["fstab"],
    "vendor-udev":          KEYWORD_PATTERNS["vendor"],
    "vendor-grub":          KEYWORD_PATTERNS["vendor"],
    "vendor-plymouth":      KEYWORD_PATTERNS["vendor"],
    "vendor-efi":           KEYWORD_PATTERNS["vendor"],
    "firmware-recovery":    KEYWORD_PATTERNS["recovery"],
    "vendor-bios-settings": KEYWORD_PATTERNS["bios"],
}

DNS_WHITELIST = frozenset({
    "127.0.0.1", "127.0.0.53", "::1",
    "1.1.1.1", "1.0.0.1", "8.8.8.8", "8.8.4.4", "9.9.9.9",
})

PARTITION_TYPE_GUIDS = {
    "de94bba4-06d1-4d40-a16a-bfd50179d6ac": "Windows RE",
    "e3c9e316-0b5c-4db8-817d-f92df00215ae": "Microsoft Reserved",
    "0x27": "Windows RE (MBR)",
}

RECOVERY_IMAGE_SUFFIXES = (".wim", ".esd", ".swm", ".img", ".iso", ".squashfs")

# ── Linux collaborators ──

LINUX_BINARY_DIRS = ("/usr/bin", "/usr/local/bin", "/opt")
CRON_DIRS = (
    "/etc/cron.d", "/etc/cron.hourly", "/etc/cron.daily",
    "/etc/cron.weekly", "/etc/cron.monthly",
)
UDEV_RULE_DIRS = ("/etc/udev/rules.d", "/lib/udev/rules.d")
RESOLV_CONF = "/etc/resolv.conf"
LINUX_HOSTS_PATH = "/etc/hosts"
FSTAB = "/etc/fstab"
PROC_MODULES = "/proc/modules"
GRUB_DEFAULTS = "/etc/default/grub"
GRUB_CFG_CANDIDATES = (
    "/boot/grub2/grub.cfg",
    "/boot/efi/EFI/fedora/grub.cfg",
    "/boot/efi/EFI/centos/grub.cfg",
    "/boot/efi/EFI/redhat/grub.cfg",
)
GRUB_TIMEOUT = 3
BOOT_QUIET_FLAGS = ("quiet", "splash")
PLYMOUTH_UNITS = (
    "plymouth-quit-wait.service",
    "plymouth-read-write.service",
    "plymouth-start.service",
)
EFI_FIRMWARE_DIR = "/sys/firmware/efi"
LINUX_RECOVERY_IMAGE_PATHS = (
    "/recovery",
    "/boot/recovery.img",
    "/boot/efi/EFI/Recovery",
    "/var/lib/oem/recovery",
)

DPKG_KERNEL_QUERY = [
    "dpkg-query", "-W", "-f=${db:Status-Abbrev} ${Package} ${Version}\n",
    "linux-image*",
]
RPM_KERNEL_QUERY = [
    "rpm", "-qa", "--qf", "%{NAME}-%{VERSION}-%{RELEASE}\n", "kernel*",
]
SYSTEMD_SERVICES_QUERY = [
    "systemctl", "list-unit-files", "--type=service", "--all",
    "--no-legend", "--no-pager",
]
SYSTEMD_TIMERS_QUERY = [
    "systemctl", "list-unit-files", "--type=timer", "--all",
    "--no-legend", "--no-pager",
]
LSBLK_QUERY = [
    "lsblk", "-J", "-o", "NAME,TYPE,LABEL,PARTLABEL,PARTTYPE,MOUNTPOINT",
]
EFIBOOTMGR_QUERY = ["efibootmgr", "-v"]

# ── Windows collaborators ──

_SYSTEM_ROOT = os.environ.get("SystemRoot", r"C:\Windows")
WINDOWS_HOSTS_PATH = _SYSTEM_ROOT + r"\System32\drivers\etc\hosts"
WINDOWS_RECOVERY_IMAGE_PATHS = (
    r"C:\Recovery\OEM",
    r"C:\Recovery\Customizations",
    r"C:\RecoveryImage",
)

BCDEDIT_QUERY = ["bcdedit", "/enum", "firmware"]
REAGENTC_QUERY = ["reagentc", "/info"]

PS_SERVICES = (
    "Get-CimInstance Win32_Service | "
    "Select-Object Name, DisplayName, StartMode, State"
)
PS_TASKS = (
    "Get-ScheduledTask | "
    "Select-Object TaskName, TaskPath, @{n='State';e={[string]$_.State}}"
)
PS_DNS = (
    "Get-DnsClientServerAddress | "
    "Select-Object -ExpandProperty ServerAddresses"
)
PS_PARTITIONS = (
    "Get-Partition | Select-Object DiskNumber, PartitionNumber, GptType, "
    "@{n='Type';e={[string]$_.Type}}, Size, "
    "@{n='Label';e={(Get-Volume -Partition $_ -ErrorAction SilentlyContinue)"
    ".FileSystemLabel}}"
)

# (vendor, WMI namespace, class, fields rendered into the evidence line)
BIOS_INTERFACES = (
    ("Lenovo", r"root\wmi", "Lenovo_BiosSetting", ("CurrentSetting",)),
    ("Dell", r"root\dcim\sysman\biosattributes", "EnumerationAttribute",
     ("AttributeName", "CurrentValue")),
    ("HP", r"root\HP\InstrumentedBIOS", "HP_BIOSSetting", ("Name", "Value")),
)

MANUAL_FOLLOW_UPS = {
    "linux": [
        "Wipe the whole disk from trusted install media "
        "(e.g. sgdisk --zap-all /dev/nvme0n1 && wipefs -a /dev/nvme0n1)",
        "Review BIOS/UEFI setup: disable vendor recovery and "
        "Absolute/Computrace persistence, reset Secure Boot keys",
        "Re-check the firmware boot order (efibootmgr) — only the intended "
        "OS entry should remain",
    ],
    "windows": [
        "Wipe the whole disk from trusted install media "
        "(diskpart: select disk 0, clean)",
        "Review BIOS/UEFI setup: disable vendor recovery and "
        "Absolute/Computrace persistence, reset Secure Boot keys",
        "Re-check the firmware boot order (bcdedit /enum firmware) — only "
        "the intended OS entry should remain",
    ],
}


# ── Nerd Font icons ──────────────────────────────────────────────────────────

class _I:
    SEARCH   = "\uf002"
    CHECK    = "\uf058"   # check-circle
    OK       = "\uf00c"   # check
    INFO     = "\uf05a"   # info-circle
    WARN     = "\uf071"   # exclamation-triangle
    ERROR    = "\uf057"   # times-circle
    EYE      = "\uf06e"   # eye (dry-run)
    SKIP     = "\uf04e"   # forward
    BAN      = "\uf05e"   # ban
    PACKAGE  = "\uf187"   # archive
    COGS     = "\uf085"   # cogs
    WRENCH   = "\uf0ad"   # wrench
    GLOBE    = "\uf0ac"   # globe
    DATABASE = "\uf1c0"   # database
    CLOCK    = "\uf017"   # clock
    PUZZLE   = "\uf12e"   # puzzle-piece
    LINUX    = "\uf17c"   # tux
    WINDOWS  = "\uf17a"   # windows
    SHIELD   = "\uf132"   # shield
    PLUG     = "\uf1e6"   # plug
    POWER    = "\uf011"   # power-off
    LIFEBUOY = "\uf1cd"   # life-ring
    BROOM    = "\uf1b8"   # recycle


# ── ANSI helpers ─────────────────────────────────────────────────────────────

class _C:
    BOLD   = "\033[1m"
    DIM    = "\033[2m"
    GREEN  = "\033[32m"
    YELLOW = "\033[33m"
    RED    = "\033[31m"
    BLUE   = "\033[34m"
    CYAN   = "\033[36m"
    RESET  = "\033[0m"

# Decided once at import time against the real stdout.
if not sys.stdout.isatty():
    _C.BOLD = _C.DIM = _C.GREEN = _C.YELLOW = _C.RED = ""
    _C.BLUE = _C.CYAN = _C.RESET = ""


def _banner(title: str) -> None:
    print(f"\n{_C.BOLD}{_C.CYAN}{'─' * 60}")
    print(f"  {title}")
    print(f"{'─' * 60}{_C.RESET}")


def _section(icon: str, title: str, step: int, total: int) -> None:
    tag = f"{_C.DIM}[{step}/{total}]{_C.RESET}"
    print(f"\n{_C.BOLD}{_C.CYAN}{icon}  {title}{_C.RESET}  {tag}")


def _info(msg: str) -> None:
    print(f"  {_C.BLUE}{_I.INFO} INFO{_C.RESET}     {msg}")


def _success(msg: str) -> None:
    print(f"  {_C.GREEN}{_I.OK} SUCCESS{_C.RESET}  {msg}")


def _warn(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.WARN} WARN{_C.RESET}     {msg}")


def _error(msg: str) -> None:
    print(f"  {_C.RED}{_I.ERROR} ERROR{_C.RESET}    {msg}", file=sys.stderr)


def _skip(msg: str) -> None:
    print(f"  {_C.DIM}{_I.SKIP} SKIP     {msg}{_C.RESET}")


def _dry(msg: str) -> None:
    print(f"  {_C.YELLOW}{_I.EYE}  [DRY RUN]{_C.RESET} {msg}")


def _bullet(text: str) -> None:
    print(f"      - {text}")


# ── Errors ───────────────────────────────────────────────────────────────────

class QueryError(RuntimeError):
    """A read-only query against the host failed; the check knows nothing."""


class CheckSkipped(Exception):
    """The check does not apply to this host (tool or feature absent)."""


class ActionError(RuntimeError):
    """A mutating command failed."""


# ── Platform / OS / privilege detection ──────────────────────────────────────

def detect_platform() -> str:
    if sys.platform.startswith("linux"):
        return "linux"
    if sys.platform in ("win32", "cygwin"):
        return "windows"
    _error(f"Unsupported platform '{sys.platform}' — trustboundary runs on "
           "Linux and Windows only")
    sys.exit(1)


def detect_os(system: str) -> tuple:
    """Return (os_id, version) for the banner; exits when it cannot tell."""
    if system == "windows":
        v = sys.getwindowsversion()
        return "windows", f"{v.major}.{v.minor}.{v.build}"

    info = {}
    try:
        with open("/etc/os-release") as fh:
            for line in fh:
                line = line.strip()
                if "=" in line:
                    key, _, val = line.partition("=")
                    info[key] = val.strip('"')
    except FileNotFoundError:
        _error("/etc/os-release not found — cannot detect OS")
        sys.exit(1)

    return info.get("ID", "unknown"), info.get("VERSION_ID", "")


def is_admin(system: str) -> bool:
    """True when running as root / Administrator.

    Raises OSError or AttributeError when the privilege level cannot be
    determined.
    """
    if system == "windows":
        import ctypes
        return bool(ctypes.windll.shell32.IsUserAnAdmin())
    return os.geteuid() == 0


def read_investigate_only(environ=None) -> bool:
    """Parse INVESTIGATE_ONLY ('true' by default, 'false' enables cleanup)."""
    env = os.environ if environ is None else environ
    raw = env.get("INVESTIGATE_ONLY", "true").strip().lower()
    if raw not in ("true", "false"):
        raise ValueError(
            f"INVESTIGATE_ONLY must be 'true' or 'false', got {raw!r}"
        )
    return raw == "true"


# ── Host ─────────────────────────────────────────────────────────────────────

def _warn_unreadable(exc: OSError) -> None:
    _warn(f"Skipping unreadable directory {exc.filename}: {exc.strerror}")


def _ensure_list(data) -> list:
    """Wrap a bare PowerShell object in a list; pass lists through."""
    if data is None:
        return []
    if isinstance(data, list):
        return data
    return [data]


class Host:
    """The running system, split into read-only queries and mutations.

    Checks only ever use the read side.  The mutating methods at the bottom
    belong to the cleanup executor; with dry_run they print what they would
    do instead.
    """

    def __init__(self, dry_run: bool = False, quiet: bool = False):
        self.dry_run = dry_run
        self.quiet = quiet

    # ── read side ─────────────────────────────────────────────────────────

    def query(self, cmd, timeout: int = QUERY_TIMEOUT) -> str:
        """Run a read-only command and return stdout; raise QueryError."""
        pretty = " ".join(str(c) for c in cmd)
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=timeout,
            )
        except FileNotFoundError:
            raise QueryError(f"{cmd[0]} not found")
        except subprocess.TimeoutExpired:
            raise QueryError(f"timed out after {timeout}s: {pretty}")
        except OSError as exc:
            raise QueryError(f"{pretty}: {exc}")
        if result.returncode != 0:
            detail = (result.stderr or "").strip().splitlines()
            msg = f"exited {result.returncode}: {pretty}"
            if detail:
                msg += f" ({detail[-1]})"
            raise QueryError(msg)
        return result.stdout or ""

    def probe(self, cmd) -> bool:
        """True when *cmd* exits 0.  Missing tools count as False."""
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=QUERY_TIMEOUT,
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        return result.returncode == 0

    def powershell(self, script: str, timeout: int = QUERY_TIMEOUT) -> str:
        return self.query(
            ["powershell.exe", "-NoProfile", "-NonInteractive",
             "-ExecutionPolicy", "Bypass", "-Command", script],
            timeout=timeout,
        )

    def powershell_json(self, script: str) -> list:
        """Run *script* piped through ConvertTo-Json and return a list."""
        raw = self.powershell(
            f"{script} | ConvertTo-Json -Depth 3 -Compress"
        ).strip()
        if not raw:
            return []
        try:
            return _ensure_list(json.loads(raw))
        except ValueError as exc:
            raise QueryError(f"unparseable PowerShell output: {exc}")

    def has_command(self, name: str) -> bool:
        return shutil.which(name) is not None

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(path)

    def read_text(self, path: str) -> Optional[str]:
        """File content, or None when the file does not exist."""
        try:
            with open(path, encoding="utf-8", errors="replace") as fh:
                return fh.read()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise QueryError(f"cannot read {path}: {exc}")

    def list_files(self, directory: str, suffixes=None) -> list:
        """Regular files directly inside *directory* (sorted, full paths)."""
        if not os.path.isdir(directory):
            return []
        try:
            names = sorted(os.listdir(directory))
        except OSError as exc:
            raise QueryError(f"cannot list {directory}: {exc}")
        paths = []
        for name in names:
            path = os.path.join(directory, name)
            if not os.path.isfile(path):
                continue
            if suffixes and not name.lower().endswith(tuple(suffixes)):
                continue
            paths.append(path)
        return paths

    def find_executables(self, directories) -> list:
        """Regular (non-symlink) files with any execute bit, recursively."""
        found = []
        for top in directories:
            for root, dirs, files in os.walk(top, onerror=_warn_unreadable):
                dirs.sort()
                for name in sorted(files):
                    path = os.path.join(root, name)
                    try:
                        st = os.lstat(path)
                    except OSError:
                        continue
                    if os.path.islink(path) or not (st.st_mode & 0o111):
                        continue
                    found.append(path)
        return found

    def file_info(self, path: str) -> str:
        try:
            st = os.stat(path)
        except OSError as exc:
            raise QueryError(f"cannot stat {path}: {exc}")
        mtime = datetime.fromtimestamp(st.st_mtime, tz=timezone.utc)
        return f"{st.st_size} bytes, modified {mtime:%Y-%m-%d}"

    # ── mutations ─────────────────────────────────────────────────────────

    def run_cmd(self, cmd) -> None:
        """Execute a mutating *cmd*, or print it if --dry-run.

        Raises ActionError on a missing tool or a non-zero exit.
        """
        pretty = " ".join(str(c) for c in cmd)
        if self.dry_run:
            _dry(pretty)
            return
        if not self.quiet:
            _info(f"Running: {pretty}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as exc:
            raise ActionError(f"{pretty}: {exc}")
        if result.returncode != 0:
            detail = (result.stderr or "").strip().splitlines()
            msg = f"exited {result.returncode}: {pretty}"
            if detail:
                msg += f" ({detail[-1]})"
            raise ActionError(msg)

    def copy_file(self, src: str, dst: str) -> None:
        if self.dry_run:
            _dry(f"cp -p {src} {dst}")
            return
        try:
            shutil.copy2(src, dst)
        except OSError as exc:
            raise ActionError(f"cannot copy {src} to {dst}: {exc}")
        if not self.quiet:
            _info(f"Backed up {src} → {dst}")

    def write_text(self, path: str, content: str) -> None:
        if self.dry_run:
            _dry(f"update file {path}")
            return
        try:
            with open(path, "w", encoding="utf-8") as fh:
                fh.write(content)
        except OSError as exc:
            raise ActionError(f"cannot write {path}: {exc}")
        if not self.quiet:
            _info(f"Wrote {path}")

    def move_file(self, src: str, dst: str) -> None:
        if self.dry_run:
            _dry(f"mv {src} {dst}")
            return
        try:
            os.makedirs(os.path.dirname(dst), exist_ok=True)
            shutil.move(src, dst)
        except OSError as exc:
            raise ActionError(f"cannot move {src} to {dst}: {exc}")
        if not self.quiet:
            _info(f"Moved {src} → {dst}")


# ── Data model ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Evidence:
    text: str
    target: str = ""  # what the cleanup executor acts on; "" = not actionable


@dataclass(frozen=True)
class Finding:
    category: str
    evidence: tuple = ()

    @property
    def critical(self) -> bool:
        return self.category in CRITICAL_CATEGORIES

    def targets(self) -> list:
        return [e.target for e in self.evidence if e.target]

    def merge(self, other: "Finding") -> "Finding":
        """Combine evidence of two findings of the same category."""
        if other.category != self.category:
            raise ValueError(
                f"cannot merge {other.category} into {self.category}"
            )
        merged = list(self.evidence)
        for item in other.evidence:
            if item not in merged:
                merged.append(item)
        return Finding(self.category, tuple(merged))


class CheckStatus(Enum):
    FOUND = "found"        # succeeded, evidence recorded
    CLEAN = "clean"        # succeeded, nothing found
    FAILED = "failed"      # query failed, result unknown
    SKIPPED = "skipped"    # not applicable on this host


@dataclass(frozen=True)
class CheckResult:
    name: str
    status: CheckStatus
    findings: tuple = ()
    reason: str = ""
    required: bool = False


@dataclass(frozen=True)
class InvestigationReport:
    findings: tuple = ()
    checks: tuple = ()

    @classmethod
    def from_results(cls, results) -> "InvestigationReport":
        by_category = {}
        for result in results:
            for finding in result.findings:
                known = by_category.get(finding.category)
                by_category[finding.category] = (
                    known.merge(finding) if known else finding
                )
        return cls(findings=tuple(by_category.values()), checks=tuple(results))

    @property
    def categories(self) -> list:
        return [f.category for f in self.findings]

    def get(self, category: str) -> Optional[Finding]:
        for finding in self.findings:
            if finding.category == category:
                return finding
        return None

    @property
    def critical_categories(self) -> list:
        return [c for c in self.categories if c in CRITICAL_CATEGORIES]

    @property
    def has_critical_findings(self) -> bool:
        return bool(self.critical_categories)

    @property
    def failed_checks(self) -> list:
        return [c for c in self.checks if c.status is CheckStatus.FAILED]

    @property
    def required_check_failed(self) -> bool:
        return any(c.required for c in self.failed_checks)

    def to_dict(self) -> dict:
        return {
            "has_critical_findings": self.has_critical_findings,
            "critical_categories": self.critical_categories,
            "findings": [
                {
                    "category": f.category,
                    "critical": f.critical,
                    "evidence": [e.text for e in f.evidence],
                }
                for f in self.findings
            ],
            "checks": [
                {"name": c.name, "status": c.status.value, "reason": c.reason}
                for c in self.checks
            ],
        }


def matches_category(category: str, text: str) -> bool:
    return CHECK_PATTERNS[category].search(text) is not None


def _findings(category: str, evidence) -> list:
    evidence = tuple(evidence)
    return [Finding(category, evidence)] if evidence else []


# ── Linux checks ─────────────────────────────────────────────────────────────

def check_kernels(host: Host) -> list:
    if host.has_command("dpkg-query"):
        out = host.query(DPKG_KERNEL_QUERY)
        kernels = []
        for line in out.splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[0] == "ii":
                kernels.append(" ".join(parts[1:]))
    elif host.has_command("rpm"):
        out = host.query(RPM_KERNEL_QUERY)
        kernels = [line.strip() for line in out.splitlines() if line.strip()]
    else:
        raise QueryError("neither dpkg-query nor rpm is available")

    return _findings("vendor-kernels", (
        Evidence(k) for k in sorted(kernels)
        if matches_category("vendor-kernels", k)
    ))


def check_modules(host: Host) -> list:
    text = host.read_text(PROC_MODULES)
    if text is None:
        raise QueryError(f"{PROC_MODULES} not available")
    names = [line.split()[0] for line in text.splitlines() if line.strip()]
    return _findings("vendor-modules", (
        Evidence(n) for n in names if matches_category("vendor-modules", n)
    ))


def check_applets(host: Host) -> list:
    return _findings("vendor-applets", (
        Evidence(path, target=path)
        for path in host.find_executables(LINUX_BINARY_DIRS)
        if matches_category("vendor-applets", os.path.basename(path))
    ))


def _unit_names(out: str) -> list:
    return [line.split()[0] for line in out.splitlines() if line.strip()]


def check_services_linux(host: Host) -> list:
    units = _unit_names(host.query(SYSTEMD_SERVICES_QUERY))
    return _findings("oem-services", (
        Evidence(u, target=u) for u in units
        if matches_category("oem-services", u)
    ))


def check_tasks_linux(host: Host) -> list:
    evidence = [
        Evidence(f"timer {unit}", target=unit)
        for unit in _unit_names(host.query(SYSTEMD_TIMERS_QUERY))
        if matches_category("oem-tasks", unit)
    ]
    for directory in CRON_DIRS:
        for path in host.list_files(directory):
            if matches_category("oem-tasks", os.path.basename(path)):
                evidence.append(Evidence(f"cron {path}", target=path))
    return _findings("oem-tasks", evidence)


def _suspicious_dns(servers) -> list:
    seen = []
    for server in servers:
        if server not in DNS_WHITELIST and server not in seen:
            seen.append(server)
    return seen


def check_dns_linux(host: Host) -> list:
    text = host.read_text(RESOLV_CONF)
    servers = []
    if text is not None:
        for line in text.splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[0] == "nameserver":
                servers.append(parts[1])
    if servers:
        _info(f"DNS servers: {', '.join(servers)}")

    if host.probe(["systemctl", "is-active", "--quiet", "systemd-resolved"]) \
            and host.has_command("resolvectl"):
        try:
            status = host.query(["resolvectl", "status"])
        except QueryError as exc:
            _warn(f"resolvectl status failed: {exc}")
        else:
            upstream = [
                line.split(":", 1)[1].strip()
                for line in status.splitlines()
                if "DNS Servers" in line and ":" in line
            ]
            if upstream:
                _info(f"systemd-resolved DNS: {' '.join(upstream)}")

    return _findings("dns-servers", (
        Evidence(s) for s in _suspicious_dns(servers)
    ))


_HOSTS_SKIP_RE = re.compile(r"^(#|$|127\.0\.0\.1|::1)")


def _hosts_findings(host: Host, path: str) -> list:
    text = host.read_text(path)
    if text is None:
        raise CheckSkipped(f"{path} not present")
    return _findings("vendor-hosts", (
        Evidence(line.strip(), target=path)
        for line in text.splitlines()
        if not _HOSTS_SKIP_RE.match(line.strip())
        and matches_category("vendor-hosts", line)
    ))


def check_hosts_linux(host: Host) -> list:
    return _hosts_findings(host, LINUX_HOSTS_PATH)


def _walk_block_devices(devices):
    for dev in devices or []:
        yield dev
        yield from _walk_block_devices(dev.get("children"))


def check_partitions_linux(host: Host) -> list:
    try:
        data = json.loads(host.query(LSBLK_QUERY))
    except ValueError as exc:
        raise QueryError(f"unparseable lsblk output: {exc}")

    evidence = []
    for dev in _walk_block_devices(data.get("blockdevices")):
        name = dev.get("name") or ""
        label = dev.get("label") or ""
        partlabel = dev.get("partlabel") or ""
        mountpoint = dev.get("mountpoint") or ""
        parttype = (dev.get("parttype") or "").lower()
        desc = (f"{name} {dev.get('type') or '?'} label={label or '-'} "
                f"partlabel={partlabel or '-'} mount={mountpoint or '-'}")
        if matches_category("partitions",
                            f"{name} {label} {partlabel} {mountpoint}"):
            evidence.append(Evidence(f"{desc} (name/label match)"))
        if parttype in PARTITION_TYPE_GUIDS:
            evidence.append(Evidence(
                f"{name} parttype={parttype} "
                f"({PARTITION_TYPE_GUIDS[parttype]} type)"
            ))
    return _findings("partitions", evidence)


def check_fstab(host: Host) -> list:
    text = host.read_text(FSTAB)
    if text is None:
        raise CheckSkipped(f"{FSTAB} not present")
    return _findings("vendor-fstab", (
        Evidence(line.strip())
        for line in text.splitlines()
        if line.strip() and not line.lstrip().startswith("#")
        and matches_category("vendor-fstab", line)
    ))


def check_udev(host: Host) -> list:
    evidence = []
    for directory in UDEV_RULE_DIRS:
        for path in host.list_files(directory, suffixes=(".rules",)):
            try:
                text = host.read_text(path)
            except QueryError as exc:
                _warn(f"Skipping unreadable rule file: {exc}")
                continue
            if text and matches_category("vendor-udev", text):
                evidence.append(Evidence(path))
    return _findings("vendor-udev", evidence)


def check_grub(host: Host) -> list:
    text = host.read_text(GRUB_DEFAULTS)
    if text is None:
        raise CheckSkipped(f"{GRUB_DEFAULTS} not present")
    return _findings("vendor-grub", (
        Evidence(line.strip(), target=GRUB_DEFAULTS)
        for line in text.splitlines()
        if matches_category("vendor-grub", line)
    ))


def check_plymouth(host: Host) -> list:
    if not host.has_command("plymouth-set-default-theme"):
        raise CheckSkipped("plymouth not installed")
    out = host.query(["plymouth-set-default-theme"]).split()
    theme = out[-1] if out else ""
    if theme:
        _info(f"Plymouth theme: {theme}")
    if theme and matches_category("vendor-plymouth", theme):
        return [Finding("vendor-plymouth",
                        (Evidence(f"theme {theme}", target=theme),))]
    return []


def _firmware_findings(entries, boot_order) -> list:
    """Shared firmware heuristics.

    *entries* are one-line descriptions of firmware boot entries,
    *boot_order* the identifiers in firmware boot order.
    """
    findings = []
    vendor = [e for e in entries if matches_category("vendor-efi", e)]
    findings += _findings("vendor-efi", (Evidence(e) for e in vendor))

    managers = [e for e in entries if KEYWORD_PATTERNS["boot-manager"].search(e)]
    recovery = [e for e in entries if matches_category("firmware-recovery", e)]
    if managers and recovery:
        findings += _findings("firmware-recovery", (
            Evidence(e) for e in managers + [r for r in recovery if r not in managers]
        ))

    if len(boot_order) > 1:
        findings.append(Finding("multi-boot-order", (
            Evidence(f"boot order: {', '.join(boot_order)}"),
        )))
    return findings


_EFI_ENTRY_RE = re.compile(r"^Boot([0-9A-Fa-f]{4})\*?\s+(.*)$")


def parse_efibootmgr(text: str) -> tuple:
    """Return (entries, boot_order) from `efibootmgr -v` output."""
    entries = []
    order = []
    for line in text.splitlines():
        if line.startswith("BootOrder:"):
            order = [o.strip() for o in line.split(":", 1)[1].split(",")
                     if o.strip()]
            continue
        m = _EFI_ENTRY_RE.match(line)
        if m:
            entries.append(f"Boot{m.group(1)} {m.group(2).strip()}")
    return entries, order


def check_efi_linux(host: Host) -> list:
    if not host.is_dir(EFI_FIRMWARE_DIR):
        raise CheckSkipped("legacy BIOS boot (no /sys/firmware/efi)")
    if not host.has_command("efibootmgr"):
        raise QueryError("efibootmgr not installed; cannot list EFI entries")
    entries, order = parse_efibootmgr(host.query(EFIBOOTMGR_QUERY))
    return _firmware_findings(entries, order)


def _recovery_image_findings(host: Host, paths, metadata) -> list:
    images = []
    for path in paths:
        if host.is_dir(path):
            images += host.list_files(path, suffixes=RECOVERY_IMAGE_SUFFIXES)
        elif host.exists(path):
            images.append(path)

    evidence = []
    for image in images:
        try:
            detail = metadata(host, image)
        except QueryError as exc:
            _warn(f"Could not read image metadata for {image}: {exc}")
            detail = ""
        text = f"{image} ({detail})" if detail else image
        evidence.append(Evidence(text))
    return _findings("oem-recovery-image", evidence)


def check_recovery_images_linux(host: Host) -> list:
    return _recovery_image_findings(
        host, LINUX_RECOVERY_IMAGE_PATHS,
        lambda h, path: h.file_info(path),
    )


# ── Windows checks ───────────────────────────────────────────────────────────

def check_services_windows(host: Host) -> list:
    evidence = []
    for row in host.powershell_json(PS_SERVICES):
        name = row.get("Name") or ""
        display = row.get("DisplayName") or ""
        if not name or not matches_category("oem-services", f"{name} {display}"):
            continue
        evidence.append(Evidence(
            f"{name} ({display}) [{row.get('StartMode') or '?'}, "
            f"{row.get('State') or '?'}]",
            target=name,
        ))
    return _findings("oem-services", evidence)


def check_tasks_windows(host: Host) -> list:
    evidence = []
    for row in host.powershell_json(PS_TASKS):
        full = f"{row.get('TaskPath') or ''}{row.get('TaskName') or ''}"
        if full and matches_category("oem-tasks", full):
            evidence.append(Evidence(
                f"{full} [{row.get('State') or '?'}]", target=full,
            ))
    return _findings("oem-tasks", evidence)


def check_dns_windows(host: Host) -> list:
    servers = [str(s) for s in host.powershell_json(PS_DNS) if s]
    if servers:
        _info(f"DNS servers: {', '.join(dict.fromkeys(servers))}")
    return _findings("dns-servers", (
        Evidence(s) for s in _suspicious_dns(servers)
    ))


def check_hosts_windows(host: Host) -> list:
    return _hosts_findings(host, WINDOWS_HOSTS_PATH)


def check_partitions_windows(host: Host) -> list:
    evidence = []
    for row in host.powershell_json(PS_PARTITIONS):
        where = f"disk {row.get('DiskNumber')} partition {row.get('PartitionNumber')}"
        label = row.get("Label") or ""
        ptype = row.get("Type") or ""
        guid = (row.get("GptType") or "").strip("{}").lower()
        if matches_category("partitions", f"{label} {ptype}"):
            evidence.append(Evidence(
                f"{where} type={ptype or '-'} label={label or '-'} "
                "(type/label match)"
            ))
        if guid in PARTITION_TYPE_GUIDS:
            evidence.append(Evidence(
                f"{where} GptType={{{guid}}} ({PARTITION_TYPE_GUIDS[guid]} type)"
            ))
    return _findings("partitions", evidence)


_BCD_FIELD_RE = re.compile(r"^(\S+)\s+(\S.*)$")
_BCD_CONTINUATION_RE = re.compile(r"^\s+(\S.*)$")


def parse_bcdedit(text: str) -> list:
    """Parse `bcdedit /enum` output into a list of {field: [values]} dicts."""
    entries = []
    current = None
    last_key = None
    for line in text.splitlines():
        if not line.strip():
            current = None
            continue
        if set(line.strip()) == {"-"}:
            current = {}
            entries.append(current)
            last_key = None
            continue
        if current is None:
            continue  # entry title line
        cont = _BCD_CONTINUATION_RE.match(line)
        if cont and last_key:
            current[last_key].append(cont.group(1).strip())
            continue
        m = _BCD_FIELD_RE.match(line)
        if m:
            last_key = m.group(1).lower()
            current.setdefault(last_key, []).append(m.group(2).strip())
    return entries


def check_firmware_windows(host: Host) -> list:
    entries = parse_bcdedit(host.query(BCDEDIT_QUERY))
    described = []
    order = []
    for entry in entries:
        ident = (entry.get("identifier") or [""])[0]
        if ident == "{fwbootmgr}":
            order = entry.get("displayorder", [])
            continue
        desc = (entry.get("description") or [""])[0]
        described.append(f"{ident} {desc}".strip())
    return _firmware_findings(described, order)


_WINRE_STATUS_RE = re.compile(r"Windows RE status:\s*(\w+)", re.I)
_WINRE_LOCATION_RE = re.compile(r"Windows RE location:[ \t]*(\S.*)", re.I)


def check_winre(host: Host) -> list:
    out = host.query(REAGENTC_QUERY)
    m = _WINRE_STATUS_RE.search(out)
    if not m:
        raise QueryError("no 'Windows RE status' line in reagentc output")
    status = m.group(1)
    _info(f"Windows RE status: {status}")
    if status.lower() != "enabled":
        return []
    evidence = [Evidence(f"Windows RE status: {status}")]
    loc = _WINRE_LOCATION_RE.search(out)
    if loc:
        evidence.append(Evidence(f"Windows RE location: {loc.group(1).strip()}"))
    return [Finding("winre-enabled", tuple(evidence))]


def _wim_metadata(host: Host, path: str) -> str:
    if not path.lower().endswith((".wim", ".esd", ".swm")):
        return host.file_info(path)
    out = host.query(["dism", "/English", "/Get-WimInfo", f"/WimFile:{path}"])
    names = [
        line.split(":", 1)[1].strip()
        for line in out.splitlines()
        if line.strip().lower().startswith("name") and ":" in line
    ]
    return "; ".join(names)


def check_recovery_images_windows(host: Host) -> list:
    return _recovery_image_findings(
        host, WINDOWS_RECOVERY_IMAGE_PATHS, _wim_metadata,
    )


def _bios_query(namespace: str, class_name: str, fields) -> str:
    return (f"Get-CimInstance -Namespace '{namespace}' -ClassName {class_name} "
            f"-ErrorAction Stop | Select-Object {', '.join(fields)}")


def check_bios_windows(host: Host) -> list:
    evidence = []
    present = 0
    for vendor, namespace, class_name, fields in BIOS_INTERFACES:
        try:
            rows = host.powershell_json(_bios_query(namespace, class_name, fields))
        except QueryError:
            _skip(f"No {vendor} firmware-setting interface")
            continue
        present += 1
        for row in rows:
            values = []
            for f in fields:
                value = row.get(f)
                if isinstance(value, list):
                    value = ",".join(str(v) for v in value)
                if value not in (None, ""):
                    values.append(str(value))
            text = " = ".join(values)
            if text and matches_category("vendor-bios-settings", text):
                evidence.append(Evidence(f"{vendor}: {text}"))
    if not present:
        raise CheckSkipped("no vendor firmware-setting interface present")
    return _findings("vendor-bios-settings", evidence)


# ── Investigator ─────────────────────────────────────────────────────────────

# (name, label, icon, check)
CHECKS = {
    "linux": (
        ("kernels",    "Installed kernels",      _I.LINUX,    check_kernels),
        ("modules",    "Kernel modules",         _I.PUZZLE,   check_modules),
        ("applets",    "Vendor applets",         _I.WRENCH,   check_applets),
        ("services",   "systemd services",       _I.COGS,     check_services_linux),
        ("tasks",      "Scheduled tasks",        _I.CLOCK,    check_tasks_linux),
        ("dns",        "DNS",                    _I.GLOBE,    check_dns_linux),
        ("hosts",      "/etc/hosts",             _I.GLOBE,    check_hosts_linux),
        ("partitions", "Partitions",             _I.DATABASE, check_partitions_linux),
        ("fstab",      "/etc/fstab",             _I.DATABASE, check_fstab),
        ("udev",       "udev rules",             _I.PLUG,     check_udev),
        ("grub",       "GRUB config",            _I.POWER,    check_grub),
        ("plymouth",   "Plymouth theme",         _I.POWER,    check_plymouth),
        ("firmware",   "EFI boot entries",       _I.SHIELD,   check_efi_linux),
        ("images",     "OEM recovery images",    _I.PACKAGE,  check_recovery_images_linux),
    ),
    "windows": (
        ("services",   "Services",               _I.COGS,     check_services_windows),
        ("tasks",      "Scheduled tasks",        _I.CLOCK,    check_tasks_windows),
        ("dns",        "DNS",                    _I.GLOBE,    check_dns_windows),
        ("hosts",      "hosts file",             _I.GLOBE,    check_hosts_windows),
        ("partitions", "Partitions",             _I.DATABASE, check_partitions_windows),
        ("firmware",   "Firmware boot entries",  _I.SHIELD,   check_firmware_windows),
        ("winre",      "Recovery environment",   _I.LIFEBUOY, check_winre),
        ("images",     "OEM recovery images",    _I.PACKAGE,  check_recovery_images_windows),
        ("bios",       "Vendor BIOS settings",   _I.SHIELD,   check_bios_windows),
    ),
}

# A failure here means the run cannot vouch for the disk at all.
REQUIRED_CHECKS = frozenset({"partitions"})


def run_check(host: Host, name: str, check: Callable) -> CheckResult:
    """Run one check, turning every failure into a CheckResult."""
    required = name in REQUIRED_CHECKS
    try:
        findings = check(host)
    except CheckSkipped as exc:
        return CheckResult(name, CheckStatus.SKIPPED, reason=str(exc),
                           required=required)
    except QueryError as exc:
        return CheckResult(name, CheckStatus.FAILED, reason=str(exc),
                           required=required)
    except Exception as exc:
        return CheckResult(name, CheckStatus.FAILED,
                           reason=f"{type(exc).__name__}: {exc}",
                           required=required)
    status = CheckStatus.FOUND if findings else CheckStatus.CLEAN
    return CheckResult(name, status, tuple(findings), required=required)


def _log_check_result(result: CheckResult) -> None:
    if result.status is CheckStatus.FOUND:
        for finding in result.findings:
            _warn(f"Potential {CATEGORY_LABELS[finding.category].lower()} "
                  f"({finding.category}):")
            for item in finding.evidence:
                _bullet(item.text)
    elif result.status is CheckStatus.CLEAN:
        _info("Nothing vendor-like detected")
    elif result.status is CheckStatus.SKIPPED:
        _skip(result.reason)
    else:
        _warn(f"Check failed, result unknown: {result.reason}")


def investigate(host: Host, system: str) -> InvestigationReport:
    """Run the platform's checks in order and fold them into a report."""
    checks = CHECKS[system]
    results = []
    for step, (name, label, icon, check) in enumerate(checks, 1):
        _section(icon, label, step, len(checks))
        result = run_check(host, name, check)
        _log_check_result(result)
        results.append(result)
    return InvestigationReport.from_results(results)


# ── Reporter ─────────────────────────────────────────────────────────────────

def print_report(report: InvestigationReport, system: str) -> None:
    _banner(f"{_I.SEARCH}  Investigation Summary")

    if not report.findings:
        _success("No obvious vendor artefacts detected")
    else:
        _warn(f"{len(report.findings)} vendor-like element categories found")
        print()
        _info("Detailed findings:")
        for category in CATEGORIES:
            finding = report.get(category)
            if not finding:
                continue
            mark = f" {_C.RED}(critical){_C.RESET}" if finding.critical else ""
            print(f"\n    {_C.BOLD}[{CATEGORY_LABELS[category]}]{_C.RESET}{mark}")
            for item in finding.evidence:
                _bullet(item.text)
        print(f"\n    {_C.BOLD}[CATEGORIES]{_C.RESET}")
        for category in report.categories:
            _bullet(category)
        print()
        _info("Review the findings above before proceeding with cleanup.")

    if report.failed_checks:
        print()
        _warn(f"{len(report.failed_checks)} check(s) could not complete "
              "(not the same as clean):")
        for check in report.failed_checks:
            _bullet(f"{check.name}: {check.reason}")

    if report.has_critical_findings:
        _critical_banner(report, system)


def _critical_banner(report: InvestigationReport, system: str) -> None:
    print(f"\n{_C.BOLD}{_C.RED}{'━' * 60}")
    print(f"  {_I.BAN}  DO NOT PROCEED WITH OS INSTALLATION OR REUSE")
    print(f"{'━' * 60}{_C.RESET}")
    print(f"  {_C.RED}Critical categories:{_C.RESET} "
          f"{', '.join(report.critical_categories)}")
    print("  The firmware or disk can bring vendor code back after a reinstall.")
    print("  Before going further:")
    for n, step in enumerate(MANUAL_FOLLOW_UPS[system], 1):
        print(f"    {n}. {step}")
    print(f"{_C.BOLD}{_C.RED}{'━' * 60}{_C.RESET}")


def write_report_json(report: InvestigationReport, path: str,
                      system: str) -> None:
    data = {
        "generated": datetime.now(timezone.utc).isoformat(),
        "platform": system,
        **report.to_dict(),
    }
    tmp = f"{path}.tmp"
    try:
        with open(tmp, "w") as fh:
            json.dump(data, fh, indent=2)
            fh.write("\n")
        os.replace(tmp, path)
    except OSError:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise


# ── Cleanup executor ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CleanupAction:
    category: str
    description: str
    target: str
    run: Callable = field(compare=False, repr=False)


@dataclass(frozen=True)
class ActionOutcome:
    action: CleanupAction
    ok: bool
    error: str = ""


def sanitize_grub_defaults(text: str, timeout: int = GRUB_TIMEOUT) -> str:
    """Strip quiet/splash from GRUB_CMDLINE_LINUX_DEFAULT, shorten GRUB_TIMEOUT.

    Only existing lines are rewritten; nothing is appended.
    """
    out = []
    for line in text.splitlines():
        m = _GRUB_CMDLINE_RE.match(line)
        if m:
            quote, value = m.group(2), m.group(3)
            tokens = [t for t in value.split() if t not in BOOT_QUIET_FLAGS]
            line = f"{m.group(1)}={quote}{' '.join(tokens)}{quote}"
        elif _GRUB_TIMEOUT_RE.match(line):
            line = f"GRUB_TIMEOUT={timeout}"
        out.append(line)
    return "\n".join(out) + ("\n" if text.endswith("\n") else "")


_GRUB_CMDLINE_RE = re.compile(r"""^(GRUB_CMDLINE_LINUX_DEFAULT)=(["']?)(.*?)\2\s*$""")
_GRUB_TIMEOUT_RE = re.compile(r"^GRUB_TIMEOUT=")


class Cleaner:
    """Builds and runs the soft-remediation plan for a confirmed report.

    Each action runs on its own; a failure is logged and the next action
    still runs.  Partitions, firmware boot entries and disks are out of
    reach by construction: there is no action for them.
    """

    def __init__(self, host: Host, system: str,
                 quarantine_dir: str = DEFAULT_QUARANTINE_DIR):
        self.host = host
        self.system = system
        self.quarantine_dir = quarantine_dir

    # ── plan ──────────────────────────────────────────────────────────────

    def plan(self, report: InvestigationReport) -> list:
        if self.system == "windows":
            return self._plan_windows(report)
        return self._plan_linux(report)

    def _plan_linux(self, report: InvestigationReport) -> list:
        actions = []
        services = report.get("oem-services")
        if services:
            for unit in services.targets():
                actions.append(CleanupAction(
                    "oem-services", f"Disable {unit}", unit,
                    partial(self.host.run_cmd, ["systemctl", "disable", unit]),
                ))
                actions.append(CleanupAction(
                    "oem-services", f"Stop {unit}", unit,
                    partial(self._stop_unit, unit),
                ))

        tasks = report.get("oem-tasks")
        if tasks:
            for target in tasks.targets():
                if target.endswith(".timer"):
                    run = partial(self.host.run_cmd,
                                  ["systemctl", "disable", "--now", target])
                else:
                    run = partial(self.host.move_file, target,
                                  self._quarantine_path(target))
                actions.append(CleanupAction(
                    "oem-tasks", f"Disable scheduled task {target}", target, run,
                ))

        plymouth = report.get("vendor-plymouth")
        if report.get("vendor-grub") or plymouth:
            category = "vendor-grub" if report.get("vendor-grub") else "vendor-plymouth"
            actions.append(CleanupAction(
                category, "Sanitize GRUB defaults", GRUB_DEFAULTS,
                self._sanitize_grub,
            ))
            actions.append(CleanupAction(
                category, "Regenerate GRUB config", GRUB_DEFAULTS,
                self._regenerate_grub,
            ))

        if plymouth:
            for unit in PLYMOUTH_UNITS:
                actions.append(CleanupAction(
                    "vendor-plymouth", f"Disable {unit}", unit,
                    partial(self.host.run_cmd, ["systemctl", "disable", unit]),
                ))
            actions.append(CleanupAction(
                "vendor-plymouth", "Remove plymouth package", "plymouth",
                self._remove_plymouth,
            ))

        applets = report.get("vendor-applets")
        if applets:
            for path in applets.targets():
                actions.append(CleanupAction(
                    "vendor-applets", f"Quarantine {path}", path,
                    partial(self.host.move_file, path,
                            self._quarantine_path(path)),
                ))
        return actions

    def _plan_windows(self, report: InvestigationReport) -> list:
        actions = []
        services = report.get("oem-services")
        if services:
            for name in services.targets():
                actions.append(CleanupAction(
                    "oem-services", f"Disable {name}", name,
                    partial(self.host.run_cmd,
                            ["sc.exe", "config", name, "start=", "disabled"]),
                ))
                actions.append(CleanupAction(
                    "oem-services", f"Stop {name}", name,
                    partial(self._stop_windows_service, name),
                ))

        tasks = report.get("oem-tasks")
        if tasks:
            for path in tasks.targets():
                actions.append(CleanupAction(
                    "oem-tasks", f"Disable scheduled task {path}", path,
                    partial(self.host.run_cmd,
                            ["schtasks", "/Change", "/TN", path, "/Disable"]),
                ))

        if report.get("winre-enabled"):
            actions.append(CleanupAction(
                "winre-enabled", "Disable Windows RE", "reagentc",
                partial(self.host.run_cmd, ["reagentc", "/disable"]),
            ))
        return actions

    def describe(self, report: InvestigationReport) -> list:
        """Prose for the confirmation prompt; mirrors the plan builders."""
        lines = []
        services = report.get("oem-services")
        if services:
            lines.append(f"Disable and stop {len(services.targets())} "
                         "vendor service(s)")
        tasks = report.get("oem-tasks")
        if tasks:
            line = f"Disable {len(tasks.targets())} vendor scheduled task(s)"
            if self.system == "linux":
                line += f" (cron jobs move to {self.quarantine_dir})"
            lines.append(line)
        if self.system == "windows":
            if report.get("winre-enabled"):
                lines.append("Disable the Windows Recovery Environment")
            return lines
        if report.get("vendor-grub") or report.get("vendor-plymouth"):
            lines.append(f"Back up {GRUB_DEFAULTS}, strip quiet/splash, "
                         f"set GRUB_TIMEOUT={GRUB_TIMEOUT}, regenerate grub.cfg")
        if report.get("vendor-plymouth"):
            lines.append("Disable Plymouth units and remove the plymouth package")
        applets = report.get("vendor-applets")
        if applets:
            lines.append(f"Move {len(applets.targets())} vendor applet(s) to "
                         f"{self.quarantine_dir}")
        return lines

    # ── individual steps ──────────────────────────────────────────────────

    def _quarantine_path(self, path: str) -> str:
        return os.path.join(self.quarantine_dir, path.lstrip("/"))

    def _stop_unit(self, unit: str) -> None:
        if not self.host.probe(["systemctl", "is-active", "--quiet", unit]):
            _skip(f"{unit} is not running")
            return
        self.host.run_cmd(["systemctl", "stop", unit])

    def _stop_windows_service(self, name: str) -> None:
        if "RUNNING" not in self.host.query(["sc.exe", "query", name]):
            _skip(f"{name} is not running")
            return
        self.host.run_cmd(["sc.exe", "stop", name])

    def _sanitize_grub(self) -> None:
        text = self.host.read_text(GRUB_DEFAULTS)
        if text is None:
            raise ActionError(f"{GRUB_DEFAULTS} not found")
        new = sanitize_grub_defaults(text)
        if new == text:
            _info(f"No change needed: {GRUB_DEFAULTS}")
            return
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        # Backup must land before the rewrite.
        self.host.copy_file(GRUB_DEFAULTS, f"{GRUB_DEFAULTS}.bak.{stamp}")
        self.host.write_text(GRUB_DEFAULTS, new)

    def _regenerate_grub(self) -> None:
        if self.host.has_command("update-grub"):
            self.host.run_cmd(["update-grub"])
            return
        if self.host.has_command("grub2-mkconfig"):
            for cfg in GRUB_CFG_CANDIDATES:
                if self.host.exists(cfg):
                    self.host.run_cmd(["grub2-mkconfig", "-o", cfg])
                    return
            raise ActionError("could not locate grub.cfg — run grub2-mkconfig manually")
        _warn("No grub regeneration tool found (update-grub, grub2-mkconfig) "
              "— regenerate grub.cfg manually")

    def _remove_plymouth(self) -> None:
        if self.host.has_command("apt-get"):
            self.host.run_cmd(["apt-get", "remove", "-y", "-qq", "plymouth"])
        elif self.host.has_command("dnf"):
            self.host.run_cmd(["dnf", "remove", "-y", "plymouth"])
        else:
            raise ActionError("no supported package manager (apt-get, dnf)")

    # ── execution ─────────────────────────────────────────────────────────

    def execute(self, actions) -> list:
        outcomes = []
        for step, action in enumerate(actions, 1):
            _info(f"[{step}/{len(actions)}] {action.description}")
            try:
                action.run()
            except (ActionError, QueryError, OSError) as exc:
                _error(f"{action.description} failed (target {action.target}): "
                       f"{exc}")
                outcomes.append(ActionOutcome(action, False, str(exc)))
                continue
            outcomes.append(ActionOutcome(action, True))
        return outcomes


# ── Workflow ─────────────────────────────────────────────────────────────────

class State(Enum):
    INVESTIGATING = "investigating"
    REPORTED = "reported"
    EXIT = "exit"
    AWAIT_CONFIRMATION = "await-confirmation"
    ABORTED = "aborted"
    CLEANING = "cleaning"
    DONE = "done"


class TrustBoundary:
    """Investigate → report → (cleanup mode + "y") clean."""

    def __init__(self, system: str, host: Host, cleanup: bool = False,
                 report_json: Optional[str] = None,
                 quarantine_dir: str = DEFAULT_QUARANTINE_DIR,
                 os_label: str = ""):
        self.system = system
        self.host = host
        self.cleanup = cleanup
        self.report_json = report_json
        self.os_label = os_label or system
        self.cleaner = Cleaner(host, system, quarantine_dir)
        self.state = State.INVESTIGATING
        self.report = None
        self.outcomes = []
        self._t0 = None

    def _confirm(self) -> bool:
        """The one suspension point: ask, and return True only on 'y'."""
        print()
        print(f"  {_C.BOLD}Cleanup mode enabled. About to apply soft "
              f"remediation on {self.os_label}:{_C.RESET}")
        lines = self.cleaner.describe(self.report)
        for line in lines:
            print(f"    • {line}")
        if not lines:
            print("    • nothing to remediate for the categories found")
        print()
        print(f"  {_C.DIM}Partitions, firmware boot entries and disks are "
              f"never modified.{_C.RESET}")
        print()
        try:
            answer = input("  Proceed with cleanup? [y/N] ").strip().lower()
        except (EOFError, KeyboardInterrupt):
            print()
            return False
        return answer in ("y", "yes")

    def run(self) -> State:
        self._t0 = time.monotonic()
        icon = _I.WINDOWS if self.system == "windows" else _I.LINUX
        _banner(f"{icon}  trustboundary — investigating {self.os_label}")

        self.state = State.INVESTIGATING
        self.report = investigate(self.host, self.system)
        self.state = State.REPORTED
        print_report(self.report, self.system)

        if self.report_json:
            try:
                write_report_json(self.report, self.report_json, self.system)
            except OSError as exc:
                _error(f"Could not write JSON report to {self.report_json}: {exc}")
            else:
                _info(f"JSON report written to {self.report_json}")

        if self.report.required_check_failed:
            _error("Partition enumeration failed — cannot vouch for this disk; "
                   "cleanup not offered")
            self.state = State.EXIT
            return self.state

        if not self.cleanup:
            print()
            _info("Investigation mode only. No changes made.")
            _info("Set INVESTIGATE_ONLY=false or pass --cleanup to enable cleanup.")
            self.state = State.EXIT
            return self.state

        self.state = State.AWAIT_CONFIRMATION
        _warn("=== Cleanup Mode Enabled ===")
        if not self._confirm():
            _info("Cleanup aborted.")
            self.state = State.ABORTED
            return self.state

        self.state = State.CLEANING
        _banner(f"{_I.BROOM}  Cleanup")
        self.outcomes = self.cleaner.execute(self.cleaner.plan(self.report))
        self._print_cleanup_summary()
        self.state = State.DONE
        return self.state

    def _print_cleanup_summary(self) -> None:
        elapsed = time.monotonic() - self._t0
        failed = [o for o in self.outcomes if not o.ok]
        _banner(f"{_I.CHECK}  Cleanup finished ({int(elapsed)}s)")
        if not self.outcomes:
            _info("No remediation actions applied to the categories found")
        elif failed:
            _warn(f"{len(self.outcomes) - len(failed)} of {len(self.outcomes)} "
                  f"actions succeeded; {len(failed)} failed:")
            for o in failed:
                _bullet(f"{o.action.description}: {o.error}")
        else:
            _success(f"All {len(self.outcomes)} actions completed")
        print()
        _info("Left for you to do by hand (never automated):")
        for step in MANUAL_FOLLOW_UPS[self.system]:
            _bullet(step)
        _info("Review before reboot.")


# ── CLI ──────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="trustboundary",
        description="Inspect a second-hand or OEM laptop for vendor, OEM and "
                    "recovery artefacts before reusing it.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""\
environment:
  INVESTIGATE_ONLY=true|false   false enables cleanup mode (default: true)

examples:
  sudo trustboundary                            # investigate only
  sudo trustboundary --report-json report.json  # also write a JSON report
  sudo trustboundary --cleanup                  # investigate, then ask before cleaning
  sudo INVESTIGATE_ONLY=false trustboundary     # same as --cleanup
  sudo trustboundary --cleanup --dry-run        # show cleanup commands only
""",
    )
    p.add_argument(
        "--cleanup", action="store_true",
        help="offer soft remediation after the report (still asks for "
             "confirmation)",
    )
    p.add_argument(
        "--dry-run", action="store_true",
        help="print cleanup commands without executing them",
    )
    p.add_argument(
        "--report-json", metavar="PATH",
        help="also write the investigation report as JSON to PATH",
    )
    p.add_argument(
        "--quarantine-dir", default=DEFAULT_QUARANTINE_DIR, metavar="DIR",
        help=f"flagged vendor applets and cron jobs are moved here instead "
             f"of being deleted (default: {DEFAULT_QUARANTINE_DIR})",
    )
    p.add_argument(
        "-q", "--quiet", action="store_true",
        help="suppress per-command output during cleanup",
    )
    return p


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)

    try:
        investigate_only = read_investigate_only()
    except ValueError as exc:
        _error(str(exc))
        sys.exit(1)

    system = detect_platform()
    try:
        admin = is_admin(system)
    except (AttributeError, OSError) as exc:
        _error(f"Cannot determine privilege level: {exc}")
        sys.exit(1)
    if not admin:
        hint = "an elevated prompt" if system == "windows" else "sudo trustboundary"
        _error(f"trustboundary must run with administrative privileges "
               f"(try: {hint})")
        sys.exit(1)

    os_id, os_version = detect_os(system)
    host = Host(dry_run=args.dry_run, quiet=args.quiet)
    tb = TrustBoundary(
        system, host,
        cleanup=args.cleanup or not investigate_only,
        report_json=args.report_json,
        quarantine_dir=args.quarantine_dir,
        os_label=f"{os_id} {os_version}".strip(),
    )
    tb.run()

    if tb.report.required_check_failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
