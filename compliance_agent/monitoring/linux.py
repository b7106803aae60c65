"""
Linux probe catalogs for Debian-family and RPM-family distributions.

Desktop settings (screen lock, power, location, software center) are read
with gsettings inside the session user's context. Antivirus detection passes
if any installed-product probe finds a known product. The auto-update flag
comes only from the software center's download-updates setting; everything
else gathered about updates is diagnostic context.
"""
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from compliance_agent.core.models import TelemetrySnapshot
from compliance_agent.monitoring.platform_adapter import (
    PlatformAdapter,
    PlatformKind,
    Probe,
    first_row,
    int_or_none,
    parse_settings
)
from compliance_agent.utils import get_logger

logger = get_logger(__name__)

SUPPORTED_SUSPEND_TYPES = ("hibernate", "suspend")

ANTIVIRUS_PRODUCT_PATTERN = re.compile(
    r'clamav|clamtk|sophos|falcon-sensor|crowdstrike|sentinelone|sentinel-agent|eset|kaspersky|kesl|'
    r'mcafee|trellix|bitdefender|avast|comodo|f-secure|drweb|cylance|mdatp|ds_agent',
    re.IGNORECASE
)

AUTO_UPDATE_AUTHORITATIVE_PROBE = Probe(
    "Does the software center download updates automatically?",
    command="gsettings get org.gnome.software download-updates",
    session=True,
)

FLATPAK_ANTIVIRUS_PROBES: Tuple[Probe, ...] = (
    Probe("Which antivirus apps are installed system-wide (flatpak)?",
          command="flatpak list --system --app --columns=application"),
    Probe("Which antivirus apps are installed for the user (flatpak)?",
          command="flatpak list --user --app --columns=application",
          session=True),
)

SCREEN_LOCK_STATUS_PROBES: Tuple[Probe, ...] = (
    Probe("Time for screen to lock", command="gsettings get org.gnome.desktop.screensaver lock-delay", session=True),
    Probe("Is screenlock enabled?", command="gsettings get org.gnome.desktop.screensaver lock-enabled", session=True),
)

SCREEN_SETTINGS_PROBES: Tuple[Probe, ...] = (
    Probe("Power settings", command="gsettings list-recursively org.gnome.settings-daemon.plugins.power", session=True),
    Probe("Screen saver settings", command="gsettings list-recursively org.gnome.desktop.screensaver", session=True),
    Probe("Session settings", command="gsettings list-recursively org.gnome.desktop.session", session=True),
)

LOCATION_SERVICES_PROBE = Probe(
    "Are location services enabled?",
    command="gsettings get org.gnome.system.location enabled",
    session=True,
)


def filter_antivirus_products(output: Any) -> List[str]:
    """
    Keeps the lines of a package listing that name a known antivirus product.

    :param output: Package or application listing, one entry per line
    :type output: Any
    :return: Matching entries
    :rtype: List[str]
    """
    if not isinstance(output, str):
        return []
    return [line.strip() for line in output.splitlines()
            if line.strip() and ANTIVIRUS_PRODUCT_PATTERN.search(line)]


def software_center_downloads_updates(output: Any) -> bool:
    return isinstance(output, str) and output.strip().strip("'\"").lower() == "true"


def process_screen_settings(power_output: Optional[str],
                            screen_output: Optional[str],
                            session_output: Optional[str]) -> Dict[str, Any]:
    """
    Derives screen-lock settings from the three gsettings listings.

    :param power_output: ``org.gnome.settings-daemon.plugins.power`` listing
    :type power_output: Optional[str]
    :param screen_output: ``org.gnome.desktop.screensaver`` listing
    :type screen_output: Optional[str]
    :param session_output: ``org.gnome.desktop.session`` listing
    :type session_output: Optional[str]
    :return: Screen-lock settings
    :rtype: Dict[str, Any]
    """
    power = parse_settings(power_output)
    screen = parse_settings(screen_output)
    session = parse_settings(session_output)

    lock_on_suspend = screen.get("ubuntu-lock-on-suspend") == "true"
    return {
        "screenLockEnabled": screen.get("lock-enabled") == "true",
        "screenSaverIdleWait": int_or_none(session.get("idle-delay")),
        "lockDelay": int_or_none(screen.get("lock-delay")),
        "suspendScreenLockAC": lock_on_suspend and power.get("sleep-inactive-ac-type") in SUPPORTED_SUSPEND_TYPES,
        "suspendScreenLockDC": lock_on_suspend and power.get("sleep-inactive-battery-type") in SUPPORTED_SUSPEND_TYPES,
        "suspendIdleWaitAC": int_or_none(power.get("sleep-inactive-ac-timeout")),
        "suspendIdleWaitDC": int_or_none(power.get("sleep-inactive-battery-timeout")),
    }


class LinuxAdapter(PlatformAdapter):
    """
    Probes shared by every Linux distribution family.
    """
    MAC_ADDRESS_QUERY = ("SELECT mac FROM interface_details WHERE interface in "
                         "(SELECT DISTINCT interface FROM interface_addresses WHERE interface NOT IN ('lo')) LIMIT 1")
    BROWSER_PROFILE_DIRS = {
        "firefox_addons": [".mozilla/firefox"],
        "chrome_extensions": [".config/google-chrome", ".config/chromium"],
    }
    FIREWALL_PROBE: Probe
    PACKAGE_ANTIVIRUS_PROBE: Probe
    AUTO_UPDATE_DIAGNOSTIC_PROBES: Sequence[Probe] = ()

    def _collect_platform(self, snapshot: TelemetrySnapshot):
        snapshot.firewall_status = self.run_probe(self.FIREWALL_PROBE)
        snapshot.antivirus_status = self.collect_antivirus_status()
        snapshot.auto_update_enabled, snapshot.auto_update_settings = self.collect_auto_update()

        snapshot.screen_lock_status = [
            output for output in self.run_probes(SCREEN_LOCK_STATUS_PROBES) if output is not None
        ]
        location = self.run_probe(LOCATION_SERVICES_PROBE)
        if location is not None:
            snapshot.location_services = {"commandResults": location}
        snapshot.screen_lock_settings = process_screen_settings(*self.run_probes(SCREEN_SETTINGS_PROBES))

    def antivirus_probes(self) -> List[Probe]:
        return [self.PACKAGE_ANTIVIRUS_PROBE] + list(FLATPAK_ANTIVIRUS_PROBES)

    def collect_antivirus_status(self) -> Dict[str, Any]:
        """
        Runs every installed-product probe.

        :return: ``{"passed": bool, "results": {description: [matches]}}``;
            passed is True iff at least one probe found a product
        :rtype: Dict[str, Any]
        """
        results: Dict[str, List[str]] = {}
        for probe in self.antivirus_probes():
            output = self.run_probe(probe)
            results[probe.description] = filter_antivirus_products(output)
        passed = any(results.values())
        logger.debug(f"Antivirus detection passed: {passed}")
        return {"passed": passed, "results": results}

    def collect_auto_update(self) -> Tuple[Optional[Dict[str, Any]], Dict[str, Any]]:
        """
        Reads the authoritative software-center setting and the diagnostic probes.

        :return: Tuple (enabled fact or None if the setting could not be read, diagnostic settings)
        :rtype: Tuple[Optional[Dict[str, Any]], Dict[str, Any]]
        """
        output = self.run_probe(AUTO_UPDATE_AUTHORITATIVE_PROBE)
        enabled = None
        if output is not None:
            enabled = {"passed": software_center_downloads_updates(output), "commandResults": output}

        diagnostics: Dict[str, Any] = {}
        for probe in self.AUTO_UPDATE_DIAGNOSTIC_PROBES:
            result = self.run_probe(probe)
            if result is not None:
                diagnostics[probe.description] = result
        return enabled, diagnostics


class DebianLinuxAdapter(LinuxAdapter):
    kind = PlatformKind.LINUX_DEBIAN
    APP_LIST_QUERY = "SELECT name, version FROM deb_packages"
    FIREWALL_PROBE = Probe(
        "Is the software firewall enabled on the workstation?",
        query="SELECT COUNT(*) AS passed FROM augeas WHERE path = '/etc/ufw/ufw.conf' AND label = 'ENABLED' AND value = 'yes'",
        transform=first_row,
    )
    PACKAGE_ANTIVIRUS_PROBE = Probe(
        "Which antivirus packages are installed (dpkg)?",
        command="dpkg-query -W -f='${Package}\\n'",
    )
    AUTO_UPDATE_DIAGNOSTIC_PROBES = (
        Probe("Is unattended-upgrades configured?",
              query="SELECT COUNT(*) AS passed FROM file WHERE path = '/etc/apt/apt.conf.d/50unattended-upgrades'",
              transform=first_row),
        Probe("What are the automatic update settings?",
              command="apt-config dump | grep -E '^(APT::Periodic|Unattended-Upgrade)::'"),
        Probe("Are automatic updates scheduled?",
              command="systemctl show apt-daily* --property=NextElapseUSecMonotonic,NextElapseUSecRealtime,"
                      "Unit,Description,UnitFileState,LastTriggerUSec"),
        Probe("Have automatic updates had successes?",
              command="journalctl -u apt-daily.service -u apt-daily-upgrade.service --since -7day -n 10 --no-pager --quiet"),
        Probe("Are any upgrades pending?", command="/usr/lib/update-notifier/apt-check"),
        Probe("When was the last update installed?",
              command="awk '/^Start-Date:/ {block=\"\"; inblock=1} inblock {block = block $0 ORS} "
                      "/^End-Date:/ {if (block ~ /Upgrade:/) last=block; inblock=0} END {print last}' "
                      "/var/log/apt/history.log"),
    )


class RpmLinuxAdapter(LinuxAdapter):
    kind = PlatformKind.LINUX_RPM
    APP_LIST_QUERY = "SELECT name, version FROM rpm_packages"
    FIREWALL_PROBE = Probe(
        "Is the software firewall enabled on the workstation?",
        command="firewall-cmd --state 2>/dev/null || true",
        transform=lambda output: {"passed": 1 if output.strip() == "running" else 0, "commandResults": output},
    )
    PACKAGE_ANTIVIRUS_PROBE = Probe(
        "Which antivirus packages are installed (rpm)?",
        command="rpm -qa --qf '%{NAME}\\n'",
    )
    AUTO_UPDATE_DIAGNOSTIC_PROBES = (
        Probe("Are automatic updates scheduled?",
              command="systemctl show dnf-automatic.timer dnf-automatic-install.timer "
                      "--property=NextElapseUSecRealtime,Unit,Description,UnitFileState,LastTriggerUSec"),
        Probe("What are the automatic update settings?",
              command="grep -E '^(apply_updates|download_updates|upgrade_type)' /etc/dnf/automatic.conf"),
        Probe("When were the last updates installed?", command="dnf history list | head -n 6"),
    )
