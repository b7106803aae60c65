"""
macOS probe catalog.
"""
from typing import Any, Dict

from compliance_agent.core.models import TelemetrySnapshot
from compliance_agent.monitoring.platform_adapter import PlatformAdapter, PlatformKind, Probe, first_row
from compliance_agent.utils import get_logger

logger = get_logger(__name__)

SCREENLOCK_QUERY = "SELECT enabled, grace_period FROM screenlock"
IDLE_TIME_QUERY = ("SELECT value FROM preferences WHERE domain='com.apple.screensaver' AND key='idleTime' "
                   "UNION ALL SELECT value FROM managed_policies WHERE domain='com.apple.screensaver' AND name='idleTime'")
MAX_IDLE_TIME_QUERY = ("SELECT MAX(CAST(value AS INT)) AS value FROM preferences WHERE domain='com.apple.screensaver' "
                       "AND key='idleTime' AND value IS NOT NULL AND host = 'current'")


def _auto_update_from_schedule(output: str) -> Dict[str, str]:
    return {"value": "1" if "turned on" in output.lower() else "0"}


class MacOSAdapter(PlatformAdapter):
    kind = PlatformKind.MACOS
    APP_LIST_QUERY = "SELECT name, bundle_short_version, info_string FROM apps"
    MAC_ADDRESS_QUERY = ("SELECT mac FROM interface_details WHERE interface in "
                         "(SELECT DISTINCT interface FROM interface_addresses WHERE interface IN ('en0', 'en1')) LIMIT 1")
    BROWSER_PROFILE_DIRS = {
        "firefox_addons": ["Library/Application Support/Firefox"],
        "chrome_extensions": ["Library/Application Support/Google/Chrome"],
        "safari_extensions": [],
    }

    def _collect_platform(self, snapshot: TelemetrySnapshot):
        snapshot.hdd_encryption_status = self.run_probe(Probe(
            "Is the hard drive encrypted?",
            query="SELECT de.encrypted FROM mounts m JOIN disk_encryption de on de.name=m.device WHERE m.path ='/'",
            transform=first_row,
        ))
        file_vault = self.run_probe(Probe("Is FileVault enabled?", command="fdesetup status"))
        if file_vault is not None:
            snapshot.extensions["fileVaultEnabled"] = {"commandResults": file_vault}

        snapshot.firewall_status = self.run_probe(Probe(
            "Is the software firewall enabled on the workstation?",
            query="SELECT global_state FROM alf",
            transform=first_row,
        ))
        snapshot.auto_update_enabled = self.run_probe(Probe(
            "Is auto-update enabled on this machine?",
            command="softwareupdate --schedule",
            transform=_auto_update_from_schedule,
        ))

        gatekeeper = self.run_probe(Probe(
            "Is Gatekeeper enabled?",
            query="SELECT assessments_enabled FROM gatekeeper",
            transform=first_row,
        ))
        if gatekeeper is not None:
            snapshot.extensions["gateKeeperEnabled"] = gatekeeper
        snapshot.extensions["protectionSettings"] = self._protection_settings()

        snapshot.screen_lock_status = [
            rows for rows in self.run_probes([
                Probe("What is the screen saver idle time?", query=IDLE_TIME_QUERY),
                Probe("Is the screen lock enabled?", query=SCREENLOCK_QUERY),
            ]) if rows is not None
        ]
        snapshot.screen_lock_settings = self._screen_lock_settings()

    def _protection_settings(self) -> Dict[str, Any]:
        settings: Dict[str, Any] = {}
        gatekeeper = self.run_probe(Probe("What are the Gatekeeper settings?",
                                          query="SELECT assessments_enabled, dev_id_enabled FROM gatekeeper"))
        if gatekeeper is not None:
            settings["gatekeeper"] = gatekeeper
        xprotect = self.run_probe(Probe("What is the XProtect status?", command="xprotect version && xprotect status"))
        if xprotect is not None:
            settings["xprotect"] = xprotect
        return settings

    def _screen_lock_settings(self) -> Dict[str, Any]:
        settings: Dict[str, Any] = {}
        idle = self.run_probe(Probe("Screen saver idle wait", query=MAX_IDLE_TIME_QUERY, transform=first_row))
        if idle is not None:
            settings["screenSaverIdleWait"] = idle.get("value")
        power = self.run_probe(Probe("Power settings", command="pmset -g custom"))
        if power is not None:
            settings["powerSettings"] = power
        lock = self.run_probe(Probe("Screen lock settings", query=SCREENLOCK_QUERY, transform=first_row))
        if lock is not None:
            settings["lockDelay"] = lock.get("grace_period")
            settings["screenLockEnabled"] = str(lock.get("enabled")) == "1"
        return settings
