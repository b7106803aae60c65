"""
Windows probe catalog.
"""
from typing import Any, Dict, List, Optional

from compliance_agent.core.models import TelemetrySnapshot
from compliance_agent.monitoring.platform_adapter import PlatformAdapter, PlatformKind, Probe, first_row
from compliance_agent.utils import get_logger

logger = get_logger(__name__)

SCREEN_LOCK_COMMAND = (
    "powercfg /QH SCHEME_CURRENT SUB_VIDEO VIDEOCONLOCK 2> NUL && "
    "powercfg /QH SCHEME_CURRENT SUB_NONE CONSOLELOCK 2> NUL && "
    "powercfg /QH SCHEME_CURRENT SUB_SLEEP STANDBYIDLE 2> NUL"
)
BITLOCKER_COMMAND = (
    "powershell -NoProfile -command (New-Object -ComObject Shell.Application)"
    ".NameSpace((Get-ChildItem Env:SystemDrive).Value).Self.ExtendedProperty('System.Volume.BitLockerProtection')"
)
SCREEN_SAVER_QUERY = """WITH policy_setting(pname, pdata) AS (
    SELECT name, MAX(CAST(data AS INT)) AS data FROM logon_sessions
    LEFT JOIN registry r2 ON r2.key = 'HKEY_USERS\\' || logon_sid || '\\SOFTWARE\\Policies\\Microsoft\\Windows\\Control Panel\\Desktop'
    WHERE logon_type LIKE '%Interactive%' AND name IN ('ScreenSaveTimeOut', 'ScreenSaverIsSecure', 'ScreenSaveActive', 'DelayLockInterval')
    GROUP BY logon_sid, name
), user_setting(uname, udata) AS (
    SELECT name, MAX(CAST(data AS INT)) AS data FROM logon_sessions
    JOIN registry ON key = 'HKEY_USERS\\' || logon_sid || '\\Control Panel\\Desktop'
    WHERE logon_type LIKE '%Interactive%' AND name IN ('ScreenSaveTimeOut', 'ScreenSaverIsSecure', 'ScreenSaveActive', 'DelayLockInterval')
    GROUP BY logon_sid, name
)
SELECT COALESCE(pname, uname) AS name, COALESCE(pdata, udata) AS data FROM policy_setting
FULL JOIN user_setting ON pname = uname"""
INACTIVITY_LIMIT_QUERY = (
    "SELECT data FROM registry WHERE path = "
    "'HKEY_LOCAL_MACHINE\\SOFTWARE\\Microsoft\\Windows\\CurrentVersion\\Policies\\System\\InactivityTimeoutSecs' "
    "COLLATE NOCASE"
)


def pivot_name_data(rows: List[Dict[str, Any]]) -> Dict[str, str]:
    """
    Converts ``[{"name": k, "data": v}, ...]`` rows into ``{k: v}``.

    :param rows: Registry query rows
    :type rows: List[Dict[str, Any]]
    :return: Values by name
    :rtype: Dict[str, str]
    """
    pivot: Dict[str, str] = {}
    for row in rows or []:
        name = row.get("name")
        data = row.get("data")
        if isinstance(name, str) and data is not None:
            pivot[name] = str(data)
    return pivot


def _auto_update_flag(row: Optional[Dict[str, Any]]) -> Optional[bool]:
    if row is None:
        return None
    return str(row.get("autoUpdateEnabled")) == "1"


class WindowsAdapter(PlatformAdapter):
    kind = PlatformKind.WINDOWS
    APP_LIST_QUERY = "SELECT name, version FROM programs"
    MAC_ADDRESS_QUERY = "SELECT mac FROM interface_details WHERE physical_adapter=1"
    BROWSER_PROFILE_DIRS = {
        "firefox_addons": ["AppData\\Roaming\\Mozilla\\Firefox"],
        "chrome_extensions": ["AppData\\Local\\Google\\Chrome"],
        "ie_extensions": [],
    }

    def _collect_platform(self, snapshot: TelemetrySnapshot):
        snapshot.firewall_status = self.run_probe(Probe(
            "Is the software firewall enabled on the workstation?",
            query="SELECT firewall FROM windows_security_center",
            transform=first_row,
        ))
        snapshot.auto_update_enabled = self.run_probe(Probe(
            "Is auto-update enabled on this machine?",
            query="SELECT IIF(autoupdate == 'Good', 1, 0) AS autoUpdateEnabled FROM windows_security_center",
            transform=lambda rows: _auto_update_flag(first_row(rows)),
        ))
        screen_lock = self.run_probe(Probe("What are the screen lock power settings?", command=SCREEN_LOCK_COMMAND))
        if screen_lock is not None:
            snapshot.screen_lock_status = {"commandResults": screen_lock}

        av_status = self.run_probe(Probe(
            "Is antivirus software installed and running?",
            query="SELECT antivirus FROM windows_security_center LIMIT 1",
            transform=first_row,
        ))
        if av_status is not None:
            snapshot.extensions["winAvStatus"] = av_status
            snapshot.antivirus_status = {
                "passed": str(av_status.get("antivirus", "")).lower() == "good",
                "results": av_status,
            }
        services = self.run_probe(Probe(
            "Which services are installed?",
            query="SELECT name, description, status, start_type FROM services",
        ))
        if services is not None:
            snapshot.extensions["winServicesList"] = services

        snapshot.hdd_encryption_status = self.run_probe(Probe("Is BitLocker enabled?", command=BITLOCKER_COMMAND))
        snapshot.screen_lock_settings = self._screen_lock_settings()

    def _screen_lock_settings(self) -> Dict[str, Any]:
        settings: Dict[str, Any] = {}
        registry = self.run_probe(Probe("Screen saver settings", query=SCREEN_SAVER_QUERY, transform=pivot_name_data))
        if registry:
            if "ScreenSaverIsSecure" in registry and "ScreenSaveActive" in registry:
                settings["screenLockEnabled"] = (registry["ScreenSaverIsSecure"] == "1"
                                                 and registry["ScreenSaveActive"] == "1")
            if "ScreenSaveTimeOut" in registry:
                settings["screenSaverIdleWait"] = registry["ScreenSaveTimeOut"]
            if "DelayLockInterval" in registry:
                settings["lockDelay"] = registry["DelayLockInterval"]

        limit = self.run_probe(Probe("Machine inactivity limit", query=INACTIVITY_LIMIT_QUERY, transform=first_row))
        if limit is not None:
            settings["machineInactivityLimit"] = limit.get("data")
        return settings
