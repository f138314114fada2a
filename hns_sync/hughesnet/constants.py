from __future__ import annotations

LOGIN_PATH = "/start/login.jsp?UsrAction=submit"
HOME_PATH = "/start/Home.jsp"
ORDER_PATH_TEMPLATE = "/forms/viewservice.jsp?snb=SO_EST_SCHD&id={order_id}"
MANUAL_SEARCH_PATH = "/forms/SoSearch.jsp?snb=SO_EST_SCHD"

LOGIN_FORM_DEFAULTS = {
    "Submit": "Log In",
    "ScreenSize": "MED",
    "AuthSystem": "HNS",
}

USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
)

# Discovery
SCAN_MAX_PAGES_PER_LINK = 5
DISCOVERY_GAP_MAX_SIZE = 50
DISCOVERY_MAX_FAILURES = 50
DISCOVERY_MAX_CHECKS = 100

# Politeness delays (seconds)
DELAY_BETWEEN_SCANS = 0.150
DELAY_BETWEEN_GAP_FILLS = 0.050
DELAY_BETWEEN_BACKWARD_SCANS = 0.080
DELAY_BETWEEN_DOWNLOADS = 0.200

# Locking
LOCK_TTL_SECONDS = 300
LOCK_RETRY_DELAY_SECONDS = 1.0
LOCK_MAX_RETRIES = 10

# Session
SESSION_TTL_SECONDS = 60 * 60 * 24 * 2
SESSION_REFRESH_AFTER_SECONDS = 10 * 60
SESSION_REFRESH_AFTER_REQUESTS = 20

# Reconciliation / trips
RESYNC_WINDOW_DAYS = 7
CONFLICT_WINDOW_DAYS = 7
USER_MODIFICATION_BUFFER_SECONDS = 150
MIN_JOB_DURATION_MINS = 10
MAX_JOB_DURATION_MINS = 600
INSTALL_DEFAULT_DURATION_MINS = 90
REPAIR_DEFAULT_DURATION_MINS = 60
DRIVE_BONUS_THRESHOLD_MINS = 330
DEFAULT_START_MINUTES = 9 * 60
DEFAULT_MPG = 25.0
DEFAULT_GAS_PRICE = 3.50
METERS_TO_MILES = 0.000621371

# Rollback / archive
MAX_ROLLBACK_SIZE_BYTES = 5 * 1024 * 1024
MAX_IMPORT_BATCH = 500

INSTALL_JOB_TYPES = frozenset({"Install", "Re-Install"})
JOB_TYPES = ("Install", "Re-Install", "Repair", "Upgrade")

TRIP_ID_PREFIX = "hns_"


def db_key(user_id: str) -> str:
    return f"hns:db:{user_id}"


def session_key(user_id: str) -> str:
    return f"hns:session:{user_id}"


def credentials_key(user_id: str) -> str:
    return f"hns:cred:{user_id}"


def lock_key(user_id: str) -> str:
    return f"hns:lock:{user_id}"


def last_sync_key(user_id: str) -> str:
    return f"hns:last_sync:{user_id}"


def archive_key(order_id: str) -> str:
    return f"hns:order:{order_id}"


def trip_id_for(user_id: str, iso_date: str) -> str:
    return f"{TRIP_ID_PREFIX}{user_id}_{iso_date}"


def trip_key(user_id: str, trip_id: str) -> str:
    return f"trip:{user_id}:{trip_id}"


def mileage_key(user_id: str, trip_id: str) -> str:
    return f"mileage:{user_id}:{trip_id}"


def settings_key(user_id: str) -> str:
    return f"settings:{user_id}"
