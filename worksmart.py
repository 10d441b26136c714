#!/usr/bin/env python3
"""
WorkSmart - Crossover Hours & Approvals Automation
===================================================

Tracks weekly hours and earnings against the Crossover time-tracking API
and, for managers, watches pending manual-time and overtime approvals.

Features:
- Weekly hours, earnings and deadline countdown (Sunday midnight GMT)
- Role-aware fetching (contributor vs. manager), refreshed every Monday
- Failover cache: last known hours are shown when the API fails
- Desktop alert when new approval requests appear
- Deadline reminders with increasing cadence as the cutoff approaches
- Approve / reject pending requests from the command line

Version: 1.4.0
"""

import os
import sys
import io
import json
import math
import getpass
import logging
import tempfile
import threading
import argparse
import subprocess
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timedelta, timezone, date
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import requests


# ============================================================================
# CONFIGURATION
# ============================================================================

SCRIPT_DIR = Path(__file__).parent
CONFIG_FILE = SCRIPT_DIR / "worksmart_config.json"
CACHE_FILE = SCRIPT_DIR / "worksmart_cache.json"
STATE_FILE = SCRIPT_DIR / "worksmart_approval_state.json"
REMINDERS_FILE = SCRIPT_DIR / "worksmart_reminders.json"
LOG_FILE = SCRIPT_DIR / "worksmart.log"

API_BASES = {
    'prod': 'https://api.crossover.com',
    'qa': 'https://api-qa.crossover.com',
}
REQUEST_TIMEOUT = 8  # seconds; each run must stay short

WEEKLY_TARGET_HOURS = 40.0
DEFAULT_HOURLY_RATE = 50.0
REMINDER_PREFIX = "worksmart-deadline-"
REMINDER_WINDOW_HOURS = 12
OVERDUE_REMINDER_GRACE = timedelta(minutes=10)
APP_ID = "WorkSmart"

logger = logging.getLogger("worksmart")


def setup_logging(debug: bool = False, log_file: Path = LOG_FILE):
    """Attach file + console handlers to the worksmart logger.

    Safe to call more than once; handlers are only added the first time.
    """
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    if logger.handlers:
        return
    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s'
    )
    for handler in (
        logging.FileHandler(log_file, encoding='utf-8'),
        logging.StreamHandler(sys.stdout),
    ):
        handler.setFormatter(formatter)
        logger.addHandler(handler)


def _force_utf8_output():
    """Avoid UnicodeEncodeError on Windows consoles and pythonw.exe."""
    if sys.stdout is None:
        sys.stdout = open(os.devnull, 'w', encoding='utf-8')
    elif getattr(sys.stdout, 'encoding', 'utf-8') != 'utf-8':
        sys.stdout = io.TextIOWrapper(
            sys.stdout.buffer, encoding='utf-8', errors='replace'
        )


def _write_json_atomic(path: Path, data: Any):
    """Write JSON to a temp file, then replace the target in one step."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    # Unique temp name per writer; tray and CLI may write concurrently
    with tempfile.NamedTemporaryFile(
        'w', encoding='utf-8', dir=path.parent, prefix=path.name + '.',
        suffix='.tmp', delete=False,
    ) as f:
        tmp = Path(f.name)
        json.dump(data, f, indent=2, default=str)
    try:
        tmp.replace(path)
    except OSError:
        tmp.unlink()
        raise


def _read_json(path: Path) -> Optional[Any]:
    """Read a JSON file; missing or corrupt files read as None."""
    path = Path(path)
    if not path.exists():
        return None
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable file {path.name}: {e}")
        return None


# ============================================================================
# ERRORS
# ============================================================================

class WorkSmartError(Exception):
    """Base class for WorkSmart failures."""


class AuthError(WorkSmartError):
    """Stored credentials were rejected; they must be re-entered."""


class TransientFetchError(WorkSmartError):
    """Network, HTTP or parse failure on a single request."""


class ConfigIncomplete(WorkSmartError):
    """Setup never finished, so no data operation can run."""


# ============================================================================
# CREDENTIAL MANAGER (DPAPI encryption for Windows)
# ============================================================================

class CredentialManager:
    """Encrypt/decrypt the stored password using Windows DPAPI.

    Encrypted values are stored as 'ENC:<base64>' in the config file.
    On other platforms values are kept as-is, and plain values are
    always accepted by decrypt().
    """

    PREFIX = "ENC:"

    @staticmethod
    def _dpapi(raw: bytes, protect: bool) -> Optional[bytes]:
        import ctypes
        import ctypes.wintypes as wt

        class BLOB(ctypes.Structure):
            _fields_ = [
                ("cbData", wt.DWORD),
                ("pbData", ctypes.POINTER(ctypes.c_byte)),
            ]

        inp = BLOB()
        inp.cbData = len(raw)
        inp.pbData = (ctypes.c_byte * len(raw))(*raw)
        out = BLOB()
        crypt = (
            ctypes.windll.crypt32.CryptProtectData if protect
            else ctypes.windll.crypt32.CryptUnprotectData
        )
        if not crypt(ctypes.byref(inp), None, None, None, None,
                     0, ctypes.byref(out)):
            return None
        data = ctypes.string_at(out.pbData, out.cbData)
        ctypes.windll.kernel32.LocalFree(out.pbData)
        return data

    @staticmethod
    def encrypt(plain_text: str) -> str:
        if not plain_text or sys.platform != 'win32':
            return plain_text
        import base64
        try:
            enc = CredentialManager._dpapi(plain_text.encode('utf-8'), True)
        except OSError as e:
            logger.warning(f"DPAPI encrypt failed: {e}")
            return plain_text
        if enc is None:
            return plain_text
        return CredentialManager.PREFIX + base64.b64encode(enc).decode('ascii')

    @staticmethod
    def decrypt(value: str) -> str:
        if not value or not value.startswith(CredentialManager.PREFIX):
            return value
        if sys.platform != 'win32':
            logger.warning("Cannot decrypt DPAPI value on non-Windows")
            return ''
        import base64
        try:
            raw = base64.b64decode(value[len(CredentialManager.PREFIX):])
            dec = CredentialManager._dpapi(raw, False)
        except (OSError, ValueError) as e:
            logger.warning(f"DPAPI decrypt failed: {e}")
            return ''
        return dec.decode('utf-8') if dec is not None else ''


# ============================================================================
# TIME MODEL
# ============================================================================

class Urgency(str, Enum):
    NONE = 'none'          # more than 12h left
    LOW = 'low'            # 12h - 3h
    HIGH = 'high'          # 3h - 1h
    CRITICAL = 'critical'  # last hour
    EXPIRED = 'expired'


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(moment: Optional[datetime]) -> datetime:
    if moment is None:
        return utc_now()
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def weekly_deadline(now: Optional[datetime] = None) -> datetime:
    """Upcoming Sunday 23:59:59.999 UTC (same day when it is Sunday)."""
    now = _as_utc(now)
    days_until_sunday = (6 - now.weekday()) % 7
    sunday = now + timedelta(days=days_until_sunday)
    return sunday.replace(hour=23, minute=59, second=59, microsecond=999000)


def hours_until(deadline: datetime, now: Optional[datetime] = None) -> float:
    return (deadline - _as_utc(now)).total_seconds() / 3600


def week_start_sunday(now: Optional[datetime] = None) -> date:
    """Sunday-based week start used by the manual-time endpoint."""
    today = _as_utc(now).date()
    return today - timedelta(days=(today.weekday() + 1) % 7)


def week_start_monday(now: Optional[datetime] = None) -> date:
    """Monday-based week start used by the overtime endpoint."""
    today = _as_utc(now).date()
    return today - timedelta(days=today.weekday())


def most_recent_monday(now: datetime) -> datetime:
    """Monday 00:00 of the current week in local time."""
    local = now.astimezone()
    monday = local - timedelta(days=local.weekday())
    return monday.replace(hour=0, minute=0, second=0, microsecond=0)


def format_time_remaining(remaining: timedelta) -> str:
    """Long countdown: '2d 5h', '5h 12m' or '12m'."""
    total_ms = math.floor(remaining / timedelta(milliseconds=1))
    if total_ms <= 0:
        return "0m"
    hours = total_ms // 3_600_000
    days, rem_hours = divmod(hours, 24)
    minutes = (total_ms % 3_600_000) // 60_000
    if days > 0:
        return f"{days}d {rem_hours}h"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def format_countdown(remaining: timedelta) -> str:
    """Short countdown used in reminders: '2h 5m' or '45m'."""
    total_min = math.floor(remaining.total_seconds() / 60)
    if total_min <= 0:
        return "0m"
    hours, minutes = divmod(total_min, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def urgency_level(now: Optional[datetime] = None,
                  deadline: Optional[datetime] = None) -> Urgency:
    now = _as_utc(now)
    hours_left = hours_until(deadline or weekly_deadline(now), now)
    if hours_left <= 0:
        return Urgency.EXPIRED
    if hours_left <= 1:
        return Urgency.CRITICAL
    if hours_left <= 3:
        return Urgency.HIGH
    if hours_left <= REMINDER_WINDOW_HOURS:
        return Urgency.LOW
    return Urgency.NONE


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return _as_utc(datetime.fromisoformat(str(value).replace('Z', '+00:00')))
    except ValueError:
        return None


# ============================================================================
# PROFILE & CONFIGURATION MANAGER
# ============================================================================

class Role(str, Enum):
    CONTRIBUTOR = 'contributor'
    MANAGER = 'manager'


class Environment(str, Enum):
    PROD = 'prod'
    QA = 'qa'


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _to_float(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


@dataclass
class Profile:
    """Who the user is on Crossover, as far as the API calls care."""

    user_id: int = 0
    manager_id: int = 0
    primary_team_id: int = 0
    hourly_rate: float = 0.0
    role: Role = Role.CONTRIBUTOR
    environment: Environment = Environment.PROD
    last_role_check: Optional[datetime] = None
    full_name: str = ''
    teams: List[Dict] = field(default_factory=list)

    @property
    def is_manager(self) -> bool:
        return self.role is Role.MANAGER

    @classmethod
    def from_dict(cls, data: Dict) -> 'Profile':
        # Configs written before role detection existed were manager-only
        try:
            role = Role(data.get('role', Role.MANAGER.value))
        except ValueError:
            role = Role.CONTRIBUTOR
        try:
            environment = Environment(
                data.get('environment', Environment.PROD.value)
            )
        except ValueError:
            environment = Environment.PROD
        return cls(
            user_id=_to_int(data.get('user_id')),
            manager_id=_to_int(data.get('manager_id')),
            primary_team_id=_to_int(data.get('primary_team_id')),
            hourly_rate=_to_float(data.get('hourly_rate')),
            role=role,
            environment=environment,
            last_role_check=_parse_timestamp(data.get('last_role_check')),
            full_name=data.get('full_name') or '',
            teams=list(data.get('teams') or []),
        )

    def to_dict(self) -> Dict:
        return {
            name: _profile_value(getattr(self, name))
            for name in self.__dataclass_fields__
        }


def _profile_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


@dataclass
class Session:
    """Everything one invocation needs; built at start, dropped at exit."""

    profile: Profile
    username: str
    password: str
    token: str = ''


class ConfigManager:
    """Manages the config file: credentials, profile and options."""

    def __init__(self, config_path: Path = CONFIG_FILE):
        self.config_path = Path(config_path)

    def load_config(self) -> Optional[Dict]:
        config = _read_json(self.config_path)
        return config if isinstance(config, dict) else None

    def save_config(self, config: Dict):
        _write_json_atomic(self.config_path, config)
        logger.info("Configuration saved successfully")

    def options(self) -> Dict:
        config = self.load_config() or {}
        return config.get('options', {})

    def load_session(self) -> Session:
        """Build the per-run session, or raise ConfigIncomplete."""
        config = self.load_config()
        if not config:
            raise ConfigIncomplete(f"No configuration at {self.config_path}")
        if not config.get('setup_complete'):
            raise ConfigIncomplete("Setup was not completed")
        creds = config.get('credentials', {})
        username = creds.get('username', '')
        password = CredentialManager.decrypt(creds.get('password', ''))
        if not username or not password:
            raise ConfigIncomplete("Stored credentials are missing")
        profile = Profile.from_dict(config.get('profile', {}))
        return Session(profile=profile, username=username, password=password)

    def update_profile_field(self, field_name: str, value: Any) -> bool:
        """Persist a single profile field, leaving everything else as-is."""
        config = self.load_config()
        if config is None:
            return False
        config.setdefault('profile', {})[field_name] = _profile_value(value)
        _write_json_atomic(self.config_path, config)
        return True

    def invalidate_credentials(self):
        """Forget the config so the next run goes through setup again."""
        if self.config_path.exists():
            self.config_path.unlink()
            logger.warning(
                "Stored credentials removed; run --setup to reconfigure"
            )

    def setup_wizard(self, client_factory=None) -> Optional[Session]:
        """Interactive first-time configuration."""
        client_factory = client_factory or CrossoverClient
        print("\n" + "=" * 60)
        print("WORKSMART - FIRST TIME SETUP")
        print("=" * 60)

        print("\nWhich environment?")
        print("  1. Production")
        print("  2. QA (Testing)")
        choice = input("Enter choice (1-2, default 1): ").strip()
        environment = Environment.QA if choice == "2" else Environment.PROD

        print("\n--- CROSSOVER LOGIN ---")
        username = input("Email: ").strip()
        password = getpass.getpass("Password: ")
        if not username or not password:
            print("[!] Email and password are required.")
            return None

        client = client_factory(environment)
        try:
            token = client.authenticate(username, password)
        except WorkSmartError as e:
            logger.error(f"Setup login failed: {e}")
            print("[!] Login failed. Check your credentials.")
            return None

        now = utc_now()
        login_id = _to_int(str(token).split(':')[0])
        current = client.get_current_user() or {}
        full_name = (
            current.get('fullName') or current.get('printableName')
            or 'Unknown'
        )
        found = detect_profile(client, login_id, full_name)

        if not found['primary_team_id']:
            print("\n[!] Could not auto-detect your team.")
            print("    Open app.crossover.com -> Time Tracking with browser")
            print("    DevTools and look for a 'timesheets' request.")
            team_id = _to_int(input("Team ID (Enter to skip): ").strip())
            if team_id > 0:
                manager_id = _to_int(
                    input("Manager ID: ").strip()
                ) or found['user_id']
                found.update(
                    primary_team_id=team_id,
                    manager_id=manager_id,
                    teams=[{'id': team_id, 'name': 'My Team',
                            'company_name': '', 'manager_id': manager_id}],
                )
            user_id = _to_int(
                input(f"Your user ID (default {found['user_id']}): ").strip()
            )
            if user_id > 0:
                found['user_id'] = user_id

        if not found['hourly_rate']:
            found['hourly_rate'] = detect_hourly_rate(client, now)
        if not found['hourly_rate']:
            print("\nCould not detect your rate automatically.")
            raw_rate = input(
                f"Hourly rate in USD (default {DEFAULT_HOURLY_RATE:.0f}): "
            ).strip()
            found['hourly_rate'] = _to_float(raw_rate) or DEFAULT_HOURLY_RATE

        profile = Profile(
            user_id=found['user_id'],
            manager_id=found['manager_id'],
            primary_team_id=found['primary_team_id'],
            hourly_rate=found['hourly_rate'],
            role=found['role'],
            environment=environment,
            last_role_check=now,
            full_name=found['full_name'],
            teams=found['teams'],
        )
        self.save_config({
            'credentials': {
                'username': username,
                'password': CredentialManager.encrypt(password),
            },
            'profile': profile.to_dict(),
            'setup_complete': True,
            'setup_date': now.isoformat(),
            'options': {'debug_mode': False, 'refresh_minutes': 15},
        })

        print("\n" + "=" * 60)
        print("[OK] SETUP COMPLETE!")
        print("=" * 60)
        print(f"Welcome, {profile.full_name}!")
        print(f"User ID: {profile.user_id}")
        print(f"Team ID: {profile.primary_team_id or 'N/A'}")
        print(f"Role: {profile.role.value.title()}")
        print(f"Rate: ${profile.hourly_rate:.0f}/hr")
        print(f"Env: {environment.value.upper()}")
        print(f"\nConfiguration saved to: {self.config_path}\n")
        return Session(profile=profile, username=username,
                       password=password, token=client.token)


# ============================================================================
# CROSSOVER API CLIENT
# ============================================================================

@dataclass
class RequestVariant:
    """One way of asking the API for the same logical data."""

    path: str
    params: Dict[str, Any] = field(default_factory=dict)


def is_non_empty(payload: Any) -> bool:
    return isinstance(payload, (list, dict)) and len(payload) > 0


def normalize_records(payload: Any) -> List[Dict]:
    """Bring list, {content: [...]} and bare-object responses to a list."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        content = payload.get('content')
        if isinstance(content, list):
            return content
        return [payload] if payload else []
    return []


def _dig(data: Any, *keys: str) -> Any:
    """Walk nested dicts, returning None as soon as a level is missing."""
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


class CrossoverClient:
    """Handles Crossover API interactions."""

    TOKEN_PATH = "/api/v3/token"
    DETAIL_PATH = "/api/identity/users/current/detail"
    CURRENT_USER_PATH = "/api/v3/users/current"
    PAYMENTS_PATH = "/api/v3/users/current/payments"
    ASSIGNMENTS_PATH = "/api/v2/teams/assignments"
    TEAMS_PATH = "/api/v2/teams"
    TIMESHEET_PATH = "/api/timetracking/timesheets"
    MANUAL_PENDING_PATH = "/api/timetracking/workdiaries/manual/pending"
    MANUAL_APPROVE_PATH = "/api/timetracking/workdiaries/manual/approved"
    MANUAL_REJECT_PATH = "/api/timetracking/workdiaries/manual/rejected"
    OVERTIME_PATH = "/api/overtime/request"

    def __init__(self, environment: Union[Environment, str] = Environment.PROD,
                 timeout: float = REQUEST_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.environment = Environment(environment)
        self.base_url = API_BASES[self.environment.value]
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'Accept': 'application/json',
            'Content-Type': 'application/json',
        })
        self.token = ''

    # --- Authentication ---

    def authenticate(self, username: str, password: str) -> str:
        """Exchange Basic credentials for an API token.

        Raises:
            AuthError: the API rejected the credentials (HTTP 401/403)
            TransientFetchError: network or server failure
        """
        url = f"{self.base_url}{self.TOKEN_PATH}"
        try:
            response = self.session.post(
                url, auth=(username, password), timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise TransientFetchError(f"Token request failed: {e}") from e

        if response.status_code in (401, 403):
            raise AuthError(
                f"Credentials rejected (HTTP {response.status_code})"
            )
        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise TransientFetchError(f"Token request failed: {e}") from e

        token = self._extract_token(response)
        if not token:
            # Accepted credentials but an unexpected body: not a stale secret
            raise TransientFetchError(
                "Token response did not contain a token"
            )
        self.token = token
        self.session.headers['x-auth-token'] = token
        logger.debug("Auth OK")
        return token

    @staticmethod
    def _extract_token(response) -> str:
        try:
            body = response.json()
        except ValueError:
            return (response.text or '').strip()
        if isinstance(body, dict):
            return body.get('token') or body.get('access_token') or ''
        return str(body) if body else ''

    # --- Generic fetching ---

    def _get_json(self, path: str, params: Optional[Dict] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(
                url, params=params, timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise TransientFetchError(f"GET {path} failed: {e}") from e

    def fetch_first(self, variants: List[RequestVariant]) -> Optional[Any]:
        """Return the first non-empty response among the variants.

        Each variant is tried once, in order. Failures count as "no data".
        Returns None when every variant failed or came back empty.
        """
        for number, variant in enumerate(variants, 1):
            try:
                payload = self._get_json(variant.path, variant.params)
            except TransientFetchError as e:
                logger.debug(
                    f"Strategy {number}/{len(variants)} failed: {e}"
                )
                continue
            if is_non_empty(payload):
                logger.debug(
                    f"Strategy {number}/{len(variants)} returned data"
                )
                return payload
            logger.debug(f"Strategy {number}/{len(variants)} was empty")
        return None

    def _get_optional(self, path: str, params: Optional[Dict] = None,
                      label: str = '') -> Optional[Any]:
        try:
            return self._get_json(path, params)
        except TransientFetchError as e:
            logger.error(f"Error fetching {label or path}: {e}")
            return None

    # --- Hours ---

    def timesheet_variants(self, profile: Profile,
                           now: Optional[datetime] = None) -> List[RequestVariant]:
        """Timesheet query variants, most specific first."""
        base = {
            'date': _as_utc(now).date().isoformat(),
            'period': 'WEEK',
        }
        variants = []
        if profile.primary_team_id and profile.manager_id:
            variants.append(RequestVariant(self.TIMESHEET_PATH, {
                **base,
                'managerId': profile.manager_id,
                'teamId': profile.primary_team_id,
                'userId': profile.user_id,
            }))
        if profile.manager_id and profile.manager_id != profile.user_id:
            variants.append(RequestVariant(self.TIMESHEET_PATH, {
                **base,
                'managerId': profile.manager_id,
                'userId': profile.user_id,
            }))
        variants.append(RequestVariant(self.TIMESHEET_PATH, {
            **base, 'userId': profile.user_id,
        }))
        return variants

    def get_timesheet(self, profile: Profile,
                      now: Optional[datetime] = None) -> Optional[List[Dict]]:
        payload = self.fetch_first(self.timesheet_variants(profile, now))
        if payload is None:
            logger.error("Failed to fetch timesheet with all strategies")
            return None
        return normalize_records(payload)

    # --- Approvals ---

    def get_pending_manual(self, now: Optional[datetime] = None) -> Optional[List[Dict]]:
        """Pending manual time grouped by user; None if unavailable."""
        payload = self._get_optional(
            self.MANUAL_PENDING_PATH,
            {'weekStartDate': week_start_sunday(now).isoformat()},
            label='pending manual time',
        )
        if payload is None:
            return None
        records = normalize_records(payload)
        logger.debug(f"Manual time received: {len(records)} users")
        return records

    def get_pending_overtime(self, now: Optional[datetime] = None) -> Optional[List[Dict]]:
        """Pending overtime requests; None if unavailable."""
        payload = self._get_optional(
            self.OVERTIME_PATH,
            {
                'status': 'PENDING',
                'weekStartDate': week_start_monday(now).isoformat(),
            },
            label='pending overtime',
        )
        if payload is None:
            return None
        records = normalize_records(payload)
        logger.debug(f"Overtime received: {len(records)} requests")
        return records

    def _put(self, path: str, body: Optional[Dict] = None) -> bool:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.put(url, json=body, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.error(f"PUT {path} failed: {e}")
            return False
        if response.status_code != 200:
            logger.error(f"PUT {path} returned HTTP {response.status_code}")
        return response.status_code == 200

    def approve(self, item: 'ApprovalItem', approver_id: int) -> bool:
        if isinstance(item, OvertimeApproval):
            return self._put(f"{self.OVERTIME_PATH}/approval/{item.overtime_id}")
        return self._put(self.MANUAL_APPROVE_PATH, {
            'approverId': approver_id,
            'timecardIds': list(item.timecard_ids),
            'allowOvertime': False,
        })

    def reject(self, item: 'ApprovalItem', approver_id: int,
               reason: str = 'Rejected') -> bool:
        if isinstance(item, OvertimeApproval):
            return self._put(
                f"{self.OVERTIME_PATH}/rejection/{item.overtime_id}",
                {'memo': reason or 'Rejected'},
            )
        return self._put(self.MANUAL_REJECT_PATH, {
            'approverId': approver_id,
            'timecardIds': list(item.timecard_ids),
            'rejectionReason': reason or 'Rejected',
        })

    # --- Profile lookups ---

    def get_user_detail(self) -> Optional[Dict]:
        payload = self._get_optional(self.DETAIL_PATH, label='user detail')
        return payload if isinstance(payload, dict) else None

    def get_current_user(self) -> Optional[Dict]:
        payload = self._get_optional(self.CURRENT_USER_PATH,
                                     label='current user')
        return payload if isinstance(payload, dict) else None

    def get_active_assignments(self) -> List[Dict]:
        payload = self._get_optional(self.ASSIGNMENTS_PATH, {
            'avatarType': 'CANDIDATE', 'status': 'ACTIVE', 'page': 0,
        }, label='assignments')
        return normalize_records(payload)

    def get_teams(self) -> List[Dict]:
        payload = self._get_optional(self.TEAMS_PATH, label='teams')
        return payload if isinstance(payload, list) else []

    def get_payments(self, now: Optional[datetime] = None) -> List[Dict]:
        today = _as_utc(now).date()
        payload = self._get_optional(self.PAYMENTS_PATH, {
            'from': (today - timedelta(days=90)).isoformat(),
            'to': today.isoformat(),
        }, label='payments')
        return payload if isinstance(payload, list) else []


def _candidate_avatar_id(detail: Dict) -> int:
    for avatar in detail.get('userAvatars') or []:
        if isinstance(avatar, dict) and avatar.get('type') == 'CANDIDATE':
            return _to_int(avatar.get('id'))
    return 0


def _role_from_detail(detail: Dict) -> Role:
    avatar_types = detail.get('avatarTypes') or []
    return Role.MANAGER if 'MANAGER' in avatar_types else Role.CONTRIBUTOR


def detect_profile(client: CrossoverClient, login_user_id: int,
                   full_name: str = 'Unknown') -> Dict:
    """Resolve ids, role and rate for a fresh setup.

    Tries the user detail endpoint first, then the active CANDIDATE
    assignment, then the teams list (which only answers for managers).
    """
    found = {
        'user_id': login_user_id,
        'manager_id': login_user_id,
        'primary_team_id': 0,
        'hourly_rate': 0.0,
        'role': Role.CONTRIBUTOR,
        'full_name': full_name,
        'teams': [],
        'detected_by': 'none',
    }

    detail = client.get_user_detail()
    assignment = _dig(detail, 'assignment')
    if isinstance(_dig(assignment, 'team'), dict):
        team = assignment['team']
        manager_id = _to_int(_dig(assignment, 'manager', 'id')) or login_user_id
        found.update(
            primary_team_id=_to_int(team.get('id')),
            manager_id=manager_id,
            teams=[_team_entry(team, manager_id)],
            role=_role_from_detail(detail),
            detected_by='detail',
        )
        found['user_id'] = _candidate_avatar_id(detail) or login_user_id
        found['full_name'] = detail.get('fullName') or full_name
        salary = _to_float(assignment.get('salary'))
        if salary > 0:
            found['hourly_rate'] = float(round(salary))
        return found

    assignments = client.get_active_assignments()
    if assignments and isinstance(assignments[0], dict):
        first = assignments[0]
        team = first.get('team') if isinstance(first.get('team'), dict) else {}
        manager_id = _to_int(_dig(first, 'manager', 'id')) or login_user_id
        found.update(
            primary_team_id=_to_int(team.get('id')),
            manager_id=manager_id,
            teams=[_team_entry(team, manager_id)],
            detected_by='assignments',
        )
        found['user_id'] = (
            _to_int(_dig(first, 'candidate', 'id')) or login_user_id
        )
        found['full_name'] = (
            _dig(first, 'candidate', 'printableName') or full_name
        )
        return found

    teams = [t for t in client.get_teams() if isinstance(t, dict)]
    if teams:
        entries = [
            _team_entry(t, _to_int(_dig(t, 'teamOwner', 'userId')))
            for t in teams
        ]
        found.update(
            primary_team_id=entries[0]['id'],
            manager_id=entries[0]['manager_id'] or login_user_id,
            teams=entries,
            role=Role.MANAGER,
            detected_by='teams',
        )
    return found


def _team_entry(team: Dict, manager_id: int) -> Dict:
    return {
        'id': _to_int(team.get('id')),
        'name': team.get('name') or 'My Team',
        'company_name': _dig(team, 'company', 'name') or '',
        'manager_id': manager_id,
    }


def detect_hourly_rate(client: CrossoverClient,
                       now: Optional[datetime] = None) -> float:
    """Derive the rate from the most recent paid period, or 0."""
    for payment in client.get_payments(now):
        if not isinstance(payment, dict):
            continue
        paid_hours = _to_float(payment.get('paidHours'))
        amount = _to_float(payment.get('amount'))
        if paid_hours > 0 and amount > 0:
            return float(round(amount / paid_hours))
    return 0.0


# ============================================================================
# HOURS AGGREGATOR
# ============================================================================

@dataclass(frozen=True)
class DailyHours:
    date: str
    hours: float


@dataclass(frozen=True)
class HoursSummary:
    """Weekly hours and earnings derived from one timesheet payload."""

    total_hours: float
    average_hours_per_day: float
    today_hours: float
    daily: Tuple[DailyHours, ...]
    weekly_earnings: float
    today_earnings: float
    hours_remaining: float
    deadline: datetime
    time_remaining: timedelta
    hourly_rate: float = 0.0

    @property
    def rate_known(self) -> bool:
        return self.hourly_rate > 0

    @property
    def past_deadline(self) -> bool:
        return self.time_remaining <= timedelta(0)

    def to_dict(self) -> Dict:
        return {
            'total_hours': self.total_hours,
            'average_hours_per_day': self.average_hours_per_day,
            'today_hours': self.today_hours,
            'daily': [{'date': d.date, 'hours': d.hours} for d in self.daily],
            'weekly_earnings': self.weekly_earnings,
            'today_earnings': self.today_earnings,
            'hours_remaining': self.hours_remaining,
            'deadline': self.deadline.isoformat(),
            'time_remaining_seconds': self.time_remaining.total_seconds(),
            'hourly_rate': self.hourly_rate,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'HoursSummary':
        return cls(
            total_hours=_to_float(data.get('total_hours')),
            average_hours_per_day=_to_float(data.get('average_hours_per_day')),
            today_hours=_to_float(data.get('today_hours')),
            daily=tuple(
                DailyHours(str(d.get('date', '')), _to_float(d.get('hours')))
                for d in data.get('daily') or [] if isinstance(d, dict)
            ),
            weekly_earnings=_to_float(data.get('weekly_earnings')),
            today_earnings=_to_float(data.get('today_earnings')),
            hours_remaining=_to_float(data.get('hours_remaining')),
            deadline=_parse_timestamp(data.get('deadline')) or weekly_deadline(),
            time_remaining=timedelta(
                seconds=_to_float(data.get('time_remaining_seconds'))
            ),
            hourly_rate=_to_float(data.get('hourly_rate')),
        )


def aggregate_hours(records: Optional[List[Dict]], hourly_rate: float,
                    now: Optional[datetime] = None) -> HoursSummary:
    """Reduce raw timesheet records to an HoursSummary.

    Only the first record is used; it carries the weekly totals and the
    per-day ``stats`` array. Deadline math runs even without data.
    """
    now = _as_utc(now)
    deadline = weekly_deadline(now)
    time_remaining = deadline - now
    first = records[0] if records and isinstance(records[0], dict) else None

    if first is None:
        return HoursSummary(
            total_hours=0.0, average_hours_per_day=0.0, today_hours=0.0,
            daily=(), weekly_earnings=0.0, today_earnings=0.0,
            hours_remaining=WEEKLY_TARGET_HOURS, deadline=deadline,
            time_remaining=time_remaining, hourly_rate=hourly_rate,
        )

    total = _to_float(first.get('totalHours') or first.get('hourWorked'))
    average = _to_float(first.get('averageHoursPerDay'))
    daily = tuple(
        DailyHours(str(day.get('date') or ''), _to_float(day.get('hours')))
        for day in first.get('stats') or [] if isinstance(day, dict)
    )
    today_prefix = now.date().isoformat()
    today_hours = next(
        (d.hours for d in daily if d.date.startswith(today_prefix)), 0.0
    )

    return HoursSummary(
        total_hours=total,
        average_hours_per_day=average,
        today_hours=today_hours,
        daily=daily,
        weekly_earnings=total * hourly_rate,
        today_earnings=today_hours * hourly_rate,
        hours_remaining=max(0.0, WEEKLY_TARGET_HOURS - total),
        deadline=deadline,
        time_remaining=time_remaining,
        hourly_rate=hourly_rate,
    )


# ============================================================================
# APPROVAL RECONCILER
# ============================================================================

class ItemKind(str, Enum):
    MANUAL = 'manual'
    OVERTIME = 'overtime'


@dataclass(frozen=True)
class ItemKey:
    """Structural identity of an approval item.

    Manual items are identified by their sorted timecard ids, overtime
    items by their request id.
    """

    kind: ItemKind
    ids: Tuple

    def __str__(self) -> str:
        prefix = 'mt' if self.kind is ItemKind.MANUAL else 'ot'
        return f"{prefix}-{','.join(str(i) for i in self.ids)}"

    def to_json(self) -> List:
        return [self.kind.value, list(self.ids)]

    @classmethod
    def from_json(cls, raw: Any) -> Optional['ItemKey']:
        try:
            kind, ids = raw
            return cls(ItemKind(kind), tuple(ids))
        except (TypeError, ValueError):
            return None


def _sorted_ids(ids: Any) -> Tuple:
    if ids is None:
        return ()
    values = list(ids) if isinstance(ids, (list, tuple, set)) else [ids]
    try:
        return tuple(sorted(values))
    except TypeError:
        return tuple(sorted(values, key=str))


def _minutes_to_hours(minutes: float) -> float:
    """Hours to one decimal, halves rounded up (15 min -> 0.3h)."""
    hours = Decimal(str(minutes / 60))
    return float(hours.quantize(Decimal('0.1'), rounding=ROUND_HALF_UP))


def _clean_title(title: Any) -> str:
    return str(title or '').replace('"', '')


@dataclass(frozen=True)
class ManualApproval:
    user_id: int
    full_name: str
    job_title: str
    duration_minutes: float
    description: str
    started_at: str
    source_type: str
    timecard_ids: Tuple
    week_start: str

    category = 'MANUAL'

    @property
    def key(self) -> ItemKey:
        return ItemKey(ItemKind.MANUAL, _sorted_ids(self.timecard_ids))

    @property
    def hours(self) -> float:
        return _minutes_to_hours(self.duration_minutes)

    @property
    def note(self) -> str:
        return self.description


@dataclass(frozen=True)
class OvertimeApproval:
    overtime_id: Any
    user_id: int
    full_name: str
    job_title: str
    duration_minutes: float
    cost: float
    memo: str
    created_at: str
    week_start: str
    total_hours_worked: float
    salary: float = 0.0

    category = 'OVERTIME'

    @property
    def key(self) -> ItemKey:
        return ItemKey(ItemKind.OVERTIME, (self.overtime_id,))

    @property
    def hours(self) -> float:
        return _minutes_to_hours(self.duration_minutes)

    @property
    def note(self) -> str:
        return self.memo


ApprovalItem = Union[ManualApproval, OvertimeApproval]


def parse_manual_items(payload: List[Dict], week_start: str) -> List[ManualApproval]:
    """Flatten pending manual time grouped by submitting user."""
    items = []
    for user in payload or []:
        if not isinstance(user, dict):
            logger.warning("Skipping malformed manual-time record")
            continue
        entries = user.get('manualTimes') or []
        for entry in entries:
            if not isinstance(entry, dict) or entry.get('status') != 'PENDING':
                continue
            timecard_ids = _sorted_ids(entry.get('timecardIds'))
            if not timecard_ids:
                # Nothing to approve against, and no identity to diff on
                logger.warning(
                    f"Skipping manual time without timecard ids from "
                    f"{user.get('fullName') or 'Unknown'}"
                )
                continue
            items.append(ManualApproval(
                user_id=_to_int(user.get('userId')),
                full_name=user.get('fullName') or 'Unknown',
                job_title=_clean_title(user.get('jobTitle')),
                duration_minutes=_to_float(entry.get('durationMinutes')),
                description=entry.get('description') or 'No description',
                started_at=entry.get('startDateTime') or '',
                source_type=entry.get('type') or '',
                timecard_ids=timecard_ids,
                week_start=week_start,
            ))
    return items


def parse_overtime_items(payload: List[Dict]) -> List[OvertimeApproval]:
    """Flatten pending overtime requests with their nested candidate."""
    items = []
    for entry in payload or []:
        request = _dig(entry, 'overtimeRequest')
        if not isinstance(request, dict) or request.get('status') != 'PENDING':
            continue
        if request.get('id') is None:
            logger.warning("Skipping overtime request without an id")
            continue
        assignment = _dig(entry, 'assignment')
        candidate = _dig(
            assignment, 'selection', 'marketplaceMember',
            'application', 'candidate'
        )
        items.append(OvertimeApproval(
            overtime_id=request['id'],
            user_id=_to_int(_dig(candidate, 'userId')),
            full_name=_dig(candidate, 'printableName') or 'Unknown',
            job_title=_clean_title(_dig(assignment, 'jobTitle')),
            duration_minutes=_to_float(request.get('overtimePeriod')),
            cost=_to_float(request.get('overtimeCost')),
            memo=request.get('memo') or 'No memo',
            created_at=request.get('createdOn') or '',
            week_start=request.get('weekStartDate') or '',
            total_hours_worked=_to_float(entry.get('totalHoursWorked')),
            salary=_to_float(_dig(assignment, 'salary')),
        ))
    return items


def reconcile(manual_payload: Optional[List[Dict]],
              overtime_payload: Optional[List[Dict]],
              now: Optional[datetime] = None) -> List[ApprovalItem]:
    """Merge both categories, manual first, one item per identity."""
    week_start = week_start_sunday(now).isoformat()
    merged = (
        parse_manual_items(manual_payload or [], week_start)
        + parse_overtime_items(overtime_payload or [])
    )
    seen = set()
    items = []
    for item in merged:
        if item.key in seen:
            logger.debug(f"Dropping duplicate approval item {item.key}")
            continue
        seen.add(item.key)
        items.append(item)
    return items


# ============================================================================
# FAILOVER CACHE
# ============================================================================

@dataclass
class CacheRecord:
    summary: HoursSummary
    item_count: int
    cached_at: datetime


class HoursCache:
    """Last successful HoursSummary, served when live data is unavailable."""

    def __init__(self, cache_path: Path = CACHE_FILE):
        self.cache_path = Path(cache_path)

    def save(self, summary: HoursSummary, item_count: int = 0,
             now: Optional[datetime] = None):
        try:
            _write_json_atomic(self.cache_path, {
                'hours_summary': summary.to_dict(),
                'item_count': item_count,
                'cached_at': _as_utc(now).isoformat(),
            })
        except OSError as e:
            logger.error(f"Error writing cache: {e}")

    def load(self) -> Optional[CacheRecord]:
        data = _read_json(self.cache_path)
        if not isinstance(data, dict) or not isinstance(
                data.get('hours_summary'), dict):
            return None
        cached_at = _parse_timestamp(data.get('cached_at'))
        if cached_at is None:
            return None
        return CacheRecord(
            summary=HoursSummary.from_dict(data['hours_summary']),
            item_count=_to_int(data.get('item_count')),
            cached_at=cached_at,
        )


# ============================================================================
# NOTIFICATION CENTER
# ============================================================================

def show_desktop_notification(title: str, body: str):
    """Show a desktop notification (Windows toast or Mac osascript)."""
    if sys.platform == 'win32':
        try:
            from winotify import Notification, audio
        except ImportError:
            logger.warning("winotify not installed, skipping toast")
            return
        try:
            toast = Notification(app_id=APP_ID, title=title, msg=body,
                                 duration='long')
            toast.set_audio(audio.Default, loop=False)
            toast.show()
            logger.info(f"Toast notification shown: {title}")
        except Exception as e:
            logger.warning(f"Toast notification failed: {e}")
    elif sys.platform == 'darwin':
        safe_title = title.replace('"', '\\"')
        safe_body = body.replace('"', '\\"')
        try:
            subprocess.Popen([
                'osascript', '-e',
                f'display notification "{safe_body}" with title "{safe_title}"'
            ])
        except OSError as e:
            logger.warning(f"Mac notification failed: {e}")
    else:
        logger.info(f"Notification: {title} - {body}")


@dataclass
class Reminder:
    identifier: str
    fire_at: datetime
    title: str
    body: str
    severity: str = 'info'

    def to_dict(self) -> Dict:
        return {
            'identifier': self.identifier,
            'fire_at': self.fire_at.isoformat(),
            'title': self.title,
            'body': self.body,
            'severity': self.severity,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> Optional['Reminder']:
        fire_at = _parse_timestamp(data.get('fire_at'))
        if fire_at is None or not data.get('identifier'):
            return None
        return cls(
            identifier=data['identifier'],
            fire_at=fire_at,
            title=data.get('title', ''),
            body=data.get('body', ''),
            severity=data.get('severity', 'info'),
        )


class NotificationCenter:
    """Immediate alerts plus a persisted queue of timed reminders.

    The queue lives in a JSON file so that a scheduled run can plan
    reminders and a long-running host (tray app, or --deliver-reminders
    from the OS scheduler) can fire them later.
    """

    def __init__(self, queue_path: Path = REMINDERS_FILE, sender=None):
        self.queue_path = Path(queue_path)
        self.sender = sender or show_desktop_notification
        # Every read-modify-write of the queue holds this lock
        self._lock = threading.RLock()

    def show(self, title: str, body: str):
        self.sender(title, body)

    def pending(self) -> List[Reminder]:
        with self._lock:
            return self._load()

    def _load(self) -> List[Reminder]:
        data = _read_json(self.queue_path)
        if not isinstance(data, list):
            return []
        reminders = [
            Reminder.from_dict(entry) for entry in data
            if isinstance(entry, dict)
        ]
        return sorted(
            (r for r in reminders if r is not None),
            key=lambda r: r.fire_at,
        )

    def _store(self, reminders: List[Reminder]):
        _write_json_atomic(self.queue_path, [r.to_dict() for r in reminders])

    def schedule(self, reminders: List[Reminder]):
        """Queue reminders, replacing any with the same identifier."""
        if not reminders:
            return
        new_ids = {r.identifier for r in reminders}
        with self._lock:
            kept = [r for r in self._load() if r.identifier not in new_ids]
            self._store(kept + list(reminders))

    def remove_pending(self, prefix: str) -> int:
        """Cancel every queued reminder whose identifier starts with prefix."""
        with self._lock:
            current = self._load()
            kept = [r for r in current if not r.identifier.startswith(prefix)]
            removed = len(current) - len(kept)
            if removed:
                self._store(kept)
        return removed

    def deliver_due(self, now: Optional[datetime] = None) -> int:
        """Fire reminders whose time has come; drop long-overdue ones."""
        now = _as_utc(now)
        with self._lock:
            current = self._load()
            due = [r for r in current if r.fire_at <= now]
            if not due:
                return 0
            delivered = 0
            for reminder in due:
                if now - reminder.fire_at > OVERDUE_REMINDER_GRACE:
                    logger.info(
                        f"Dropping overdue reminder {reminder.identifier}"
                    )
                    continue
                self.show(reminder.title, reminder.body)
                delivered += 1
            self._store([r for r in current if r.fire_at > now])
        return delivered


# ============================================================================
# APPROVAL WATCHER (change detection + deadline reminders)
# ============================================================================

@dataclass
class NotificationState:
    last_count: int = 0
    last_keys: List[ItemKey] = field(default_factory=list)
    last_updated: Optional[datetime] = None


def load_approval_state(state_path: Path) -> NotificationState:
    data = _read_json(state_path)
    if not isinstance(data, dict):
        return NotificationState()
    keys = [ItemKey.from_json(raw) for raw in data.get('last_keys') or []]
    return NotificationState(
        last_count=_to_int(data.get('last_count')),
        last_keys=[k for k in keys if k is not None],
        last_updated=_parse_timestamp(data.get('last_updated')),
    )


def save_approval_state(state_path: Path, state: NotificationState):
    _write_json_atomic(state_path, {
        'last_count': state.last_count,
        'last_keys': [k.to_json() for k in state.last_keys],
        'last_updated': state.last_updated.isoformat()
        if state.last_updated else None,
    })


def build_new_items_message(new_items: List[ApprovalItem]) -> Tuple[str, str]:
    """One grouped alert: count, hours and names per category."""
    lines = []
    for label, kind in (('manual', ManualApproval),
                        ('overtime', OvertimeApproval)):
        group = [item for item in new_items if isinstance(item, kind)]
        if not group:
            continue
        names = ', '.join(dict.fromkeys(item.full_name for item in group))
        total = sum(item.hours for item in group)
        lines.append(f"{len(group)} {label} ({total:.1f}h) from {names}")
    return "New Time Approval Requests", '\n'.join(lines)


def build_reminder_schedule(item_count: int, now: Optional[datetime] = None,
                            deadline: Optional[datetime] = None) -> List[Reminder]:
    """Reminders counting down to the weekly deadline.

    Inside the last 12 hours only: hourly from 3h to 1h before the
    deadline, every 30 minutes during the last hour, and a final alert
    5 minutes before. Nothing is planned sooner than one minute from now.
    """
    now = _as_utc(now)
    deadline = deadline or weekly_deadline(now)
    if item_count <= 0:
        return []
    hours_left = hours_until(deadline, now)
    if hours_left > REMINDER_WINDOW_HOURS or hours_left <= 0:
        logger.debug(f"{hours_left:.1f}h until deadline, no reminders")
        return []

    label = f"{item_count} request{'s' if item_count > 1 else ''}"
    earliest = now + timedelta(minutes=1)
    one_hour_before = deadline - timedelta(hours=1)
    five_min_before = deadline - timedelta(minutes=5)
    reminders = []

    fire_at = max(deadline - timedelta(hours=3), earliest)
    while fire_at < one_hour_before:
        left = format_countdown(deadline - fire_at)
        reminders.append(Reminder(
            identifier=f"{REMINDER_PREFIX}{len(reminders)}",
            fire_at=fire_at,
            title=f"{left} left to approve",
            body=f"{label} still pending - {left} until Sunday midnight GMT",
            severity='info',
        ))
        fire_at += timedelta(hours=1)

    fire_at = max(one_hour_before, earliest)
    while fire_at < five_min_before:
        left = format_countdown(deadline - fire_at)
        reminders.append(Reminder(
            identifier=f"{REMINDER_PREFIX}{len(reminders)}",
            fire_at=fire_at,
            title=f"{left} left!",
            body=f"{label} still pending - {left} left, approve now!",
            severity='urgent',
        ))
        fire_at += timedelta(minutes=30)

    if five_min_before > now:
        reminders.append(Reminder(
            identifier=f"{REMINDER_PREFIX}final",
            fire_at=five_min_before,
            title="5 MINUTES LEFT!",
            body=f"{label} still pending! Approve NOW or they expire!",
            severity='critical',
        ))
    return reminders


class ApprovalWatcher:
    """Alerts on newly seen approval items and keeps reminders current."""

    def __init__(self, notifier: NotificationCenter,
                 state_path: Path = STATE_FILE):
        self.notifier = notifier
        self.state_path = Path(state_path)

    def process(self, items: List[ApprovalItem],
                now: Optional[datetime] = None) -> List[ApprovalItem]:
        """Diff, alert, persist, reschedule. Returns the new items."""
        now = _as_utc(now)
        state = load_approval_state(self.state_path)
        seen = set(state.last_keys)
        new_items = [item for item in items if item.key not in seen]

        if new_items:
            title, body = build_new_items_message(new_items)
            self.notifier.show(title, body)
            logger.info(f"Notification sent: {len(new_items)} new items")
        else:
            logger.debug("No new approval items since last check")

        save_approval_state(self.state_path, NotificationState(
            last_count=len(items),
            last_keys=[item.key for item in items],
            last_updated=now,
        ))
        self.reschedule_reminders(len(items), now)
        return new_items

    def reschedule_reminders(self, item_count: int,
                             now: Optional[datetime] = None) -> List[Reminder]:
        cleared = self.notifier.remove_pending(REMINDER_PREFIX)
        if cleared:
            logger.debug(f"Cleared {cleared} old reminders")
        reminders = build_reminder_schedule(item_count, now)
        self.notifier.schedule(reminders)
        if reminders:
            logger.info(f"Scheduled {len(reminders)} deadline reminders")
        return reminders


# ============================================================================
# ROLE / RATE REFRESHER
# ============================================================================

def resolve_profile_changes(detail: Optional[Dict], profile: Profile) -> Dict[str, Any]:
    """Fields whose upstream value differs from the stored profile.

    Values missing upstream are never reported, so they can't wipe out
    what is already stored.
    """
    assignment = _dig(detail, 'assignment')
    if not isinstance(assignment, dict):
        return {}
    changes = {}
    team_id = _to_int(_dig(assignment, 'team', 'id'))
    if team_id and team_id != profile.primary_team_id:
        changes['primary_team_id'] = team_id
    manager_id = _to_int(_dig(assignment, 'manager', 'id'))
    if manager_id and manager_id != profile.manager_id:
        changes['manager_id'] = manager_id
    candidate_id = _candidate_avatar_id(detail)
    if candidate_id and candidate_id != profile.user_id:
        changes['user_id'] = candidate_id
    role = _role_from_detail(detail)
    if role is not profile.role:
        changes['role'] = role
    salary = _to_float(assignment.get('salary'))
    if salary > 0 and float(round(salary)) != profile.hourly_rate:
        changes['hourly_rate'] = float(round(salary))
    return changes


class RoleRefresher:
    """Re-checks role, ids and rate once per week (Monday boundary)."""

    def __init__(self, config_manager: ConfigManager, client: CrossoverClient):
        self.config_manager = config_manager
        self.client = client

    @staticmethod
    def needs_refresh(profile: Profile, now: datetime) -> bool:
        if profile.last_role_check is None:
            return True
        return profile.last_role_check < most_recent_monday(now)

    def refresh(self, session: Session, now: Optional[datetime] = None) -> bool:
        """Returns True when the upstream lookup was attempted."""
        now = _as_utc(now)
        profile = session.profile
        if not self.needs_refresh(profile, now):
            logger.debug("Weekly refresh: already checked this week")
            return False

        logger.info("Weekly refresh: checking role and rate...")
        detail = self.client.get_user_detail()
        if detail is None:
            logger.warning("Detail check failed, keeping current config")
        for name, value in resolve_profile_changes(detail, profile).items():
            old = getattr(profile, name)
            self.config_manager.update_profile_field(name, value)
            setattr(profile, name, value)
            logger.info(
                f"Weekly refresh: {name} {_profile_value(old)} -> "
                f"{_profile_value(value)}"
            )

        self.config_manager.update_profile_field('last_role_check', now)
        profile.last_role_check = now
        return True


# ============================================================================
# AUTOMATION ENGINE
# ============================================================================

@dataclass
class CycleResult:
    """What one run produced, ready for rendering."""

    role: Role = Role.CONTRIBUTOR
    environment: Environment = Environment.PROD
    summary: Optional[HoursSummary] = None
    items: List[ApprovalItem] = field(default_factory=list)
    new_items: List[ApprovalItem] = field(default_factory=list)
    approvals_available: bool = False
    stale: bool = False
    cached_at: Optional[datetime] = None
    cached_item_count: int = 0
    auth_failed: bool = False
    error: Optional[str] = None
    finished_at: datetime = field(default_factory=utc_now)

    @property
    def is_manager(self) -> bool:
        return self.role is Role.MANAGER


class WorkSmartAutomation:
    """Main automation engine."""

    def __init__(self, config_path: Path = CONFIG_FILE,
                 data_dir: Optional[Path] = None,
                 client_factory=CrossoverClient,
                 notifier: Optional[NotificationCenter] = None):
        data_dir = Path(data_dir) if data_dir else SCRIPT_DIR
        self.config_manager = ConfigManager(config_path)
        self.cache = HoursCache(data_dir / CACHE_FILE.name)
        self.notifier = notifier or NotificationCenter(
            data_dir / REMINDERS_FILE.name
        )
        self.watcher = ApprovalWatcher(self.notifier,
                                       data_dir / STATE_FILE.name)
        self.client_factory = client_factory
        self.session: Optional[Session] = None
        self.client: Optional[CrossoverClient] = None

    def run_cycle(self, now: Optional[datetime] = None) -> CycleResult:
        """One full fetch / reconcile / notify pass.

        Never raises: failures end in cached data or an error result.
        """
        now = _as_utc(now)
        self.client = None
        try:
            self.session = self.config_manager.load_session()
        except ConfigIncomplete as e:
            logger.warning(f"Setup needed: {e}")
            return CycleResult(error="Setup needed - run with --setup",
                               finished_at=now)

        profile = self.session.profile
        try:
            return self._run_live(now)
        except AuthError as e:
            logger.error(f"Auth failed: {e}")
            self.config_manager.invalidate_credentials()
            return self._fallback(
                profile, "Auth failed - run --setup to reconfigure", now,
                auth_failed=True,
            )
        except TransientFetchError as e:
            logger.error(f"Live fetch failed: {e}")
            return self._fallback(profile, "Failed to fetch data", now)
        except Exception as e:
            logger.error(f"Unexpected error during cycle: {e}", exc_info=True)
            return self._fallback(profile, str(e) or type(e).__name__, now)

    def _run_live(self, now: datetime) -> CycleResult:
        client = self.client_factory(self.session.profile.environment)
        self.client = client
        self.session.token = client.authenticate(
            self.session.username, self.session.password
        )
        RoleRefresher(self.config_manager, client).refresh(self.session, now)
        profile = self.session.profile

        manual = overtime = None
        if profile.is_manager:
            with ThreadPoolExecutor(max_workers=3) as pool:
                manual_job = pool.submit(client.get_pending_manual, now)
                overtime_job = pool.submit(client.get_pending_overtime, now)
                timesheet_job = pool.submit(client.get_timesheet, profile, now)
                manual = manual_job.result()
                overtime = overtime_job.result()
                timesheet = timesheet_job.result()
        else:
            timesheet = client.get_timesheet(profile, now)

        result = CycleResult(role=profile.role,
                             environment=profile.environment,
                             finished_at=now)
        if profile.is_manager:
            result.items = reconcile(manual, overtime, now)
            result.approvals_available = (
                manual is not None and overtime is not None
            )
            if not result.approvals_available:
                logger.warning("Approval data unavailable this cycle")
            logger.debug(f"Total: {len(result.items)} items")

        if timesheet is not None:
            result.summary = aggregate_hours(timesheet, profile.hourly_rate, now)
            self.cache.save(result.summary, len(result.items), now)
            logger.debug(
                f"Hours: {result.summary.total_hours:.1f}h / "
                f"${result.summary.weekly_earnings:.0f}"
            )
        else:
            self._apply_cache(result, "Failed to fetch data")

        if result.approvals_available:
            result.new_items = self.watcher.process(result.items, now)
        return result

    def _fallback(self, profile: Profile, error: str, now: datetime,
                  auth_failed: bool = False) -> CycleResult:
        result = CycleResult(role=profile.role,
                             environment=profile.environment,
                             auth_failed=auth_failed, finished_at=now)
        self._apply_cache(result, error)
        return result

    def _apply_cache(self, result: CycleResult, error: str):
        cached = self.cache.load()
        if cached is None:
            result.error = error
            return
        result.summary = cached.summary
        result.stale = True
        result.cached_at = cached.cached_at
        result.cached_item_count = cached.item_count
        logger.info(f"Using cached data from {cached.cached_at.isoformat()}")

    # ------------------------------------------------------------------
    # Approval actions
    # ------------------------------------------------------------------

    def apply_action(self, action: str, key_text: Optional[str] = None,
                     reason: str = '') -> Tuple[int, int]:
        """Approve or reject pending items of the current cycle.

        Args:
            action: 'approve' or 'reject'
            key_text: item key as shown by the summary (e.g. 'mt-12,13'),
                or None for every pending item
            reason: rejection reason

        Returns:
            (succeeded, failed) counts
        """
        result = self.run_cycle()
        if self.client is None or not self.client.token:
            print(f"[!] {result.error or 'Not authenticated'}")
            return 0, 0
        if not result.is_manager:
            print("[!] Approvals are only available to managers")
            return 0, 0

        targets = [
            item for item in result.items
            if key_text is None or str(item.key) == key_text
        ]
        if not targets:
            print(f"[!] No pending item matches {key_text or 'the request'}")
            return 0, 0

        approver_id = self.session.profile.user_id
        succeeded = failed = 0
        for item in targets:
            if action == 'approve':
                ok = self.client.approve(item, approver_id)
            else:
                ok = self.client.reject(item, approver_id,
                                        reason or 'Rejected')
            if ok:
                succeeded += 1
                logger.info(f"{action.title()}d {item.key} ({item.full_name})")
            else:
                failed += 1
        verb = 'approved' if action == 'approve' else 'rejected'
        print(f"[OK] {succeeded} {verb}" + (f", {failed} failed" if failed else ""))
        return succeeded, failed


# ============================================================================
# RENDERING
# ============================================================================

RENDER_CONTEXTS = ('compact', 'standard', 'expanded')


def _money(amount: float, summary: HoursSummary) -> str:
    return f"${amount:,.0f}" if summary.rate_known else "$? (rate not set)"


def _pending_line(result: CycleResult) -> str:
    """Pending counts; unavailable approval data is never shown as zero."""
    if not result.approvals_available and not result.items:
        if result.stale and result.cached_item_count:
            return f"Pending: {result.cached_item_count} (cached)"
        return "Pending: approvals unavailable"
    manual = sum(isinstance(i, ManualApproval) for i in result.items)
    overtime = len(result.items) - manual
    pending = f"Pending: {manual} manual, {overtime} overtime"
    if not result.approvals_available:
        pending += " (incomplete)"
    elif result.new_items:
        pending += f" ({len(result.new_items)} new)"
    return pending


def render_summary(result: CycleResult, context: str = 'standard') -> List[str]:
    """Plain-text lines for the requested presentation variant."""
    env = ' [QA]' if result.environment is Environment.QA else ''
    lines = [f"WorkSmart{env}"]
    if result.summary is None:
        lines.append(f"[ERROR] {result.error or 'No data'}")
        return lines

    s = result.summary
    lines.append(
        f"{s.total_hours:.1f}h this week | {_money(s.weekly_earnings, s)}"
    )
    if s.hours_remaining > 0:
        lines.append(
            f"{s.hours_remaining:.1f}h left to {WEEKLY_TARGET_HOURS:.0f}"
        )
    else:
        lines.append(f"[OK] {WEEKLY_TARGET_HOURS:.0f} hour goal reached!")

    if context != 'compact':
        if s.past_deadline:
            lines.append("Deadline passed")
        else:
            lines.append(
                f"{format_time_remaining(s.time_remaining)} until deadline"
            )
        if s.today_hours > 0:
            lines.append(
                f"Today: {s.today_hours:.1f}h ({_money(s.today_earnings, s)})"
            )
        if result.is_manager:
            lines.append(_pending_line(result))

    if context == 'expanded':
        if s.average_hours_per_day > 0:
            lines.append(f"Avg: {s.average_hours_per_day:.1f}h/day")
        for day in s.daily:
            if day.hours > 0:
                lines.append(f"  {day.date[:10]}  {day.hours:>5.1f}h")
        for item in result.items:
            lines.append(
                f"  [{item.key}] {item.full_name}: {item.hours:.1f}h - "
                f"{item.note}"
            )

    if result.stale and result.cached_at:
        lines.append(f"Cached: {result.cached_at.astimezone():%H:%M}")
    else:
        lines.append(f"Updated: {result.finished_at.astimezone():%H:%M}")
    return lines


# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='WorkSmart - Crossover hours & approvals',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python worksmart.py                        # Fetch and show this week
  python worksmart.py --context expanded     # Include daily breakdown and items
  python worksmart.py --setup                # Run setup wizard
  python worksmart.py --approve mt-101,102   # Approve one pending item
  python worksmart.py --reject ot-55 --reason "Not agreed"
  python worksmart.py --approve-all
  python worksmart.py --deliver-reminders    # Fire due deadline reminders
        """
    )
    parser.add_argument(
        '--context', choices=RENDER_CONTEXTS, default='standard',
        help='How much detail to show'
    )
    parser.add_argument('--setup', action='store_true',
                        help='Run setup wizard')
    parser.add_argument('--reset', action='store_true',
                        help='Forget stored credentials and settings')
    parser.add_argument('--approve', metavar='KEY',
                        help='Approve the pending item with this key')
    parser.add_argument('--reject', metavar='KEY',
                        help='Reject the pending item with this key')
    parser.add_argument('--reason', default='',
                        help='Rejection reason')
    parser.add_argument('--approve-all', action='store_true',
                        help='Approve every pending item')
    parser.add_argument('--deliver-reminders', action='store_true',
                        help='Show deadline reminders that are due')
    parser.add_argument('--show-reminders', action='store_true',
                        help='List scheduled deadline reminders')
    args = parser.parse_args()

    _force_utf8_output()
    config_manager = ConfigManager(CONFIG_FILE)
    setup_logging(debug=config_manager.options().get('debug_mode', False))

    try:
        if args.setup:
            config_manager.setup_wizard()
            return
        if args.reset:
            config_manager.invalidate_credentials()
            print("[OK] Configuration cleared")
            return

        notifier = NotificationCenter(REMINDERS_FILE)
        if args.deliver_reminders:
            count = notifier.deliver_due()
            print(f"[OK] {count} reminder(s) delivered")
            return
        if args.show_reminders:
            reminders = notifier.pending()
            if not reminders:
                print("[INFO] No reminders scheduled")
            for r in reminders:
                print(f"{r.fire_at.astimezone():%a %H:%M}  "
                      f"[{r.severity}] {r.title}")
            return

        automation = WorkSmartAutomation(CONFIG_FILE, notifier=notifier)
        if args.approve_all:
            automation.apply_action('approve')
        elif args.approve:
            automation.apply_action('approve', args.approve)
        elif args.reject:
            automation.apply_action('reject', args.reject, args.reason)
        else:
            result = automation.run_cycle()
            print(f"\n{'=' * 60}")
            for line in render_summary(result, args.context):
                print(line)
            print(f"{'=' * 60}\n")
            if result.summary is None:
                sys.exit(1)

    except KeyboardInterrupt:
        print("\n\nOperation cancelled by user.")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        print(f"\n[ERROR] {e}")
        print(f"See {LOG_FILE} for details")
        sys.exit(1)


if __name__ == "__main__":
    main()
