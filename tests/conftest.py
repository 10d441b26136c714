"""Shared fixtures and fakes for the WorkSmart tests."""

import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
import requests

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import worksmart  # noqa: E402


# Wednesday of a week whose deadline is Sunday 2026-10-18 23:59:59.999 UTC
WEDNESDAY = datetime(2026, 10, 14, 10, 0, tzinfo=timezone.utc)


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=None):
        self.status_code = status_code
        self._body = body
        self.text = text if text is not None else (
            json.dumps(body) if body is not None else ''
        )

    def json(self):
        if self._body is None:
            raise ValueError("No JSON body")
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"HTTP {self.status_code}")


class FakeSession:
    """Stands in for requests.Session; routes by path, records calls."""

    def __init__(self, routes=None):
        self.headers = {}
        self.routes = routes or {}
        self.calls = []

    def _respond(self, method, url, **kwargs):
        path = url.split('.com', 1)[1]
        self.calls.append((method, path, kwargs))
        handler = self.routes.get((method, path))
        if handler is None:
            return FakeResponse(404)
        if callable(handler):
            return handler(**kwargs)
        if isinstance(handler, Exception):
            raise handler
        return handler

    def get(self, url, **kwargs):
        return self._respond('GET', url, **kwargs)

    def post(self, url, **kwargs):
        return self._respond('POST', url, **kwargs)

    def put(self, url, **kwargs):
        return self._respond('PUT', url, **kwargs)


class FakeClient:
    """Minimal CrossoverClient double for engine-level tests."""

    def __init__(self, environment='prod', timesheet=None, manual=None,
                 overtime=None, detail=None, auth_error=None):
        self.environment = worksmart.Environment(environment)
        self.timesheet = timesheet
        self.manual = manual
        self.overtime = overtime
        self.detail = detail
        self.auth_error = auth_error
        self.token = ''
        self.detail_calls = 0
        self.actions = []

    def authenticate(self, username, password):
        if self.auth_error is not None:
            raise self.auth_error
        self.token = '4242:abc'
        return self.token

    def get_timesheet(self, profile, now=None):
        if isinstance(self.timesheet, Exception):
            raise self.timesheet
        return self.timesheet

    def get_pending_manual(self, now=None):
        return self.manual

    def get_pending_overtime(self, now=None):
        return self.overtime

    def get_user_detail(self):
        self.detail_calls += 1
        return self.detail

    def approve(self, item, approver_id):
        self.actions.append(('approve', str(item.key), approver_id))
        return True

    def reject(self, item, approver_id, reason='Rejected'):
        self.actions.append(('reject', str(item.key), approver_id, reason))
        return True


class RecordingSender:
    def __init__(self):
        self.sent = []

    def __call__(self, title, body):
        self.sent.append((title, body))


def timesheet_payload(total=12.5, today='2026-10-14', today_hours=4.0):
    return [{
        'totalHours': total,
        'averageHoursPerDay': 4.2,
        'stats': [
            {'date': '2026-10-12', 'hours': 5.0},
            {'date': '2026-10-13', 'hours': 3.5},
            {'date': today, 'hours': today_hours},
        ],
    }]


def manual_payload(*entries):
    """entries: (user_name, minutes, timecard_ids)."""
    users = {}
    for name, minutes, ids in entries:
        user = users.setdefault(name, {
            'userId': len(users) + 1,
            'fullName': name,
            'jobTitle': '"Senior" Engineer',
            'manualTimes': [],
        })
        user['manualTimes'].append({
            'status': 'PENDING',
            'durationMinutes': minutes,
            'description': f'work by {name}',
            'startDateTime': '2026-10-13T09:00:00Z',
            'type': 'WEB',
            'timecardIds': list(ids),
        })
    return list(users.values())


def overtime_entry(request_id, name, minutes, status='PENDING'):
    return {
        'overtimeRequest': {
            'id': request_id,
            'status': status,
            'overtimePeriod': minutes,
            'overtimeCost': 100,
            'memo': 'crunch',
            'createdOn': '2026-10-13T12:00:00Z',
            'weekStartDate': '2026-10-12',
        },
        'assignment': {
            'jobTitle': 'Engineer',
            'salary': 50,
            'selection': {'marketplaceMember': {'application': {
                'candidate': {'userId': 77, 'printableName': name},
            }}},
        },
        'totalHoursWorked': 44,
    }


def write_config(path, role='manager', **profile_overrides):
    profile = {
        'user_id': 4242,
        'manager_id': 100,
        'primary_team_id': 9,
        'hourly_rate': 50,
        'role': role,
        'environment': 'prod',
        'last_role_check': None,
        'full_name': 'Test User',
        'teams': [],
    }
    profile.update(profile_overrides)
    path.write_text(json.dumps({
        'credentials': {'username': 'me@example.com', 'password': 'secret'},
        'profile': profile,
        'setup_complete': True,
        'options': {'debug_mode': False},
    }), encoding='utf-8')
    return path


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def notifier(tmp_path, sender):
    return worksmart.NotificationCenter(tmp_path / 'reminders.json',
                                        sender=sender)


@pytest.fixture
def config_path(tmp_path):
    return write_config(tmp_path / 'worksmart_config.json')
