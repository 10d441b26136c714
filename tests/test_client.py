import pytest
import requests

from conftest import WEDNESDAY, FakeResponse, FakeSession
from worksmart import (
    AuthError,
    CrossoverClient,
    ManualApproval,
    OvertimeApproval,
    Profile,
    RequestVariant,
    TransientFetchError,
    normalize_records,
)


def make_client(routes):
    session = FakeSession(routes)
    return CrossoverClient('qa', session=session), session


@pytest.mark.parametrize('payload, expected', [
    ([{'a': 1}], [{'a': 1}]),
    ({'content': [{'a': 1}]}, [{'a': 1}]),
    ({'a': 1}, [{'a': 1}]),
    ({}, []),
    (None, []),
    ('text', []),
])
def test_normalize_records(payload, expected):
    assert normalize_records(payload) == expected


def test_fetch_first_skips_failures_and_empty_responses():
    client, session = make_client({
        ('GET', '/a'): requests.exceptions.ConnectionError('down'),
        ('GET', '/b'): FakeResponse(200, []),
        ('GET', '/c'): FakeResponse(200, [{'totalHours': 3}]),
        ('GET', '/d'): FakeResponse(200, [{'totalHours': 9}]),
    })
    variants = [RequestVariant(p) for p in ('/a', '/b', '/c', '/d')]

    assert client.fetch_first(variants) == [{'totalHours': 3}]
    assert [call[1] for call in session.calls] == ['/a', '/b', '/c']


def test_fetch_first_returns_none_when_everything_fails():
    client, _ = make_client({
        ('GET', '/a'): FakeResponse(500),
        ('GET', '/b'): FakeResponse(200, text='<html>'),
    })
    assert client.fetch_first([RequestVariant('/a'),
                               RequestVariant('/b')]) is None


def test_timesheet_variants_most_specific_first():
    client, _ = make_client({})
    profile = Profile(user_id=4242, manager_id=100, primary_team_id=9)
    variants = client.timesheet_variants(profile, WEDNESDAY)

    assert [sorted(v.params) for v in variants] == [
        ['date', 'managerId', 'period', 'teamId', 'userId'],
        ['date', 'managerId', 'period', 'userId'],
        ['date', 'period', 'userId'],
    ]
    assert variants[0].params['date'] == '2026-10-14'


def test_timesheet_variants_skip_self_managed():
    client, _ = make_client({})
    profile = Profile(user_id=5, manager_id=5, primary_team_id=0)
    variants = client.timesheet_variants(profile, WEDNESDAY)
    assert [v.params.get('managerId') for v in variants] == [None]


def test_authenticate_sets_token_header():
    client, session = make_client({
        ('POST', '/api/v3/token'): FakeResponse(200, {'token': '12:abc'}),
    })
    assert client.authenticate('me', 'pw') == '12:abc'
    assert session.headers['x-auth-token'] == '12:abc'
    assert session.calls[0][2]['auth'] == ('me', 'pw')
    assert client.base_url == 'https://api-qa.crossover.com'


def test_authenticate_accepts_raw_token_body():
    client, _ = make_client({
        ('POST', '/api/v3/token'): FakeResponse(200, text='7:raw'),
    })
    assert client.authenticate('me', 'pw') == '7:raw'


def test_rejected_credentials_raise_auth_error():
    client, _ = make_client({('POST', '/api/v3/token'): FakeResponse(401)})
    with pytest.raises(AuthError):
        client.authenticate('me', 'bad')


def test_network_failure_during_auth_is_transient():
    client, _ = make_client({
        ('POST', '/api/v3/token'): requests.exceptions.Timeout('slow'),
    })
    with pytest.raises(TransientFetchError):
        client.authenticate('me', 'pw')


def test_pending_fetches_distinguish_empty_from_unavailable():
    client, session = make_client({
        ('GET', '/api/timetracking/workdiaries/manual/pending'):
            FakeResponse(200, []),
        ('GET', '/api/overtime/request'): FakeResponse(503),
    })
    assert client.get_pending_manual(WEDNESDAY) == []
    assert client.get_pending_overtime(WEDNESDAY) is None
    assert session.calls[0][2]['params'] == {'weekStartDate': '2026-10-11'}
    assert session.calls[1][2]['params']['weekStartDate'] == '2026-10-12'


def _manual_item():
    return ManualApproval(
        user_id=1, full_name='Ann', job_title='', duration_minutes=60,
        description='x', started_at='', source_type='WEB',
        timecard_ids=(3, 4), week_start='2026-10-11',
    )


def _overtime_item():
    return OvertimeApproval(
        overtime_id=55, user_id=2, full_name='Dana', job_title='',
        duration_minutes=60, cost=0, memo='', created_at='',
        week_start='', total_hours_worked=0,
    )


def test_manual_approval_body():
    path = '/api/timetracking/workdiaries/manual/approved'
    client, session = make_client({('PUT', path): FakeResponse(200)})

    assert client.approve(_manual_item(), 4242) is True
    assert session.calls[0][2]['json'] == {
        'approverId': 4242, 'timecardIds': [3, 4], 'allowOvertime': False,
    }


def test_overtime_rejection_uses_memo_and_status():
    path = '/api/overtime/request/rejection/55'
    client, session = make_client({('PUT', path): FakeResponse(204)})

    assert client.reject(_overtime_item(), 4242, 'Not agreed') is False
    assert session.calls[0][2]['json'] == {'memo': 'Not agreed'}


def test_token_response_without_token_is_transient():
    client, session = make_client({
        ('POST', '/api/v3/token'): FakeResponse(200, {'userId': 1,
                                                      'expires': 5}),
    })
    with pytest.raises(TransientFetchError):
        client.authenticate('me', 'pw')
    assert 'x-auth-token' not in session.headers
