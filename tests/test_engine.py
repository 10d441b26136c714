from datetime import timedelta

import pytest

from conftest import (
    WEDNESDAY,
    FakeClient,
    FakeResponse,
    FakeSession,
    manual_payload,
    overtime_entry,
    timesheet_payload,
    write_config,
)
from worksmart import (
    AuthError,
    CrossoverClient,
    Role,
    TransientFetchError,
    WorkSmartAutomation,
    render_summary,
)


@pytest.fixture
def client():
    return FakeClient(timesheet=timesheet_payload(),
                      manual=manual_payload(('Ann', 60, [1])),
                      overtime=[overtime_entry(5, 'Dana', 90)])


def make_engine(tmp_path, config_path, notifier, client):
    return WorkSmartAutomation(config_path, data_dir=tmp_path,
                               client_factory=lambda env: client,
                               notifier=notifier)


def test_manager_cycle(tmp_path, config_path, notifier, sender, client):
    engine = make_engine(tmp_path, config_path, notifier, client)
    result = engine.run_cycle(WEDNESDAY)

    assert result.error is None
    assert result.role is Role.MANAGER
    assert result.summary.total_hours == 12.5
    assert [str(i.key) for i in result.items] == ['mt-1', 'ot-5']
    assert len(result.new_items) == 2
    assert len(sender.sent) == 1
    assert (tmp_path / 'worksmart_cache.json').exists()
    assert (tmp_path / 'worksmart_approval_state.json').exists()

    again = engine.run_cycle(WEDNESDAY + timedelta(minutes=15))
    assert again.new_items == []
    assert len(sender.sent) == 1


def test_contributor_cycle_skips_approvals(tmp_path, notifier, sender,
                                          client):
    config_path = write_config(tmp_path / 'c.json', role='contributor')
    engine = make_engine(tmp_path, config_path, notifier, client)
    result = engine.run_cycle(WEDNESDAY)

    assert result.summary.total_hours == 12.5
    assert result.items == []
    assert sender.sent == []
    assert not (tmp_path / 'worksmart_approval_state.json').exists()


def test_failure_after_success_serves_cache(tmp_path, config_path, notifier,
                                            client):
    engine = make_engine(tmp_path, config_path, notifier, client)
    first = engine.run_cycle(WEDNESDAY)

    client.timesheet = None
    later = engine.run_cycle(WEDNESDAY + timedelta(hours=1))

    assert later.stale is True
    assert later.cached_at == WEDNESDAY
    assert later.cached_item_count == 2
    assert later.summary.total_hours == first.summary.total_hours
    assert later.summary.weekly_earnings == first.summary.weekly_earnings
    assert later.summary.deadline == first.summary.deadline


def test_unexpected_exception_falls_back(tmp_path, config_path, notifier,
                                         client):
    engine = make_engine(tmp_path, config_path, notifier, client)
    engine.run_cycle(WEDNESDAY)

    client.timesheet = RuntimeError('boom')
    result = engine.run_cycle(WEDNESDAY + timedelta(hours=1))

    assert result.stale is True
    assert result.summary.total_hours == 12.5


def test_no_cache_gives_error_state(tmp_path, config_path, notifier, client):
    client.timesheet = None
    result = make_engine(tmp_path, config_path, notifier,
                         client).run_cycle(WEDNESDAY)

    assert result.summary is None
    assert result.error == 'Failed to fetch data'


def test_auth_error_invalidates_credentials(tmp_path, config_path, notifier,
                                            client):
    client.auth_error = AuthError('HTTP 401')
    result = make_engine(tmp_path, config_path, notifier,
                         client).run_cycle(WEDNESDAY)

    assert result.auth_failed is True
    assert not config_path.exists()


def test_transient_auth_failure_keeps_credentials(tmp_path, config_path,
                                                  notifier, client):
    client.auth_error = TransientFetchError('timeout')
    result = make_engine(tmp_path, config_path, notifier,
                         client).run_cycle(WEDNESDAY)

    assert result.auth_failed is False
    assert result.error == 'Failed to fetch data'
    assert config_path.exists()


def test_missing_setup_blocks_cycle(tmp_path, notifier, client):
    engine = make_engine(tmp_path, tmp_path / 'missing.json', notifier,
                         client)
    result = engine.run_cycle(WEDNESDAY)

    assert result.summary is None
    assert result.error.startswith('Setup needed')


def test_partial_approval_data(tmp_path, config_path, notifier, sender,
                               client):
    client.manual = None
    result = make_engine(tmp_path, config_path, notifier,
                         client).run_cycle(WEDNESDAY)

    assert result.approvals_available is False
    assert [str(i.key) for i in result.items] == ['ot-5']
    assert sender.sent == []
    assert not (tmp_path / 'worksmart_approval_state.json').exists()


def test_approve_single_item(tmp_path, config_path, notifier, client,
                             monkeypatch):
    engine = make_engine(tmp_path, config_path, notifier, client)
    monkeypatch.setattr(engine, 'run_cycle',
                        lambda now=None: engine.__class__.run_cycle(
                            engine, WEDNESDAY))

    assert engine.apply_action('approve', 'ot-5') == (1, 0)
    assert client.actions == [('approve', 'ot-5', 4242)]


def test_reject_all_uses_reason(tmp_path, config_path, notifier, client,
                                monkeypatch):
    engine = make_engine(tmp_path, config_path, notifier, client)
    monkeypatch.setattr(engine, 'run_cycle',
                        lambda now=None: engine.__class__.run_cycle(
                            engine, WEDNESDAY))

    assert engine.apply_action('reject', None, 'late') == (2, 0)
    assert [a[3] for a in client.actions] == ['late', 'late']


def test_render_contexts(tmp_path, config_path, notifier, client):
    result = make_engine(tmp_path, config_path, notifier,
                         client).run_cycle(WEDNESDAY)

    compact = render_summary(result, 'compact')
    standard = render_summary(result, 'standard')
    expanded = render_summary(result, 'expanded')

    assert '12.5h this week | $625' in compact
    assert '27.5h left to 40' in compact
    assert 'Pending: 1 manual, 1 overtime (2 new)' in standard
    assert len(compact) < len(standard) < len(expanded)
    assert any('[ot-5] Dana' in line for line in expanded)


def test_render_stale_and_error(tmp_path, config_path, notifier, client):
    engine = make_engine(tmp_path, config_path, notifier, client)
    engine.run_cycle(WEDNESDAY)
    client.timesheet = None
    stale = engine.run_cycle(WEDNESDAY + timedelta(hours=1))

    assert render_summary(stale)[-1].startswith('Cached: ')

    client.auth_error = AuthError('HTTP 403')
    (tmp_path / 'worksmart_cache.json').unlink()
    failed = engine.run_cycle(WEDNESDAY)
    assert render_summary(failed)[-1].startswith('[ERROR] Auth failed')


def test_unexpected_token_body_keeps_credentials(tmp_path, config_path,
                                                 notifier):
    session = FakeSession({
        ('POST', '/api/v3/token'): FakeResponse(200, {'userId': 1,
                                                      'expires': 5}),
    })
    engine = WorkSmartAutomation(
        config_path, data_dir=tmp_path, notifier=notifier,
        client_factory=lambda env: CrossoverClient(env, session=session),
    )
    result = engine.run_cycle(WEDNESDAY)

    assert result.auth_failed is False
    assert result.error == 'Failed to fetch data'
    assert config_path.exists()


def test_render_never_shows_unavailable_approvals_as_zero(
        tmp_path, config_path, notifier, client):
    client.manual = None
    client.overtime = None
    result = make_engine(tmp_path, config_path, notifier,
                         client).run_cycle(WEDNESDAY)

    assert 'Pending: approvals unavailable' in render_summary(result)


def test_render_cached_pending_count(tmp_path, config_path, notifier,
                                     client):
    engine = make_engine(tmp_path, config_path, notifier, client)
    engine.run_cycle(WEDNESDAY)
    client.timesheet = RuntimeError('boom')
    result = engine.run_cycle(WEDNESDAY + timedelta(hours=1))

    assert 'Pending: 2 (cached)' in render_summary(result)


def test_render_partial_approvals_marked_incomplete(tmp_path, config_path,
                                                    notifier, client):
    client.manual = None
    result = make_engine(tmp_path, config_path, notifier,
                         client).run_cycle(WEDNESDAY)

    assert 'Pending: 0 manual, 1 overtime (incomplete)' in render_summary(
        result)
