#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "pytest>=8.0.0",
#     "flask>=3.0.0",
#     "openpyxl>=3.1.0",
#     "pyyaml>=6.0.0",
#     "requests>=2.31.0",
#     "tenacity>=8.2.0",
# ]
# ///
"""
Tests for schedulesyncd.py

Covers:
- Health check
- /run and /digest status mapping
- dry_run from JSON body or query string
- Overlapping triggers are refused with 409

Run with: uv run pytest tests/test_schedulesyncd.py -v
"""

import sys
import threading
from pathlib import Path
from unittest import mock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

import run_schedule_sync
import schedulesyncd
import send_digest
from schedule_model import ConfigurationError, ExternalServiceError, RunSummary
from send_digest import DigestResult


CONFIG = {'server': {'port': 9999}, 'dry_run': False}


@pytest.fixture
def client():
    app = schedulesyncd.create_app(CONFIG)
    app.config['TESTING'] = True
    return app.test_client()


class TestHealth:
    def test_health(self, client):
        resp = client.get('/')
        assert resp.status_code == 200
        data = resp.get_json()
        assert data['status'] == 'ok'
        assert data['port'] == 9999
        assert data['running'] is False
        assert data['endpoints']['process'] == '/run'

    def test_server_defaults(self):
        app = schedulesyncd.create_app({})
        assert app.config['SCHEDULE_SYNC_HOST'] == '127.0.0.1'
        assert app.config['SCHEDULE_SYNC_PORT'] == 9877

    def test_non_numeric_port_rejected(self):
        with pytest.raises(ConfigurationError) as exc_info:
            schedulesyncd.create_app({'server': {'port': 'abc'}})
        assert exc_info.value.missing == ['server.port']


class TestRunEndpoint:
    """POST /run."""

    def test_success(self, client):
        with mock.patch.object(run_schedule_sync, 'run_schedule_sync',
                               return_value=RunSummary(processed=2, skipped=1, purged=1)) as run:
            resp = client.post('/run')

        assert resp.status_code == 200
        data = resp.get_json()
        assert data['status'] == 'success'
        assert data['summary'] == {'processed': 2, 'skipped': 1, 'errored': 0, 'purged': 1}
        assert run.call_args[1]['dry_run'] is None

    def test_partial(self, client):
        with mock.patch.object(run_schedule_sync, 'run_schedule_sync',
                               return_value=RunSummary(processed=1, errored=1)):
            resp = client.post('/run')
        assert resp.status_code == 200
        assert resp.get_json()['status'] == 'partial'

    def test_dry_run_from_json(self, client):
        with mock.patch.object(run_schedule_sync, 'run_schedule_sync',
                               return_value=RunSummary()) as run:
            client.post('/run', json={'dry_run': True})
        assert run.call_args[1]['dry_run'] is True

    def test_dry_run_from_query(self, client):
        with mock.patch.object(run_schedule_sync, 'run_schedule_sync',
                               return_value=RunSummary()) as run:
            client.post('/run?dry_run=1')
        assert run.call_args[1]['dry_run'] is True

    def test_fatal_error(self, client):
        error = ConfigurationError('Missing required configuration: extraction.api_key',
                                   missing=['extraction.api_key'])
        with mock.patch.object(run_schedule_sync, 'run_schedule_sync', side_effect=error):
            resp = client.post('/run')

        assert resp.status_code == 500
        data = resp.get_json()
        assert data['category'] == 'config'
        assert 'extraction.api_key' in data['message']
        assert data['remedy']

    def test_unexpected_error(self, client):
        with mock.patch.object(run_schedule_sync, 'run_schedule_sync',
                               side_effect=RuntimeError('boom')):
            resp = client.post('/run')
        assert resp.status_code == 500
        assert 'boom' in resp.get_json()['message']

    def test_lock_released_after_error(self, client):
        with mock.patch.object(run_schedule_sync, 'run_schedule_sync',
                               side_effect=RuntimeError('boom')):
            client.post('/run')
        with mock.patch.object(run_schedule_sync, 'run_schedule_sync',
                               return_value=RunSummary()):
            assert client.post('/run').status_code == 200


class TestDigestEndpoint:
    """POST /digest."""

    def test_sent(self, client):
        result = DigestResult(sent=True, message='sent', entries=3, chunks=['a'])
        with mock.patch.object(send_digest, 'run_digest', return_value=result):
            resp = client.post('/digest')

        assert resp.status_code == 200
        data = resp.get_json()
        assert data['sent'] is True
        assert data['entries'] == 3
        assert data['messages'] == 1

    def test_webhook_failure_is_502(self, client):
        error = ExternalServiceError('Webhook delivery failed (404): Unknown Webhook', status_code=404)
        with mock.patch.object(send_digest, 'run_digest', side_effect=error):
            resp = client.post('/digest')
        assert resp.status_code == 502
        assert resp.get_json()['category'] == 'service'

    def test_config_failure_is_500(self, client):
        with mock.patch.object(send_digest, 'run_digest',
                               side_effect=ConfigurationError('missing', missing=['digest.webhook_url'])):
            resp = client.post('/digest')
        assert resp.status_code == 500


class TestOverlap:
    """A trigger that arrives mid-run is refused."""

    def test_second_trigger_gets_409(self):
        app = schedulesyncd.create_app(CONFIG)
        app.config['TESTING'] = True
        first_client = app.test_client()
        client = app.test_client()
        started = threading.Event()
        release = threading.Event()

        def slow_run(config, dry_run=None):
            started.set()
            release.wait(timeout=5)
            return RunSummary()

        responses = {}
        with mock.patch.object(run_schedule_sync, 'run_schedule_sync', side_effect=slow_run):
            worker = threading.Thread(target=lambda: responses.setdefault('first', first_client.post('/run')))
            worker.start()
            assert started.wait(timeout=5)

            busy_run = client.post('/run')
            busy_digest = client.post('/digest')
            health = client.get('/')

            release.set()
            worker.join(timeout=5)

        assert busy_run.status_code == 409
        assert busy_digest.status_code == 409
        assert health.get_json()['running'] is True
        assert responses['first'].status_code == 200
