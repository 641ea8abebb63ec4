#!/usr/bin/env python3
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "flask>=3.0.0",
#     "openpyxl>=3.1.0",
#     "pyyaml>=6.0.0",
#     "requests>=2.31.0",
#     "tenacity>=8.2.0",
# ]
# ///
"""
Schedule Sync Daemon (schedulesyncd)

HTTP trigger surface for schedulers that can only call URLs (Cloud Scheduler,
uptime pingers, cron + curl). Each trigger runs one full pass synchronously
and answers with its outcome. Configuration is loaded from config.yaml.

Run with: uv run schedulesyncd.py

Endpoints:
  GET  /        - Health check
  POST /run     - Process new schedule images
  POST /digest  - Send today's/tomorrow's digest

Trigger a dry run:
curl -X POST http://localhost:9877/run \
  -H "Content-Type: application/json" \
  -d '{"dry_run": true}'
"""

import argparse
import logging
import threading

from flask import Flask, jsonify, request

from schedule_config import _get_nested, _number, load_config
from schedule_model import ExternalServiceError, FatalError

import run_schedule_sync
import send_digest

logger = logging.getLogger(__name__)


def _dry_run_flag():
    """dry_run from a JSON body or ?dry_run=1; None when not given."""
    if request.is_json:
        data = request.get_json(silent=True) or {}
        if 'dry_run' in data:
            return bool(data['dry_run'])
    value = request.args.get('dry_run')
    if value is None:
        return None
    return value.lower() in ('1', 'true', 'yes')


def create_app(config: dict) -> Flask:
    app = Flask(__name__)
    # one trigger at a time; a second concurrent trigger is refused, not queued
    run_lock = threading.Lock()

    host = _get_nested(config, ['server', 'host'], '127.0.0.1')
    port = _number(config, ['server', 'port'], 9877)

    def _busy():
        return jsonify({
            'status': 'busy',
            'message': 'Another run is in progress; try again on the next trigger',
        }), 409

    @app.route('/', methods=['GET'])
    def health_check():
        """Health check endpoint."""
        return jsonify({
            'status': 'ok',
            'service': 'schedulesyncd',
            'port': port,
            'running': run_lock.locked(),
            'dry_run': bool(_get_nested(config, ['dry_run'], False)),
            'endpoints': {
                'health': '/',
                'process': '/run',
                'digest': '/digest',
            },
        }), 200

    @app.route('/run', methods=['POST'])
    def run():
        if not run_lock.acquire(blocking=False):
            return _busy()
        try:
            summary = run_schedule_sync.run_schedule_sync(config, dry_run=_dry_run_flag())
            status = 'success' if summary.errored == 0 else 'partial'
            return jsonify({'status': status, 'summary': summary.as_dict()}), 200
        except FatalError as e:
            logger.error(e.describe())
            return jsonify({
                'status': 'error',
                'category': e.tag,
                'message': str(e),
                'remedy': e.remedy,
            }), 500
        except Exception as e:
            logger.error(f"Error processing run trigger: {str(e)}", exc_info=True)
            return jsonify({
                'status': 'error',
                'message': f'Internal server error: {str(e)}'
            }), 500
        finally:
            run_lock.release()

    @app.route('/digest', methods=['POST'])
    def digest():
        if not run_lock.acquire(blocking=False):
            return _busy()
        try:
            result = send_digest.run_digest(config, dry_run=_dry_run_flag())
            return jsonify({
                'status': 'success',
                'sent': result.sent,
                'entries': result.entries,
                'messages': len(result.chunks),
                'message': result.message,
            }), 200
        except (FatalError, ExternalServiceError) as e:
            logger.error(e.describe())
            return jsonify({
                'status': 'error',
                'category': e.tag,
                'message': str(e),
                'remedy': e.remedy,
            }), 502 if isinstance(e, ExternalServiceError) else 500
        except Exception as e:
            logger.error(f"Error processing digest trigger: {str(e)}", exc_info=True)
            return jsonify({
                'status': 'error',
                'message': f'Internal server error: {str(e)}'
            }), 500
        finally:
            run_lock.release()

    app.config['SCHEDULE_SYNC_HOST'] = host
    app.config['SCHEDULE_SYNC_PORT'] = port
    return app


def main():
    parser = argparse.ArgumentParser(description='Schedule Sync Daemon (schedulesyncd)')
    parser.add_argument('--config', default=None,
                        help='Path to config.yaml. Default: SCHEDULE_SYNC_CONFIG env var, or ./config.yaml.')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        config = load_config(args.config)
        app = create_app(config)
    except FatalError as e:
        logger.error(e.describe())
        raise SystemExit(1)

    host = app.config['SCHEDULE_SYNC_HOST']
    port = app.config['SCHEDULE_SYNC_PORT']

    logger.info(f"Starting schedulesyncd on {host}:{port}")
    logger.info(f"Health check: http://{host}:{port}/")
    logger.info(f"Process trigger: http://{host}:{port}/run")
    logger.info(f"Digest trigger: http://{host}:{port}/digest")

    app.run(host=host, port=port, debug=False)


if __name__ == '__main__':
    main()
