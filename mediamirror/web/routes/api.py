"""
API routes for mediamirror.
"""

from flask import Blueprint, jsonify, request

from mediamirror.api.plex import PlexClient
from mediamirror.config import ConfigManager, ConfigurationError
from mediamirror.db.database import get_db_session
from mediamirror.db.models import MatchRecord, SyncLog, SyncRun
from mediamirror.sync.engine import create_sync_engine_from_config, load_config
from mediamirror.sync.status import RunInProgressError, run_registry
from mediamirror.utils.logging import get_logger

logger = get_logger(__name__)

api_bp = Blueprint('api', __name__, url_prefix='/api')

_TRUTHY = ('1', 'true', 'yes', 'on')


def _run_to_dict(r: SyncRun) -> dict:
    return {
        'run_id': r.run_id,
        'dry_run': r.dry_run,
        'started_at': r.started_at.isoformat() if r.started_at else None,
        'completed_at': r.completed_at.isoformat() if r.completed_at else None,
        'status': r.status,
        'libraries_processed': r.libraries_processed,
        'collections_found': r.collections_found,
        'collections_created': r.collections_created,
        'collections_updated': r.collections_updated,
        'collections_failed': r.collections_failed,
        'items_processed': r.items_processed,
        'items_matched': r.items_matched,
        'items_ambiguous': r.items_ambiguous,
        'items_unmatched': r.items_unmatched,
        'artwork_updated': r.artwork_updated,
        'artwork_failed': r.artwork_failed,
        'watch_states_changed': r.watch_states_changed,
        'error': r.error_message,
    }


def _wants_dry_run() -> bool:
    if request.args.get('dry_run', '').lower() in _TRUTHY:
        return True
    body = request.get_json(silent=True) or {}
    return bool(body.get('dry_run', False))


def _start(dry_run: bool):
    try:
        engine = create_sync_engine_from_config()
        status = engine.start_run(dry_run=dry_run)
    except RunInProgressError as e:
        return jsonify({
            'success': False,
            'error': str(e),
            'run_id': e.active_run_id,
        }), 409
    except ConfigurationError as e:
        return jsonify({'success': False, 'error': str(e)}), 400

    logger.info("Sync run started via API", run_id=status.run_id, dry_run=dry_run)
    return jsonify({
        'success': True,
        'run_id': status.run_id,
        'status': status.snapshot(),
    }), 202


@api_bp.route('/status')
def status():
    """Get current sync status."""
    latest = run_registry.latest()
    if latest is not None:
        return jsonify(latest.snapshot())

    with get_db_session() as session:
        latest_run = session.query(SyncRun).order_by(
            SyncRun.started_at.desc()
        ).first()

        return jsonify({
            'state': 'idle',
            'is_complete': True,
            'last_run': _run_to_dict(latest_run) if latest_run else None,
        })


@api_bp.route('/sync', methods=['POST'])
def trigger_sync():
    """Start a sync run in the background."""
    return _start(_wants_dry_run())


@api_bp.route('/sync/dry-run', methods=['POST'])
def trigger_dry_run():
    """Start a dry run in the background."""
    return _start(True)


@api_bp.route('/sync/<run_id>')
def get_run(run_id):
    """Poll a run by id."""
    run_status = run_registry.get(run_id)
    if run_status is not None:
        return jsonify(run_status.snapshot())

    with get_db_session() as session:
        sync_run = session.query(SyncRun).filter(SyncRun.run_id == run_id).first()
        if sync_run:
            return jsonify(_run_to_dict(sync_run))

    return jsonify({'error': f'Unknown run {run_id}'}), 404


@api_bp.route('/sync/<run_id>/cancel', methods=['POST'])
def cancel_run(run_id):
    """Request cancellation of a running sync."""
    run_status = run_registry.get(run_id)
    if run_status is None:
        return jsonify({'error': f'Unknown run {run_id}'}), 404

    if not run_status.request_cancel():
        return jsonify({'error': 'Run already finished', 'status': run_status.snapshot()}), 409

    return jsonify({'success': True, 'run_id': run_id}), 202


@api_bp.route('/runs')
def get_runs():
    """Get sync runs."""
    limit = request.args.get('limit', 20, type=int)

    with get_db_session() as session:
        runs = session.query(SyncRun).order_by(
            SyncRun.started_at.desc()
        ).limit(limit).all()

        return jsonify([_run_to_dict(r) for r in runs])


@api_bp.route('/logs')
def get_logs():
    """Get recent logs."""
    limit = request.args.get('limit', 100, type=int)
    level = request.args.get('level')
    run_id = request.args.get('run_id')

    with get_db_session() as session:
        query = session.query(SyncLog)

        if level:
            query = query.filter(SyncLog.level == level.upper())
        if run_id:
            query = query.filter(SyncLog.sync_run_id == run_id)

        logs = query.order_by(SyncLog.created_at.desc()).limit(limit).all()

        return jsonify([{
            'id': l.id,
            'level': l.level,
            'message': l.message,
            'details': l.details,
            'sync_run_id': l.sync_run_id,
            'created_at': l.created_at.isoformat() if l.created_at else None,
        } for l in logs])


@api_bp.route('/matches')
def get_matches():
    """Get ambiguous and unmatched items from past runs."""
    limit = request.args.get('limit', 100, type=int)
    run_id = request.args.get('run_id')
    outcome = request.args.get('outcome')

    with get_db_session() as session:
        query = session.query(MatchRecord)

        if run_id:
            query = query.filter(MatchRecord.run_id == run_id)
        if outcome:
            query = query.filter(MatchRecord.outcome == outcome.lower())

        records = query.order_by(MatchRecord.created_at.desc()).limit(limit).all()

        return jsonify([{
            'run_id': m.run_id,
            'source_id': m.source_id,
            'title': m.title,
            'collection': m.collection,
            'outcome': m.outcome,
            'destination_id': m.destination_id,
            'namespace': m.namespace,
            'candidates': m.candidates,
            'created_at': m.created_at.isoformat() if m.created_at else None,
        } for m in records])


@api_bp.route('/libraries')
def get_libraries():
    """List source libraries and whether each is selected for sync."""
    config = load_config()
    if not config.plex_url or not config.plex_token:
        return jsonify({'error': 'Plex is not configured'}), 400

    client = PlexClient(config.plex_url, config.plex_token, timeout=config.request_timeout)
    try:
        libraries = client.list_libraries()
    finally:
        client.close()

    selected = set(config.selected_libraries)
    return jsonify([{
        'id': lib.id,
        'title': lib.title,
        'type': lib.kind.value,
        'is_selected': not selected or lib.id in selected or lib.title in selected,
    } for lib in libraries])


@api_bp.route('/libraries', methods=['PUT'])
def set_libraries():
    """Store the selected source libraries. An empty list selects all."""
    body = request.get_json(silent=True) or {}
    libraries = body.get('libraries')
    if not isinstance(libraries, list) or not all(isinstance(x, str) for x in libraries):
        return jsonify({'error': "'libraries' must be a list of library ids"}), 400

    with get_db_session() as session:
        ConfigManager(db_session=session).save_selected_libraries(libraries)

    logger.info("Updated selected libraries", libraries=libraries)
    return jsonify({'success': True, 'libraries': libraries})
