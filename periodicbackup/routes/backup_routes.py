"""
Backup routes - status, "backup now" and restore triggers.
"""

from datetime import datetime

from flask import Blueprint, current_app, jsonify, request

from periodicbackup.backup.destinations import StorageError
from periodicbackup.backup.executor import is_backup_in_progress
from periodicbackup.backup.restore import RestoreInProgressError, is_restore_in_progress, start_restore
from periodicbackup.backup.status import restart_guard, status_message
from periodicbackup.scheduler import get_scheduled_jobs, is_scheduler_running, trigger_backup_now
from periodicbackup.settings import settings_for_app


bp = Blueprint('backup', __name__, url_prefix='/api/backup')


def _manifest_to_dict(manifest):
    return {
        'timestamp': manifest.timestamp.isoformat(),
        'marker': manifest.marker,
        'archiver': manifest.archiver.display_name,
        'file_manager': manifest.file_manager.type_name if manifest.file_manager else None
    }


def _load_settings():
    try:
        return settings_for_app(current_app), None
    except ValueError as e:
        return None, (jsonify({'error': f'Invalid backup settings: {e}'}), 500)


@bp.route('/status', methods=['GET'])
def get_status():
    """
    Get the current backup/restore status.

    Returns:
        JSON with:
        - message: User-visible status message ('' when idle)
        - backup_in_progress: Whether a backup is running in this process
        - restart_ready: False while a restore is running
        - scheduler_status: Scheduler running status
        - scheduled_jobs: Scheduled jobs with next run times
    """
    return jsonify({
        'message': status_message.get(),
        'backup_in_progress': is_backup_in_progress(),
        'restart_ready': restart_guard.ready and not is_restore_in_progress(),
        'scheduler_status': 'running' if is_scheduler_running() else 'stopped',
        'scheduled_jobs': get_scheduled_jobs()
    })


@bp.route('/run', methods=['POST'])
def run_backup_now():
    """
    Queue a backup for immediate execution.

    Returns:
        JSON with the queued job ID
    """
    if is_backup_in_progress():
        return jsonify({'error': 'A backup is already in progress'}), 409

    try:
        job_id = trigger_backup_now()
    except RuntimeError as e:
        return jsonify({'error': str(e)}), 503

    return jsonify({
        'job_id': job_id,
        'message': 'Backup has been queued for immediate execution'
    }), 202


@bp.route('/backups', methods=['GET'])
def list_backups():
    """
    List the backups available at every enabled destination.

    Returns:
        JSON array, one entry per configured destination, with its index,
        name and backups (oldest first)
    """
    settings, error = _load_settings()
    if error:
        return error

    result = []
    for index, destination in enumerate(settings.destinations):
        entry = {
            'index': index,
            'name': destination.display_name,
            'enabled': destination.enabled,
            'backups': []
        }

        if destination.enabled:
            try:
                entry['backups'] = [_manifest_to_dict(m) for m in destination.get_available_backups()]
            except StorageError as e:
                entry['error'] = str(e)

        result.append(entry)

    return jsonify(result)


@bp.route('/restore', methods=['POST'])
def restore_backup():
    """
    Start restoring a backup.

    Request body:
        - destination: Index of the destination holding the backup (required)
        - timestamp: ISO timestamp of the backup (required)

    Returns:
        JSON with success message; the restore runs in the background
    """
    data = request.get_json(silent=True) or {}

    if data.get('destination') is None or not data.get('timestamp'):
        return jsonify({'error': 'destination and timestamp are required'}), 400

    try:
        index = int(data['destination'])
        timestamp = datetime.fromisoformat(data['timestamp']).replace(microsecond=0)
    except (TypeError, ValueError):
        return jsonify({'error': 'Invalid destination or timestamp'}), 400

    if not restart_guard.ready or is_restore_in_progress():
        return jsonify({'error': 'A restore is already in progress'}), 409

    settings, error = _load_settings()
    if error:
        return error

    if index < 0 or index >= len(settings.destinations):
        return jsonify({'error': f'Unknown destination: {index}'}), 404

    destination = settings.destinations[index]
    if not destination.enabled:
        return jsonify({'error': f'Destination is disabled: {destination.display_name}'}), 400

    try:
        manifests = destination.get_available_backups()
    except StorageError as e:
        return jsonify({'error': str(e)}), 502

    manifest = next((m for m in manifests if m.timestamp == timestamp), None)
    if manifest is None:
        return jsonify({'error': f'No backup from {timestamp.isoformat()} at {destination.display_name}'}), 404

    try:
        start_restore(
            manifest,
            settings.restore_temp_dir,
            on_reload=current_app.config.get('RELOAD_HOOK'),
            file_manager=manifest.file_manager or settings.file_manager
        )
    except RestoreInProgressError as e:
        return jsonify({'error': str(e)}), 409

    return jsonify({
        'message': f'Restoring backup from {timestamp.isoformat()}',
        'backup': _manifest_to_dict(manifest)
    }), 202
