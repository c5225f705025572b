"""
Mesh Traceroute Monitor - Flask Application
Main entry point for the web application
"""

# Monkey-patch standard library for eventlet compatibility
# MUST be done before any other imports that use threading
import eventlet
eventlet.monkey_patch()

from flask import Flask, jsonify, request
from flask_socketio import SocketIO, emit
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.executors.pool import ThreadPoolExecutor
import logging
import atexit
import json
from datetime import datetime

import config
import database
import path_decoder
import probe_scheduler
import segment_tracker
import transport

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)
app.config['SECRET_KEY'] = 'mesh-traceroute-monitor-secret-key'

# Initialize SocketIO
socketio = SocketIO(app, cors_allowed_origins="*", async_mode='eventlet')

# Initialize scheduler with eventlet-compatible executor
executors = {
    'default': ThreadPoolExecutor(max_workers=2)
}
job_defaults = {
    'coalesce': True,  # Combine multiple pending executions into one
    'max_instances': 1,  # Only one instance of each job at a time
    'misfire_grace_time': 60  # Allow 60 seconds grace period for misfires
}
scheduler = BackgroundScheduler(executors=executors, job_defaults=job_defaults)

# Track auto-traceroute state
traceroute_state = {
    'last_tick': None,
    'last_target': None,
    'ticks': 0
}


def get_traceroute_interval():
    """Auto-traceroute interval in minutes (0 = disabled)"""
    return int(database.get_setting('traceroute_interval_minutes', config.TRACEROUTE_INTERVAL_MINUTES))


def run_traceroute_tick():
    """Run one scheduling tick: pick a node, ask the gateway to traceroute it"""
    local_node_num = transport.get_local_node_num()
    result = probe_scheduler.run_scheduling_tick(local_node_num, transport.send_probe)

    traceroute_state['last_tick'] = datetime.now().isoformat()
    traceroute_state['ticks'] += 1

    target = result['selected']
    if target:
        traceroute_state['last_target'] = target['node_num']
        socketio.emit('traceroute_requested', {
            'from_node_num': local_node_num,
            'to_node_num': target['node_num'],
            'to_node_id': target['node_id'],
            'category': result['category'],
            'sent': result['sent']
        })
    return result


def auto_traceroute_task():
    """Background task for auto-traceroute"""
    try:
        run_traceroute_tick()
    except Exception as e:
        logger.error(f"Auto-traceroute tick failed: {e}")


def segment_cleanup_task():
    """Background task for cleaning up old route segments"""
    try:
        segment_tracker.cleanup_old_segments()
    except Exception as e:
        logger.error(f"Segment cleanup failed: {e}")


def schedule_auto_traceroute(interval_minutes):
    """Add, replace or remove the auto-traceroute job"""
    if interval_minutes > 0:
        scheduler.add_job(
            auto_traceroute_task,
            'interval',
            minutes=interval_minutes,
            id='auto_traceroute',
            replace_existing=True
        )
        logger.info(f"Auto-traceroute scheduled every {interval_minutes} minutes")
    elif scheduler.get_job('auto_traceroute'):
        scheduler.remove_job('auto_traceroute')
        logger.info("Auto-traceroute disabled")


def ingest_traceroute_result(payload):
    """
    Store a traceroute result delivered by the gateway and update segments.

    Returns the summary of the stored traceroute.
    """
    result = transport.normalize_result(payload)
    database.upsert_traceroute(**result)
    traceroute = database.get_traceroute(result['from_node_num'], result['to_node_num'])

    nodes = database.get_nodes_map()
    summary = path_decoder.summarize_traceroute(traceroute, nodes, distance_unit=config.DISTANCE_UNIT)

    if summary['is_failed']:
        database.log_event(database.EVENT_TRACEROUTE_FAILED, node_num=result['to_node_num'],
                           details=summary['title'], severity='warning')
        logger.info(f"Traceroute failed: {summary['title']}")
    else:
        database.log_event(database.EVENT_TRACEROUTE_RECEIVED, node_num=result['to_node_num'],
                           details=summary['forward_route'])
        logger.info(f"Traceroute received: {summary['forward_route']}")

        for row in segment_tracker.record_traceroute_segments(traceroute, nodes):
            if row['is_record_holder']:
                socketio.emit('segment_record', row)

    socketio.emit('traceroute_received', summary)
    return summary


def _flag(name, default='false'):
    return request.args.get(name, default).lower() in ('1', 'true', 'yes')


# ============ Error Handlers ============

@app.errorhandler(database.RetryableStorageError)
def handle_storage_error(e):
    logger.warning(f"Storage busy: {e}")
    return jsonify({'error': 'Storage temporarily unavailable', 'retryable': True}), 503


# ============ Node Routes ============

@app.route('/api/nodes')
def api_get_nodes():
    """Get all nodes"""
    return jsonify(database.get_all_nodes())


@app.route('/api/nodes', methods=['POST'])
def api_upsert_node():
    """Insert or update a node from packet ingestion"""
    data = request.get_json(silent=True) or {}
    try:
        node_num = int(data['node_num'])
    except (KeyError, ValueError, TypeError):
        return jsonify({'error': 'node_num is required'}), 400

    database.upsert_node(
        node_num,
        node_id=data.get('node_id'),
        long_name=data.get('long_name'),
        short_name=data.get('short_name'),
        latitude=data.get('latitude'),
        longitude=data.get('longitude'),
        last_heard=data.get('last_heard')
    )
    return jsonify({'success': True, 'node': database.get_node(node_num)})


@app.route('/api/node/<int:node_num>')
def api_get_node(node_num):
    """Get a node with its most recent traceroute"""
    node = database.get_node(node_num)
    if not node:
        return jsonify({'error': 'Node not found'}), 404

    recent = path_decoder.get_recent_traceroute(node_num)
    return jsonify({
        'node': node,
        'recent_traceroute': path_decoder.summarize_traceroute(
            recent, database.get_nodes_map(), distance_unit=config.DISTANCE_UNIT
        ) if recent else None
    })


# ============ Traceroute Routes ============

@app.route('/api/traceroutes', methods=['POST'])
def api_ingest_traceroute():
    """Receive a traceroute result (or failure) from the gateway"""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({'error': 'JSON object required'}), 400
    try:
        summary = ingest_traceroute_result(data)
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    return jsonify({'success': True, 'traceroute': summary})


@app.route('/api/traceroutes/history/<int:node_a>/<int:node_b>')
def api_get_traceroute_history(node_a, node_b):
    """Traceroutes between two nodes, newest first"""
    limit = request.args.get('limit', config.HISTORY_LIMIT, type=int)
    history = path_decoder.get_traceroute_history(
        node_a, node_b, hide_failed=_flag('hide_failed'), limit=limit
    )
    return jsonify(history)


@app.route('/api/traceroutes/segment/<int:node_num1>/<int:node_num2>')
def api_get_segment_traceroutes(node_num1, node_num2):
    """Traceroutes whose paths contain the segment node_num1 <-> node_num2"""
    limit = request.args.get('limit', None, type=int)
    return jsonify(path_decoder.get_segment_traceroutes(node_num1, node_num2, limit=limit))


@app.route('/api/traceroutes/recent/<int:node_num>')
def api_get_recent_traceroute(node_num):
    """Most recent traceroute involving a node"""
    hours = request.args.get('hours', 24, type=int)
    recent = path_decoder.get_recent_traceroute(node_num, within_ms=hours * 60 * 60 * 1000)
    if not recent:
        return jsonify(None)
    return jsonify(path_decoder.summarize_traceroute(
        recent, database.get_nodes_map(), distance_unit=config.DISTANCE_UNIT
    ))


@app.route('/api/traceroute/tick', methods=['POST'])
def api_run_traceroute_tick():
    """Run one scheduling tick now"""
    result = run_traceroute_tick()
    return jsonify({
        'success': True,
        'selected': result['selected'],
        'category': result['category'],
        'sent': result['sent']
    })


# ============ Segment Routes ============

@app.route('/api/segments/record')
def api_get_record_segment():
    """All-time longest segment"""
    return jsonify(segment_tracker.get_record_holder())


@app.route('/api/segments/longest')
def api_get_longest_active_segment():
    """Longest segment within the last N days"""
    days = request.args.get('days', config.ACTIVE_SEGMENT_DAYS, type=int)
    return jsonify(segment_tracker.get_longest_active(days=days))


@app.route('/api/segments/cleanup', methods=['POST'])
def api_cleanup_segments():
    """Delete old non-record segments"""
    days = request.args.get('days', config.SEGMENT_RETENTION_DAYS, type=int)
    count = segment_tracker.cleanup_old_segments(retention_days=days)
    return jsonify({'success': True, 'deleted': count})


# ============ Settings Routes ============

@app.route('/api/settings', methods=['GET'])
def api_get_settings():
    """Get current settings"""
    settings = database.get_all_settings()

    settings['traceroute_interval_minutes'] = get_traceroute_interval()
    settings['traceroute_filter_enabled'] = settings.get('traceroute_filter_enabled', 'false') == 'true'
    try:
        settings['traceroute_node_nums'] = json.loads(settings.get('traceroute_node_nums', '[]'))
    except ValueError:
        settings['traceroute_node_nums'] = []
    if 'gateway_url' not in settings:
        settings['gateway_url'] = config.GATEWAY_URL

    settings['cold_retry_hours'] = config.COLD_RETRY_HOURS
    settings['stale_retry_hours'] = config.STALE_RETRY_HOURS
    settings['segment_retention_days'] = config.SEGMENT_RETENTION_DAYS

    return jsonify(settings)


@app.route('/api/settings', methods=['POST'])
def api_update_settings():
    """Update settings"""
    data = request.get_json(silent=True) or {}

    try:
        if 'traceroute_interval_minutes' in data:
            interval = max(0, min(60, int(data['traceroute_interval_minutes'])))  # Clamp between 0-60
            database.set_setting('traceroute_interval_minutes', str(interval))
            logger.info(f"Traceroute interval updated to: {interval} minutes")
            if scheduler.running:
                schedule_auto_traceroute(interval)

        if 'traceroute_filter_enabled' in data or 'traceroute_node_nums' in data:
            enabled = data.get('traceroute_filter_enabled',
                               database.get_setting('traceroute_filter_enabled', 'false') == 'true')
            probe_scheduler.set_node_filter(bool(enabled), data.get('traceroute_node_nums'))
            logger.info(f"Traceroute node filter updated (enabled={bool(enabled)})")

        if 'local_node_num' in data:
            database.set_setting('local_node_num', str(int(data['local_node_num'])))
            logger.info(f"Local node updated to: {data['local_node_num']}")

        if 'gateway_url' in data:
            gateway_url = data['gateway_url']
            if not isinstance(gateway_url, str) or not gateway_url.strip():
                raise ValueError("gateway_url must be a non-empty string")
            database.set_setting('gateway_url', gateway_url.strip())
            logger.info(f"Gateway URL updated to: {gateway_url.strip()}")
    except (ValueError, TypeError) as e:
        return jsonify({'error': f'Invalid setting: {e}'}), 400

    return jsonify({'success': True, 'settings': database.get_all_settings()})


# ============ Status Routes ============

@app.route('/api/status')
def api_get_status():
    """Get scheduler and segment status"""
    local_node_num = database.get_setting('local_node_num')
    local_node_num = int(local_node_num) if local_node_num else config.LOCAL_NODE_NUM
    return jsonify({
        'auto_traceroute': traceroute_state,
        'interval_minutes': get_traceroute_interval(),
        'scheduler': probe_scheduler.get_scheduler_summary(local_node_num),
        'segments': segment_tracker.get_segment_summary()
    })


@app.route('/api/events')
def api_get_events():
    """Get event log"""
    limit = request.args.get('limit', 100, type=int)
    offset = request.args.get('offset', 0, type=int)
    events = database.get_events(limit=limit, offset=offset)
    return jsonify(events)


@app.route('/api/events/clear', methods=['POST'])
def api_clear_events():
    """Clear old events"""
    days = request.args.get('days', 30, type=int)
    count = database.clear_old_events(days=days)
    return jsonify({'success': True, 'cleared': count})


# ============ SocketIO Events ============

@socketio.on('connect')
def handle_connect():
    """Handle client connection"""
    logger.info("Client connected")
    emit('status', {
        'auto_traceroute': traceroute_state,
        'segments': segment_tracker.get_segment_summary()
    })


@socketio.on('request_tick')
def handle_request_tick():
    """Handle manual tick request from client"""
    socketio.start_background_task(auto_traceroute_task)
    emit('tick_acknowledged', {'message': 'Traceroute tick started'})


# ============ Startup ============

def start_scheduler():
    """Start the background scheduler"""
    schedule_auto_traceroute(get_traceroute_interval())

    scheduler.add_job(
        segment_cleanup_task,
        'interval',
        hours=config.SEGMENT_CLEANUP_INTERVAL_HOURS,
        id='segment_cleanup',
        replace_existing=True
    )

    scheduler.start()
    logger.info("Scheduler started")


# Ensure scheduler shuts down cleanly on exit
def shutdown_scheduler():
    """Safely shutdown the scheduler"""
    try:
        if scheduler.running:
            scheduler.shutdown(wait=False)
            logger.info("Scheduler shut down cleanly")
    except Exception as e:
        logger.warning(f"Error shutting down scheduler: {e}")

atexit.register(shutdown_scheduler)


if __name__ == '__main__':
    logger.info("Starting Mesh Traceroute Monitor")

    # Initialize database
    database.init_db()

    start_scheduler()

    # Start server
    logger.info(f"Starting server on {config.HOST}:{config.PORT}")
    socketio.run(
        app,
        host=config.HOST,
        port=config.PORT,
        debug=config.DEBUG,
        use_reloader=config.DEBUG
    )
