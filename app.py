# FILE: compound-sync/app.py

import asyncio
import json
import os
import sched
import shutil
import threading
import time
import traceback
import uuid

from flask import Flask, request, jsonify, session
from flask_cors import CORS

from dotenv import load_dotenv

from compound_sync.compound_manager import CompoundManager, error_status
from compound_sync.expression_evaluator import ExpressionEvaluator
from compound_sync.template_store import TemplateStore, FileSystemBackend, DEFAULT_CATEGORY

# Load environment variables from .env file
load_dotenv()

app = Flask(__name__)
app.secret_key = os.getenv("FLASK_SECRET_KEY", "a-default-secret-key-for-development")
CORS(app)

# --- Read server-wide config on startup ---
APP_MODE = os.getenv("APP_MODE", "local")  # Default to 'local' if not set
TEMPLATE_LIBRARY_DIR = os.getenv("TEMPLATE_LIBRARY_DIR", os.path.join(os.getcwd(), "library"))
SESSION_TIMEOUT_SECONDS = int(os.getenv("SESSION_TIMEOUT_SECONDS", "3600"))


# ------------------------------------------------------------------------------
# Session management

# --- Server-Side Cache for Compound Managers ---
# One CompoundManager per user session, keyed by the session's user_id.
compound_managers = {}

# For timeout
last_access = {}
SESSION_LOCK = threading.Lock()

def get_library_dir_for_user(user_id):
    if APP_MODE == 'local':
        return TEMPLATE_LIBRARY_DIR
    return os.path.join(TEMPLATE_LIBRARY_DIR, user_id)

def get_compound_manager_for_session() -> CompoundManager:
    """
    Retrieves or creates a CompoundManager for the current user session.
    In deployed mode every session gets its own template library directory.
    """
    # 1. Ensure the user has a unique session ID
    if APP_MODE == 'local':
        # In local mode, everyone shares the same "local_user" ID
        if 'user_id' not in session or session['user_id'] != 'local_user':
            session['user_id'] = 'local_user'
    else: # deployed mode
        if 'user_id' not in session:
            session['user_id'] = str(uuid.uuid4())

    user_id = session['user_id']

    # 2. Create the manager and its template library on first use
    with SESSION_LOCK:
        if user_id not in compound_managers:
            print(f"Creating new session and CompoundManager for user_id: {user_id}")
            expression_evaluator = ExpressionEvaluator()
            store = TemplateStore(FileSystemBackend(get_library_dir_for_user(user_id)), expression_evaluator)
            asyncio.run(store.initialize())

            cm = CompoundManager(expression_evaluator, template_store=store)
            cm.create_empty_scene()
            compound_managers[user_id] = cm

        last_access[user_id] = time.time()
        return compound_managers[user_id]

def create_success_response(compound_manager, message="Success", **extra):
    """
    Helper to create a standard success response object including the scene.
    """
    payload = {
        "success": True,
        "message": message,
        "scene": compound_manager.get_scene_description(),
    }
    payload.update(extra)
    return jsonify(payload)

def create_error_response(compound_manager, error_msg, default_message="Request failed."):
    status = error_status(compound_manager.last_error)
    return jsonify({"success": False, "error": error_msg or default_message}), status


# ------------------------------------------------------------------------------
# Scene routes

@app.route('/get_scene', methods=['GET'])
def get_scene_route():
    cm = get_compound_manager_for_session()
    return create_success_response(cm, "Scene retrieved.")

@app.route('/new_scene', methods=['POST']) # Use POST for an action that changes state
def new_scene_route():
    """Clears the current scene and starts over with an empty World."""
    cm = get_compound_manager_for_session()
    cm.create_empty_scene()
    return create_success_response(cm, "New scene created.")

@app.route('/load_scene_json', methods=['POST'])
def load_scene_json_route():
    cm = get_compound_manager_for_session()

    if 'sceneFile' not in request.files:
        return jsonify({"error": "No scene file part"}), 400
    file = request.files['sceneFile']
    try:
        cm.load_scene_from_json_string(file.read().decode('utf-8'))
        return create_success_response(cm, "Scene loaded successfully.")
    except json.JSONDecodeError:
        return jsonify({"error": "Invalid JSON file format"}), 400
    except Exception as e:
        traceback.print_exc()
        return jsonify({"error": f"Failed to load scene data: {str(e)}"}), 500

@app.route('/save_scene_json', methods=['GET'])
def save_scene_json_route():
    cm = get_compound_manager_for_session()
    return app.response_class(cm.save_scene_to_json_string(), mimetype='application/json')

@app.route('/add_volume', methods=['POST'])
def add_volume_route():
    cm = get_compound_manager_for_session()

    data = request.get_json() or {}
    volume_data = data.get('volume')
    if not volume_data:
        return jsonify({"success": False, "error": "Missing volume data."}), 400

    volume_id, error_msg = cm.add_volume(volume_data, data.get('parent_name'))
    if volume_id is None:
        return create_error_response(cm, error_msg, "Could not add volume.")
    return create_success_response(cm, f"Volume {volume_id} added.", volume_id=volume_id)

@app.route('/update_volume', methods=['POST'])
def update_volume_route():
    cm = get_compound_manager_for_session()

    data = request.get_json() or {}
    volume_id = data.get('id')
    patch = data.get('patch')
    if not volume_id or patch is None:
        return jsonify({"success": False, "error": "Volume ID or patch missing."}), 400

    volume, error_msg = cm.update_volume(
        volume_id, patch,
        keep_selected=data.get('keep_selected', True),
        is_live_update=data.get('is_live_update', False),
    )
    if volume is None:
        return create_error_response(cm, error_msg, "Could not update volume.")
    return create_success_response(cm, f"Volume {volume_id} updated.")

@app.route('/rename_volume', methods=['POST'])
def rename_volume_route():
    cm = get_compound_manager_for_session()

    data = request.get_json() or {}
    volume_id = data.get('id')
    new_name = data.get('new_name')
    if not volume_id or not new_name:
        return jsonify({"success": False, "error": "Volume ID or new name missing."}), 400

    volume, error_msg = cm.rename_volume(volume_id, new_name)
    if volume is None:
        return create_error_response(cm, error_msg, "Could not rename volume.")
    return create_success_response(cm, f"Volume renamed to '{new_name}'.")

@app.route('/delete_volume', methods=['POST'])
def delete_volume_route():
    cm = get_compound_manager_for_session()

    data = request.get_json() or {}
    volume_id = data.get('id')
    if not volume_id:
        return jsonify({"success": False, "error": "Volume ID missing."}), 400

    removed, error_msg = cm.remove_volume(volume_id)
    if removed is None:
        return create_error_response(cm, error_msg, "Could not delete volume.")
    return create_success_response(cm, f"Removed {len(removed)} volume(s).", removed=removed)


# ------------------------------------------------------------------------------
# Template library routes

@app.route('/api/templates', methods=['GET'])
def list_templates_route():
    cm = get_compound_manager_for_session()
    templates, error_msg = asyncio.run(cm.list_templates(request.args.get('category')))
    if templates is None:
        return create_error_response(cm, error_msg, "Could not list templates.")
    return jsonify({"success": True, "templates": templates})

@app.route('/api/templates/save', methods=['POST'])
def save_template_route():
    cm = get_compound_manager_for_session()

    data = request.get_json() or {}
    volume_id = data.get('volume_id')
    name = data.get('name')
    if not volume_id or not name:
        return jsonify({"success": False, "error": "Volume ID and template name are required."}), 400

    try:
        key, error_msg = asyncio.run(cm.save_template(
            volume_id, name, data.get('description', ""), data.get('category', DEFAULT_CATEGORY)
        ))
    except Exception as e:
        print(f"An unexpected error occurred while saving template '{name}': {e}")
        traceback.print_exc()
        return jsonify({"success": False, "error": f"Unexpected error while saving template: {str(e)}"}), 500

    if key is None:
        return create_error_response(cm, error_msg, "Could not save template.")
    return create_success_response(cm, f"Template '{name}' saved.", template_key=key)

@app.route('/api/templates/import', methods=['POST'])
def import_template_route():
    cm = get_compound_manager_for_session()

    data = request.get_json() or {}
    name = data.get('name')
    if not name:
        return jsonify({"success": False, "error": "Template name is required."}), 400

    result, error_msg = asyncio.run(cm.import_template(name, data.get('parent_name'), data.get('category')))
    if result is None:
        return create_error_response(cm, error_msg, "Could not import template.")
    return create_success_response(cm, f"Template '{name}' imported.", import_result=result)

@app.route('/api/templates/delete', methods=['POST'])
def delete_template_route():
    cm = get_compound_manager_for_session()

    data = request.get_json() or {}
    name = data.get('name')
    if not name:
        return jsonify({"success": False, "error": "Template name is required."}), 400

    deleted, error_msg = asyncio.run(cm.delete_template(name, data.get('category')))
    if not deleted:
        return create_error_response(cm, error_msg, "Could not delete template.")
    return jsonify({"success": True, "message": f"Template '{name}' deleted."})

@app.route('/api/templates/<name>/instances', methods=['GET'])
def template_instances_route(name):
    cm = get_compound_manager_for_session()
    instances, error_msg = asyncio.run(cm.find_template_instances(name, request.args.get('category')))
    if instances is None:
        return create_error_response(cm, error_msg, "Could not search for instances.")
    return jsonify({"success": True, "instances": instances})

@app.route('/api/templates/update_instances', methods=['POST'])
def update_instances_route():
    cm = get_compound_manager_for_session()

    data = request.get_json() or {}
    name = data.get('name')
    if not name:
        return jsonify({"success": False, "error": "Template name is required."}), 400

    result, error_msg = asyncio.run(cm.update_instances_from_template(
        name, data.get('target_ids'), data.get('category')
    ))
    if result is None:
        return create_error_response(cm, error_msg, "Could not update instances.")
    return create_success_response(
        cm, f"Updated {result['updated_count']} volume(s) in {result['instance_count']} instance(s).",
        sync_result=result,
    )


# ------------------------------------------------------------------------------
# Instance synchronization routes

@app.route('/api/sync_from_instance', methods=['POST'])
def sync_from_instance_route():
    cm = get_compound_manager_for_session()

    data = request.get_json() or {}
    volume_id = data.get('volume_id')
    if not volume_id:
        return jsonify({"success": False, "error": "Source volume ID missing."}), 400

    result, error_msg = cm.sync_from_instance(volume_id, data.get('target_ids'))
    if result is None:
        return create_error_response(cm, error_msg, "Could not synchronize instances.")
    return create_success_response(
        cm, f"Updated {result['updated_count']} volume(s) in {result['instance_count']} instance(s).",
        sync_result=result,
    )

@app.route('/api/mark_source_changed', methods=['POST'])
def mark_source_changed_route():
    cm = get_compound_manager_for_session()

    data = request.get_json() or {}
    source_id = data.get('source_id')
    if not source_id:
        return jsonify({"success": False, "error": "Source ID missing."}), 400

    update_immediately = data.get('update_immediately', False)
    if data.get('source_data') is None and data.get('volume_id') is None:
        # A library template: re-read it from the store
        result, error_msg = asyncio.run(cm.refresh_template_source(
            source_id, data.get('category'), update_immediately=update_immediately
        ))
    else:
        result, error_msg = cm.notify_source_changed(
            source_id, data.get('source_data'), data.get('volume_id'), update_immediately
        )

    if result is None:
        return create_error_response(cm, error_msg, "Could not record source change.")
    return jsonify({"success": True, "result": result, "pending": cm.get_pending_updates()})

@app.route('/api/pending_updates', methods=['GET'])
def pending_updates_route():
    cm = get_compound_manager_for_session()
    return jsonify({"success": True, "pending": cm.get_pending_updates()})

@app.route('/api/apply_updates', methods=['POST'])
def apply_updates_route():
    cm = get_compound_manager_for_session()

    data = request.get_json(silent=True) or {}
    updated, _ = cm.apply_pending_updates(data.get('source_id'))
    return create_success_response(cm, f"Applied updates to {updated} instance(s).", updated_instances=updated)

@app.route('/api/evaluate_expression', methods=['POST'])
def evaluate_expression_route():
    cm = get_compound_manager_for_session()

    data = request.get_json() or {}
    expression = data.get('expression')
    if expression is None: # Check for None, as "" is a valid (empty) expression
        return jsonify({"success": False, "error": "Missing expression."}), 400

    success, result = cm.expression_evaluator.evaluate(expression)

    if success:
        return jsonify({"success": True, "result": result})
    else:
        # The result is the error message string
        return jsonify({"success": False, "error": result}), 400


# -------------------------------------------------------------------------------
# Session timeout management

def cleanup_inactive_sessions():
    # Do not perform cleanup in local mode
    if APP_MODE == 'local':
        return

    with SESSION_LOCK:
        now = time.time()
        inactive_sessions = [
            user_id for user_id, last_time in last_access.items()
            if now - last_time > SESSION_TIMEOUT_SECONDS
        ]

        for user_id in inactive_sessions:
            print(f"Cleaning up inactive session: {user_id}")
            compound_managers.pop(user_id, None)
            last_access.pop(user_id, None)

            # Remove the user's template library
            session_library_dir = get_library_dir_for_user(user_id)
            if os.path.exists(session_library_dir):
                shutil.rmtree(session_library_dir)

def run_cleanup_scheduler(sc):
    cleanup_inactive_sessions()
    sc.enter(SESSION_TIMEOUT_SECONDS, 1, run_cleanup_scheduler, (sc,))

# --- Scheduler to run the cleanup task ---
scheduler = sched.scheduler(time.time, time.sleep)
scheduler.enter(SESSION_TIMEOUT_SECONDS, 1, run_cleanup_scheduler, (scheduler,))

# Start the scheduler in a background thread
scheduler_thread = threading.Thread(target=scheduler.run)
scheduler_thread.daemon = True
scheduler_thread.start()

if __name__ == '__main__':
    app.run(debug=True, port=5003)
