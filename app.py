"""
Flask Web Application for the Form Engine

Thin HTTP surface over FormEngine.handle(). The client may send its own
state snapshot with every request; otherwise the last snapshot produced
by this process is used.
"""

from flask import Flask, request, jsonify
from dataclasses import asdict
import logging
import os
import json

from formengine.commands import FormState, LoadForm, SubmitForm, ValidateForm, command_from_json
from formengine.core.definition_loader import load_definition
from formengine.core.form_engine import ConvergenceError, FormEngine
from formengine.results import EventResult, IllegalCommand, SubmitResult, ValidationResult
from formengine.utils.helpers import generate_submission_filename

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)
app.config['FORM_DEFINITION_PATH'] = os.environ.get('FORM_DEFINITION_PATH', 'data/meal_production_form.json')
app.config['FORM_LANGUAGE'] = os.environ.get('FORM_LANGUAGE')
app.config['SUBMISSION_DIR'] = os.environ.get('SUBMISSION_DIR', 'outputs/submissions')

# Global state for the current form session
current_form = {
    'engine': None,
    'state': None,
}


def get_engine():
    """Load the form definition once and cache the engine"""
    if current_form['engine'] is None:
        definition = load_definition(app.config['FORM_DEFINITION_PATH'])
        current_form['engine'] = FormEngine(definition, language=app.config['FORM_LANGUAGE'])
        logger.info(f"Engine ready for {app.config['FORM_DEFINITION_PATH']}")
    return current_form['engine']


def reset_session():
    """Forget the cached engine and state (definition path changed, tests)"""
    current_form['engine'] = None
    current_form['state'] = None


def request_state(data):
    """State snapshot from the request body, else the session's last one"""
    if data.get('state') is not None:
        return FormState.from_json(data['state'])
    return current_form['state']


def view_to_json(engine, state, language=None):
    view = engine.describe(state, language)
    return {
        'hidden': sorted(view.hidden),
        'options': {
            path: [asdict(item) for item in items]
            for path, items in view.options.items()
        },
    }


def errors_to_json(errors):
    return [asdict(error) for error in errors]


def result_to_json(engine, result, language=None):
    """Serialize any FormEngine result; returns (body, status)"""
    if isinstance(result, IllegalCommand):
        return {'success': False, 'error': result.reason, 'command_type': result.command_type}, 409

    if isinstance(result, EventResult):
        current_form['state'] = result.state
        return {
            'success': True,
            'changed': result.changed,
            'converged': result.converged,
            'passes': result.passes,
            'state': result.state.to_json(),
            'view': view_to_json(engine, result.state, language),
        }, 200

    if isinstance(result, ValidationResult):
        return {
            'success': True,
            'phase': result.phase,
            'valid': result.valid,
            'errors': errors_to_json(result.errors),
        }, 200

    if isinstance(result, SubmitResult):
        return {
            'success': True,
            'valid': result.valid,
            'errors': errors_to_json(result.errors),
            'record': result.record,
        }, 200

    raise TypeError(f"Unexpected result type: {type(result).__name__}")


@app.route('/api/definition', methods=['GET'])
def get_definition():
    """Raw form definition JSON"""
    try:
        with open(app.config['FORM_DEFINITION_PATH'], 'r', encoding='utf-8') as f:
            definition = json.load(f)
        return jsonify({'success': True, 'definition': definition})

    except FileNotFoundError as e:
        logger.error(f"Form definition missing: {e}")
        return jsonify({'success': False, 'error': str(e)}), 404

    except Exception as e:
        logger.error(f"Error reading form definition: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/start', methods=['POST'])
def start_form():
    """Start a form session, optionally from a stored record"""
    try:
        data = request.get_json(silent=True) or {}
        engine = get_engine()
        result = engine.handle(LoadForm(record_values=data.get('record')))
        body, status = result_to_json(engine, result, data.get('language'))
        return jsonify(body), status

    except (ValueError, TypeError, KeyError) as e:
        logger.warning(f"Bad start request: {e}")
        return jsonify({'success': False, 'error': str(e)}), 400

    except Exception as e:
        logger.error(f"Error starting form: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/event', methods=['POST'])
def handle_event():
    """Apply one command: {'command': {'type': 'SetValue', ...}, 'state': {...}}"""
    try:
        data = request.get_json(silent=True) or {}
        if 'command' not in data:
            return jsonify({'success': False, 'error': 'Missing command'}), 400

        engine = get_engine()
        command = command_from_json(data['command'])
        result = engine.handle(command, request_state(data))
        body, status = result_to_json(engine, result, data.get('language'))
        return jsonify(body), status

    except ConvergenceError as e:
        logger.error(f"Form definition does not converge: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500

    except (ValueError, TypeError, KeyError) as e:
        logger.warning(f"Bad event request: {e}")
        return jsonify({'success': False, 'error': str(e)}), 400

    except Exception as e:
        logger.error(f"Error handling event: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/validate', methods=['POST'])
def validate_form():
    """Validate the current state for a phase (default 'submit')"""
    try:
        data = request.get_json(silent=True) or {}
        engine = get_engine()
        result = engine.handle(ValidateForm(phase=data.get('phase', 'submit')), request_state(data))
        body, status = result_to_json(engine, result)
        return jsonify(body), status

    except (ValueError, TypeError, KeyError) as e:
        logger.warning(f"Bad validate request: {e}")
        return jsonify({'success': False, 'error': str(e)}), 400

    except Exception as e:
        logger.error(f"Error validating form: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/submit', methods=['POST'])
def submit_form():
    """Final validation; a valid record is saved to SUBMISSION_DIR"""
    try:
        data = request.get_json(silent=True) or {}
        engine = get_engine()
        result = engine.handle(SubmitForm(), request_state(data))
        body, status = result_to_json(engine, result)

        if isinstance(result, SubmitResult) and result.valid and data.get('save', True):
            os.makedirs(app.config['SUBMISSION_DIR'], exist_ok=True)
            filename = generate_submission_filename()
            path = os.path.join(app.config['SUBMISSION_DIR'], filename)
            with open(path, 'w', encoding='utf-8') as f:
                json.dump(result.record, f, indent=2, ensure_ascii=False)
            body['filename'] = filename
            logger.info(f"Submission saved: {path}")

        return jsonify(body), status

    except (ValueError, TypeError, KeyError) as e:
        logger.warning(f"Bad submit request: {e}")
        return jsonify({'success': False, 'error': str(e)}), 400

    except Exception as e:
        logger.error(f"Error submitting form: {e}")
        return jsonify({'success': False, 'error': str(e)}), 500


if __name__ == '__main__':
    os.makedirs(app.config['SUBMISSION_DIR'], exist_ok=True)

    print("\n" + "="*60)
    print("FORM ENGINE - WEB INTERFACE")
    print("="*60)
    print(f"\nForm definition: {app.config['FORM_DEFINITION_PATH']}")
    print("Server starting on http://localhost:5000")
    print("\nPress Ctrl+C to stop the server")
    print("="*60 + "\n")

    app.run(debug=True, host='0.0.0.0', port=5000)
