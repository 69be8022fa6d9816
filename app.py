"""
Obituary Archive - Main Application
Serves obituary PDF reports and the admin API over the Google Sheets archive
"""

import os
import logging
from datetime import timedelta
from functools import wraps
from flask import Flask, request, jsonify, session, make_response
from flask_cors import CORS
from dotenv import load_dotenv

# Load environment variables before the services read their settings
load_dotenv()

# Import our custom modules
from obituary_services import (
    ArchiveDBError, InvalidSurnameError, ReferenceOverflowError,
    REPORT_TYPES, get_archive_client, to_data_uri
)
from obituary_services.pdf_report import (
    generate_obituary_pdf, generate_proofread_report_pdf, generate_search_results_pdf
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)
CORS(app, origins=os.environ.get('CORS_ORIGINS', '*').split(','))

# Configuration
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', os.urandom(24))
app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(hours=int(os.getenv('SESSION_HOURS', 12)))

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 100
PDF_ERROR_MESSAGE = 'Failed to process PDF request'


# ========== Authentication ==========

def login_required(f):
    """Decorator to require login for routes"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not session.get('authenticated'):
            return jsonify({
                'success': False,
                'error': 'Authentication required'
            }), 401
        return f(*args, **kwargs)
    return decorated_function


# ========== Helper Functions ==========

def handle_errors(f):
    """Decorator for handling errors in routes"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except ArchiveDBError as e:
            logger.error(f"Archive storage error: {e}", exc_info=True)
            return jsonify({
                'success': False,
                'error': 'The obituary archive is temporarily unavailable',
                'error_type': 'storage_error'
            }), 503
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return jsonify({
                'success': False,
                'error': 'An unexpected error occurred',
                'error_type': 'server_error'
            }), 500
    return decorated_function


def current_user():
    return session.get('user', 'system')


def request_data() -> dict:
    return request.get_json(silent=True) or {}


def pdf_attachment(pdf_bytes: bytes, filename: str):
    response = make_response(pdf_bytes)
    response.headers['Content-Type'] = 'application/pdf'
    response.headers['Content-Disposition'] = f'attachment; filename="{filename}"'
    return response


# ========== Authentication Routes ==========

@app.route('/login', methods=['POST'])
def login():
    """Log in with the shared admin password"""
    data = request_data()
    password = data.get('password', '')
    app_password = os.environ.get('APP_PASSWORD', '')

    if not app_password:
        logger.error("APP_PASSWORD not configured")
        return jsonify({
            'success': False,
            'error': 'APP_PASSWORD not configured. Please set it in your .env file.'
        }), 500

    if password != app_password:
        logger.warning("Failed login attempt")
        return jsonify({'success': False, 'error': 'Invalid password'}), 401

    session['authenticated'] = True
    session['user'] = data.get('username') or 'admin'
    session.permanent = True
    logger.info(f"User {session['user']} logged in successfully")
    return jsonify({'success': True, 'user': session['user']})


@app.route('/logout')
def logout():
    """Logout and clear session"""
    session.clear()
    return jsonify({'success': True})


@app.route('/health')
def health():
    return jsonify({'status': 'ok'})


# ========== PDF Routes ==========

@app.route('/api/generate-pdf/<reference>')
def api_generate_pdf(reference):
    """API: Download the obituary report for one reference"""
    try:
        pdf_bytes = generate_obituary_pdf(reference, get_archive_client())
        if pdf_bytes is None:
            return jsonify({'error': f'Obituary {reference} not found'}), 404
        return pdf_attachment(pdf_bytes, f"{reference}_Obituary_Report.pdf")
    except Exception as e:
        logger.error(f"Error generating PDF for {reference}: {e}", exc_info=True)
        return jsonify({'error': PDF_ERROR_MESSAGE}), 500


@app.route('/api/generate-search-pdf', methods=['POST'])
def api_generate_search_pdf():
    """API: Search results report as a base64 data URI"""
    search_query = (request_data().get('searchQuery') or '').strip()
    if not search_query:
        return jsonify({'error': 'Search query is required'}), 400

    try:
        pdf_bytes = generate_search_results_pdf(search_query, get_archive_client())
        if pdf_bytes is None:
            return jsonify({'error': 'No obituaries found for this search'}), 404
        return jsonify({'pdf': to_data_uri(pdf_bytes)})
    except Exception as e:
        logger.error(f"Error generating search PDF for {search_query!r}: {e}", exc_info=True)
        return jsonify({'error': PDF_ERROR_MESSAGE}), 500


@app.route('/api/generate-report', methods=['POST'])
@handle_errors
@login_required
def api_generate_report():
    """API: Proofread or unproofread obituaries report as a base64 data URI"""
    report_type = request_data().get('reportType')
    if report_type not in REPORT_TYPES:
        return jsonify({
            'success': False,
            'error': f'Invalid report type. Must be one of {REPORT_TYPES}'
        }), 400

    pdf_bytes = generate_proofread_report_pdf(report_type, get_archive_client())
    if pdf_bytes is None:
        return jsonify({'success': False, 'error': f'No {report_type} obituaries found'}), 404
    return jsonify({'success': True, 'pdf': to_data_uri(pdf_bytes)})


# ========== Obituary API Routes ==========

@app.route('/api/obituaries')
@handle_errors
@login_required
def api_get_obituaries():
    """API: One page of obituaries matching the dashboard search"""
    search = request.args.get('search', '')
    offset = request.args.get('offset', 0, type=int)
    limit = request.args.get('limit', DEFAULT_PAGE_SIZE, type=int)
    if offset < 0 or limit < 1:
        return jsonify({'success': False, 'error': 'offset and limit must be positive'}), 400

    obituaries, total = get_archive_client().get_obituaries(search, offset, min(limit, MAX_PAGE_SIZE))
    return jsonify({
        'success': True,
        'obituaries': obituaries,
        'total': total
    })


@app.route('/api/obituaries/<reference>')
@handle_errors
@login_required
def api_get_obituary(reference):
    """API: Get a specific obituary by reference"""
    obituary = get_archive_client().get_obituary(reference)
    if not obituary:
        return jsonify({'success': False, 'error': f'Obituary {reference} not found'}), 404
    return jsonify({'success': True, 'obituary': obituary})


@app.route('/api/obituaries', methods=['POST'])
@handle_errors
@login_required
def api_create_obituary():
    """API: Create an obituary under a new reference"""
    data = request_data()
    relatives = data.pop('relatives', None)
    also_known_as = data.pop('also_known_as', None)

    try:
        obituary = get_archive_client().create_obituary(data, relatives, also_known_as, user=current_user())
    except InvalidSurnameError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    except ReferenceOverflowError as e:
        logger.error(f"Reference overflow: {e}")
        return jsonify({'success': False, 'error': str(e)}), 409

    return jsonify({'success': True, 'obituary': obituary}), 201


@app.route('/api/obituaries/<reference>', methods=['PATCH'])
@handle_errors
@login_required
def api_update_obituary(reference):
    """API: Update an obituary"""
    data = request_data()
    relatives = data.pop('relatives', None)
    also_known_as = data.pop('also_known_as', None)

    obituary = get_archive_client().update_obituary(
        reference, data, relatives, also_known_as, user=current_user()
    )
    if not obituary:
        return jsonify({'success': False, 'error': f'Obituary {reference} not found'}), 404
    return jsonify({'success': True, 'obituary': obituary})


@app.route('/api/obituaries/<reference>', methods=['DELETE'])
@handle_errors
@login_required
def api_delete_obituary(reference):
    """API: Delete an obituary with its relatives and aliases"""
    if not get_archive_client().delete_obituary(reference, user=current_user()):
        return jsonify({'success': False, 'error': f'Obituary {reference} not found'}), 404
    return jsonify({'success': True, 'message': f'Obituary {reference} deleted'})


@app.route('/api/file-number', methods=['POST'])
@handle_errors
@login_required
def api_file_number():
    """API: Next file number for a scanned obituary"""
    data = request_data()
    surname = (data.get('surname') or '').strip()
    if not surname:
        return jsonify({'success': False, 'error': 'Surname is required'}), 400

    try:
        file_number, existing = get_archive_client().generate_file_number(
            surname, data.get('givenNames') or '', data.get('deathDate')
        )
    except InvalidSurnameError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    except ReferenceOverflowError as e:
        logger.error(f"File number overflow: {e}")
        return jsonify({'success': False, 'error': str(e)}), 409

    return jsonify({
        'success': True,
        'fileNumber': file_number,
        'existingReference': existing
    })


# ========== Error Handlers ==========

@app.errorhandler(404)
def not_found(e):
    """Handle not found errors"""
    return jsonify({'success': False, 'error': 'Not found'}), 404


@app.errorhandler(405)
def method_not_allowed(e):
    return jsonify({'success': False, 'error': 'Method not allowed'}), 405


@app.errorhandler(500)
def server_error(e):
    """Handle server errors"""
    logger.error(f"Server error: {e}")
    return jsonify({'success': False, 'error': 'Internal server error'}), 500


# ========== Main Entry Point ==========

if __name__ == '__main__':
    # Print startup info
    print("=" * 50)
    print("Obituary Archive")
    print("=" * 50)

    db = get_archive_client()
    if db.demo_mode:
        print("Google Sheets: Not configured - running in demo mode")
    else:
        print(f"Google Sheets: Connected to '{db.spreadsheet.title}'")

    print("=" * 50)
    print("Starting server at http://localhost:5000")
    print("=" * 50)

    app.run(
        debug=os.getenv('FLASK_DEBUG', 'False').lower() == 'true',
        host='0.0.0.0',
        port=int(os.getenv('FLASK_PORT', 5000))
    )
