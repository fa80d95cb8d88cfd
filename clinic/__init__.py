"""Flask application factory."""
import logging

from flask import Flask, jsonify
from flask_wtf.csrf import CSRFProtect, CSRFError
from werkzeug.exceptions import HTTPException
from clinic.database import init_db


def create_app(config_object='config.Config'):
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    # Logging
    level = getattr(logging, app.config.get('LOG_LEVEL', 'INFO'), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s'
    )
    app.logger.setLevel(level)

    # Initialize CSRF protection
    CSRFProtect(app)

    @app.errorhandler(CSRFError)
    def handle_csrf_error(e):
        app.logger.warning(f"CSRF Error: {e.description}")
        return jsonify({'status': 'error', 'message': 'La sesión ha expirado. Recarga la página.'}), 400

    # Initialize database
    init_db(app)

    # Error Handlers
    from clinic.exceptions import ClinicError

    @app.errorhandler(ClinicError)
    def handle_clinic_error(error):
        """Handle ledger exceptions: validation and persistence are reported apart."""
        if error.status_code >= 500:
            app.logger.error(f"ClinicError [{error.status_code}] {error.kind}: {error.message}")
        else:
            app.logger.warning(f"ClinicError [{error.status_code}] {error.kind}: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(404)
    def not_found_error(error):
        return jsonify({'status': 'error', 'message': 'Not Found'}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({'status': 'error', 'message': 'Method Not Allowed'}), 405

    @app.errorhandler(500)
    @app.errorhandler(Exception)
    def internal_error(error):
        if isinstance(error, HTTPException):
            return jsonify({'status': 'error', 'message': error.description}), error.code

        import traceback
        app.logger.error(f"Unhandled Exception: {error}")
        app.logger.error(f"Traceback: {traceback.format_exc()}")
        return jsonify({'status': 'error', 'message': 'Internal Server Error'}), 500

    # Register blueprints
    from clinic.blueprints.sessions import sessions_bp
    app.register_blueprint(sessions_bp)

    # Register CLI commands
    from clinic.cli_commands import init_cli_commands
    init_cli_commands(app)

    app.logger.info(f"Database: {app.config.get('SQLALCHEMY_DATABASE_URI')}")

    return app
