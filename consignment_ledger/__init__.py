"""Flask application factory."""
from flask import Flask, jsonify
from consignment_ledger.database import init_db
import os


def create_app(config_object='config.Config'):
    """Create and configure the Flask application."""
    app = Flask(__name__)
    app.config.from_object(config_object)

    # Initialize Sentry for error tracking in production
    if os.getenv('SENTRY_DSN') and (app.config.get('ENV') == 'production' or os.getenv('FLASK_ENV') == 'production'):
        import sentry_sdk
        from sentry_sdk.integrations.flask import FlaskIntegration

        sentry_sdk.init(
            dsn=os.getenv('SENTRY_DSN'),
            integrations=[FlaskIntegration()],
            traces_sample_rate=0.1,  # 10% of transactions for performance monitoring
            environment=os.getenv('FLASK_ENV', 'production'),
            release=os.getenv('GIT_COMMIT', 'unknown')
        )

    # Initialize Redis Cache (disabled unless CACHE_ENABLED)
    from consignment_ledger.services.cache_service import init_cache
    init_cache(app)

    # Setup Prometheus metrics instrumentation
    from consignment_ledger.blueprints.metrics import setup_metrics_instrumentation
    setup_metrics_instrumentation(app)

    # Production: Enable ProxyFix for HTTPS behind Nginx reverse proxy
    if app.config.get('ENV') == 'production':
        from werkzeug.middleware.proxy_fix import ProxyFix
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=1,      # Trust X-Forwarded-For with 1 proxy
            x_proto=1,    # Trust X-Forwarded-Proto
            x_host=1,     # Trust X-Forwarded-Host
            x_port=1,     # Trust X-Forwarded-Port
            x_prefix=0    # No prefix (not behind a URL prefix)
        )

    # Initialize database
    init_db(app)

    # Error Handlers
    from consignment_ledger.exceptions import LedgerError

    @app.errorhandler(LedgerError)
    def handle_ledger_error(error):
        """Handle custom application exceptions."""
        if error.status_code >= 500:
            app.logger.error(f"LedgerError [{error.status_code}] {error.error}: {error.message}")
        else:
            app.logger.info(f"LedgerError [{error.status_code}] {error.error}: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(404)
    def not_found_error(error):
        return jsonify({'error': 'not_found', 'message': 'Not Found'}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({'error': 'method_not_allowed', 'message': 'Method Not Allowed'}), 405

    @app.errorhandler(500)
    @app.errorhandler(Exception)
    def internal_error(error):
        import traceback
        from werkzeug.exceptions import HTTPException
        if isinstance(error, HTTPException) and error.code != 500:
            return jsonify({'error': error.name.lower().replace(' ', '_'), 'message': error.description}), error.code

        app.logger.error(f"Unhandled Exception: {error}")
        app.logger.error(f"Traceback: {traceback.format_exc()}")
        return jsonify({'error': 'internal_error', 'message': 'Erreur interne du serveur'}), 500

    # Register blueprints
    from consignment_ledger.blueprints.consignments import consignments_bp
    from consignment_ledger.blueprints.metrics import metrics_bp

    app.register_blueprint(consignments_bp)
    app.register_blueprint(metrics_bp)

    # Register CLI commands
    from consignment_ledger.cli_commands import init_cli_commands
    init_cli_commands(app)

    return app
