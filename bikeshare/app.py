import atexit
import logging

from flask import Flask
from flasgger import Swagger

from bikeshare import config
from bikeshare.errors import register_error_handlers
from bikeshare.extensions import db, jwt
from bikeshare.integrations import default_collaborators
from bikeshare.workers.confirmation_watcher import ChainConfirmationWatcher
import bikeshare.models  # noqa: F401  register models


def create_app(test_config=None, **collaborators):
    """
    Build the ride service. Keyword arguments replace the default external
    collaborators (gateway, chain, mailer, bike_commands, clock, watcher).
    """
    app = Flask(__name__)

    # Configuration
    app.config.from_mapping(config.from_env())
    if test_config:
        app.config.update(test_config)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    logging.getLogger('bikeshare').setLevel(app.config['LOG_LEVEL'])

    # Initialize Extensions
    db.init_app(app)
    jwt.init_app(app)

    Swagger(app)
    register_error_handlers(app)

    # External collaborators
    deps = default_collaborators(app.config)
    deps.update(collaborators)
    if deps.get('watcher') is None:
        deps['watcher'] = ChainConfirmationWatcher(
            app,
            deps['chain'],
            mailer=deps['mailer'],
            poll_interval=app.config['CHAIN_POLL_INTERVAL_SECONDS'],
            timeout=app.config['CHAIN_CONFIRMATION_TIMEOUT_SECONDS'],
        )
        atexit.register(deps['watcher'].shutdown)
    app.extensions['bikeshare'] = deps

    # Register Blueprints
    from bikeshare.routes.bikes import bikes_bp
    app.register_blueprint(bikes_bp, url_prefix='/bikes')

    from bikeshare.routes.reservations import reservations_bp
    app.register_blueprint(reservations_bp, url_prefix='/reservations')

    from bikeshare.routes.rides import rides_bp
    app.register_blueprint(rides_bp, url_prefix='/rides')

    from bikeshare.routes.payments import payments_bp
    app.register_blueprint(payments_bp, url_prefix='/payments')

    from bikeshare.routes.loyalty import loyalty_bp
    app.register_blueprint(loyalty_bp, url_prefix='/loyalty')

    from bikeshare.routes.webhooks import webhooks_bp
    app.register_blueprint(webhooks_bp, url_prefix='/api/webhooks')

    @app.route('/health')
    def health():
        try:
            db.session.execute(db.text('SELECT 1'))
            return {"service": "ride-service", "status": "healthy"}, 200
        except Exception as e:
            app.logger.warning("Health check failed: %s", e)
            return {"service": "ride-service", "status": "unhealthy", "error": str(e)}, 503

    with app.app_context():
        db.create_all()

    return app


if __name__ == '__main__':
    app = create_app()
    app.run(host='0.0.0.0', port=5000)
