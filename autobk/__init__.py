import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
    """Configure daemon logging"""

    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'autobk.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler])

    app.logger.setLevel(log_level)
    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None, config_overrides=None):
    """Application factory for the autobackup daemon"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('AUTOBK_ENV', 'production')

    from autobk.config import config
    app.config.from_object(config[config_name])
    if config_overrides:
        app.config.update(config_overrides)

    # Configure logging
    configure_logging(app)

    # The backup root must exist before the first cycle
    os.makedirs(app.config['BACKUP_DIR'], exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Import models so they are registered on the metadata
    from autobk import models  # noqa: F401

    # One-shot commands for operators (flask --app autobk <command>)
    from autobk.cli import register_commands
    register_commands(app)

    # Health check endpoint
    @app.route('/health')
    def health():
        from autobk.scheduler import is_scheduler_running
        return {'status': 'healthy', 'scheduler_running': is_scheduler_running()}, 200

    return app
