# backend/clinicscope/__init__.py
from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic and the scoping checks see every mapper
    from . import models  # noqa: F401

    # Tenant isolation: query criteria + flush guard, descriptor check, per-request scope
    from .isolation.descriptors import verify_scoping_descriptors
    from .isolation.middleware import scope_resolver
    from .isolation.query_filters import install_scope_guards

    install_scope_guards()
    with app.app_context():
        verify_scoping_descriptors()
    scope_resolver.init_app(app)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.auth import auth_bp
    from .routes.context import context_bp
    from .routes.patients import patients_bp
    from .routes.admin import admin_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(context_bp)
    app.register_blueprint(patients_bp)
    app.register_blueprint(admin_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
