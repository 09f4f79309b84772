# backend/tillbook/__init__.py
from flask import Flask, request

from .config import Config
from .extensions import db, migrate


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        # Before init_app: the engine is bound from config at that point
        app.config.update(config_overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.day_operations import day_operations_bp
    from .routes.transactions import transactions_bp
    from .routes.stock import stock_bp
    from .routes.stocktaking import stocktaking_bp
    from .routes.customers import customers_bp
    from .routes.barcodes import barcodes_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(day_operations_bp)
    app.register_blueprint(transactions_bp)
    app.register_blueprint(stock_bp)
    app.register_blueprint(stocktaking_bp)
    app.register_blueprint(customers_bp)
    app.register_blueprint(barcodes_bp)

    # Default invoice renderer; replace app.extensions entry to plug in another
    from .services.invoice_service import install_renderer
    install_renderer(app)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
