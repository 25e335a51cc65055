"""
Rubric Grader API Routes
========================

All API route blueprints for the Rubric Grader application.

Usage:
    from rubric_grader.routes import register_routes
    register_routes(app, services)
"""
from .grading_routes import grading_bp
from .results_routes import results_bp
from .rubric_routes import rubric_bp


def register_routes(app, services):
    """Attach the service registry and register all route blueprints."""
    app.extensions['rubric_grader'] = services

    app.register_blueprint(rubric_bp)
    app.register_blueprint(grading_bp)
    app.register_blueprint(results_bp)


__all__ = [
    'register_routes',
    'grading_bp',
    'results_bp',
    'rubric_bp',
]
