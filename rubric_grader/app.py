#!/usr/bin/env python3
"""
Rubric Grader - Horizontal Rubric Grading Backend
=================================================
Run: python3 -m rubric_grader.app
Then point the grading client at: http://localhost:3000
"""
import atexit
import logging

from flask import Flask
from flask_cors import CORS

from rubric_grader.auth import init_auth
from rubric_grader.config import HOST, PORT, DEBUG, LOG_LEVEL
from rubric_grader.routes import register_routes
from rubric_grader.services.registry import GradingServices

logger = logging.getLogger(__name__)


def create_app(services=None):
    """
    Build the Flask application.

    Args:
        services: A GradingServices registry; built from config when omitted
    """
    logging.basicConfig(
        level=getattr(logging, str(LOG_LEVEL).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = Flask(__name__)
    CORS(app)

    # Auth must be installed before the blueprints
    init_auth(app)

    if services is None:
        services = GradingServices.from_config()
    register_routes(app, services)

    return app


def main():
    app = create_app()
    atexit.register(app.extensions['rubric_grader'].shutdown)
    logger.info("Rubric Grader listening on %s:%s", HOST, PORT)
    app.run(host=HOST, port=PORT, debug=DEBUG, use_reloader=False)


if __name__ == '__main__':
    main()
