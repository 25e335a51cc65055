"""
Rubric Grader Backend Package
=============================

Flask-based backend for horizontal (row-by-row) rubric grading.

Structure:
- routes/: API route blueprints
- services/: Scoring, grading session and persistence services
- models.py: Rubric and grading record models
- storage.py: Local device storage and remote record store adapters
- config.py: Configuration management
"""

from .config import config, Config

__version__ = "1.0.0"

__all__ = ['config', 'Config']
