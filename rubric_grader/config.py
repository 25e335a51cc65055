"""
Configuration management for the Rubric Grader backend.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# User data directories
HOME_DIR = Path.home()
DATA_DIR = Path(os.getenv("RUBRIC_GRADER_DATA_DIR", str(HOME_DIR / ".rubric_grader")))

# Supabase (remote record store)
SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_KEY = os.getenv("SUPABASE_KEY", "")

RESULTS_TABLE = os.getenv("RESULTS_TABLE", "student_results")
SESSIONS_TABLE = os.getenv("SESSIONS_TABLE", "grading_sessions")
SELF_ASSESSMENTS_TABLE = os.getenv("SELF_ASSESSMENTS_TABLE", "self_assessments")

# Grading session configuration
AUTOSAVE_INTERVAL_SECONDS = float(os.getenv("AUTOSAVE_INTERVAL_SECONDS", "60"))

# Privacy key derivation (PBKDF2 rounds for newly encrypted values)
PRIVACY_KDF_ITERATIONS = int(os.getenv("PRIVACY_KDF_ITERATIONS", "200000"))

# Server configuration
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))
DEBUG = os.getenv("DEBUG", "false").lower() in ("1", "true", "yes")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


class Config:
    """Application configuration class."""

    def __init__(self):
        self.data_dir = str(DATA_DIR)
        self.supabase_url = SUPABASE_URL
        self.supabase_key = SUPABASE_KEY
        self.results_table = RESULTS_TABLE
        self.sessions_table = SESSIONS_TABLE
        self.self_assessments_table = SELF_ASSESSMENTS_TABLE
        self.autosave_interval = AUTOSAVE_INTERVAL_SECONDS
        self.kdf_iterations = PRIVACY_KDF_ITERATIONS

    @property
    def remote_enabled(self):
        return bool(self.supabase_url and self.supabase_key)

    def to_dict(self):
        return {
            "data_dir": self.data_dir,
            "supabase_url": self.supabase_url,
            "results_table": self.results_table,
            "sessions_table": self.sessions_table,
            "self_assessments_table": self.self_assessments_table,
            "autosave_interval": self.autosave_interval,
            "kdf_iterations": self.kdf_iterations,
            "remote_enabled": self.remote_enabled,
        }

    def update(self, data: dict):
        for key, value in data.items():
            if hasattr(self, key) and key != "remote_enabled":
                setattr(self, key, value)


# Global config instance
config = Config()
