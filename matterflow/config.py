"""
Matterflow — Matter Workflow Engine
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])

Engine settings (read through ``get_setting`` so services also work
outside an application context):
    WORKFLOW_DUPLICATE_ACTIVATION  allow | reject | reuse
    WORKFLOW_CONDITION_KEYS        known applicability-condition keys, or None
"""

import os

from flask import current_app, has_app_context

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'matterflow_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

DUPLICATE_ACTIVATION_POLICIES = ("allow", "reject", "reuse")

# Values used when no application context is active
_DEFAULTS = {
    "WORKFLOW_DUPLICATE_ACTIVATION": "allow",
    "WORKFLOW_CONDITION_KEYS": None,
}


def _condition_keys_from_env():
    raw = os.getenv("WORKFLOW_CONDITION_KEYS", "")
    keys = [k.strip() for k in raw.split(",") if k.strip()]
    return frozenset(keys) if keys else None


def _duplicate_policy_from_env():
    policy = os.getenv("WORKFLOW_DUPLICATE_ACTIVATION", "allow").strip().lower()
    if policy not in DUPLICATE_ACTIVATION_POLICIES:
        raise RuntimeError(
            f"WORKFLOW_DUPLICATE_ACTIVATION must be one of "
            f"{', '.join(DUPLICATE_ACTIVATION_POLICIES)} (got {policy!r})"
        )
    return policy


def get_setting(name: str, default=None):
    """Return an engine setting from the active app config, else the built-in default."""
    if has_app_context():
        return current_app.config.get(name, _DEFAULTS.get(name, default))
    return _DEFAULTS.get(name, default)


class Config:
    """Base configuration shared across all environments."""

    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,   # recycle connections every 5 min
    }
    AUTO_CREATE_TABLES = True

    # Workflow engine
    WORKFLOW_DUPLICATE_ACTIVATION = _duplicate_policy_from_env()
    WORKFLOW_CONDITION_KEYS = _condition_keys_from_env()


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    # Tables are managed by the test fixtures
    AUTO_CREATE_TABLES = False
    WORKFLOW_DUPLICATE_ACTIVATION = "allow"
    WORKFLOW_CONDITION_KEYS = None


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    # Schema is owned by Alembic in production
    AUTO_CREATE_TABLES = False

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
