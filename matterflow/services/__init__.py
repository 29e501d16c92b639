"""Workflow engine services. Each function takes the caller's SQLAlchemy session first."""
