"""Application middleware: logging configuration and startup diagnostics."""
