"""Enrollment-delayed Entra device group reconciler."""

__version__ = "0.1.0"
