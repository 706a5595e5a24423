"""Shared models, utilities and database access for all services."""
