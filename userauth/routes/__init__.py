"""Blueprints for the user accounts API."""
