"""Stores and engines behind the user accounts API."""
