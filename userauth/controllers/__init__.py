"""Request controllers for the user accounts API."""
