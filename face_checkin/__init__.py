"""Django project package for the face check-in service."""
