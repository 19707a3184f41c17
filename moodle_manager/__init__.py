"""Moodle Prototype Manager - runs a local Moodle prototype in Docker."""

__version__ = "0.1.0"
