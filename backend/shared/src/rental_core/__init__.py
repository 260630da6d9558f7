"""Core domain package for the rental payments backend.

Holds the models, services and utilities shared by the HTTP API and the
scheduled Lambda jobs.
"""

__version__ = "0.1.0"
