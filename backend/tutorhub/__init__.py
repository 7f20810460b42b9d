"""Application package for the tutoring marketplace registration backend.

This package exposes the service, repository and model modules used by
the FastAPI application. The multi-step registration state machine lives
in small pure modules under `utils/`; the remaining modules wire it to
storage and HTTP.
"""
