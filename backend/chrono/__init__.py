"""Application package for the chrono research-request backend.

This package exposes the service, repository and model modules used by
the FastAPI application, plus the lexicon matching engine and the
dispatcher for the external calculator. Individual modules contain the
concrete implementations and documentation.
"""
