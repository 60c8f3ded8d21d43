"""FastAPI application package for the admission service."""
