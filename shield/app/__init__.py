"""FastAPI application for the abuse-prevention pipeline."""
