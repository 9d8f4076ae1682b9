"""FastAPI application for TutorChat."""
