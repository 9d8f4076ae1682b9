"""Database models for TutorChat."""
