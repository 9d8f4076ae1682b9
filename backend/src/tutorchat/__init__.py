"""TutorChat: conversational retrieval and maintenance engine."""

__version__ = "0.1.0"
