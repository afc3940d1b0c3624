"""Single source of truth for the lessonforge version."""

__version__ = "0.3.0"
