"""Domain stages built on the lessonforge execution core."""
