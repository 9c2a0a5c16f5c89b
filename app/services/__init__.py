"""Domain services for the audio articles application."""
