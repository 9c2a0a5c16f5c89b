"""Audio articles application package."""
