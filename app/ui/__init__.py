"""Console user interfaces."""
