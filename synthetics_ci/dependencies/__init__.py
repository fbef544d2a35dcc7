"""Upload of dependency graphs."""
