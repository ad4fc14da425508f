"""Settings loaded from YAML with environment substitution."""
