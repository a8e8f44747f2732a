"""Configuration: YAML parsing, pydantic schema, runtime settings and logging."""
