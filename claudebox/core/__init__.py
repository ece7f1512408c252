"""Core broker components: sandbox, terminal, registry and connection handling."""
