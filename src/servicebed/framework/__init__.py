"""servicebed framework -- cross-cutting application services (logging)."""
