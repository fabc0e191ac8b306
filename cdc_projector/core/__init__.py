"""Cross-cutting concerns: error taxonomy and logging."""
